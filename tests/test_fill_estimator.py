import asyncio
from datetime import datetime, timezone

import pytest
from aiohttp import test_utils, web

from fill_estimator import (
    CancellationToken, EstimationCancelledError, EstimationFailedError, FillEstimator,
    RateLimitedError, RetryPolicy, ScanController, error_message, to_data_url,
    parse_percent, parse_retry_after,
)

IMAGE = "data:image/png;base64,iVBORw0KGgo="


def make_app(*responses, calls=None):
    """App answering successive POSTs with the given (status, json, headers) tuples."""
    queue = list(responses)

    async def handler(request):
        if calls is not None:
            calls.append(await request.json())
        status, body, headers = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(body, str):
            return web.Response(status=status, text=body, headers=headers)
        return web.json_response(body, status=status, headers=headers)

    app = web.Application()
    app.router.add_post("/estimate", handler)
    return app


class TestRetryPolicy:
    def test_exponential_backoff_with_cap(self):
        policy = RetryPolicy()
        no_jitter = lambda: 0.0
        assert policy.delay_ms(1, no_jitter) == 1200
        assert policy.delay_ms(2, no_jitter) == 2400
        assert policy.delay_ms(3, no_jitter) == 4800
        assert policy.delay_ms(10, no_jitter) == 20000

    def test_jitter_is_floored(self):
        assert RetryPolicy().delay_ms(1, lambda: 0.999) == 1200 + 449


class TestParsing:
    def test_retry_after_seconds(self):
        assert parse_retry_after("2") == 2000
        assert parse_retry_after("0.5") == 500
        assert parse_retry_after("0") is None
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None

    def test_retry_after_http_date(self):
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert parse_retry_after("Tue, 10 Mar 2026 12:00:05 GMT", now) == 5000
        assert parse_retry_after("Tue, 10 Mar 2026 11:59:00 GMT", now) is None

    def test_percent_shapes(self):
        assert parse_percent('{"percent_full": 67}') == 67
        assert parse_percent('{"percent_full": 140}') == 100
        assert parse_percent('{"fill_fraction": 0.42}') == 42
        with pytest.raises(EstimationFailedError, match="unexpected response shape"):
            parse_percent('{"level": "high"}')
        with pytest.raises(EstimationFailedError):
            parse_percent('{"percent_full": true}')

    def test_error_message(self):
        assert error_message(500, '{"error": "model down"}') == "model down"
        assert error_message(400, '{"message": "bad image"}') == "bad image"
        assert error_message(502, "x" * 500) == "x" * 220
        assert error_message(503, "") == "HTTP 503"


def test_to_data_url():
    assert to_data_url(b"\x89PNG", "image/png") == "data:image/png;base64,iVBORw=="
    assert to_data_url(b"\x89PNG", None, "bottle.png") == "data:image/png;base64,iVBORw=="
    assert to_data_url(b"\x89PNG").startswith("data:image/jpeg;base64,")


@pytest.mark.asyncio
async def test_rate_limit_then_success_waits_retry_after():
    calls = []
    app = make_app(
        (429, {"error": "slow down"}, {"Retry-After": "2"}),
        (200, {"percent_full": 67}, {}),
        calls=calls,
    )
    async with test_utils.TestServer(app) as server:
        estimator = FillEstimator(str(server.make_url("/estimate")))
        loop = asyncio.get_running_loop()
        started = loop.time()
        percent = await estimator.estimate_percent_full(IMAGE)
        elapsed = loop.time() - started
    assert percent == 67
    assert elapsed >= 2.0
    assert calls == [{"imageDataUrl": IMAGE}, {"imageDataUrl": IMAGE}]


@pytest.mark.asyncio
async def test_fill_fraction_response():
    app = make_app((200, {"fill_fraction": 0.25}, {}))
    async with test_utils.TestServer(app) as server:
        estimator = FillEstimator(str(server.make_url("/estimate")))
        assert await estimator.estimate_percent_full(IMAGE) == 25


@pytest.mark.asyncio
async def test_rate_limit_exhausts_attempts():
    app = make_app((429, {"error": "slow down"}, {}))
    policy = RetryPolicy(max_attempts=2, base_delay_ms=10, jitter_ms=0)
    async with test_utils.TestServer(app) as server:
        estimator = FillEstimator(str(server.make_url("/estimate")), policy=policy)
        with pytest.raises(RateLimitedError) as excinfo:
            await estimator.estimate_percent_full(IMAGE)
    assert excinfo.value.retry_after_ms == 20


@pytest.mark.asyncio
async def test_server_error_message():
    app = make_app((500, {"error": "model down"}, {}))
    async with test_utils.TestServer(app) as server:
        estimator = FillEstimator(str(server.make_url("/estimate")))
        with pytest.raises(EstimationFailedError) as excinfo:
            await estimator.estimate_percent_full(IMAGE)
    assert excinfo.value.status == 500
    assert excinfo.value.message == "model down"


@pytest.mark.asyncio
async def test_missing_url_fails_fast():
    with pytest.raises(EstimationFailedError, match="not configured"):
        await FillEstimator(None).estimate_percent_full(IMAGE)


@pytest.mark.asyncio
async def test_cancel_during_backoff():
    app = make_app((429, {}, {"Retry-After": "5"}))
    async with test_utils.TestServer(app) as server:
        estimator = FillEstimator(str(server.make_url("/estimate")))
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.2, token.cancel)
        started = loop.time()
        with pytest.raises(EstimationCancelledError):
            await estimator.estimate_percent_full(IMAGE, token)
        assert loop.time() - started < 2.0


@pytest.mark.asyncio
async def test_cancel_in_flight_request():
    release = asyncio.Event()

    async def slow(request):
        await asyncio.wait_for(release.wait(), timeout=5)
        return web.json_response({"percent_full": 50})

    app = web.Application()
    app.router.add_post("/estimate", slow)
    async with test_utils.TestServer(app) as server:
        estimator = FillEstimator(str(server.make_url("/estimate")))
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.1, token.cancel)
        with pytest.raises(EstimationCancelledError):
            await estimator.estimate_percent_full(IMAGE, token)
        release.set()


class StubEstimator:
    """Estimator double whose answers are scripted per call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)

    async def estimate_percent_full(self, image_data_url, token):
        outcome = self.outcomes.pop(0)
        if outcome == "hang":
            await token.sleep(10)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestScanController:
    @pytest.mark.asyncio
    async def test_new_scan_supersedes_previous(self, clock):
        scanner = ScanController(StubEstimator("hang", 80), clock)
        first = asyncio.create_task(scanner.scan(IMAGE))
        await asyncio.sleep(0)
        assert scanner.status == "scanning"
        assert await scanner.scan(IMAGE) == 80
        assert await first is None
        assert scanner.status == "idle"
        assert scanner.current is None

    @pytest.mark.asyncio
    async def test_rate_limit_starts_cooldown(self, clock):
        scanner = ScanController(StubEstimator(RateLimitedError(None)), clock)
        with pytest.raises(RateLimitedError):
            await scanner.scan(IMAGE)
        assert scanner.status == "rate_limited"
        assert scanner.cooldown_remaining() == 15
        with pytest.raises(RateLimitedError) as excinfo:
            await scanner.scan(IMAGE)
        assert excinfo.value.retry_after_ms == 15000
        clock.advance(seconds=16)
        assert scanner.cooldown_remaining() == 0

    @pytest.mark.asyncio
    async def test_failure_is_surfaced(self, clock):
        scanner = ScanController(StubEstimator(EstimationFailedError(500, "model down")), clock)
        with pytest.raises(EstimationFailedError):
            await scanner.scan(IMAGE)
        assert scanner.status == "failed"
        assert scanner.last_error.status == 500
