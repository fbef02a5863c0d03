"""
Client for the remote photo-based fill estimation service.

The service takes a bottle photo as a data URL and answers with how full the
bottle is. Rate limiting (429) is retried with backoff; everything else that
goes wrong is surfaced as an EstimationError subclass.
"""

import asyncio
import base64
import json
import math
import mimetypes
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

import aiohttp

from pacing import clamp
from time_service import TimeService

ERROR_SNIPPET_CHARS = 220
DEFAULT_COOLDOWN_SECONDS = 15


class EstimationError(Exception):
    """Base class for fill estimation failures"""


class RateLimitedError(EstimationError):
    def __init__(self, retry_after_ms: Optional[int] = None):
        self.retry_after_ms = retry_after_ms
        super().__init__(f"Rate limited (retry after {retry_after_ms} ms)")


class EstimationFailedError(EstimationError):
    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        super().__init__(f"Estimation failed ({status}): {message}")


class EstimationCancelledError(EstimationError):
    def __init__(self):
        super().__init__("Estimation cancelled")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    base_delay_ms: int = 1200
    factor: float = 2
    cap_ms: int = 20000
    jitter_ms: int = 450

    def delay_ms(self, attempt: int, rng: Callable[[], float] = random.random) -> int:
        """Backoff before retrying after `attempt` (1-based) failed"""
        backoff = min(self.cap_ms, self.base_delay_ms * self.factor ** max(0, attempt - 1))
        return int(backoff) + math.floor(rng() * self.jitter_ms)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """Retry-After header (delta seconds or HTTP-date) in milliseconds; None unless positive"""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
        return int(seconds * 1000) if seconds > 0 else None
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    delta_ms = int((when - now).total_seconds() * 1000)
    return delta_ms if delta_ms > 0 else None


def error_message(status: int, body: str) -> str:
    """The body's `error`/`message` field, else the start of the raw body"""
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ('error', 'message'):
            if isinstance(data.get(key), str) and data[key]:
                return data[key]
    snippet = (body or '')[:ERROR_SNIPPET_CHARS]
    return snippet or f"HTTP {status}"


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def parse_percent(body: str) -> int:
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        if _is_number(data.get('percent_full')):
            return int(round(clamp(data['percent_full'], 0, 100)))
        if _is_number(data.get('fill_fraction')):
            return int(round(clamp(data['fill_fraction'] * 100, 0, 100)))
    raise EstimationFailedError(200, "unexpected response shape")


def to_data_url(data: bytes, mime: Optional[str] = None, filename: Optional[str] = None) -> str:
    """Encode uploaded image bytes as a base64 data URL; the mime type falls back to the file name"""
    if not mime and filename:
        mime, _ = mimetypes.guess_type(filename)
    encoded = base64.b64encode(data).decode('ascii')
    return f"data:{mime or 'image/jpeg'};base64,{encoded}"


class CancellationToken:
    """Cooperative cancellation for one scan: aborts waits and in-flight requests"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self.cancelled:
            raise EstimationCancelledError()

    async def run(self, awaitable):
        """Await `awaitable` unless the token fires first"""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task.cancelled() or (self.cancelled and task.exception() is not None):
            raise EstimationCancelledError()
        return task.result()

    async def sleep(self, seconds: float):
        await self.run(asyncio.sleep(seconds))


class FillEstimator:
    def __init__(self, url: Optional[str], policy: RetryPolicy = RetryPolicy(),
                 timeout_seconds: float = 30, rng: Callable[[], float] = random.random):
        self.url = url
        self.policy = policy
        self.timeout_seconds = timeout_seconds
        self.rng = rng

    async def _post(self, session: aiohttp.ClientSession, image_data_url: str):
        async with session.post(self.url, json={'imageDataUrl': image_data_url},
                                headers={'User-Agent': 'OneBottle/1.0'}) as response:
            body = await response.text()
            return response.status, response.headers.get('Retry-After'), body

    async def estimate_percent_full(self, image_data_url: str,
                                    token: Optional[CancellationToken] = None) -> int:
        """Estimated fill percentage (0-100) of the bottle in the photo"""
        if not self.url:
            raise EstimationFailedError(None, "fill estimation URL is not configured")
        token = token or CancellationToken()
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            attempt = 0
            while True:
                attempt += 1
                try:
                    status, retry_after, body = await token.run(self._post(session, image_data_url))
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    raise EstimationFailedError(None, str(e) or type(e).__name__) from e

                if status == 429:
                    wait_ms = parse_retry_after(retry_after)
                    if wait_ms is None:
                        wait_ms = self.policy.delay_ms(attempt, self.rng)
                    if attempt >= self.policy.max_attempts:
                        raise RateLimitedError(wait_ms)
                    print(f"⚠️ Fill estimate rate limited, retrying in {wait_ms} ms")
                    await token.sleep(wait_ms / 1000)
                    continue

                if not 200 <= status < 300:
                    raise EstimationFailedError(status, error_message(status, body))
                return parse_percent(body)


class ScanController:
    """Runs one scan at a time; a new scan supersedes the one in flight.

    After a rate limit, new scans are refused until the cooldown passes.
    """

    def __init__(self, estimator: FillEstimator, time_service: TimeService,
                 cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS):
        self.estimator = estimator
        self.time_service = time_service
        self.cooldown_seconds = cooldown_seconds
        self.current: Optional[CancellationToken] = None
        self.cooldown_until: Optional[datetime] = None
        self.status = 'idle'  # idle, scanning, rate_limited, failed
        self.last_error: Optional[EstimationError] = None

    def cooldown_remaining(self) -> float:
        if self.cooldown_until is None:
            return 0.0
        return max(0.0, (self.cooldown_until - self.time_service.now()).total_seconds())

    def cancel(self):
        if self.current is not None:
            self.current.cancel()
            self.current = None

    async def scan(self, image_data_url: str) -> Optional[int]:
        """Percent full, or None when this scan was cancelled or superseded"""
        remaining = self.cooldown_remaining()
        if remaining > 0:
            raise RateLimitedError(int(remaining * 1000))
        self.cancel()
        token = CancellationToken()
        self.current = token
        self.status = 'scanning'
        try:
            percent = await self.estimator.estimate_percent_full(image_data_url, token)
            self.status = 'idle'
            self.last_error = None
            return percent
        except EstimationCancelledError:
            if self.current is token or self.current is None:
                self.status = 'idle'
            return None
        except RateLimitedError as e:
            wait_ms = e.retry_after_ms or self.cooldown_seconds * 1000
            self.cooldown_until = self.time_service.now() + timedelta(milliseconds=wait_ms)
            self.status = 'rate_limited'
            self.last_error = e
            raise
        except EstimationFailedError as e:
            self.status = 'failed'
            self.last_error = e
            raise
        finally:
            if self.current is token:
                self.current = None
