import copy
from datetime import datetime, timedelta

import pytest

from hydration_session import HydrationSession
from nudge_scheduler import EARLY_BEHIND_ID, PRAISE_ID

TODAY = "2026-03-10"


def snapshot(session):
    return copy.deepcopy(session.state.to_dict())


def test_four_tracks_complete_the_goal(session):
    celebrations = []
    for expected in (1, 2, 3, 4):
        session.set_bottle_level(0.0)
        assert session.state.completed_bottles == expected
        assert session.state.remaining == 1.0
        assert session.total_consumed() == expected * 500
        celebrations.append(session.state.celebrate.type)
    assert celebrations == ["bottle", "bottle", "bottle", "goal"]
    assert session.state.celebrate.pct == 100
    assert session.state.daily_log[TODAY].window_hit_counts == [0, 4, 0, 0, 0]


def test_partial_track_does_not_celebrate(session):
    session.set_bottle_level(0.6)
    assert session.total_consumed() == 200
    assert session.state.celebrate is None


def test_add_extra_from_full_bottle(session):
    session.add_extra(250)
    assert session.total_consumed() == 250
    assert session.state.remaining == 1.0
    assert session.state.history[-1].action == "extra"


@pytest.mark.parametrize("mutate", [
    lambda s: s.set_bottle_level(0.5),
    lambda s: s.set_bottle_level(0.0),
    lambda s: s.set_bottle_level(0.95),
    lambda s: s.add_extra(250),
    lambda s: s.add_extra(50),
])
def test_undo_is_exact_inverse(session, mutate):
    session.add_extra(300)
    before = snapshot(session)
    mutate(session)
    assert snapshot(session) != before
    session.undo()
    assert snapshot(session) == before


def test_undo_on_empty_history_is_noop(session):
    before = snapshot(session)
    assert session.undo() is None
    assert snapshot(session) == before


def test_switch_bottle_keeps_today(session):
    session.set_bottle_level(0.5)
    session.switch_bottle(bottle_ml=750, shape="tall")
    state = session.state
    assert (state.bottle_ml, state.shape) == (750, "tall")
    assert (state.completed_bottles, state.remaining, state.carry_ml) == (0, 1.0, 250)
    assert state.history == []
    assert session.total_consumed() == 250


def test_switch_bottle_validates(session):
    with pytest.raises(ValueError):
        session.switch_bottle(shape="mug")
    with pytest.raises(ValueError):
        session.switch_bottle(bottle_ml=0)


def test_refill_commits_pending_and_preserves_total(session):
    session.set_pending(0.4)
    consumed = session.refill()
    assert consumed == 300
    assert session.state.remaining == 1.0
    assert session.state.carry_ml == 300
    assert session.total_consumed() == 300
    assert session.state.celebrate.type == "bottle"
    assert session.pending_remaining == 1.0


def test_track_snaps_pending_level(session):
    session.switch_bottle(snap="quarters")
    session.set_pending(0.7)
    assert session.pending_remaining == pytest.approx(0.75)
    session.track()
    assert session.total_consumed() == 125


def test_rollover_between_calls(session, clock):
    session.set_bottle_level(0.5)
    clock.set_time(datetime(2026, 3, 11, 9, 0))
    session.add_extra(100)
    state = session.state
    assert state.day_key == "2026-03-11"
    assert session.total_consumed() == 100
    assert len(state.history) == 1
    closed = state.daily_log["2026-03-10"]
    assert closed.finalized
    assert closed.consumed_ml == 250
    assert sorted(state.daily_log) == ["2026-03-10", "2026-03-11"]


def test_rollover_writes_one_log_entry(session, clock):
    clock.set_time(datetime(2026, 3, 11, 9, 0))
    assert session.check_rollover() == TODAY
    assert list(session.state.daily_log) == [TODAY]
    assert session.check_rollover() is None


def test_state_is_persisted(session, config, storage, clock):
    session.set_bottle_level(0.0)
    session.add_extra(330)
    reloaded = HydrationSession(config=config, storage=storage, time_service=clock)
    assert reloaded.total_consumed() == 830
    assert reloaded.state.daily_log == session.state.daily_log


def test_morning_refill(session, clock):
    clock.set_time(datetime(2026, 3, 11, 8, 30))
    assert session.morning_reset_due()
    session.add_extra(200)
    session.morning_refill()
    assert not session.morning_reset_due()
    assert session.total_consumed() == 0
    assert session.state.day_key == "2026-03-11"


def test_settings_updates(session):
    session.update_goal(2500)
    assert session.state.goal_ml == 2500
    session.update_schedule(420, 1380)
    assert (session.state.wake_mins, session.state.sleep_mins) == (420, 1380)
    with pytest.raises(ValueError):
        session.update_goal(0)
    with pytest.raises(ValueError):
        session.update_schedule(1500, 1320)


def test_later_wake_keeps_todays_progress(session, clock):
    session.set_bottle_level(0.0)
    session.add_extra(300)
    session.update_schedule(780, 1320)
    assert session.state.day_key == TODAY
    assert session.total_consumed() == 800

    clock.set_time(datetime(2026, 3, 10, 12, 45))
    session.add_extra(100)
    clock.set_time(datetime(2026, 3, 10, 14, 0))
    session.add_extra(400)
    assert session.total_consumed() == 1300
    assert session.state.daily_log[TODAY].consumed_ml == 1300
    assert not session.state.daily_log[TODAY].finalized

    clock.set_time(datetime(2026, 3, 11, 14, 0))
    assert session.check_rollover() == TODAY
    assert sorted(session.state.daily_log) == [TODAY]
    assert session.state.daily_log[TODAY].consumed_ml == 1300


def test_earlier_wake_closes_the_day_immediately(session, clock):
    clock.set_time(datetime(2026, 3, 11, 7, 0))
    session.add_extra(300)
    assert session.state.day_key == TODAY
    session.update_schedule(360, 1320)
    assert session.state.day_key == "2026-03-11"
    assert session.state.daily_log[TODAY].consumed_ml == 300
    assert session.state.daily_log[TODAY].finalized


def test_mutations_apply_when_writes_fail(session, storage):
    storage.store_file.with_suffix(".tmp").mkdir()
    session.set_bottle_level(0.0)
    session.add_extra(250)
    assert session.total_consumed() == 750
    assert session.state.daily_log[TODAY].consumed_ml == 750
    assert session.persist() is False


def test_reset_all(session):
    session.set_bottle_level(0.0)
    session.update_goal(3000)
    session.reset_all()
    assert session.state.goal_ml == 2000
    assert session.state.daily_log == {}
    assert session.total_consumed() == 0


def test_dismiss_celebration(session):
    session.set_bottle_level(0.0)
    session.dismiss_celebration()
    assert session.state.celebrate is None


def test_views(session):
    session.set_bottle_level(0.0)
    pacing = session.pacing()
    assert pacing.expected_ml == 743
    assert pacing.status == "behind"
    assert session.consistency().days[-1].consumed_ml == 500
    assert session.time_until_rollover() == timedelta(hours=19, minutes=30)


class StubEstimator:
    def __init__(self, percent):
        self.percent = percent

    async def estimate_percent_full(self, image_data_url, token):
        return self.percent


@pytest.mark.asyncio
async def test_estimate_fill_sets_pending(config, storage, clock):
    session = HydrationSession(config=config, storage=storage, time_service=clock,
                               estimator=StubEstimator(67))
    assert await session.estimate_fill("data:image/png;base64,AAAA") == pytest.approx(0.67)
    assert session.total_consumed() == 0


@pytest.mark.asyncio
async def test_tracking_cancels_behind_nudges_and_praises(config, storage, clock, notifier):
    session = HydrationSession(config=config, storage=storage, time_service=clock, notifier=notifier)
    session.nudges.mark_app_open(clock.now())
    session.set_bottle_level(0.0)
    session.set_bottle_level(0.0)
    await session.drain()
    cancelled = [call.args[0] for call in notifier.cancel.await_args_list]
    assert EARLY_BEHIND_ID in cancelled
    scheduled = notifier.schedule.await_args_list
    assert [call.args[0] for call in scheduled] == [PRAISE_ID]
    assert scheduled[0].args[2] == "You're ahead by ~0.5 bottles."
    assert session.nudges.tokens.last_refill_or_log_day_key == TODAY


@pytest.mark.asyncio
async def test_boundary_timer_callback_rolls_over(session, clock):
    session.set_bottle_level(0.5)
    clock.set_time(datetime(2026, 3, 11, 8, 0, 0))
    await session._on_boundary()
    assert session.state.day_key == "2026-03-11"
    assert session.state.daily_log[TODAY].consumed_ml == 250


@pytest.mark.asyncio
async def test_start_and_stop(session):
    await session.start()
    assert session.timer_manager.running
    assert set(session.timer_manager.timers) == {"day_rollover", "nudge_recheck"}
    await session.stop()
    assert not session.timer_manager.running
