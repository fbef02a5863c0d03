from datetime import datetime

import pytest

from event_history import EventHistory
from hydration_state import DailyLogEntry
from rhythm_tracker import (
    consistency_report, is_meaningful, last_day_keys, prune_daily_log, record_event,
    reverse_event, score_day, score_tier, volume_score, window_bounds, window_index,
)

DAY = "2026-03-10"


def log_entry(consumed=0, hits=(0, 0, 0, 0, 0), goal=2000):
    return DailyLogEntry(consumed, goal, 500, 0, 0, f"{DAY}T09:00:00", window_hit_counts=list(hits))


def test_window_bounds():
    assert window_bounds(DAY, 480, 1320) == (datetime(2026, 3, 10, 8, 0), datetime(2026, 3, 10, 22, 0))
    assert window_bounds(DAY, 1200, 240) == (datetime(2026, 3, 10, 20, 0), datetime(2026, 3, 11, 4, 0))


@pytest.mark.parametrize("hour,minute,index", [
    (7, 0, 0),
    (8, 0, 0),
    (10, 47, 0),
    (10, 48, 1),
    (15, 0, 2),
    (21, 59, 4),
    (22, 0, 4),
    (23, 30, 4),
])
def test_window_index(hour, minute, index):
    assert window_index(datetime(2026, 3, 10, hour, minute), DAY, 480, 1320) == index


def test_meaningful_threshold():
    assert not is_meaningful(119)
    assert is_meaningful(120)


def test_small_drink_updates_log_without_hit(state, clock):
    state.remaining = 0.9
    index = record_event(state, clock.now(), 50)
    assert index is None
    entry = state.daily_log[DAY]
    assert entry.window_hit_counts == [0, 0, 0, 0, 0]
    assert entry.consumed_ml == 50
    assert entry.last_event_at == clock.now().isoformat()


def test_meaningful_drink_credits_window(state, clock):
    state.remaining = 0.5
    history = EventHistory()
    event = history.capture(state, clock.now(), "track")
    index = record_event(state, clock.now(), 250, event)
    assert index == 1
    assert state.daily_log[DAY].window_hit_counts == [0, 1, 0, 0, 0]
    assert state.daily_log[DAY].window_consumed_ml == [0, 250, 0, 0, 0]
    assert (event.rhythm_window_index, event.rhythm_delta, event.rhythm_ml_delta) == (1, 1, 250)
    assert event.log_day_key == DAY
    assert event.prev_log_entry is None


def test_finalized_entry_is_not_recorded_into(state, clock):
    state.daily_log[DAY] = log_entry(consumed=1800)
    state.daily_log[DAY].finalized = True
    event = EventHistory().capture(state, clock.now(), "extra", 300)
    assert record_event(state, clock.now(), 300, event) is None
    assert state.daily_log[DAY].consumed_ml == 1800
    assert state.daily_log[DAY].window_hit_counts == [0, 0, 0, 0, 0]
    assert event.log_day_key is None


def test_event_lands_on_the_state_day(state, clock):
    state.wake_mins = 780
    record_event(state, clock.now(), 300)
    assert list(state.daily_log) == [DAY]
    assert state.daily_log[DAY].window_hit_counts == [1, 0, 0, 0, 0]


def test_reverse_event_removes_new_entry(state, clock):
    event = EventHistory().capture(state, clock.now(), "extra", 300)
    record_event(state, clock.now(), 300, event)
    reverse_event(state, event)
    assert DAY not in state.daily_log


def test_reverse_event_restores_previous_entry(state, clock):
    state.daily_log[DAY] = log_entry(consumed=400, hits=(1, 0, 0, 0, 0))
    state.daily_log[DAY].window_consumed_ml = [400, 0, 0, 0, 0]
    event = EventHistory().capture(state, clock.now(), "extra", 300)
    record_event(state, clock.now(), 300, event)
    assert state.daily_log[DAY].window_hit_counts == [1, 1, 0, 0, 0]
    reverse_event(state, event)
    restored = state.daily_log[DAY]
    assert restored.window_hit_counts == [1, 0, 0, 0, 0]
    assert restored.window_consumed_ml == [400, 0, 0, 0, 0]
    assert restored.consumed_ml == 400


def test_reverse_never_goes_below_zero(state, clock):
    event = EventHistory().capture(state, clock.now(), "extra", 300)
    record_event(state, clock.now(), 300, event)
    state.daily_log[DAY].window_hit_counts = [0, 0, 0, 0, 0]
    state.daily_log[DAY].window_consumed_ml = [0, 100, 0, 0, 0]
    reverse_event(state, event)
    assert DAY not in state.daily_log


@pytest.mark.parametrize("pct,score", [(0.0, 0), (0.39, 0), (0.4, 10), (0.59, 10), (0.6, 20), (0.8, 30), (1.0, 30)])
def test_volume_score(pct, score):
    assert volume_score(pct) == score


def test_score_day():
    day = score_day(DAY, log_entry(consumed=1700, hits=(2, 0, 1, 0, 0)))
    assert day.spread_score == 18 + 14
    assert day.pct_of_goal == 0.85
    assert day.volume_score == 30
    assert day.daily_score == 62
    assert day.window_hits == [True, False, True, False, False]


def test_missing_day_scores_zero():
    assert score_day(DAY, None).daily_score == 0


@pytest.mark.parametrize("score,tier", [(100, "Emerald"), (85, "Emerald"), (84, "Platinum"), (70, "Platinum"),
                                        (50, "Gold"), (20, "Silver"), (19, "Bronze"), (0, "Bronze")])
def test_score_tier(score, tier):
    assert score_tier(score)[0] == tier


def test_last_day_keys_end_today(clock):
    keys = last_day_keys(clock.now(), 480)
    assert len(keys) == 7
    assert keys[0] == "2026-03-04"
    assert keys[-1] == DAY


def test_consistency_report_averages_seven_days(clock):
    perfect = (1, 1, 1, 1, 1)
    single = {DAY: log_entry(consumed=2000, hits=perfect)}
    report = consistency_report(single, clock.now(), 480)
    assert report.score == 14
    assert report.tier == "Bronze"
    assert report.stored_days == 1

    week = {key: log_entry(consumed=2000, hits=perfect) for key in last_day_keys(clock.now(), 480)}
    report = consistency_report(week, clock.now(), 480)
    assert report.score == 100
    assert (report.tier, report.tier_label) == ("Emerald", "Second Nature")
    assert report.oldest == "2026-03-04"
    assert report.newest == DAY


def test_prune_daily_log_keeps_most_recent():
    log = {f"2026-03-{day:02d}": log_entry() for day in range(1, 11)}
    pruned = prune_daily_log(log, 3)
    assert sorted(pruned) == ["2026-03-08", "2026-03-09", "2026-03-10"]
    assert prune_daily_log(log, 0) == {}
