"""
Rhythm tracking: splits each day's wake-to-sleep span into five equal windows,
counts meaningful drinks per window and turns the last week of windows into a
consistency score.
"""

import copy
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from hydration_state import (
    RHYTHM_WINDOWS, ConsumptionState, DailyLogEntry, HistoryEntry, total_consumed,
)
from pacing import clamp, round_half_up
from time_service import MINUTES_PER_DAY, at_minutes, day_key, parse_day_key

MEANINGFUL_ML = 120
WINDOW_WEIGHTS = (18, 16, 14, 12, 10)
SCORE_DAYS = 7

# (minimum score, tier name, label)
SCORE_TIERS = (
    (85, 'Emerald', 'Second Nature'),
    (70, 'Platinum', 'Locked In'),
    (50, 'Gold', 'In Rhythm'),
    (20, 'Silver', 'Finding Flow'),
    (0, 'Bronze', 'Settling In'),
)


def window_bounds(key: str, wake_mins: float, sleep_mins: float) -> Tuple[datetime, datetime]:
    """Start and end of the hydration window belonging to a day key"""
    day = parse_day_key(key)
    wake = int(round(wake_mins)) % MINUTES_PER_DAY
    sleep = int(round(sleep_mins)) % MINUTES_PER_DAY
    start = at_minutes(day, wake)
    end = at_minutes(day, sleep)
    if sleep <= wake:
        end += timedelta(days=1)
    return start, end


def window_index(at: datetime, key: str, wake_mins: float, sleep_mins: float) -> int:
    """Which of the five windows `at` falls into; before the window counts as 0, after as 4"""
    start, end = window_bounds(key, wake_mins, sleep_mins)
    total = (end - start).total_seconds()
    if total <= 0:
        return 0
    if at >= end:
        return RHYTHM_WINDOWS - 1
    elapsed = clamp((at - start).total_seconds(), 0, total)
    segment = total / RHYTHM_WINDOWS
    return int(clamp(math.floor(elapsed / segment), 0, RHYTHM_WINDOWS - 1))


def is_meaningful(delta_ml: float) -> bool:
    return delta_ml >= MEANINGFUL_ML


def _snapshot_fields(entry: DailyLogEntry, state: ConsumptionState):
    entry.consumed_ml = total_consumed(state)
    entry.goal_ml = state.goal_ml
    entry.bottle_ml = state.bottle_ml
    entry.carry_ml = state.carry_ml
    entry.extra_ml = state.extra_ml


def record_event(state: ConsumptionState, at: datetime, delta_ml: float,
                 entry: Optional[HistoryEntry] = None) -> Optional[int]:
    """Refresh the daily log for the event's day and credit a window if the drink was meaningful.

    When a history entry is given it is annotated with everything undo needs to
    take the attribution back. Returns the credited window index, if any.
    Events land on the state's own day; a finalized entry is left untouched.
    """
    key = state.day_key
    existing = state.daily_log.get(key)
    if existing is not None and existing.finalized:
        print(f"⚠️ Daily log for {key} is already finalized, event not recorded")
        return None
    if entry is not None:
        entry.log_day_key = key
        entry.prev_log_entry = asdict(existing) if existing is not None else None

    log_entry = copy.deepcopy(existing) if existing is not None else DailyLogEntry(
        consumed_ml=0, goal_ml=state.goal_ml, bottle_ml=state.bottle_ml,
        carry_ml=0, extra_ml=0, at=at.isoformat(),
    )
    index = None
    if is_meaningful(delta_ml):
        index = window_index(at, key, state.wake_mins, state.sleep_mins)
        log_entry.window_hit_counts[index] = max(0, log_entry.window_hit_counts[index] + 1)
        log_entry.window_consumed_ml[index] = max(0, log_entry.window_consumed_ml[index] + delta_ml)
        if entry is not None:
            entry.rhythm_window_index = index
            entry.rhythm_delta = 1
            entry.rhythm_ml_delta = delta_ml
    _snapshot_fields(log_entry, state)
    log_entry.last_event_at = at.isoformat()
    state.daily_log[key] = log_entry
    return index


def reverse_event(state: ConsumptionState, entry: HistoryEntry):
    """Undo the daily-log side effects recorded on `entry`"""
    if entry.log_day_key is None:
        return
    current = state.daily_log.get(entry.log_day_key)
    if current is None:
        return

    if entry.rhythm_window_index is not None:
        index = entry.rhythm_window_index
        hits = entry.rhythm_delta if entry.rhythm_delta is not None else 1
        current.window_hit_counts[index] = max(0, current.window_hit_counts[index] - hits)
        ml = entry.rhythm_ml_delta or 0
        if ml > 0:
            current.window_consumed_ml[index] = max(0, current.window_consumed_ml[index] - ml)

    previous = entry.prev_log_entry
    if previous is None:
        if not any(current.window_hit_counts) and not any(current.window_consumed_ml):
            del state.daily_log[entry.log_day_key]
            return
        _snapshot_fields(current, state)
        return
    restored = DailyLogEntry.from_dict(previous)
    restored.window_hit_counts = current.window_hit_counts
    restored.window_consumed_ml = current.window_consumed_ml
    state.daily_log[entry.log_day_key] = restored


def prune_daily_log(daily_log: Dict[str, DailyLogEntry], retention_days: int) -> Dict[str, DailyLogEntry]:
    """Keep only the most recent `retention_days` day keys"""
    keep = sorted(daily_log)[-retention_days:] if retention_days > 0 else []
    return {key: daily_log[key] for key in keep}


@dataclass
class DayScore:
    day_key: str
    consumed_ml: int
    goal_ml: int
    pct_of_goal: float
    window_hit_counts: List[int]
    window_consumed_ml: List[float]
    spread_score: int
    volume_score: int

    @property
    def daily_score(self) -> int:
        return self.spread_score + self.volume_score

    @property
    def window_hits(self) -> List[bool]:
        return [count > 0 for count in self.window_hit_counts]


@dataclass
class ConsistencyReport:
    score: int
    tier: str
    tier_label: str
    days: List[DayScore]
    stored_days: int
    oldest: Optional[str]
    newest: Optional[str]


def volume_score(pct_of_goal: float) -> int:
    if pct_of_goal < 0.4:
        return 0
    if pct_of_goal < 0.6:
        return 10
    if pct_of_goal < 0.8:
        return 20
    return 30


def score_day(key: str, entry: Optional[DailyLogEntry]) -> DayScore:
    if entry is None:
        return DayScore(key, 0, 0, 0.0, [0] * RHYTHM_WINDOWS, [0] * RHYTHM_WINDOWS, 0, 0)
    spread = sum(weight for weight, count in zip(WINDOW_WEIGHTS, entry.window_hit_counts) if count > 0)
    pct = math.floor((entry.consumed_ml or 0) / entry.goal_ml * 100 + 0.5) / 100 if entry.goal_ml else 0.0
    return DayScore(
        day_key=key,
        consumed_ml=entry.consumed_ml or 0,
        goal_ml=entry.goal_ml or 0,
        pct_of_goal=pct,
        window_hit_counts=list(entry.window_hit_counts),
        window_consumed_ml=list(entry.window_consumed_ml),
        spread_score=spread,
        volume_score=volume_score(pct),
    )


def score_tier(score: float) -> Tuple[str, str]:
    for minimum, name, label in SCORE_TIERS:
        if score >= minimum:
            return name, label
    return SCORE_TIERS[-1][1], SCORE_TIERS[-1][2]


def last_day_keys(now: datetime, wake_mins: float, days: int = SCORE_DAYS) -> List[str]:
    """Day keys of the last `days` days, oldest first, ending with today"""
    return [day_key(now - timedelta(days=days - 1 - i), wake_mins) for i in range(days)]


def consistency_report(daily_log: Dict[str, DailyLogEntry], now: datetime, wake_mins: float) -> ConsistencyReport:
    """Rolling score over the last seven days; days without a log entry score zero"""
    days = [score_day(key, daily_log.get(key)) for key in last_day_keys(now, wake_mins)]
    score = round_half_up(sum(day.daily_score for day in days) / SCORE_DAYS)
    tier, label = score_tier(score)
    keys = sorted(daily_log)
    return ConsistencyReport(
        score=score,
        tier=tier,
        tier_label=label,
        days=days,
        stored_days=len(keys),
        oldest=keys[0] if keys else None,
        newest=keys[-1] if keys else None,
    )
