"""
Pacing model: how much of the daily goal a user is expected to have had by now.

Real drinking is front-loaded compared with a straight line across the day, so
expected progress follows a fixed checkpoint curve over the wake/sleep window
instead of linear interpolation.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Tuple

from time_service import MINUTES_PER_DAY, minutes_since_midnight

# (fraction of window elapsed, fraction of goal expected)
PACING_CHECKPOINTS: Tuple[Tuple[float, float], ...] = (
    (0.25, 0.30),
    (0.50, 0.55),
    (0.70, 0.75),
    (0.87, 0.90),
    (1.00, 1.00),
)

MIN_WINDOW_MINUTES = 6 * 60
MAX_WINDOW_MINUTES = 20 * 60

PACING_TOLERANCE_FRACTION = 0.05
PACING_TOLERANCE_MIN_ML = 150

SNAP_STEPS = {'tenths': 0.1, 'quarters': 0.25}


def clamp(n, lo, hi):
    return max(lo, min(hi, n))


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive volumes (Python's round() is banker's rounding)"""
    return int(math.floor(value + 0.5))


def expected_fraction(instant: datetime, wake_minutes: float, sleep_minutes: float) -> float:
    """Fraction of the daily goal expected by `instant` for the given wake/sleep window"""
    start = clamp(round_half_up(wake_minutes), 0, MINUTES_PER_DAY - 1)
    end = clamp(round_half_up(sleep_minutes), 0, 2 * MINUTES_PER_DAY - 1)
    now = minutes_since_midnight(instant)
    if end <= start:
        end += MINUTES_PER_DAY
    if now < start:
        now += MINUTES_PER_DAY
    if now <= start:
        return 0.0
    if now >= end:
        return 1.0

    duration = clamp(end - start, MIN_WINDOW_MINUTES, MAX_WINDOW_MINUTES)
    progress = (now - start) / duration

    prev_t, prev_pct = 0.0, 0.0
    for t, pct in PACING_CHECKPOINTS:
        if progress <= t:
            span = t - prev_t
            ratio = (progress - prev_t) / span if span else 0.0
            return prev_pct + (pct - prev_pct) * ratio
        prev_t, prev_pct = t, pct
    return 1.0


def expected_volume(goal_ml: float, instant: datetime, wake_minutes: float, sleep_minutes: float) -> int:
    return round_half_up(goal_ml * expected_fraction(instant, wake_minutes, sleep_minutes))


def pacing_tolerance_ml(goal_ml: float) -> float:
    return max(goal_ml * PACING_TOLERANCE_FRACTION, PACING_TOLERANCE_MIN_ML)


def pacing_status(actual_ml: float, expected_ml: float, goal_ml: float) -> str:
    """'ahead' or 'behind'; inside the tolerance band the raw sign decides, ties count as ahead"""
    diff = actual_ml - expected_ml
    tolerance = pacing_tolerance_ml(goal_ml)
    if diff > tolerance:
        return 'ahead'
    if diff < -tolerance:
        return 'behind'
    return 'ahead' if diff >= 0 else 'behind'


def snap_value(value: float, mode: str) -> float:
    """Snap a fill fraction to the configured grid ('free', 'tenths' or 'quarters')"""
    clamped = clamp(value, 0.0, 1.0)
    step = SNAP_STEPS.get(mode)
    if step is None:
        return clamped
    return round_half_up(clamped / step) * step


@dataclass(frozen=True)
class TargetLinePolicy:
    """Where the 'you should be here' line sits inside the current bottle.

    Falling a whole bottle or more behind pins the line at `floor`. When
    `branch_on_completed` is set, a user who is past their first expected
    bottle but has not finished one yet also sees the floor.
    """
    floor: float = 0.03
    branch_on_completed: bool = True


def target_line_fraction(expected_bottles: float, actual_bottles: float, completed_bottles: int,
                         policy: TargetLinePolicy = TargetLinePolicy()) -> float:
    """Remaining-fraction of the current bottle the user is expected to be at"""
    behind_bottles = expected_bottles - actual_bottles
    within_bottle = 1 - (expected_bottles % 1)
    if behind_bottles >= 1:
        fill = policy.floor
    elif expected_bottles < 1:
        fill = within_bottle
    elif policy.branch_on_completed and completed_bottles <= 0:
        fill = policy.floor
    else:
        fill = within_bottle
    return clamp(fill, 0.0, 1.0)


@dataclass(frozen=True)
class GoalRecommendation:
    ml: int
    low: int
    high: int


ACTIVITY_BONUS_ML = {'low': 0, 'moderate': 300, 'high': 600}


def recommend_goal_ml(weight_kg: float, activity: str = 'moderate', warm: bool = False) -> GoalRecommendation:
    """Daily goal from body weight (33 ml/kg) plus activity and climate allowances"""
    ml = round_half_up(weight_kg * 33)
    ml += ACTIVITY_BONUS_ML.get(activity, 0)
    if warm:
        ml += 300
    return GoalRecommendation(ml=ml, low=round_half_up(ml * 0.9), high=round_half_up(ml * 1.1))


def format_one_decimal(value: float) -> str:
    text = f"{value or 0:.1f}"
    return text[:-2] if text.endswith('.0') else text


def format_bottles(goal_ml: float, bottle_ml: float) -> str:
    """Goal expressed in bottles, e.g. 2900/500 -> '5.8', 2000/500 -> '4'"""
    if not bottle_ml:
        return '0'
    return format_one_decimal(goal_ml / bottle_ml)


@dataclass(frozen=True)
class PacingSnapshot:
    expected_ml: int
    expected_bottles: float
    actual_bottles: float
    diff_ml: int
    status: str
    target_line: float

    @property
    def behind_bottles(self) -> float:
        return self.expected_bottles - self.actual_bottles


def pacing_snapshot(goal_ml: float, bottle_ml: float, consumed_ml: float, completed_bottles: int,
                    instant: datetime, wake_minutes: float, sleep_minutes: float,
                    policy: TargetLinePolicy = TargetLinePolicy()) -> PacingSnapshot:
    expected_ml = expected_volume(goal_ml, instant, wake_minutes, sleep_minutes)
    expected_bottles = expected_ml / bottle_ml if bottle_ml > 0 else 0.0
    actual_bottles = consumed_ml / bottle_ml if bottle_ml > 0 else 0.0
    return PacingSnapshot(
        expected_ml=expected_ml,
        expected_bottles=expected_bottles,
        actual_bottles=actual_bottles,
        diff_ml=int(consumed_ml - expected_ml),
        status=pacing_status(consumed_ml, expected_ml, goal_ml),
        target_line=target_line_fraction(expected_bottles, actual_bottles, completed_bottles, policy),
    )
