import math
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from typing import Any, Dict, List, Optional

from pacing import clamp, round_half_up
from time_service import day_key

MAX_CREDIT_ML = 100000
EMPTY_THRESHOLD = 0.0001
RHYTHM_WINDOWS = 5

DEFAULT_GOAL_ML = 2000
DEFAULT_BOTTLE_ML = 500
DEFAULT_WAKE_MINS = 480
DEFAULT_SLEEP_MINS = 1320

BOTTLE_SHAPES = ('tall', 'standard', 'wide', 'tumbler')
SNAP_MODES = ('quarters', 'tenths', 'free')


@dataclass
class HistoryEntry:
    """Values as they were before one mutating action, so it can be undone"""
    timestamp: str  # ISO format datetime
    prev_remaining: float
    prev_completed: int
    prev_carry: float
    prev_extra: float
    prev_celebrate: Optional[Dict[str, Any]] = None
    action: Optional[str] = None
    ml: Optional[float] = None
    # Rhythm attribution made by the action, reversed on undo
    rhythm_window_index: Optional[int] = None
    rhythm_delta: Optional[int] = None
    rhythm_ml_delta: Optional[float] = None
    # Daily-log entry touched by the action and its previous contents (None = did not exist)
    log_day_key: Optional[str] = None
    prev_log_entry: Optional[Dict[str, Any]] = None


@dataclass
class DailyLogEntry:
    consumed_ml: int
    goal_ml: int
    bottle_ml: int
    carry_ml: float
    extra_ml: float
    at: str  # ISO format datetime of the first write for the day
    window_hit_counts: List[int] = field(default_factory=lambda: [0] * RHYTHM_WINDOWS)
    window_consumed_ml: List[float] = field(default_factory=lambda: [0] * RHYTHM_WINDOWS)
    last_event_at: Optional[str] = None
    finalized: bool = False  # set once the day has rolled over

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DailyLogEntry':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        hit_counts = values.get('window_hit_counts')
        if not isinstance(hit_counts, list) or len(hit_counts) != RHYTHM_WINDOWS:
            # Older snapshots stored a boolean per window
            legacy = data.get('window_hits')
            if isinstance(legacy, list) and len(legacy) == RHYTHM_WINDOWS:
                values['window_hit_counts'] = [1 if hit else 0 for hit in legacy]
            else:
                values['window_hit_counts'] = [0] * RHYTHM_WINDOWS
        consumed = values.get('window_consumed_ml')
        if not isinstance(consumed, list) or len(consumed) != RHYTHM_WINDOWS:
            values['window_consumed_ml'] = [0] * RHYTHM_WINDOWS
        values.setdefault('consumed_ml', 0)
        values.setdefault('goal_ml', 0)
        values.setdefault('bottle_ml', 0)
        values.setdefault('carry_ml', 0)
        values.setdefault('extra_ml', 0)
        values.setdefault('at', '')
        return cls(**values)


@dataclass
class Celebration:
    type: str  # 'bottle' or 'goal'
    pct: int
    consumed_ml: int

    @classmethod
    def from_dict(cls, data) -> Optional['Celebration']:
        """None unless `data` carries every field; extra keys are dropped"""
        if not isinstance(data, dict):
            return None
        known = {f.name for f in fields(cls)}
        if not known <= set(data):
            return None
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ConsumptionState:
    """Today's progress plus the configuration it is measured against"""
    day_key: str
    goal_ml: int = DEFAULT_GOAL_ML
    bottle_ml: int = DEFAULT_BOTTLE_ML
    shape: str = 'standard'
    snap: str = 'free'
    wake_mins: int = DEFAULT_WAKE_MINS
    sleep_mins: int = DEFAULT_SLEEP_MINS
    completed_bottles: int = 0
    remaining: float = 1.0
    carry_ml: float = 0
    extra_ml: float = 0
    daily_log: Dict[str, DailyLogEntry] = field(default_factory=dict)
    history: List[HistoryEntry] = field(default_factory=list)
    celebrate: Optional[Celebration] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], defaults: 'ConsumptionState') -> 'ConsumptionState':
        """Shallow-merge a stored snapshot over `defaults`; unknown keys are dropped"""
        merged = defaults.to_dict()
        known = {f.name for f in fields(cls)}
        merged.update({k: v for k, v in data.items() if k in known})

        daily_log = {}
        for key, entry in (merged.get('daily_log') or {}).items():
            if isinstance(entry, dict):
                daily_log[key] = DailyLogEntry.from_dict(entry)
        merged['daily_log'] = daily_log

        history_fields = {f.name for f in fields(HistoryEntry)}
        merged['history'] = [
            HistoryEntry(**{k: v for k, v in entry.items() if k in history_fields})
            for entry in (merged.get('history') or [])
            if isinstance(entry, dict)
        ]

        merged['celebrate'] = Celebration.from_dict(merged.get('celebrate'))
        return cls(**merged)


def make_default_state(now: datetime, wake_mins: int = DEFAULT_WAKE_MINS, **overrides) -> ConsumptionState:
    state = ConsumptionState(day_key=day_key(now, wake_mins), wake_mins=wake_mins)
    for name, value in overrides.items():
        setattr(state, name, value)
    return state


def ceil_div(a: float, b: float) -> int:
    return 0 if b <= 0 else math.ceil(a / b)


def max_bottles(state: ConsumptionState) -> int:
    return ceil_div(state.goal_ml, state.bottle_ml)


def total_consumed(state: ConsumptionState) -> int:
    """Volume consumed today, always within [0, goal_ml]"""
    completed = clamp(state.completed_bottles, 0, max_bottles(state)) * state.bottle_ml
    current = round_half_up((1 - state.remaining) * state.bottle_ml)
    carry = clamp(round_half_up(state.carry_ml or 0), 0, MAX_CREDIT_ML)
    extra = clamp(round_half_up(state.extra_ml or 0), 0, MAX_CREDIT_ML)
    return max(0, min(state.goal_ml, completed + current + carry + extra))


def percent_of_goal(state: ConsumptionState, consumed: Optional[int] = None) -> int:
    if state.goal_ml <= 0:
        return 0
    if consumed is None:
        consumed = total_consumed(state)
    return clamp(round_half_up(consumed / state.goal_ml * 100), 0, 100)


def bottles_left(state: ConsumptionState) -> float:
    if not state.bottle_ml:
        return 0.0
    return max(0.0, state.goal_ml / state.bottle_ml - total_consumed(state) / state.bottle_ml)


def advance_bottle(state: ConsumptionState):
    """Finish the current bottle and start the next one full"""
    limit = max_bottles(state)
    if limit <= 0:
        return
    if state.completed_bottles < limit:
        state.completed_bottles += 1
    state.remaining = 1.0


def reset_day(state: ConsumptionState, new_day_key: str):
    """Clear today's progress fields, keeping configuration and the daily log"""
    state.day_key = new_day_key
    state.completed_bottles = 0
    state.remaining = 1.0
    state.carry_ml = 0
    state.extra_ml = 0
    state.history = []
    state.celebrate = None


def switch_bottle_keeping_consumed(state: ConsumptionState, **patch):
    """Apply a bottle config change, carrying today's total over as carry volume"""
    consumed = total_consumed(state)
    for name, value in patch.items():
        if not hasattr(state, name):
            raise AttributeError(f"Unknown bottle setting: {name}")
        setattr(state, name, value)
    state.completed_bottles = 0
    state.remaining = 1.0
    state.carry_ml = consumed
    state.extra_ml = 0
    state.history = []
    state.celebrate = None


def refill_preserving_total(state: ConsumptionState) -> int:
    """Start a fresh bottle, folding the partially drunk one into carry so the total holds"""
    consumed = total_consumed(state)
    completed = clamp(state.completed_bottles, 0, max_bottles(state))
    extra = clamp(state.extra_ml or 0, 0, MAX_CREDIT_ML)
    state.carry_ml = clamp(round_half_up(consumed - completed * state.bottle_ml - extra), 0, MAX_CREDIT_ML)
    state.remaining = 1.0
    state.celebrate = Celebration(type='bottle', pct=percent_of_goal(state, consumed), consumed_ml=consumed)
    return consumed
