from datetime import date, datetime, timedelta
from typing import Optional

MINUTES_PER_DAY = 1440


def normalize_boundary(boundary_minutes: float) -> int:
    """Normalize a minute-of-day boundary into [0, 1440)"""
    return int(round(boundary_minutes)) % MINUTES_PER_DAY


def parse_day_key(key: str) -> date:
    """Parse a YYYY-MM-DD day key back into a date"""
    return date.fromisoformat(key)


def day_key(instant: datetime, boundary_minutes: float) -> str:
    """Day key of the boundary-to-boundary interval containing `instant`"""
    shifted = instant - timedelta(minutes=normalize_boundary(boundary_minutes))
    return shifted.date().isoformat()


def previous_day_key(instant: datetime, boundary_minutes: float) -> str:
    shifted = instant - timedelta(minutes=normalize_boundary(boundary_minutes))
    return (shifted.date() - timedelta(days=1)).isoformat()


def time_until_next_boundary(instant: datetime, boundary_minutes: float) -> timedelta:
    """Time left until the boundary is crossed again (today's occurrence, or tomorrow's once passed)"""
    boundary = normalize_boundary(boundary_minutes)
    next_boundary = instant.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(minutes=boundary)
    if instant >= next_boundary:
        next_boundary += timedelta(days=1)
    return max(timedelta(0), next_boundary - instant)


def calendar_day_key(instant: datetime) -> str:
    """Plain midnight-to-midnight day key"""
    return instant.date().isoformat()


def minutes_since_midnight(instant: datetime) -> int:
    return instant.hour * 60 + instant.minute


def at_minutes(day: date, minutes: float) -> datetime:
    """Local datetime for a minute-of-day offset on the given date"""
    return datetime(day.year, day.month, day.day) + timedelta(minutes=int(round(minutes)))


def format_countdown(delta: timedelta) -> str:
    """Format a duration as HH:MM:SS (negative durations show as zero)"""
    total = max(0, int(delta.total_seconds()))
    hours = total // 3600
    minutes = (total % 3600) // 60
    seconds = total % 60
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class TimeService:
    """Local wall clock with an optional fixed override.

    Every component reads the time through one of these so a whole session can
    be moved across day boundaries deterministically (tests, status tooling).
    """

    def __init__(self, fixed_time: Optional[datetime] = None):
        self.fixed_time = fixed_time

    def now(self) -> datetime:
        """Current local time (naive), or the fixed override when set"""
        if self.fixed_time is not None:
            return self.fixed_time
        return datetime.now().replace(microsecond=0)

    def set_time(self, instant: Optional[datetime]):
        """Pin the clock to `instant`, or release it with None"""
        self.fixed_time = instant

    def advance(self, **kwargs) -> datetime:
        """Move a pinned clock forward by a timedelta given as keyword arguments"""
        if self.fixed_time is None:
            raise RuntimeError("advance() requires a fixed time")
        self.fixed_time = self.fixed_time + timedelta(**kwargs)
        return self.fixed_time

    def day_key(self, boundary_minutes: float) -> str:
        return day_key(self.now(), boundary_minutes)

    def time_until_next_boundary(self, boundary_minutes: float) -> timedelta:
        return time_until_next_boundary(self.now(), boundary_minutes)
