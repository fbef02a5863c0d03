"""
Behavioral nudges: morning reset, behind-pace reminders and praise.

Every decision is single-shot per day. Tokens recording what already fired are
kept as small standalone keys in the key-value store so they survive restarts.
Talking to the notification service is strictly best-effort: a denied
permission or a failing platform call just means no nudge.
"""

from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Optional, Tuple

from hydration_state import ConsumptionState, total_consumed
from notification_service import NotificationService
from pacing import clamp, expected_volume, format_one_decimal, round_half_up
from persistent_storage import PersistentStorage
from time_service import MINUTES_PER_DAY, at_minutes, calendar_day_key, minutes_since_midnight

MORNING_RESET_ID = 1001
EARLY_BEHIND_ID = 1002
LATE_BEHIND_ID = 1003
PRAISE_ID = 1004

MORNING_RESET_DELAY = timedelta(minutes=7)
EARLY_BEHIND_BOTTLES = 0.3
EARLY_MIN_LEAD = timedelta(minutes=1)
EARLY_WAKE_GRACE = timedelta(minutes=20)
EARLY_WINDOW_FRACTION = 0.25
LATE_BEHIND_BOTTLES = 0.5
LATE_MIN_LEAD = timedelta(minutes=2)
LATE_WINDOW_FRACTION = 0.70
PRAISE_MIN_PROGRESS = 0.25
PRAISE_ON_PACE_BOTTLES = 0.2
PRAISE_AHEAD_BOTTLES = 0.3
PRAISE_DELAY = timedelta(seconds=1)

TOKEN_PREFIX = "nudge."


@dataclass
class NudgeTokens:
    last_morning_reset_token: Optional[str] = None
    last_app_open_day_key: Optional[str] = None
    last_refill_or_log_day_key: Optional[str] = None
    last_refill_or_log_at: Optional[str] = None  # ISO format datetime
    last_behind_nudge_day_key: Optional[str] = None
    behind_nudge_scheduled_day_key: Optional[str] = None
    behind_nudge_scheduled_at: Optional[str] = None  # ISO format datetime
    last_early_behind_fired_at: Optional[str] = None  # ISO format datetime
    last_late_behind_day_key: Optional[str] = None
    last_praise_day_key: Optional[str] = None
    notif_prompted: bool = False

    @classmethod
    def load(cls, storage: PersistentStorage) -> 'NudgeTokens':
        tokens = cls()
        for f in fields(cls):
            raw = storage.get(TOKEN_PREFIX + f.name)
            if raw is None:
                continue
            setattr(tokens, f.name, raw == '1' if isinstance(f.default, bool) else raw)
        return tokens

    def save(self, storage: PersistentStorage) -> bool:
        values = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool):
                value = '1' if value else '0'
            values[TOKEN_PREFIX + f.name] = None if value is None else str(value)
        return storage.update(values)


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def schedule_window(now: datetime, wake_mins: float, sleep_mins: float) -> Tuple[datetime, datetime]:
    """Wake and sleep instants of the window `now` is in, or of the next one once it has ended"""
    wake = int(round(wake_mins)) % MINUTES_PER_DAY
    sleep = int(round(sleep_mins)) % MINUTES_PER_DAY
    wake_at = at_minutes(now.date(), wake)
    sleep_at = at_minutes(now.date(), sleep)
    if sleep <= wake:
        sleep_at += timedelta(days=1)
        if now < sleep_at - timedelta(days=1):
            # Past midnight, still inside the window that opened yesterday
            wake_at -= timedelta(days=1)
            sleep_at -= timedelta(days=1)
    if now > sleep_at:
        wake_at += timedelta(days=1)
        sleep_at += timedelta(days=1)
    return wake_at, sleep_at


def window_progress(now: datetime, wake_at: datetime, sleep_at: datetime) -> float:
    if now <= wake_at:
        return 0.0
    if now >= sleep_at:
        return 1.0
    total = (sleep_at - wake_at).total_seconds()
    return clamp((now - wake_at).total_seconds() / total, 0.0, 1.0) if total > 0 else 0.0


class NudgeScheduler:
    def __init__(self, storage: PersistentStorage, notifier: Optional[NotificationService] = None):
        self.storage = storage
        self.notifier = notifier
        self.tokens = NudgeTokens.load(storage)

    def _save(self):
        self.tokens.save(self.storage)

    # --- pacing inputs -------------------------------------------------

    def expected_bottles(self, state: ConsumptionState, now: datetime) -> float:
        if state.bottle_ml <= 0:
            return 0.0
        return expected_volume(state.goal_ml, now, state.wake_mins, state.sleep_mins) / state.bottle_ml

    def behind_bottles(self, state: ConsumptionState, now: datetime, consumed_ml: Optional[float] = None) -> float:
        """Bottles the user trails the pacing curve by (negative when ahead)"""
        if state.bottle_ml <= 0:
            return 0.0
        if consumed_ml is None:
            consumed_ml = total_consumed(state)
        return self.expected_bottles(state, now) - consumed_ml / state.bottle_ml

    # --- notification plumbing -----------------------------------------

    async def _schedule(self, notification_id: int, title: str, body: str, at: datetime) -> bool:
        """Schedule a notification; False when disabled, denied or failing"""
        if self.notifier is None:
            return False
        try:
            if not await self.notifier.request_permission():
                return False
            await self.notifier.cancel(notification_id)
            await self.notifier.schedule(notification_id, title, body, at)
            return True
        except Exception as e:
            print(f"⚠️ Could not schedule notification {notification_id}: {e}")
            return False

    async def _cancel(self, notification_id: int):
        if self.notifier is None:
            return
        try:
            await self.notifier.cancel(notification_id)
        except Exception as e:
            print(f"⚠️ Could not cancel notification {notification_id}: {e}")

    async def request_permission_once(self) -> bool:
        """Ask for notification permission the first time only"""
        if self.tokens.notif_prompted or self.notifier is None:
            return False
        self.tokens.notif_prompted = True
        self._save()
        try:
            return await self.notifier.request_permission()
        except Exception as e:
            print(f"⚠️ Notification permission request failed: {e}")
            return False

    # --- morning reset -------------------------------------------------

    def morning_reset_token(self, state: ConsumptionState, now: datetime) -> str:
        wake = clamp(int(round(state.wake_mins)), 0, MINUTES_PER_DAY - 1)
        return f"{calendar_day_key(now)}-{wake}"

    def morning_reset_due(self, state: ConsumptionState, now: datetime) -> bool:
        """Whether the blocking 'start your day' prompt should be shown"""
        wake = clamp(int(round(state.wake_mins)), 0, MINUTES_PER_DAY - 1)
        return (minutes_since_midnight(now) >= wake
                and self.tokens.last_morning_reset_token != self.morning_reset_token(state, now))

    def acknowledge_morning_reset(self, state: ConsumptionState, now: datetime):
        self.tokens.last_morning_reset_token = self.morning_reset_token(state, now)
        self._save()

    async def schedule_morning_reset(self, state: ConsumptionState, now: datetime) -> bool:
        wake = clamp(int(round(state.wake_mins)), 0, MINUTES_PER_DAY - 1)
        target = at_minutes(now.date(), wake) + MORNING_RESET_DELAY
        if target <= now:
            target += timedelta(days=1)
        await self._cancel(MORNING_RESET_ID)

        target_day = calendar_day_key(target)
        if target_day in (self.tokens.last_app_open_day_key, self.tokens.last_refill_or_log_day_key):
            return False
        return await self._schedule(
            MORNING_RESET_ID, "Morning Reset 🌞", "Refill your bottle and we'll track from here.", target)

    # --- behind pace ---------------------------------------------------

    async def cancel_behind_nudge(self):
        await self._cancel(EARLY_BEHIND_ID)
        self.tokens.behind_nudge_scheduled_day_key = None
        self.tokens.behind_nudge_scheduled_at = None
        self._save()

    async def cancel_late_behind_nudge(self):
        await self._cancel(LATE_BEHIND_ID)

    async def maybe_schedule_behind_nudge(self, state: ConsumptionState, now: datetime) -> bool:
        """Early check-in once the user trails by 0.3 bottles, not before a quarter of the window"""
        if state.bottle_ml <= 0:
            return False
        behind = self.behind_bottles(state, now)
        if (self.tokens.behind_nudge_scheduled_day_key == calendar_day_key(now)
                and behind < EARLY_BEHIND_BOTTLES):
            await self.cancel_behind_nudge()
            return False

        wake_at, sleep_at = schedule_window(now, state.wake_mins, state.sleep_mins)
        quarter_point = wake_at + (sleep_at - wake_at) * EARLY_WINDOW_FRACTION
        trigger = max(now + EARLY_MIN_LEAD, wake_at + EARLY_WAKE_GRACE, quarter_point)
        target_day = calendar_day_key(trigger)

        if self.tokens.last_behind_nudge_day_key == target_day:
            return False
        if self.tokens.last_refill_or_log_day_key == target_day:
            return False
        if behind < EARLY_BEHIND_BOTTLES:
            return False
        if self.tokens.behind_nudge_scheduled_day_key == target_day:
            return False

        if not await self._schedule(EARLY_BEHIND_ID, "Quick check-in 💧",
                                    "Have you had your first few sips yet?", trigger):
            return False
        self.tokens.behind_nudge_scheduled_day_key = target_day
        self.tokens.behind_nudge_scheduled_at = trigger.isoformat()
        self.tokens.last_early_behind_fired_at = trigger.isoformat()
        self._save()
        return True

    async def maybe_schedule_late_behind_nudge(self, state: ConsumptionState, now: datetime) -> bool:
        """Second reminder at 70% of the window for users still 0.5 bottles behind"""
        if state.bottle_ml <= 0:
            return False
        behind = self.behind_bottles(state, now)
        wake_at, sleep_at = schedule_window(now, state.wake_mins, state.sleep_mins)
        trigger = max(now + LATE_MIN_LEAD, wake_at + (sleep_at - wake_at) * LATE_WINDOW_FRACTION)
        target_day = calendar_day_key(trigger)

        already_fired = self.tokens.last_late_behind_day_key == target_day
        early_at = _parse_instant(self.tokens.last_early_behind_fired_at)
        logged_at = _parse_instant(self.tokens.last_refill_or_log_at)
        logged_after_early = early_at is not None and logged_at is not None and logged_at > early_at

        if behind < LATE_BEHIND_BOTTLES or already_fired or logged_after_early:
            if behind < LATE_BEHIND_BOTTLES or logged_after_early:
                await self.cancel_late_behind_nudge()
            return False

        if not await self._schedule(LATE_BEHIND_ID, "Still time 💙",
                                    "A few sips now will keep today on track.", trigger):
            return False
        self.tokens.last_late_behind_day_key = target_day
        self._save()
        return True

    # --- praise --------------------------------------------------------

    def praise_message(self, state: ConsumptionState, now: datetime,
                       consumed_ml: Optional[float] = None) -> Optional[Tuple[str, str]]:
        """Title/body of today's praise, or None when it should not fire"""
        if state.bottle_ml <= 0:
            return None
        today = calendar_day_key(now)
        if self.tokens.last_app_open_day_key != today:
            return None
        if self.tokens.last_praise_day_key == today:
            return None
        if today in (self.tokens.last_behind_nudge_day_key, self.tokens.last_late_behind_day_key):
            return None

        wake_at, sleep_at = schedule_window(now, state.wake_mins, state.sleep_mins)
        if window_progress(now, wake_at, sleep_at) < PRAISE_MIN_PROGRESS:
            return None

        lead = -self.behind_bottles(state, now, consumed_ml)
        if lead < 0:
            return None
        if lead <= PRAISE_ON_PACE_BOTTLES:
            return "Nice one 💧", "You're right on pace."
        if lead >= PRAISE_AHEAD_BOTTLES:
            ahead_by = format_one_decimal(round_half_up(lead * 10) / 10)
            return "Good job 💧", f"You're ahead by ~{ahead_by} bottles."
        return None

    async def maybe_send_praise(self, state: ConsumptionState, now: datetime,
                                consumed_ml: Optional[float] = None) -> bool:
        message = self.praise_message(state, now, consumed_ml)
        if message is None:
            return False
        title, body = message
        if not await self._schedule(PRAISE_ID, title, body, now + PRAISE_DELAY):
            return False
        self.tokens.last_praise_day_key = calendar_day_key(now)
        self._save()
        return True

    # --- lifecycle hooks -----------------------------------------------

    def mark_app_open(self, now: datetime):
        self.tokens.last_app_open_day_key = calendar_day_key(now)
        self._save()

    async def record_log(self, now: datetime):
        """The user logged or refilled: pending behind-pace nudges are moot"""
        self.tokens.last_refill_or_log_day_key = calendar_day_key(now)
        self.tokens.last_refill_or_log_at = now.isoformat()
        self._save()
        await self.cancel_behind_nudge()
        await self.cancel_late_behind_nudge()

    async def evaluate(self, state: ConsumptionState, now: datetime):
        await self.schedule_morning_reset(state, now)
        await self.maybe_schedule_behind_nudge(state, now)
        await self.maybe_schedule_late_behind_nudge(state, now)

    async def on_foreground(self, state: ConsumptionState, now: datetime):
        """App came back to the foreground: settle the early nudge, then re-evaluate"""
        scheduled_day = self.tokens.behind_nudge_scheduled_day_key
        scheduled_at = _parse_instant(self.tokens.behind_nudge_scheduled_at)
        self.mark_app_open(now)
        if scheduled_day:
            await self.cancel_behind_nudge()
            if scheduled_at is not None and now >= scheduled_at:
                self.tokens.last_behind_nudge_day_key = calendar_day_key(now)
                self._save()
        await self.evaluate(state, now)
