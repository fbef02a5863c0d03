import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from hydration_state import ConsumptionState, DailyLogEntry, reset_day, total_consumed
from pacing import round_half_up
from rhythm_tracker import prune_daily_log
from time_service import TimeService, day_key, time_until_next_boundary

DEFAULT_RETENTION_DAYS = 365
SAFETY_MARGIN_MS = 50


def is_current(state: ConsumptionState, now: datetime) -> bool:
    """True unless `now` belongs to a later day than the stored day key"""
    return day_key(now, state.wake_mins) <= state.day_key


def finalize_day(state: ConsumptionState, now: datetime):
    """Write the stored day's final numbers into the daily log.

    Rhythm counters recorded during the day are kept. A day that was already
    finalized is never overwritten.
    """
    existing = state.daily_log.get(state.day_key)
    if existing is not None and existing.finalized:
        return
    entry = existing or DailyLogEntry(
        consumed_ml=0, goal_ml=state.goal_ml, bottle_ml=state.bottle_ml,
        carry_ml=0, extra_ml=0, at=now.isoformat(),
    )
    entry.consumed_ml = total_consumed(state)
    entry.goal_ml = state.goal_ml
    entry.bottle_ml = state.bottle_ml
    entry.carry_ml = round_half_up(state.carry_ml or 0)
    entry.extra_ml = round_half_up(state.extra_ml or 0)
    entry.finalized = True
    state.daily_log[state.day_key] = entry


def roll_over_if_needed(state: ConsumptionState, now: datetime,
                        retention_days: int = DEFAULT_RETENTION_DAYS) -> Optional[str]:
    """Move a stale state forward onto today's day key. Returns the day key that was closed, if any"""
    today = day_key(now, state.wake_mins)
    # A later wake time can put `now` before the stored day; days only move forward
    if today <= state.day_key:
        return None
    closed = state.day_key
    finalize_day(state, now)
    state.daily_log = prune_daily_log(state.daily_log, retention_days)
    reset_day(state, today)
    return closed


@dataclass
class Timer:
    name: str
    delay: Callable[[datetime], timedelta]  # time until the next firing, given "now"
    callback: Callable
    last_triggered: Optional[datetime] = None
    next_trigger_time: Optional[datetime] = None
    is_active: bool = True
    task: Optional[asyncio.Task] = None


class TimerManager:
    """Self-renewing one-shot timers on the running event loop.

    Each timer sleeps until its own next trigger time, fires, then computes the
    next trigger again, so a timer keyed to a wall-clock boundary stays aligned
    with it instead of drifting on a fixed interval.
    """

    def __init__(self, time_service: TimeService):
        self.time_service = time_service
        self.timers: Dict[str, Timer] = {}
        self._running = False

    def add_timer(self, name: str, delay: Callable[[datetime], timedelta], callback: Callable):
        """Add a timer (replacing one with the same name)"""
        self.remove_timer(name)
        timer = Timer(name=name, delay=delay, callback=callback)
        self.timers[name] = timer
        if self._running:
            self._start_timer(timer)

    def remove_timer(self, name: str):
        timer = self.timers.pop(name, None)
        if timer and timer.task and not timer.task.done():
            timer.task.cancel()

    def reschedule(self, name: str):
        """Recompute a timer's next trigger, e.g. after the schedule it depends on changed"""
        timer = self.timers.get(name)
        if not timer:
            return
        if timer.task and not timer.task.done():
            timer.task.cancel()
        if self._running and timer.is_active:
            self._start_timer(timer)

    def _start_timer(self, timer: Timer):
        timer.task = asyncio.create_task(self._run_timer(timer))

    async def _run_timer(self, timer: Timer):
        while self._running and timer.is_active:
            now = self.time_service.now()
            wait = max(timedelta(0), timer.delay(now))
            timer.next_trigger_time = now + wait
            try:
                await asyncio.sleep(wait.total_seconds())
            except asyncio.CancelledError:
                break

            try:
                result = timer.callback()
                if inspect.isawaitable(result):
                    await asyncio.wait_for(result, timeout=30.0)
                timer.last_triggered = self.time_service.now()
            except asyncio.TimeoutError:
                print(f"Timer '{timer.name}' callback timed out")
            except asyncio.CancelledError:
                print(f"Timer '{timer.name}' callback was cancelled")
                break
            except Exception as e:
                print(f"Error in timer {timer.name}: {e}")

    async def start(self):
        """Start every registered timer"""
        if self._running:
            return
        self._running = True
        for timer in self.timers.values():
            if timer.is_active:
                self._start_timer(timer)
        print("⏰ Timer manager started successfully")

    async def stop(self):
        """Cancel all timer tasks and wait for them to finish"""
        self._running = False
        tasks = [t.task for t in self.timers.values() if t.task and not t.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for timer in self.timers.values():
            timer.task = None

    @property
    def running(self) -> bool:
        return self._running


class RolloverManager:
    """Keeps a session on the right tracking day.

    The state is either current (stored day key == today's) or stale. A stale
    state is brought current by `check()`, which the owner calls before every
    mutation and on foreground; a boundary timer calls it as well.
    """

    TIMER_NAME = 'day_rollover'

    def __init__(self, timer_manager: TimerManager, get_boundary_minutes: Callable[[], float],
                 on_boundary: Callable, safety_margin_ms: int = SAFETY_MARGIN_MS,
                 retention_days: int = DEFAULT_RETENTION_DAYS):
        self.timer_manager = timer_manager
        self.retention_days = retention_days
        self.get_boundary_minutes = get_boundary_minutes
        self.on_boundary = on_boundary
        self.safety_margin = timedelta(milliseconds=safety_margin_ms)

    def check(self, state: ConsumptionState, now: datetime) -> Optional[str]:
        """Bring a stale state current; returns the closed day key when a rollover happened"""
        closed = roll_over_if_needed(state, now, self.retention_days)
        if closed:
            print(f"🌅 Day rollover: {closed} -> {state.day_key}")
        return closed

    def delay_until_boundary(self, now: datetime) -> timedelta:
        return time_until_next_boundary(now, self.get_boundary_minutes()) + self.safety_margin

    def install(self):
        self.timer_manager.add_timer(self.TIMER_NAME, self.delay_until_boundary, self.on_boundary)

    def reschedule(self):
        """Call whenever the wake/sleep schedule changes"""
        self.timer_manager.reschedule(self.TIMER_NAME)

    @property
    def next_trigger_time(self) -> Optional[datetime]:
        timer = self.timer_manager.timers.get(self.TIMER_NAME)
        return timer.next_trigger_time if timer else None
