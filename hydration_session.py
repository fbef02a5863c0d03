"""
Hydration session: owns the consumption state and runs every mutation.

Each mutating operation first brings a stale day current, then applies the
change, mirrors it into the undo history and the daily log, persists, and
finally hands the nudge scheduler its follow-up work as background tasks.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional, Set

from config import HydrationConfig
from event_history import EventHistory
from fill_estimator import FillEstimator, ScanController
from hydration_state import (
    BOTTLE_SHAPES, EMPTY_THRESHOLD, MAX_CREDIT_ML, SNAP_MODES, Celebration, ConsumptionState,
    HistoryEntry, advance_bottle, make_default_state, percent_of_goal, refill_preserving_total,
    reset_day, switch_bottle_keeping_consumed, total_consumed,
)
from notification_service import NotificationService
from nudge_scheduler import NudgeScheduler
from pacing import PacingSnapshot, TargetLinePolicy, clamp, pacing_snapshot, snap_value
from persistent_storage import PersistentStorage
from rhythm_tracker import ConsistencyReport, consistency_report, record_event, reverse_event
from rollover_manager import RolloverManager, TimerManager
from time_service import MINUTES_PER_DAY, TimeService

NUDGE_TIMER_NAME = 'nudge_recheck'


class HydrationSession:
    def __init__(self, config: Optional[HydrationConfig] = None,
                 storage: Optional[PersistentStorage] = None,
                 time_service: Optional[TimeService] = None,
                 notifier: Optional[NotificationService] = None,
                 estimator: Optional[FillEstimator] = None,
                 target_policy: TargetLinePolicy = TargetLinePolicy()):
        self.config = config or HydrationConfig()
        self.time_service = time_service or TimeService()
        self.storage = storage or PersistentStorage(self.config.data_dir)
        self.target_policy = target_policy
        self.history = EventHistory(self.config.history_limit)
        self.state: ConsumptionState = self.storage.load_state(self._default_state)
        self.pending_remaining = self.state.remaining

        self.timer_manager = TimerManager(self.time_service)
        self.rollover = RolloverManager(
            self.timer_manager,
            get_boundary_minutes=lambda: self.state.wake_mins,
            on_boundary=self._on_boundary,
            safety_margin_ms=self.config.rollover_safety_margin_ms,
            retention_days=self.config.daily_log_retention_days,
        )
        self.nudges = NudgeScheduler(self.storage, notifier)
        self.scanner = ScanController(
            estimator or FillEstimator(self.config.fill_estimate_url),
            self.time_service,
            cooldown_seconds=self.config.scan_cooldown_seconds,
        )
        self._tasks: Set[asyncio.Task] = set()

        self.check_rollover()

    def _default_state(self) -> ConsumptionState:
        return make_default_state(
            self.time_service.now(),
            wake_mins=self.config.wake_minutes,
            sleep_mins=self.config.sleep_minutes,
            goal_ml=self.config.daily_goal_ml,
            bottle_ml=self.config.bottle_ml,
        )

    # --- plumbing ------------------------------------------------------

    def persist(self) -> bool:
        return self.storage.save_state(self.state)

    def _changed(self):
        self.persist()

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        """Run nudge follow-up work in the background; skipped outside an event loop"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for all background nudge work to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def check_rollover(self, now: Optional[datetime] = None) -> Optional[str]:
        closed = self.rollover.check(self.state, now or self.time_service.now())
        if closed:
            self.pending_remaining = self.state.remaining
            self._changed()
        return closed

    # --- mutations -----------------------------------------------------

    def set_bottle_level(self, fraction: float, action: str = 'track') -> HistoryEntry:
        """Set the current bottle's remaining fraction; at (near) empty the bottle completes"""
        now = self.time_service.now()
        self.check_rollover(now)
        state = self.state
        level = clamp(float(fraction), 0.0, 1.0)

        before = total_consumed(state)
        was_filled = state.remaining > EMPTY_THRESHOLD
        entry = self.history.capture(state, now, action)
        state.remaining = level
        if level <= EMPTY_THRESHOLD:
            advance_bottle(state)
        after = total_consumed(state)
        entry.ml = after - before

        if action == 'track':
            record_event(state, now, max(0, after - before), entry)
            hit_goal = state.goal_ml > 0 and after >= state.goal_ml
            emptied = was_filled and level <= EMPTY_THRESHOLD
            if hit_goal or emptied:
                state.celebrate = Celebration(
                    type='goal' if hit_goal else 'bottle',
                    pct=percent_of_goal(state, after),
                    consumed_ml=after,
                )
        self.history.push(state, entry)
        self.pending_remaining = state.remaining
        self._changed()

        if action == 'track':
            self._spawn(self._after_log(now, after))
        return entry

    def track(self, fraction: Optional[float] = None) -> HistoryEntry:
        """Commit the pending (or given) fill level as drunk"""
        level = self.pending_remaining if fraction is None else fraction
        return self.set_bottle_level(snap_value(level, self.state.snap), 'track')

    def add_extra(self, ml: float) -> HistoryEntry:
        """Credit a quick-add volume without touching the bottle"""
        now = self.time_service.now()
        self.check_rollover(now)
        state = self.state
        entry = self.history.capture(state, now, 'extra', ml)
        state.extra_ml = clamp((state.extra_ml or 0) + ml, 0, MAX_CREDIT_ML)
        record_event(state, now, ml, entry)
        self.history.push(state, entry)
        self._changed()
        self._spawn(self.nudges.record_log(now))
        return entry

    def undo(self) -> Optional[HistoryEntry]:
        self.check_rollover()
        entry = self.history.undo(self.state)
        if entry is None:
            return None
        reverse_event(self.state, entry)
        self.pending_remaining = self.state.remaining
        self._changed()
        return entry

    def switch_bottle(self, **patch):
        """Change bottle size/shape/snap, keeping today's total as carried volume"""
        if 'bottle_ml' in patch and not patch['bottle_ml'] > 0:
            raise ValueError(f"Bottle size must be positive: {patch['bottle_ml']}")
        if 'shape' in patch and patch['shape'] not in BOTTLE_SHAPES:
            raise ValueError(f"Unknown bottle shape: {patch['shape']}")
        if 'snap' in patch and patch['snap'] not in SNAP_MODES:
            raise ValueError(f"Unknown snap mode: {patch['snap']}")
        self.check_rollover()
        switch_bottle_keeping_consumed(self.state, **patch)
        self.pending_remaining = 1.0
        self._changed()

    def refill(self, pending_fraction: Optional[float] = None) -> int:
        """Log what was drunk from the current bottle, then start a fresh one"""
        self.track(pending_fraction)
        consumed = refill_preserving_total(self.state)
        self.pending_remaining = 1.0
        self._changed()
        return consumed

    def morning_refill(self):
        """Acknowledge the morning prompt and start the day with a full bottle"""
        now = self.time_service.now()
        self.check_rollover(now)
        reset_day(self.state, self.state.day_key)
        self.nudges.acknowledge_morning_reset(self.state, now)
        self.pending_remaining = 1.0
        self._changed()

    def update_schedule(self, wake_mins: int, sleep_mins: int):
        if not 0 <= wake_mins < MINUTES_PER_DAY or not 0 <= sleep_mins < MINUTES_PER_DAY:
            raise ValueError(f"Schedule minutes out of range: wake={wake_mins} sleep={sleep_mins}")
        self.check_rollover()
        # Today's progress stays on its day key; an earlier wake may close it right away
        self.state.wake_mins = wake_mins
        self.state.sleep_mins = sleep_mins
        if not self.check_rollover():
            self._changed()
        self.rollover.reschedule()
        self._spawn(self.nudges.evaluate(self.state, self.time_service.now()))

    def update_goal(self, goal_ml: int):
        if not goal_ml > 0:
            raise ValueError(f"Goal must be positive: {goal_ml}")
        self.check_rollover()
        self.state.goal_ml = goal_ml
        self._changed()

    def reset_all(self):
        """Back to a fresh default state, daily log included"""
        self.state = self._default_state()
        self.pending_remaining = 1.0
        self._changed()
        self.rollover.reschedule()

    def dismiss_celebration(self):
        if self.state.celebrate is not None:
            self.state.celebrate = None
            self._changed()

    def set_pending(self, fraction: float):
        """Move the fill slider without committing anything"""
        self.pending_remaining = snap_value(fraction, self.state.snap)

    # --- scanning ------------------------------------------------------

    async def estimate_fill(self, image_data_url: str) -> Optional[float]:
        """Scan a bottle photo into the pending level; None if the scan was superseded"""
        percent = await self.scanner.scan(image_data_url)
        if percent is None:
            return None
        self.set_pending(percent / 100)
        return self.pending_remaining

    # --- views ---------------------------------------------------------

    def total_consumed(self) -> int:
        return total_consumed(self.state)

    def pacing(self, now: Optional[datetime] = None) -> PacingSnapshot:
        state = self.state
        return pacing_snapshot(
            state.goal_ml, state.bottle_ml, total_consumed(state), state.completed_bottles,
            now or self.time_service.now(), state.wake_mins, state.sleep_mins, self.target_policy,
        )

    def consistency(self, now: Optional[datetime] = None) -> ConsistencyReport:
        return consistency_report(self.state.daily_log, now or self.time_service.now(), self.state.wake_mins)

    def time_until_rollover(self) -> timedelta:
        return self.time_service.time_until_next_boundary(self.state.wake_mins)

    def morning_reset_due(self) -> bool:
        return self.nudges.morning_reset_due(self.state, self.time_service.now())

    # --- lifecycle -----------------------------------------------------

    async def _after_log(self, now: datetime, consumed_ml: int):
        await self.nudges.record_log(now)
        await self.nudges.maybe_send_praise(self.state, now, consumed_ml)

    async def _on_boundary(self):
        self.check_rollover()
        await self.nudges.evaluate(self.state, self.time_service.now())

    async def _recheck_nudges(self):
        self.check_rollover()
        await self.nudges.maybe_schedule_behind_nudge(self.state, self.time_service.now())
        await self.nudges.maybe_schedule_late_behind_nudge(self.state, self.time_service.now())

    async def on_foreground(self) -> bool:
        """App became visible; returns whether the morning prompt should show"""
        now = self.time_service.now()
        self.check_rollover(now)
        await self.nudges.on_foreground(self.state, now)
        return self.nudges.morning_reset_due(self.state, now)

    def on_background(self):
        self.persist()

    async def start(self):
        self.rollover.install()
        recheck = timedelta(seconds=self.config.nudge_recheck_seconds)
        self.timer_manager.add_timer(NUDGE_TIMER_NAME, lambda now: recheck, self._recheck_nudges)
        await self.timer_manager.start()
        await self.nudges.request_permission_once()
        await self.on_foreground()
        print(f"💧 Hydration session started for {self.state.day_key}")

    async def stop(self):
        await self.timer_manager.stop()
        self.scanner.cancel()
        await self.drain()
        self.persist()
        print("💧 Hydration session stopped")
