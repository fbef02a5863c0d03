from dataclasses import asdict
from datetime import datetime
from typing import Optional

from hydration_state import Celebration, ConsumptionState, HistoryEntry

HISTORY_LIMIT = 50


class EventHistory:
    """Bounded undo stack stored on the consumption state itself.

    Each entry holds the values a mutation overwrote. Only the most recent
    `limit` entries are kept; older ones fall off the bottom.
    """

    def __init__(self, limit: int = HISTORY_LIMIT):
        self.limit = limit

    def capture(self, state: ConsumptionState, timestamp: datetime, action: Optional[str] = None,
                ml: Optional[float] = None) -> HistoryEntry:
        """Snapshot the tracked fields before a mutation touches them"""
        return HistoryEntry(
            timestamp=timestamp.isoformat(),
            prev_remaining=state.remaining,
            prev_completed=state.completed_bottles,
            prev_carry=state.carry_ml or 0,
            prev_extra=state.extra_ml or 0,
            prev_celebrate=asdict(state.celebrate) if state.celebrate else None,
            action=action,
            ml=ml,
        )

    def push(self, state: ConsumptionState, entry: HistoryEntry):
        state.history = (state.history + [entry])[-self.limit:]

    def undo(self, state: ConsumptionState) -> Optional[HistoryEntry]:
        """Restore the values recorded by the latest entry and drop it; None when empty"""
        if not state.history:
            return None
        entry = state.history[-1]
        state.remaining = entry.prev_remaining
        state.completed_bottles = entry.prev_completed
        state.carry_ml = entry.prev_carry
        state.extra_ml = entry.prev_extra
        state.celebrate = Celebration.from_dict(entry.prev_celebrate)
        state.history = state.history[:-1]
        return entry

