#!/usr/bin/env python3
"""
OneBottle Data Reset Utility

Resets today's tracking from the command line. Useful when the stored
progress went wrong; the daily log (and with it the consistency score) is
kept unless --complete is given.
"""

import sys
import argparse
from pathlib import Path

from config import HydrationConfig
from hydration_state import make_default_state, reset_day, total_consumed
from persistent_storage import STATE_KEY, PersistentStorage
from time_service import TimeService, day_key


def main():
    config = HydrationConfig.from_env()
    parser = argparse.ArgumentParser(description='Reset OneBottle app data')
    parser.add_argument('--complete', action='store_true',
                        help='Reset all data including the daily log and nudge history (default: keep the daily log)')
    parser.add_argument('--confirm', action='store_true',
                        help='Skip confirmation prompt')
    parser.add_argument('--data-dir', default=config.data_dir, help='Data directory of the app')

    args = parser.parse_args()

    data_dir = Path(args.data_dir)
    if not data_dir.exists():
        print("❌ Data directory not found. No data to reset.")
        return

    now = TimeService().now()
    storage = PersistentStorage(args.data_dir)
    state = storage.load_state(lambda: make_default_state(
        now, config.wake_minutes, goal_ml=config.daily_goal_ml, bottle_ml=config.bottle_ml,
        sleep_mins=config.sleep_minutes,
    ))

    print("📊 Current Data:")
    print(f"   Day {state.day_key}: {total_consumed(state)}/{state.goal_ml}ml")
    print(f"   Undo history: {len(state.history)} entries")
    print(f"   Daily log: {len(state.daily_log)} days")

    if not args.confirm:
        reset_type = "complete" if args.complete else "today (keeping the daily log)"
        confirm = input(f"\n🔄 Reset {reset_type}? (y/N): ").lower().strip()
        if confirm != 'y':
            print("Reset cancelled.")
            return

    if args.complete:
        success = storage.clear()
    else:
        reset_day(state, max(state.day_key, day_key(now, state.wake_mins)))
        success = storage.save_state(state)

    if success:
        if args.complete:
            print("✅ Complete data reset successful!")
        else:
            print(f"✅ Day reset successful! {len(state.daily_log)} daily log entries kept under {STATE_KEY}.")
        print("\n💡 You can now restart the app with clean data.")
    else:
        print("❌ Reset failed.")
        sys.exit(1)


if __name__ == "__main__":
    main()
