#!/usr/bin/env python3
"""
Hydration Status Utility - Check today's progress without stopping the app
"""

import argparse
from pathlib import Path

from config import HydrationConfig
from hydration_state import make_default_state, max_bottles, percent_of_goal, total_consumed
from nudge_scheduler import NudgeTokens
from pacing import pacing_snapshot
from persistent_storage import PersistentStorage
from rhythm_tracker import consistency_report
from rollover_manager import is_current
from time_service import TimeService, format_countdown, time_until_next_boundary


def main():
    config = HydrationConfig.from_env()
    parser = argparse.ArgumentParser(description='Show OneBottle hydration status')
    parser.add_argument('--data-dir', default=config.data_dir, help='Data directory of the app')
    parser.add_argument('--days', action='store_true', help='Also list every stored daily log entry')
    args = parser.parse_args()

    if not Path(args.data_dir).exists():
        print("❌ Data directory not found. Is the app running?")
        return

    now = TimeService().now()
    storage = PersistentStorage(args.data_dir)
    state = storage.load_state(lambda: make_default_state(
        now, config.wake_minutes, goal_ml=config.daily_goal_ml, bottle_ml=config.bottle_ml,
        sleep_mins=config.sleep_minutes,
    ))

    consumed = total_consumed(state)
    print(f"💧 Day {state.day_key}" + ("" if is_current(state, now) else " (stale, rolls over on next use)"))
    print(f"   Consumed: {consumed}/{state.goal_ml}ml ({percent_of_goal(state, consumed)}%)")
    print(f"   Bottles: {state.completed_bottles}/{max_bottles(state)} done, "
          f"current {round(state.remaining * 100)}% full ({state.bottle_ml}ml {state.shape})")
    if state.carry_ml or state.extra_ml:
        print(f"   Carry: {state.carry_ml:.0f}ml | Extra: {state.extra_ml:.0f}ml")
    print(f"   Undo history: {len(state.history)} entries")

    pacing = pacing_snapshot(state.goal_ml, state.bottle_ml, consumed, state.completed_bottles,
                             now, state.wake_mins, state.sleep_mins)
    print(f"\n📈 Pacing: {pacing.status} (expected {pacing.expected_ml}ml, {pacing.diff_ml:+d}ml)")
    print(f"⏰ Next rollover in {format_countdown(time_until_next_boundary(now, state.wake_mins))}")

    report = consistency_report(state.daily_log, now, state.wake_mins)
    print(f"\n🏅 Consistency: {report.score}/100 {report.tier} ({report.tier_label})")
    for day in report.days:
        windows = ''.join('●' if hit else '○' for hit in day.window_hits)
        print(f"   {day.day_key}  {windows}  {day.daily_score:3d}  {day.consumed_ml}ml")
    print(f"   Stored days: {report.stored_days} ({report.oldest or '-'} .. {report.newest or '-'})")

    if args.days:
        print("\n📅 Daily log:")
        for key in sorted(state.daily_log):
            entry = state.daily_log[key]
            flag = ' final' if entry.finalized else ''
            print(f"   {key}: {entry.consumed_ml}/{entry.goal_ml}ml hits={entry.window_hit_counts}{flag}")

    tokens = NudgeTokens.load(storage)
    print("\n🔔 Nudges:")
    print(f"   Last app open: {tokens.last_app_open_day_key or '-'}")
    print(f"   Last log/refill: {tokens.last_refill_or_log_at or '-'}")
    print(f"   Early nudge scheduled: {tokens.behind_nudge_scheduled_at or '-'}")
    print(f"   Last late nudge day: {tokens.last_late_behind_day_key or '-'}")
    print(f"   Last praise day: {tokens.last_praise_day_key or '-'}")


if __name__ == "__main__":
    main()
