"""
List Delayed Script - Prints open instances past the processing delay
Run: python -m scripts.list_delayed [--threshold-days 5] [--as-of 2024-03-01T00:00:00Z]
"""
import argparse
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from approval_engine.config.settings import settings
from approval_engine.engine.delay_monitor import DelayMonitor
from approval_engine.utils.time import days_since, format_iso, parse_iso, utc_now


def main():
    parser = argparse.ArgumentParser(description="List workflow instances past the processing delay")
    parser.add_argument(
        "--threshold-days",
        type=float,
        default=settings.sla_delay_threshold_days,
        help=f"Delay in days (default: {settings.sla_delay_threshold_days})"
    )
    parser.add_argument(
        "--as-of",
        type=parse_iso,
        default=None,
        help="Evaluate as of this ISO 8601 instant (default: now)"
    )
    args = parser.parse_args()

    now = args.as_of or utc_now()
    delayed = DelayMonitor().scan(threshold_days=args.threshold_days, now=now)

    print(f"{len(delayed)} delayed instances as of {format_iso(now)} (threshold {args.threshold_days} days)")
    for instance in delayed:
        print(
            f"   {instance.instance_id}  {instance.definition_name}  subject={instance.subject_id}  "
            f"step={instance.current_step_index}  {days_since(instance.started_at, now=now):.1f} days"
        )


if __name__ == "__main__":
    main()
