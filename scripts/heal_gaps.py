"""
Analyze and heal missing terminal punches for specific days.

Days whose id range cannot be inferred from neighbouring days (gap
remnants) can be healed by passing explicit id bounds.

Usage:
    python scripts/heal_gaps.py 2024-03-01 2024-03-02 [--analyze-only]
    python scripts/heal_gaps.py 2024-03-04 --bounds 2024-03-04:118200-118950
    python scripts/heal_gaps.py --summary 14
"""
import sys
import os
import argparse
import json
from datetime import date

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from attendance_integrity.engine import build_engine
from attendance_integrity.exceptions import SourceNotConfigured
from attendance_integrity.logging import setup_logging


def parse_bounds(values):
    """Parse YYYY-MM-DD:START-END into {date: (start, end)}"""
    bounds = {}
    for value in values or []:
        try:
            day_part, range_part = value.split(":", 1)
            start, end = range_part.split("-", 1)
            bounds[date.fromisoformat(day_part)] = (int(start), int(end))
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid bounds '{value}', expected YYYY-MM-DD:START-END")
    return bounds


def main():
    parser = argparse.ArgumentParser(
        description="Analyze and heal gaps in ingested terminal punches",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("dates", nargs="*", type=date.fromisoformat, help="Days to analyze/heal (YYYY-MM-DD)")
    parser.add_argument("--bounds", action="append", help="Explicit id bounds, YYYY-MM-DD:START-END (repeatable)")
    parser.add_argument("--analyze-only", action="store_true", help="Report coverage without fetching anything")
    parser.add_argument("--summary", type=int, metavar="DAYS", help="Print the gap summary for the last DAYS days")
    parser.add_argument("--operator", default="cli", help="Operator id recorded in the audit log")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    setup_logging("DEBUG" if args.verbose else None)
    engine = build_engine()

    try:
        if args.summary:
            summary = engine.get_gap_summary(args.summary)
            summary.pop("coverage", None)
            print(json.dumps(summary, indent=2))

        bounds = parse_bounds(args.bounds)
        dates = sorted(set(args.dates) | set(bounds))
        if not dates:
            if not args.summary:
                parser.error("no dates given")
            return

        if args.analyze_only:
            print(json.dumps(engine.analyze_gaps(dates), indent=2))
            return

        try:
            reports = engine.trigger_targeted_heal(dates, bounds, actor_id=args.operator)
        except SourceNotConfigured as e:
            print(f"[ERROR] {e}. Set BIOTIME_USERNAME and BIOTIME_PASSWORD.")
            sys.exit(1)

        for report in reports:
            status = "REMNANT" if report["remnant"] else "OK"
            print(
                f"[{status}] {report['date']}: ranges={report['ranges']} fetched={report['fetched']} "
                f"admitted={report['ingest']['admitted']} completeness {report['completeness_before']}% -> "
                f"{report['completeness_after']}%"
            )
            if report["remnant"]:
                print(f"         {report['remnant']}")
            for error in report["errors"]:
                print(f"         error: {error}")
    finally:
        engine.stop()


if __name__ == "__main__":
    main()
