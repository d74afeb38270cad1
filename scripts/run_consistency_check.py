"""
Run one consistency check now and print the snapshot.

Usage:
    python scripts/run_consistency_check.py [--history N]
"""
import sys
import os
import argparse
import json

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from attendance_integrity.engine import build_engine
from attendance_integrity.logging import setup_logging


def main():
    parser = argparse.ArgumentParser(description="Run an attendance consistency check")
    parser.add_argument("--history", type=int, metavar="N", help="Print the last N snapshots instead of running a check")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    setup_logging("DEBUG" if args.verbose else None)
    engine = build_engine()
    try:
        if args.history:
            print(json.dumps(engine.consistency.history(args.history), indent=2))
            return
        snapshot = engine.run_consistency_check()
        print(json.dumps(snapshot, indent=2))
        if not snapshot["is_consistent"]:
            sys.exit(2)
    finally:
        engine.stop()


if __name__ == "__main__":
    main()
