"""
Run invoice number tracker integrity check from command line.

Usage:
    python tools/run_tracker_integrity_check.py
    python tools/run_tracker_integrity_check.py --tracker-id tenant_42
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from database import get_db
from services.tracker_integrity_service import run_tracker_integrity_check


def main():
    parser = argparse.ArgumentParser(description="Check the invoice number tracker for duplicate-number risks")
    parser.add_argument("--tracker-id", default=None, help="Tracker identity (defaults to INVOICE_TRACKER_ID)")
    parser.add_argument("--no-report", action="store_true", help="Do not save a JSON report")
    args = parser.parse_args()

    with get_db() as conn:
        report = run_tracker_integrity_check(conn, tracker_id=args.tracker_id, save_report=not args.no_report)

    summary = report.get("summary", {})
    print(f"Tracker integrity check completed ({report['tracker_id']})")
    print(f"- current sequence: {summary.get('current_sequence')}")
    print(f"- available numbers: {summary.get('available_numbers', 0)}")
    print(f"- assignment records: {summary.get('assignment_records', 0)}")
    print(f"- pool numbers never issued: {len(report['pool_not_issued'])}")
    print(f"- new numbers beyond sequence: {len(report['minted_out_of_range'])}")
    print(f"- numbers minted twice: {len(report['minted_twice'])}")
    print(f"- reassigned but never minted: {len(report['reassigned_never_minted'])}")
    print(f"- pooled and held at once: {len(report['pooled_and_held'])}")

    return 0 if summary.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())
