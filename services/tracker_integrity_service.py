"""
Invoice Number Tracker Integrity Service
========================================

Cross-checks the tracker's pool, sequence counter and assignment history
and reports anything that would allow a number to be issued twice.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from services.invoice_number_service import (
    TRACKER_ID,
    ensure_tracker_tables,
    tracker_transaction,
)

logger = logging.getLogger("tracker_integrity_service")

BASE_DIR = Path(__file__).resolve().parent.parent
REPORT_FOLDER = BASE_DIR / "backups" / "tracker_integrity_reports"


def _write_json(path: Path, payload: Dict):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)


def _column(cursor, sql: str, params) -> List:
    cursor.execute(sql, params)
    return [row[0] for row in cursor.fetchall()]


def run_tracker_integrity_check(conn, tracker_id: str = None, save_report: bool = False) -> Dict:
    """
    Run integrity checks:
    - pool numbers the sequence has not reached yet
    - new (non-reassigned) numbers the sequence has not reached yet
    - numbers minted more than once
    - reassigned numbers that were never minted
    - pool numbers assigned again after they were released (pooled and held)
    """
    tracker_id = tracker_id or TRACKER_ID
    timestamp = datetime.now(timezone.utc).isoformat()
    ensure_tracker_tables(conn)

    with tracker_transaction(conn, "check the invoice number tracker", write=False) as cursor:
        cursor.execute(
            "SELECT current_sequence FROM invoice_number_trackers WHERE id = ?",
            (tracker_id,)
        )
        row = cursor.fetchone()
        current_sequence = row[0] if row else 1

        pool_not_issued = _column(
            cursor,
            """SELECT number FROM invoice_number_pool
               WHERE tracker_id = ? AND number >= ?
               ORDER BY number""",
            (tracker_id, current_sequence)
        )

        minted_out_of_range = _column(
            cursor,
            """SELECT number FROM invoice_number_assignments
               WHERE tracker_id = ? AND was_reassigned = 0 AND number >= ?
               ORDER BY number""",
            (tracker_id, current_sequence)
        )

        minted_twice = _column(
            cursor,
            """SELECT number FROM invoice_number_assignments
               WHERE tracker_id = ? AND was_reassigned = 0
               GROUP BY number HAVING COUNT(*) > 1
               ORDER BY number""",
            (tracker_id,)
        )

        reassigned_never_minted = _column(
            cursor,
            """SELECT DISTINCT a.number FROM invoice_number_assignments a
               WHERE a.tracker_id = ? AND a.was_reassigned = 1
                 AND NOT EXISTS (
                     SELECT 1 FROM invoice_number_assignments m
                     WHERE m.tracker_id = a.tracker_id
                       AND m.number = a.number
                       AND m.was_reassigned = 0
                 )
               ORDER BY a.number""",
            (tracker_id,)
        )

        pooled_and_held = _column(
            cursor,
            """SELECT p.number FROM invoice_number_pool p
               WHERE p.tracker_id = ?
                 AND EXISTS (
                     SELECT 1 FROM invoice_number_assignments a
                     WHERE a.tracker_id = p.tracker_id
                       AND a.number = p.number
                       AND a.assigned_at > p.released_at
                 )
               ORDER BY p.number""",
            (tracker_id,)
        )

        cursor.execute(
            "SELECT COUNT(*) FROM invoice_number_pool WHERE tracker_id = ?",
            (tracker_id,)
        )
        available_count = cursor.fetchone()[0]
        cursor.execute(
            "SELECT COUNT(*) FROM invoice_number_assignments WHERE tracker_id = ?",
            (tracker_id,)
        )
        assignment_count = cursor.fetchone()[0]

    violations = (
        len(pool_not_issued) + len(minted_out_of_range) + len(minted_twice)
        + len(reassigned_never_minted) + len(pooled_and_held)
    )

    report = {
        "timestamp": timestamp,
        "tracker_id": tracker_id,
        "summary": {
            "current_sequence": current_sequence,
            "available_numbers": available_count,
            "assignment_records": assignment_count,
            "violations": violations,
            "ok": violations == 0
        },
        "pool_not_issued": pool_not_issued,
        "minted_out_of_range": minted_out_of_range,
        "minted_twice": minted_twice,
        "reassigned_never_minted": reassigned_never_minted,
        "pooled_and_held": pooled_and_held
    }

    if violations:
        logger.warning(
            "Tracker '%s' integrity check found %s violation(s): pool_not_issued=%s "
            "minted_out_of_range=%s minted_twice=%s reassigned_never_minted=%s pooled_and_held=%s",
            tracker_id, violations, pool_not_issued, minted_out_of_range,
            minted_twice, reassigned_never_minted, pooled_and_held,
        )
    else:
        logger.info(
            "Tracker '%s' integrity check passed: sequence=%s available=%s assignments=%s",
            tracker_id, current_sequence, available_count, assignment_count,
        )

    if save_report:
        REPORT_FOLDER.mkdir(parents=True, exist_ok=True)
        report_name = f"tracker_integrity_{datetime.now(timezone.utc).strftime('%Y-%m-%d_%H-%M-%S')}.json"
        _write_json(REPORT_FOLDER / report_name, report)

    return report
