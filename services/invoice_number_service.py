"""
Invoice Number Service

Hands out sale invoice numbers and takes them back when an invoice is
deleted or voided.
Format: B/SALE<N> (e.g., B/SALE1, B/SALE2)

- Released numbers go into a pool and are reused lowest-first before a
  new number is minted.
- Every assignment is written to a permanent, append-only history.
- Assign and release run under BEGIN IMMEDIATE, so only one caller at a
  time (thread or process) can read and change the tracker.

Connections must be in autocommit mode (isolation_level=None), one per
caller. database.get_connection() returns connections set up this way.
"""

import logging
import os
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from database import LOCK_TIMEOUT, create_tables
from error_handlers import (
    ContentionTimeoutError,
    MalformedNumberError,
    NumberNotAvailableError,
    PersistenceFailureError,
)
from models import (
    DEFAULT_TRACKER_ID,
    AssignmentRecord,
    AssignmentResult,
    AvailableEntry,
    NextNumberPreview,
    TrackerStatus,
)

logger = logging.getLogger(__name__)

INVOICE_NUMBER_PREFIX = os.getenv("INVOICE_NUMBER_PREFIX", "B/SALE")
TRACKER_ID = os.getenv("INVOICE_TRACKER_ID", DEFAULT_TRACKER_ID)

_NUMBER_PATTERN = re.compile(re.escape(INVOICE_NUMBER_PREFIX) + r"([0-9]+)")
_DIGITS_PATTERN = re.compile(r"[0-9]+")
# SQLite integers are 64-bit
_MAX_NUMBER = 2 ** 63 - 1
_MAX_DIGITS = len(str(_MAX_NUMBER))


def _digits_to_number(digits: str) -> Optional[int]:
    """Canonical ASCII digits within SQLite's integer range, else None."""
    if len(digits) > _MAX_DIGITS or (len(digits) > 1 and digits.startswith("0")):
        return None
    number = int(digits)
    if not 1 <= number <= _MAX_NUMBER:
        return None
    return number


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_invoice_number(number: int) -> str:
    """Turn a tracker number into its invoice number (5 -> 'B/SALE5')."""
    if isinstance(number, bool) or not isinstance(number, int) or number < 1:
        raise ValueError(f"Invoice number must be a positive integer, got {number!r}")
    return f"{INVOICE_NUMBER_PREFIX}{number}"


def parse_invoice_number(formatted_number: str) -> int:
    """
    Exact inverse of format_invoice_number ('B/SALE5' -> 5).

    Raises:
        MalformedNumberError: if the string was not produced by
            format_invoice_number (wrong prefix, extra text, leading zeros)
    """
    if not isinstance(formatted_number, str):
        raise MalformedNumberError(formatted_number)

    match = _NUMBER_PATTERN.fullmatch(formatted_number)
    if not match:
        raise MalformedNumberError(formatted_number)

    number = _digits_to_number(match.group(1))
    if number is None:
        raise MalformedNumberError(formatted_number)
    return number


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp() -> str:
    # Fixed width so stored timestamps sort correctly as text
    return _now().isoformat(timespec="microseconds")


def ensure_tracker_tables(conn):
    """Ensure the tracker tables exist."""
    try:
        create_tables(conn)
    except sqlite3.Error as e:
        raise _storage_error(e, "prepare the invoice number tracker") from e


def _normalize_invoice_ref(invoice_ref) -> str:
    if invoice_ref is None:
        raise ValueError("invoice_ref is required")
    invoice_ref = str(invoice_ref).strip()
    if not invoice_ref:
        raise ValueError("invoice_ref is required")
    return invoice_ref


def _coerce_manual_number(manual_number) -> int:
    """Accept 5, '5' or 'B/SALE5' as an operator's pick from the pool."""
    if isinstance(manual_number, bool):
        raise NumberNotAvailableError(manual_number)
    number = None
    if isinstance(manual_number, int):
        number = manual_number
    elif isinstance(manual_number, str):
        text = manual_number.strip()
        if _DIGITS_PATTERN.fullmatch(text):
            number = _digits_to_number(text)
        else:
            try:
                number = parse_invoice_number(text)
            except MalformedNumberError:
                pass

    if number is None or not 1 <= number <= _MAX_NUMBER:
        raise NumberNotAvailableError(manual_number)
    return number


def _storage_error(exc: sqlite3.Error, operation: str):
    """Map a sqlite3 error to the tracker's error taxonomy."""
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        logger.warning(f"Timed out waiting to {operation}: {exc}")
        return ContentionTimeoutError(operation, timeout=LOCK_TIMEOUT)
    logger.error(f"Failed to {operation}: {exc}")
    return PersistenceFailureError(operation, exc)


@contextmanager
def tracker_transaction(conn, operation: str, write: bool = True):
    """
    Run a block as one transaction against the tracker.

    Writers use BEGIN IMMEDIATE to take the database write lock up front,
    so the whole read-modify-write-persist sequence is exclusive.
    Readers use a deferred BEGIN so every SELECT sees the same snapshot.
    Nothing is visible to other callers until COMMIT succeeds.
    """
    cursor = conn.cursor()
    try:
        cursor.execute("BEGIN IMMEDIATE" if write else "BEGIN")
    except sqlite3.Error as e:
        raise _storage_error(e, operation) from e

    try:
        yield cursor
        cursor.execute("COMMIT")
    except Exception as e:
        if conn.in_transaction:
            cursor.execute("ROLLBACK")
        if isinstance(e, sqlite3.Error):
            raise _storage_error(e, operation) from e
        raise


def _load_tracker(cursor, tracker_id: str, create: bool = False):
    """
    Return (current_sequence, created_at, updated_at) for a tracker.

    When create is True a missing tracker is created starting at 1.
    Returns None for a missing tracker otherwise.
    """
    cursor.execute(
        "SELECT current_sequence, created_at, updated_at FROM invoice_number_trackers WHERE id = ?",
        (tracker_id,)
    )
    row = cursor.fetchone()
    if row is not None:
        return row[0], row[1], row[2]

    if not create:
        return None

    now = _timestamp()
    cursor.execute(
        """INSERT INTO invoice_number_trackers (id, current_sequence, created_at, updated_at)
           VALUES (?, 1, ?, ?)""",
        (tracker_id, now, now)
    )
    logger.info(f"Created invoice number tracker '{tracker_id}'")
    return 1, now, now


def _touch_tracker(cursor, tracker_id: str, current_sequence: int = None):
    now = _timestamp()
    if current_sequence is None:
        cursor.execute(
            "UPDATE invoice_number_trackers SET updated_at = ? WHERE id = ?",
            (now, tracker_id)
        )
    else:
        cursor.execute(
            "UPDATE invoice_number_trackers SET current_sequence = ?, updated_at = ? WHERE id = ?",
            (current_sequence, now, tracker_id)
        )


def _row_to_entry(row) -> AvailableEntry:
    return AvailableEntry(
        number=row[0],
        formatted_number=row[1],
        released_at=datetime.fromisoformat(row[2]),
        source_invoice_ref=row[3],
    )


def _row_to_record(row) -> AssignmentRecord:
    return AssignmentRecord(
        number=row[0],
        formatted_number=row[1],
        invoice_ref=row[2],
        assigned_at=datetime.fromisoformat(row[3]),
        was_reassigned=bool(row[4]),
    )


_HISTORY_COLUMNS = "number, formatted_number, invoice_ref, assigned_at, was_reassigned"
_POOL_COLUMNS = "number, formatted_number, released_at, source_invoice_ref"


# ---------------------------------------------------------------------------
# Mutating operations
# ---------------------------------------------------------------------------

def assign_number(conn, invoice_ref, manual_number=None, tracker_id: str = None) -> AssignmentResult:
    """
    Assign an invoice number to an invoice.

    Without manual_number the lowest released number is reused first;
    a new number is minted only when the pool is empty.

    Args:
        conn: Database connection (autocommit mode)
        invoice_ref: The invoice the number will belong to
        manual_number: Optional operator pick; must be in the pool
        tracker_id: Tracker identity (defaults to the deployment tracker)

    Returns:
        AssignmentResult with number, formatted_number and was_reassigned

    Raises:
        ValueError: invoice_ref is missing
        NumberNotAvailableError: manual_number is not in the pool
        ContentionTimeoutError: the tracker lock could not be acquired in time
        PersistenceFailureError: the change could not be saved
    """
    invoice_ref = _normalize_invoice_ref(invoice_ref)
    tracker_id = tracker_id or TRACKER_ID
    wanted = _coerce_manual_number(manual_number) if manual_number is not None else None

    ensure_tracker_tables(conn)

    with tracker_transaction(conn, "assign an invoice number") as cursor:
        current_sequence = _load_tracker(cursor, tracker_id, create=True)[0]

        if wanted is not None:
            cursor.execute(
                "SELECT number FROM invoice_number_pool WHERE tracker_id = ? AND number = ?",
                (tracker_id, wanted)
            )
            row = cursor.fetchone()
            if row is None:
                logger.warning(f"Invoice number {wanted} requested for {invoice_ref} is not available")
                raise NumberNotAvailableError(wanted)
            number = row[0]
            was_reassigned = True
        else:
            cursor.execute(
                "SELECT number FROM invoice_number_pool WHERE tracker_id = ? ORDER BY number ASC LIMIT 1",
                (tracker_id,)
            )
            row = cursor.fetchone()
            if row is not None:
                number = row[0]
                was_reassigned = True
            else:
                number = current_sequence
                was_reassigned = False

        if was_reassigned:
            cursor.execute(
                "DELETE FROM invoice_number_pool WHERE tracker_id = ? AND number = ?",
                (tracker_id, number)
            )
            _touch_tracker(cursor, tracker_id)
        else:
            _touch_tracker(cursor, tracker_id, current_sequence=current_sequence + 1)

        formatted_number = format_invoice_number(number)
        cursor.execute(
            f"""INSERT INTO invoice_number_assignments (tracker_id, {_HISTORY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)""",
            (tracker_id, number, formatted_number, invoice_ref, _timestamp(), int(was_reassigned))
        )

    logger.info(
        f"Assigned {formatted_number} to invoice {invoice_ref} "
        f"({'reassigned' if was_reassigned else 'new'})"
    )

    return AssignmentResult(
        number=number,
        formatted_number=formatted_number,
        was_reassigned=was_reassigned,
    )


def release_number(conn, formatted_number: str, invoice_ref=None, tracker_id: str = None) -> bool:
    """
    Put an invoice number back in the pool after its invoice was deleted or voided.

    Releasing a number that is already in the pool does nothing.
    The assignment history is not touched.

    Args:
        conn: Database connection (autocommit mode)
        formatted_number: The invoice number being vacated (e.g. 'B/SALE12')
        invoice_ref: The invoice that held it, kept for traceability
        tracker_id: Tracker identity (defaults to the deployment tracker)

    Returns:
        True if the number was added to the pool, False if it was already there

    Raises:
        MalformedNumberError: formatted_number cannot be parsed, or was never issued
        ContentionTimeoutError: the tracker lock could not be acquired in time
        PersistenceFailureError: the change could not be saved
    """
    number = parse_invoice_number(formatted_number)
    tracker_id = tracker_id or TRACKER_ID
    source_ref = str(invoice_ref).strip() if invoice_ref is not None else None

    ensure_tracker_tables(conn)

    with tracker_transaction(conn, "release an invoice number") as cursor:
        current_sequence = _load_tracker(cursor, tracker_id, create=True)[0]

        # Pooling a number the mint has not reached yet would hand it out twice
        if number >= current_sequence:
            logger.warning(f"Refused to release {formatted_number}: it was never issued")
            raise MalformedNumberError(formatted_number, "Invoice number has not been issued yet")

        cursor.execute(
            "SELECT 1 FROM invoice_number_pool WHERE tracker_id = ? AND number = ?",
            (tracker_id, number)
        )
        if cursor.fetchone() is not None:
            logger.warning(f"Invoice number {formatted_number} is already available")
            return False

        cursor.execute(
            f"""INSERT INTO invoice_number_pool (tracker_id, {_POOL_COLUMNS})
                VALUES (?, ?, ?, ?, ?)""",
            (tracker_id, number, format_invoice_number(number), _timestamp(), source_ref or None)
        )
        _touch_tracker(cursor, tracker_id)

    logger.info(f"Released {formatted_number} from invoice {source_ref or 'unknown'}")
    return True


# ---------------------------------------------------------------------------
# Read-only operations
# ---------------------------------------------------------------------------

def list_available_numbers(conn, tracker_id: str = None) -> List[AvailableEntry]:
    """Return the pool of released numbers, lowest first."""
    tracker_id = tracker_id or TRACKER_ID
    ensure_tracker_tables(conn)

    with tracker_transaction(conn, "list available invoice numbers", write=False) as cursor:
        cursor.execute(
            f"SELECT {_POOL_COLUMNS} FROM invoice_number_pool WHERE tracker_id = ? ORDER BY number ASC",
            (tracker_id,)
        )
        rows = cursor.fetchall()

    return sorted((_row_to_entry(row) for row in rows), key=lambda entry: entry.number)


def peek_next_number(conn, tracker_id: str = None) -> NextNumberPreview:
    """
    Preview what assign_number() would hand out right now WITHOUT reserving it.

    A concurrent assign_number() may take the previewed number first, so
    the preview is for display only.
    """
    tracker_id = tracker_id or TRACKER_ID
    ensure_tracker_tables(conn)

    with tracker_transaction(conn, "preview the next invoice number", write=False) as cursor:
        tracker = _load_tracker(cursor, tracker_id)
        cursor.execute(
            "SELECT MIN(number) FROM invoice_number_pool WHERE tracker_id = ?",
            (tracker_id,)
        )
        pool_min = cursor.fetchone()[0]

    if pool_min is not None:
        number, from_pool = pool_min, True
    else:
        number, from_pool = (tracker[0] if tracker else 1), False

    return NextNumberPreview(
        number=number,
        formatted_number=format_invoice_number(number),
        would_be_reassigned=from_pool,
    )


def get_assignment_history(
    conn,
    invoice_ref=None,
    limit: int = None,
    offset: int = 0,
    tracker_id: str = None
) -> List[AssignmentRecord]:
    """Return assignment records oldest first, optionally for one invoice."""
    tracker_id = tracker_id or TRACKER_ID
    ensure_tracker_tables(conn)

    sql = f"SELECT {_HISTORY_COLUMNS} FROM invoice_number_assignments WHERE tracker_id = ?"
    params = [tracker_id]

    if invoice_ref is not None:
        sql += " AND invoice_ref = ?"
        params.append(str(invoice_ref).strip())

    sql += " ORDER BY id ASC LIMIT ? OFFSET ?"
    params.extend([limit if limit is not None else -1, offset])

    with tracker_transaction(conn, "read the invoice number history", write=False) as cursor:
        cursor.execute(sql, params)
        rows = cursor.fetchall()

    return [_row_to_record(row) for row in rows]


def find_current_holder(conn, number: int, tracker_id: str = None) -> Optional[AssignmentRecord]:
    """
    Return the assignment currently holding a number.

    None if the number is in the pool or has never been issued.
    """
    if isinstance(number, bool) or not isinstance(number, int) or not 1 <= number <= _MAX_NUMBER:
        return None

    tracker_id = tracker_id or TRACKER_ID
    ensure_tracker_tables(conn)

    with tracker_transaction(conn, "look up an invoice number", write=False) as cursor:
        cursor.execute(
            "SELECT 1 FROM invoice_number_pool WHERE tracker_id = ? AND number = ?",
            (tracker_id, number)
        )
        if cursor.fetchone() is not None:
            return None

        cursor.execute(
            f"""SELECT {_HISTORY_COLUMNS} FROM invoice_number_assignments
                WHERE tracker_id = ? AND number = ?
                ORDER BY id DESC LIMIT 1""",
            (tracker_id, number)
        )
        row = cursor.fetchone()

    return _row_to_record(row) if row else None


def get_tracker_status(conn, tracker_id: str = None) -> TrackerStatus:
    """
    Get current tracker counts for display.

    A tracker that has not been used yet reports sequence 1 and no entries.
    """
    tracker_id = tracker_id or TRACKER_ID
    ensure_tracker_tables(conn)

    with tracker_transaction(conn, "read the invoice number tracker", write=False) as cursor:
        tracker = _load_tracker(cursor, tracker_id)
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

    if tracker is None:
        return TrackerStatus(
            tracker_id=tracker_id,
            current_sequence=1,
            available_count=available_count,
            assignment_count=assignment_count,
        )

    return TrackerStatus(
        tracker_id=tracker_id,
        current_sequence=tracker[0],
        available_count=available_count,
        assignment_count=assignment_count,
        created_at=datetime.fromisoformat(tracker[1]),
        updated_at=datetime.fromisoformat(tracker[2]),
    )
