"""
Database Initialization Script

Creates the invoice number tracker tables and shows the tracker state.
The tracker itself starts at B/SALE1 and is created on first use.

Run this script once when setting up the system:
    python init_db.py
"""

from database import DATABASE_PATH, get_db, init_db
from services.invoice_number_service import get_tracker_status, peek_next_number


def init_database():
    """Initialize database tables and print the tracker state."""
    print(f"Initializing database: {DATABASE_PATH}")
    init_db()
    print("Tables created successfully.")

    with get_db() as conn:
        status = get_tracker_status(conn)
        preview = peek_next_number(conn)

    print(f"Tracker: {status.tracker_id}")
    print(f"- current sequence: {status.current_sequence}")
    print(f"- available (released) numbers: {status.available_count}")
    print(f"- assignments recorded: {status.assignment_count}")
    print(f"- next number: {preview.formatted_number}"
          f"{' (reused)' if preview.would_be_reassigned else ''}")


if __name__ == "__main__":
    init_database()
