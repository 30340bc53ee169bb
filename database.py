"""
Database Configuration - Simple SQLite
======================================
Direct database access without ORM overhead.

Connections are opened in autocommit mode so the services can manage
their own transactions with BEGIN IMMEDIATE.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# --- DATABASE CONFIGURATION ---
# Use absolute path relative to this file's location to avoid directory confusion
_DEFAULT_DB_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "invoice_numbers.db")
DATABASE_PATH = os.getenv("DATABASE_PATH", _DEFAULT_DB_PATH)

# Seconds a writer waits for the tracker lock before giving up
LOCK_TIMEOUT = float(os.getenv("INVOICE_TRACKER_LOCK_TIMEOUT", "5"))


def get_connection(db_path: str = None, timeout: float = None):
    """Get a database connection in autocommit mode."""
    if timeout is None:
        timeout = LOCK_TIMEOUT

    conn = sqlite3.connect(
        db_path or DATABASE_PATH,
        timeout=timeout,
        isolation_level=None,
        check_same_thread=False
    )

    # Critical SQLite pragmas for stability and data integrity
    conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    conn.execute("PRAGMA foreign_keys = ON")

    # Return rows as dictionaries
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_db(db_path: str = None):
    """Context manager for database connections."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        if conn.in_transaction:
            conn.rollback()
        conn.close()


def get_conn():
    """FastAPI dependency: one connection per request."""
    with get_db() as conn:
        yield conn


def create_tables(conn):
    """Create the invoice number tracker tables if they don't exist."""
    cursor = conn.cursor()

    # One row per tracker identity
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS invoice_number_trackers (
            id TEXT PRIMARY KEY,
            current_sequence INTEGER NOT NULL DEFAULT 1 CHECK (current_sequence >= 1),
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    """)

    # Released numbers waiting to be reassigned
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS invoice_number_pool (
            tracker_id TEXT NOT NULL,
            number INTEGER NOT NULL CHECK (number >= 1),
            formatted_number TEXT NOT NULL,
            released_at TIMESTAMP NOT NULL,
            source_invoice_ref TEXT,
            PRIMARY KEY (tracker_id, number),
            FOREIGN KEY (tracker_id) REFERENCES invoice_number_trackers (id)
        )
    """)

    # Permanent assignment history
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS invoice_number_assignments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tracker_id TEXT NOT NULL,
            number INTEGER NOT NULL CHECK (number >= 1),
            formatted_number TEXT NOT NULL,
            invoice_ref TEXT NOT NULL,
            assigned_at TIMESTAMP NOT NULL,
            was_reassigned INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (tracker_id) REFERENCES invoice_number_trackers (id)
        )
    """)

    # History rows can never be edited or removed
    cursor.execute("""
        CREATE TRIGGER IF NOT EXISTS invoice_number_assignments_no_update
        BEFORE UPDATE ON invoice_number_assignments
        BEGIN
            SELECT RAISE(ABORT, 'invoice number assignments are append-only');
        END
    """)
    cursor.execute("""
        CREATE TRIGGER IF NOT EXISTS invoice_number_assignments_no_delete
        BEFORE DELETE ON invoice_number_assignments
        BEGIN
            SELECT RAISE(ABORT, 'invoice number assignments are append-only');
        END
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_assignments_tracker_number "
        "ON invoice_number_assignments(tracker_id, number)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_assignments_invoice "
        "ON invoice_number_assignments(invoice_ref)"
    )


def init_db(db_path: str = None):
    """Initialize database tables if they don't exist."""
    with get_db(db_path) as conn:
        # Enable WAL mode for better concurrency (readers don't block writers)
        conn.execute("PRAGMA journal_mode=WAL")
        create_tables(conn)

    logger.info(f"Database initialized: {db_path or DATABASE_PATH}")
