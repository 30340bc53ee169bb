"""
Pytest configuration and fixtures for the invoice number tracker tests.

Every test gets its own temporary SQLite file so BEGIN IMMEDIATE locking
behaves as it does in production (in-memory databases cannot be shared
between connections).
"""
import os
import tempfile

import pytest

from database import get_connection, init_db


@pytest.fixture
def db_path():
    """Path to an isolated, initialized temporary database."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    init_db(path)

    yield path

    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
def connect(db_path):
    """
    Factory for extra connections to the test database.

    Concurrency tests give each thread its own connection.
    """
    opened = []

    def _connect(timeout: float = 5.0):
        conn = get_connection(db_path, timeout=timeout)
        opened.append(conn)
        return conn

    yield _connect

    for conn in opened:
        if conn.in_transaction:
            conn.rollback()
        conn.close()


@pytest.fixture
def db_conn(connect):
    """A single autocommit connection to the test database."""
    return connect()
