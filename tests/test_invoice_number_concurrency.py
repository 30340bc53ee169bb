"""
Pytest tests for invoice number assignment under concurrent callers.

Each worker thread opens its own connection to the same database file,
the same way separate request handlers would.
"""
import threading

import pytest

from error_handlers import ContentionTimeoutError, NumberNotAvailableError, PersistenceFailureError
from services.invoice_number_service import (
    assign_number,
    get_assignment_history,
    get_tracker_status,
    list_available_numbers,
    peek_next_number,
    release_number,
)
from services.tracker_integrity_service import run_tracker_integrity_check


def _run_threads(count, target):
    """Start `count` threads on target(i, barrier) together and collect results/errors."""
    barrier = threading.Barrier(count)
    results = [None] * count
    errors = []

    def worker(i):
        try:
            results[i] = target(i, barrier)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    return results, errors


# ---------------------------------------------------------------------------
# 1. Concurrent minting never hands out a number twice
# ---------------------------------------------------------------------------
@pytest.mark.integration
def test_concurrent_assignments_are_unique(connect):
    n = 20

    def assign(i, barrier):
        conn = connect(timeout=30)
        barrier.wait()
        return assign_number(conn, f"INV-{i}")

    results, errors = _run_threads(n, assign)

    assert errors == []
    numbers = [r.number for r in results]
    assert len(set(numbers)) == n
    # No gaps either: exactly 1..n were minted
    assert sorted(numbers) == list(range(1, n + 1))

    conn = connect()
    assert get_tracker_status(conn).current_sequence == n + 1
    assert len(get_assignment_history(conn)) == n


# ---------------------------------------------------------------------------
# 2. Concurrent callers drain the pool exactly once
# ---------------------------------------------------------------------------
@pytest.mark.integration
def test_concurrent_assignments_drain_pool_without_duplicates(connect):
    setup = connect()
    for i in range(1, 11):
        assign_number(setup, f"OLD-{i}")
    for number in (2, 4, 6, 8):
        release_number(setup, f"B/SALE{number}", f"OLD-{number}")

    def assign(i, barrier):
        conn = connect(timeout=30)
        barrier.wait()
        return assign_number(conn, f"NEW-{i}")

    results, errors = _run_threads(8, assign)

    assert errors == []
    numbers = sorted(r.number for r in results)
    # Pool is used up first, then 11..14 are minted
    assert numbers == [2, 4, 6, 8, 11, 12, 13, 14]
    assert sum(r.was_reassigned for r in results) == 4
    assert list_available_numbers(setup) == []


# ---------------------------------------------------------------------------
# 3. Two operators picking the same pooled number: exactly one wins
# ---------------------------------------------------------------------------
@pytest.mark.integration
def test_concurrent_manual_picks_of_same_number(connect):
    setup = connect()
    for i in range(1, 6):
        assign_number(setup, f"OLD-{i}")
    release_number(setup, "B/SALE3", "OLD-3")

    def pick(i, barrier):
        conn = connect(timeout=30)
        barrier.wait()
        return assign_number(conn, f"PICK-{i}", manual_number=3)

    results, errors = _run_threads(6, pick)

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].number == 3
    assert len(errors) == 5
    assert all(isinstance(e, NumberNotAvailableError) for e in errors)


# ---------------------------------------------------------------------------
# 4. Mixed assign/release traffic keeps every invariant
# ---------------------------------------------------------------------------
@pytest.mark.integration
def test_mixed_traffic_keeps_tracker_consistent(connect):
    setup = connect()
    for i in range(1, 21):
        assign_number(setup, f"OLD-{i}")

    def work(i, barrier):
        conn = connect(timeout=30)
        barrier.wait()
        if i % 2 == 0:
            # Each releaser frees a distinct old number
            release_number(conn, f"B/SALE{i + 1}", f"OLD-{i + 1}")
            return None
        return assign_number(conn, f"NEW-{i}")

    results, errors = _run_threads(20, work)
    assert errors == []

    conn = connect()
    pool = [entry.number for entry in list_available_numbers(conn)]
    assert pool == sorted(set(pool))

    # A pooled number's last holder is the old invoice that released it
    history = get_assignment_history(conn)
    for number in pool:
        latest = [r for r in history if r.number == number][-1]
        assert latest.invoice_ref.startswith("OLD-")

    new_numbers = [r.number for r in results if r is not None]
    assert len(new_numbers) == len(set(new_numbers))
    assert set(new_numbers).isdisjoint(pool)

    status = get_tracker_status(conn)
    assert status.assignment_count == 20 + len(new_numbers)
    assert run_tracker_integrity_check(conn)["summary"]["ok"] is True


# ---------------------------------------------------------------------------
# 5. Lock timeout leaves no partial state
# ---------------------------------------------------------------------------
@pytest.mark.integration
def test_lock_timeout_raises_contention_error(connect):
    holder = connect()
    assign_number(holder, "INV-1")
    assign_number(holder, "INV-2")
    release_number(holder, "B/SALE1", "INV-1")

    # Another writer holds the tracker lock
    holder.execute("BEGIN IMMEDIATE")
    try:
        impatient = connect(timeout=0.2)
        with pytest.raises(ContentionTimeoutError) as exc_info:
            assign_number(impatient, "INV-3")
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True

        with pytest.raises(ContentionTimeoutError):
            release_number(impatient, "B/SALE2", "INV-2")
    finally:
        holder.execute("ROLLBACK")

    # Nothing was half-applied, and a retry now succeeds
    assert [e.number for e in list_available_numbers(holder)] == [1]
    assert len(get_assignment_history(holder)) == 2
    assert assign_number(impatient, "INV-3").number == 1


@pytest.mark.integration
def test_readers_are_not_blocked_by_writer(connect):
    """In WAL mode a preview reads the last committed state while a writer holds the lock."""
    writer = connect()
    assign_number(writer, "INV-1")

    writer.execute("BEGIN IMMEDIATE")
    try:
        reader = connect(timeout=0.2)
        preview = peek_next_number(reader)
        assert preview.number == 2
    finally:
        writer.execute("ROLLBACK")


# ---------------------------------------------------------------------------
# 6. A failed write is rolled back completely
# ---------------------------------------------------------------------------
@pytest.mark.integration
def test_failed_history_write_rolls_back_pool_and_sequence(connect):
    conn = connect()
    assign_number(conn, "INV-1")
    assign_number(conn, "INV-2")
    release_number(conn, "B/SALE1", "INV-1")

    # Simulate the storage layer rejecting the history write
    conn.execute("""
        CREATE TRIGGER fail_history_insert BEFORE INSERT ON invoice_number_assignments
        BEGIN
            SELECT RAISE(ABORT, 'disk I/O error');
        END
    """)

    with pytest.raises(PersistenceFailureError) as exc_info:
        assign_number(conn, "INV-3")
    assert exc_info.value.status_code == 500

    # The pool head was not consumed
    assert [e.number for e in list_available_numbers(conn)] == [1]

    # Empty the pool and check the sequence does not advance either
    conn.execute("DROP TRIGGER fail_history_insert")
    assign_number(conn, "INV-3")
    conn.execute("""
        CREATE TRIGGER fail_history_insert BEFORE INSERT ON invoice_number_assignments
        BEGIN
            SELECT RAISE(ABORT, 'disk I/O error');
        END
    """)
    with pytest.raises(PersistenceFailureError):
        assign_number(conn, "INV-4")

    assert get_tracker_status(conn).current_sequence == 3
    assert len(get_assignment_history(conn)) == 3
    assert not conn.in_transaction


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
