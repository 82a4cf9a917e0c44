"""
Tests for the SQLite connection layer.

Validates:
1. Schema bootstrap is idempotent and validates
2. Lock errors are retried, other errors propagate
3. Transactions roll back on error
"""

from __future__ import annotations

import sqlite3

import pytest

from inboxq.infrastructure.database import (
    close_pool,
    db_transaction,
    get_db_connection,
    get_pool_stats,
    init_database,
    retry_on_db_lock,
    validate_schema,
)
from inboxq.observability.telemetry import get_counter


def test_init_database_is_idempotent(isolated_db):
    assert init_database() == isolated_db
    assert validate_schema()


def test_missing_database_raises(tmp_path, monkeypatch):
    monkeypatch.setenv("INBOXQ_DB_PATH", str(tmp_path / "missing.db"))
    close_pool()

    with pytest.raises(FileNotFoundError):
        with get_db_connection():
            pass


def test_pool_stats():
    with get_db_connection():
        stats = get_pool_stats()

    assert stats["in_use"] == 1
    assert not stats["closed"]
    assert get_pool_stats()["in_use"] == 0


def test_transaction_rolls_back():
    with pytest.raises(RuntimeError):
        with db_transaction() as conn:
            conn.execute(
                "INSERT INTO processed_emails (user_id, email_id, processed_at) "
                "VALUES ('user-1', 'msg-1', '2026-03-02T07:00:00.000000+00:00')"
            )
            raise RuntimeError("abort")

    with get_db_connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM processed_emails").fetchone()[0] == 0


def test_retry_on_db_lock_retries_then_succeeds():
    calls = []

    @retry_on_db_lock(max_retries=3, base_delay=0, max_delay=0)
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3


def test_retry_on_db_lock_gives_up():
    @retry_on_db_lock(max_retries=2, base_delay=0, max_delay=0)
    def always_locked():
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(sqlite3.OperationalError):
        always_locked()
    assert get_counter("database.lock_retry_exhausted") == 1


def test_other_operational_errors_propagate():
    calls = []

    @retry_on_db_lock(max_retries=3, base_delay=0, max_delay=0)
    def broken():
        calls.append(1)
        raise sqlite3.OperationalError("no such table: nope")

    with pytest.raises(sqlite3.OperationalError):
        broken()
    assert len(calls) == 1
