"""
Database schema initialization for inboxq.

Holds the DDL for the idempotency ledger, the event store with its delivery
state columns, and the todo store.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from inboxq.observability.logging import get_logger

logger = get_logger(__name__)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses CREATE TABLE IF NOT EXISTS.

    Side Effects:
    - Creates the parent directory if needed
    - Creates processed_emails, events and todos tables and their indexes
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS processed_emails (
            user_id TEXT NOT NULL,
            email_id TEXT NOT NULL,
            processed_at TEXT NOT NULL,
            PRIMARY KEY (user_id, email_id)
        );

        CREATE INDEX IF NOT EXISTS idx_processed_emails_user_time
            ON processed_emails(user_id, processed_at);

        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT,
            description TEXT,
            location TEXT,
            child_name TEXT,
            confidence REAL NOT NULL DEFAULT 0,
            source_email_id TEXT,

            sync_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (sync_status IN ('pending', 'in_progress', 'synced', 'failed')),
            retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
            external_calendar_id TEXT,
            sync_error TEXT,
            last_sync_attempt TEXT,
            next_retry_at TEXT,
            claimed_at TEXT,

            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            synced_at TEXT,

            CHECK (sync_status != 'synced' OR external_calendar_id IS NOT NULL),
            CHECK (sync_status != 'failed' OR sync_error IS NOT NULL),
            UNIQUE (user_id, source_email_id, title, start_at)
        );

        CREATE INDEX IF NOT EXISTS idx_events_user_status
            ON events(user_id, sync_status, retry_count, created_at);
        CREATE INDEX IF NOT EXISTS idx_events_user_start
            ON events(user_id, start_at);

        CREATE TABLE IF NOT EXISTS todos (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            description TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'REMIND',
            due_date TEXT,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'done')),
            child_name TEXT,
            source_email_id TEXT,
            url TEXT,
            amount TEXT,
            confidence REAL NOT NULL DEFAULT 0,
            auto_completed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            completed_at TEXT,

            UNIQUE (user_id, source_email_id, description, due_date)
        );

        CREATE INDEX IF NOT EXISTS idx_todos_user_status_due
            ON todos(user_id, status, due_date);
    """)

    conn.commit()
    conn.close()

    logger.info("Database initialized: %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Raises:
        ValueError: If tables or columns are missing
    """
    required_tables = {
        "processed_emails": ["user_id", "email_id", "processed_at"],
        "events": [
            "id",
            "user_id",
            "title",
            "start_at",
            "source_email_id",
            "sync_status",
            "retry_count",
            "external_calendar_id",
            "sync_error",
            "next_retry_at",
            "claimed_at",
        ],
        "todos": ["id", "user_id", "description", "type", "due_date", "status", "auto_completed"],
    }

    cursor = conn.cursor()

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(required_tables.keys()) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {missing_tables}")

    for table, required_cols in required_tables.items():
        # Identifiers cannot be bound as parameters; names come from the dict above
        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}

        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {missing_cols}")

    return True
