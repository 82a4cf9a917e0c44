"""
Event and todo repositories - CRUD and delivery-state transitions.

Every query is scoped by user_id. Delivery-state changes are single UPDATE
statements whose WHERE clause encodes the allowed source states, so a
transition that is no longer legal (another pass got there first, the event
is already synced) affects zero rows instead of corrupting state.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from inboxq.config import (
    DELIVERY_BATCH_LIMIT,
    DELIVERY_CLAIM_TIMEOUT_SECONDS,
    SWEEP_THRESHOLD_HOURS,
)
from inboxq.events.models import (
    ExtractedEvent,
    ExtractedTodo,
    StoredEvent,
    StoredTodo,
    SyncStatus,
    TodoStatus,
    to_db_timestamp,
    utc_now,
)
from inboxq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from inboxq.observability.logging import get_logger

logger = get_logger(__name__)

_CLAIM_TIMEOUT = timedelta(seconds=DELIVERY_CLAIM_TIMEOUT_SECONDS)
_STALE_AFTER = timedelta(hours=SWEEP_THRESHOLD_HOURS)

_CLAIMABLE = ", ".join(f"'{status.value}'" for status in SyncStatus.claimable())

# Claimable: open state with budget left, or an abandoned claim; never an
# event the sweeper would remove
_DELIVERABLE_WHERE = f"""
    user_id = :user_id
    AND retry_count < :max_retries
    AND start_at >= :not_before
    AND (
          sync_status IN ({_CLAIMABLE})
       OR (sync_status = 'in_progress' AND claimed_at < :stale_before)
    )
"""

_EVENT_COLUMNS = """
    id, user_id, title, start_at, end_at, description, location, child_name,
    confidence, source_email_id, sync_status, retry_count, external_calendar_id,
    sync_error, last_sync_attempt, next_retry_at, claimed_at,
    created_at, updated_at, synced_at
"""

_TODO_COLUMNS = """
    id, user_id, description, type, due_date, status, child_name,
    source_email_id, url, amount, confidence, auto_completed,
    created_at, completed_at
"""


def _deliverable_params(user_id: str, max_retries: int, moment: datetime) -> dict[str, object]:
    return {
        "user_id": user_id,
        "max_retries": max_retries,
        "not_before": to_db_timestamp(moment - _STALE_AFTER),
        "stale_before": to_db_timestamp(moment - _CLAIM_TIMEOUT),
    }


def _placeholders(columns: str) -> str:
    return ", ".join(f":{name.strip()}" for name in columns.split(","))


@dataclass
class PersistOutcome:
    """Rows actually inserted by persist_extraction (conflicts excluded)."""

    events: list[StoredEvent] = field(default_factory=list)
    todos: list[StoredTodo] = field(default_factory=list)

    @property
    def event_ids(self) -> list[str]:
        return [event.id for event in self.events]


class EventRepository:
    """
    Repository for the events table and its delivery state machine.

    pending|failed --claim--> in_progress --> synced | failed
    """

    @staticmethod
    def insert_many(conn: sqlite3.Connection, events: Sequence[StoredEvent]) -> list[StoredEvent]:
        """
        Insert events on an open transaction, skipping uniqueness conflicts.

        Returns:
            The events that were actually inserted
        """
        inserted: list[StoredEvent] = []
        for event in events:
            cursor = conn.execute(
                f"""
                INSERT INTO events ({_EVENT_COLUMNS})
                VALUES ({_placeholders(_EVENT_COLUMNS)})
                ON CONFLICT (user_id, source_email_id, title, start_at) DO NOTHING
                """,
                event.to_db_dict(),
            )
            if cursor.rowcount == 1:
                inserted.append(event)
            else:
                logger.debug(
                    "Skipped duplicate event '%s' from email %s", event.title, event.source_email_id
                )
        return inserted

    @staticmethod
    def get_by_id(user_id: str, event_id: str) -> StoredEvent | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE id = ? AND user_id = ?",
                (event_id, user_id),
            ).fetchone()

        if not row:
            return None
        return StoredEvent.from_db_row(dict(row))

    @staticmethod
    def list_by_user(
        user_id: str,
        status: SyncStatus | None = None,
        child_name: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> list[StoredEvent]:
        """
        Events for a user ordered by start time.

        Optional filters: sync status, child name, and start bounds
        (date_from inclusive, date_to exclusive).
        """
        query = "SELECT * FROM events WHERE user_id = ?"
        params: list[str | None] = [user_id]
        if status is not None:
            query += " AND sync_status = ?"
            params.append(SyncStatus(status).value)
        if child_name is not None:
            query += " AND child_name = ?"
            params.append(child_name)
        if date_from is not None:
            query += " AND start_at >= ?"
            params.append(to_db_timestamp(date_from))
        if date_to is not None:
            query += " AND start_at < ?"
            params.append(to_db_timestamp(date_to))
        query += " ORDER BY start_at ASC"

        with get_db_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [StoredEvent.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def list_upcoming(
        user_id: str, days_ahead: int = 7, now: datetime | None = None
    ) -> list[StoredEvent]:
        """Events starting between now and now + days_ahead."""
        start = now or utc_now()
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM events
                WHERE user_id = ? AND start_at >= ? AND start_at < ?
                ORDER BY start_at ASC
                """,
                (
                    user_id,
                    to_db_timestamp(start),
                    to_db_timestamp(start + timedelta(days=days_ahead)),
                ),
            ).fetchall()
        return [StoredEvent.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def list_deliverable(
        user_id: str,
        max_retries: int,
        limit: int = DELIVERY_BATCH_LIMIT,
        event_ids: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> list[StoredEvent]:
        """
        Events a delivery pass may claim, oldest first.

        pending or failed with retry budget left, plus in_progress claims older
        than the claim timeout. Events that started more than
        SWEEP_THRESHOLD_HOURS ago are left for the sweeper. When event_ids is
        given only those are considered.
        """
        query = f"SELECT * FROM events WHERE {_DELIVERABLE_WHERE}"
        params = _deliverable_params(user_id, max_retries, now or utc_now())
        params["limit"] = limit
        if event_ids is not None:
            if not event_ids:
                return []
            names = []
            for index, event_id in enumerate(dict.fromkeys(event_ids)):
                names.append(f":id_{index}")
                params[f"id_{index}"] = event_id
            query += f" AND id IN ({', '.join(names)})"
        query += " ORDER BY created_at ASC, start_at ASC, id ASC LIMIT :limit"

        with get_db_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [StoredEvent.from_db_row(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def claim(
        user_id: str,
        event_id: str,
        max_retries: int,
        now: datetime | None = None,
    ) -> StoredEvent | None:
        """
        Atomically move an event to in_progress for this delivery pass.

        Returns:
            The claimed event, or None when another pass owns it, it is synced,
            its retry budget is spent or it is already past

        Side Effects:
            - Sets sync_status=in_progress, claimed_at, last_sync_attempt
        """
        moment = now or utc_now()
        params = _deliverable_params(user_id, max_retries, moment)
        params.update(id=event_id, now=to_db_timestamp(moment))
        with db_transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE events
                SET sync_status = 'in_progress',
                    claimed_at = :now,
                    last_sync_attempt = :now,
                    updated_at = :now
                WHERE id = :id AND {_DELIVERABLE_WHERE}
                """,
                params,
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()

        return StoredEvent.from_db_row(dict(row))

    @staticmethod
    @retry_on_db_lock()
    def mark_synced(
        user_id: str, event_id: str, external_calendar_id: str, now: datetime | None = None
    ) -> bool:
        """
        in_progress -> synced. retry_count is left as is.

        Side Effects:
            - Sets external_calendar_id and synced_at, clears claim and error
        """
        if not external_calendar_id:
            raise ValueError("external_calendar_id is required to mark an event synced")

        stamp = to_db_timestamp(now or utc_now())
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE events
                SET sync_status = 'synced',
                    external_calendar_id = :external_id,
                    sync_error = NULL,
                    next_retry_at = NULL,
                    claimed_at = NULL,
                    synced_at = :now,
                    updated_at = :now
                WHERE id = :id AND user_id = :user_id AND sync_status = 'in_progress'
                """,
                {
                    "id": event_id,
                    "user_id": user_id,
                    "external_id": external_calendar_id,
                    "now": stamp,
                },
            )
            updated = cursor.rowcount == 1

        if updated:
            logger.info("Event %s synced as %s", event_id, external_calendar_id)
        else:
            logger.warning("Event %s was not in_progress; synced mark ignored", event_id)
        return updated

    @staticmethod
    @retry_on_db_lock()
    def mark_failed(
        user_id: str,
        event_id: str,
        error: str,
        next_retry_at: datetime | None,
        now: datetime | None = None,
    ) -> bool:
        """
        in_progress -> failed, spending one unit of retry budget.

        Side Effects:
            - Increments retry_count, records sync_error and next_retry_at
        """
        stamp = to_db_timestamp(now or utc_now())
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE events
                SET sync_status = 'failed',
                    retry_count = retry_count + 1,
                    sync_error = :error,
                    next_retry_at = :next_retry_at,
                    claimed_at = NULL,
                    updated_at = :now
                WHERE id = :id AND user_id = :user_id AND sync_status = 'in_progress'
                """,
                {
                    "id": event_id,
                    "user_id": user_id,
                    "error": error or "unknown error",
                    "next_retry_at": to_db_timestamp(next_retry_at),
                    "now": stamp,
                },
            )
            updated = cursor.rowcount == 1

        if updated:
            logger.warning("Event %s sync failed: %s", event_id, error)
        return updated

    @staticmethod
    def count_by_status(user_id: str) -> dict[str, int]:
        """Sync statistics: total plus one entry per SyncStatus."""
        counts = {status.value: 0 for status in SyncStatus}
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT sync_status, COUNT(*) AS n FROM events
                WHERE user_id = ? GROUP BY sync_status
                """,
                (user_id,),
            ).fetchall()
        for row in rows:
            counts[row["sync_status"]] = row["n"]
        return {"total": sum(counts.values()), **counts}

    @staticmethod
    def list_exhausted(user_id: str, max_retries: int) -> list[StoredEvent]:
        """Failed events whose retry budget is spent (administrative surface)."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM events
                WHERE user_id = ? AND sync_status = ? AND retry_count >= ?
                ORDER BY updated_at DESC
                """,
                (user_id, SyncStatus.FAILED.value, max_retries),
            ).fetchall()
        return [StoredEvent.from_db_row(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def delete(user_id: str, event_id: str) -> bool:
        """
        Remove one event at the user's request, whatever its delivery state.

        A delivery pass still holding the claim finds nothing to mark.
        """
        with db_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM events WHERE id = ? AND user_id = ?", (event_id, user_id)
            )
            deleted = cursor.rowcount == 1

        if deleted:
            logger.info("Deleted event %s for user %s", event_id, user_id)
        return deleted

    @staticmethod
    def delete_past(
        conn: sqlite3.Connection,
        user_id: str,
        cutoff: datetime,
        max_retries: int,
        now: datetime,
    ) -> list[str]:
        """
        Delete events starting before cutoff on an open transaction.

        Keeps exhausted failures and in_progress claims that are still live.

        Returns:
            Ids of the deleted events
        """
        rows = conn.execute(
            """
            DELETE FROM events
            WHERE user_id = :user_id
              AND start_at < :cutoff
              AND NOT (sync_status = 'failed' AND retry_count >= :max_retries)
              AND NOT (sync_status = 'in_progress' AND claimed_at >= :stale_before)
            RETURNING id
            """,
            {
                "user_id": user_id,
                "cutoff": to_db_timestamp(cutoff),
                "max_retries": max_retries,
                "stale_before": to_db_timestamp(now - _CLAIM_TIMEOUT),
            },
        ).fetchall()
        return [row["id"] for row in rows]


class TodoRepository:
    """Repository for the todos table."""

    @staticmethod
    def insert_many(conn: sqlite3.Connection, todos: Sequence[StoredTodo]) -> list[StoredTodo]:
        inserted: list[StoredTodo] = []
        for todo in todos:
            cursor = conn.execute(
                f"""
                INSERT INTO todos ({_TODO_COLUMNS})
                VALUES ({_placeholders(_TODO_COLUMNS)})
                ON CONFLICT (user_id, source_email_id, description, due_date) DO NOTHING
                """,
                todo.to_db_dict(),
            )
            if cursor.rowcount == 1:
                inserted.append(todo)
        return inserted

    @staticmethod
    def get_by_id(user_id: str, todo_id: str) -> StoredTodo | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM todos WHERE id = ? AND user_id = ?",
                (todo_id, user_id),
            ).fetchone()

        if not row:
            return None
        return StoredTodo.from_db_row(dict(row))

    @staticmethod
    def list_by_user(user_id: str, status: TodoStatus | None = None) -> list[StoredTodo]:
        query = "SELECT * FROM todos WHERE user_id = ?"
        params: list[str] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(TodoStatus(status).value)
        query += " ORDER BY due_date IS NULL, due_date ASC, created_at ASC"

        with get_db_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [StoredTodo.from_db_row(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def complete(user_id: str, todo_id: str, now: datetime | None = None) -> bool:
        """Mark a todo done by hand (auto_completed stays 0)."""
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE todos SET status = 'done', completed_at = ?
                WHERE id = ? AND user_id = ? AND status = 'pending'
                """,
                (to_db_timestamp(now or utc_now()), todo_id, user_id),
            )
            return cursor.rowcount == 1

    @staticmethod
    def auto_complete_past(
        conn: sqlite3.Connection, user_id: str, cutoff: datetime, now: datetime
    ) -> list[str]:
        """
        Mark pending todos due before cutoff as done on an open transaction.

        Returns:
            Ids of the auto-completed todos
        """
        rows = conn.execute(
            """
            UPDATE todos
            SET status = 'done', auto_completed = 1, completed_at = :now
            WHERE user_id = :user_id
              AND status = 'pending'
              AND due_date IS NOT NULL
              AND due_date < :cutoff
            RETURNING id
            """,
            {"user_id": user_id, "cutoff": to_db_timestamp(cutoff), "now": to_db_timestamp(now)},
        ).fetchall()
        return [row["id"] for row in rows]


@retry_on_db_lock()
def persist_extraction(
    user_id: str,
    events: Sequence[ExtractedEvent],
    todos: Sequence[ExtractedTodo],
    now: datetime | None = None,
) -> PersistOutcome:
    """
    Persist one extraction batch in a single transaction.

    Events start pending with retry_count 0. Rows that collide with the
    uniqueness constraint (a replayed extraction) are skipped and not returned.

    Side Effects:
        - Inserts into events and todos; all or nothing
    """
    created = now or utc_now()
    stored_events = [StoredEvent.from_extracted(user_id, event, created) for event in events]
    stored_todos = [StoredTodo.from_extracted(user_id, todo, created) for todo in todos]

    with db_transaction() as conn:
        outcome = PersistOutcome(
            events=EventRepository.insert_many(conn, stored_events),
            todos=TodoRepository.insert_many(conn, stored_todos),
        )

    logger.info(
        "Persisted %d/%d events and %d/%d todos for user %s",
        len(outcome.events),
        len(stored_events),
        len(outcome.todos),
        len(stored_todos),
        user_id,
    )
    return outcome
