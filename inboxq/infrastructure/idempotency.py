"""
Processed-email ledger for the inbox-to-calendar pipeline.

Records which (user_id, email_id) pairs have already been through extraction so
a re-run never re-extracts the same email. Duplicate marks are absorbed by the
table's primary key, never by a read-then-write check.

Key: partition() splits a fetched batch into new vs already-processed in one
query, mark_processed_batch() records a run's emails after persistence.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from pydantic import BaseModel, Field

from inboxq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from inboxq.observability.logging import get_logger
from inboxq.observability.telemetry import counter, log_event

logger = get_logger(__name__)

# SQLite's default host-parameter limit is 999; stay well under it
_QUERY_CHUNK = 500


class _HasId(Protocol):
    id: str


E = TypeVar("E", bound=_HasId)


class ProcessingStats(BaseModel):
    """Per-user ledger summary shown on the status surface."""

    total_processed: int = Field(default=0, ge=0)
    last_processed_at: datetime | None = None


def _stamp(now: datetime | None) -> str:
    moment = now or datetime.now(UTC)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def _chunks(values: Sequence[str], size: int = _QUERY_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class ProcessedEmailLedger:
    """
    Repository for the processed_emails table.

    All methods are scoped by user_id; the same email id under two users is two
    independent records.
    """

    @staticmethod
    def is_processed(user_id: str, email_id: str) -> bool:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_emails WHERE user_id = ? AND email_id = ?",
                (user_id, email_id),
            ).fetchone()
        return row is not None

    @staticmethod
    def processed_ids(user_id: str, email_ids: Sequence[str]) -> set[str]:
        """Subset of email_ids already recorded for user_id."""
        unique_ids = list(dict.fromkeys(email_ids))
        found: set[str] = set()
        if not unique_ids:
            return found

        with get_db_connection() as conn:
            for chunk in _chunks(unique_ids):
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT email_id FROM processed_emails "
                    f"WHERE user_id = ? AND email_id IN ({placeholders})",
                    (user_id, *chunk),
                ).fetchall()
                found.update(row["email_id"] for row in rows)
        return found

    @staticmethod
    def partition(user_id: str, emails: Sequence[E]) -> tuple[list[E], list[E]]:
        """
        Split emails into (unprocessed, already_processed), preserving order.

        Side Effects:
            - Increments idempotency.skipped counter by the skipped count
        """
        seen = ProcessedEmailLedger.processed_ids(user_id, [email.id for email in emails])
        unprocessed = [email for email in emails if email.id not in seen]
        skipped = [email for email in emails if email.id in seen]

        if skipped:
            counter("idempotency.skipped", len(skipped))
            log_event("idempotency.partition", new=len(unprocessed), skipped=len(skipped))
        return unprocessed, skipped

    @staticmethod
    @retry_on_db_lock()
    def mark_processed(user_id: str, email_id: str, now: datetime | None = None) -> bool:
        """
        Record email_id as processed for user_id.

        Returns:
            True if newly recorded, False if it was already in the ledger

        Side Effects:
            - Inserts into processed_emails (no-op on conflict)
        """
        processed_at = _stamp(now)
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO processed_emails (user_id, email_id, processed_at)
                VALUES (?, ?, ?)
                ON CONFLICT (user_id, email_id) DO NOTHING
                """,
                (user_id, email_id, processed_at),
            )
            return cursor.rowcount == 1

    @staticmethod
    @retry_on_db_lock()
    def mark_processed_batch(
        user_id: str, email_ids: Iterable[str], now: datetime | None = None
    ) -> int:
        """
        Record a batch of emails as processed in one transaction.

        Returns:
            Number of newly recorded emails

        Side Effects:
            - Inserts into processed_emails (conflicts ignored)
        """
        processed_at = _stamp(now)
        inserted = 0
        with db_transaction() as conn:
            for email_id in dict.fromkeys(email_ids):
                cursor = conn.execute(
                    """
                    INSERT INTO processed_emails (user_id, email_id, processed_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (user_id, email_id) DO NOTHING
                    """,
                    (user_id, email_id, processed_at),
                )
                inserted += cursor.rowcount

        logger.info("Marked %d emails processed for user %s", inserted, user_id)
        return inserted

    @staticmethod
    def get_stats(user_id: str) -> ProcessingStats:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total, MAX(processed_at) AS last_processed_at
                FROM processed_emails WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()

        last = row["last_processed_at"]
        return ProcessingStats(
            total_processed=row["total"],
            last_processed_at=datetime.fromisoformat(last) if last else None,
        )
