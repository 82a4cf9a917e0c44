"""
Event and todo domain models.

Covers the three shapes an event takes on its way to the calendar: the
extractor's ephemeral output (ExtractedEvent / ExtractedTodo), the persisted
row with its delivery state (StoredEvent / StoredTodo), and the calendar
payloads exchanged with the CalendarClient collaborator.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, time
from enum import Enum
from typing import Any

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator

from inboxq.pipeline.errors import ErrorDetail


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def coerce_datetime(value: Any) -> datetime | None:
    """
    Parse collaborator-supplied dates into aware UTC datetimes.

    Accepts datetimes, dates (midnight UTC) and free-form strings understood by
    dateutil. Empty values become None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=UTC)
    if isinstance(value, str):
        try:
            return ensure_utc(date_parser.isoparse(value))
        except ValueError:
            return ensure_utc(date_parser.parse(value))
    raise ValueError(f"Cannot interpret {type(value).__name__} as a datetime")


def to_db_timestamp(value: datetime | None) -> str | None:
    """Fixed-width ISO-8601 UTC text, so lexical order in SQL is chronological."""
    return ensure_utc(value).isoformat(timespec="microseconds") if value else None


def _parse_stored(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SyncStatus(str, Enum):
    """Delivery state of a stored event."""

    PENDING = "pending"  # Persisted, never attempted
    IN_PROGRESS = "in_progress"  # Claimed by a delivery pass
    SYNCED = "synced"  # On the calendar (terminal)
    FAILED = "failed"  # Last attempt failed; retried while retry_count < max

    @classmethod
    def claimable(cls) -> tuple[SyncStatus, ...]:
        """States a delivery pass may claim (stale in_progress handled separately)."""
        return (cls.PENDING, cls.FAILED)


class TodoType(str, Enum):
    PAY = "PAY"
    BUY = "BUY"
    PACK = "PACK"
    SIGN = "SIGN"
    FILL = "FILL"
    READ = "READ"
    REMIND = "REMIND"


class TodoStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"


# ---------------------------------------------------------------------------
# Extraction output
# ---------------------------------------------------------------------------


class ExtractedEvent(BaseModel):
    """Calendar event proposed by the extractor for one email."""

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1)
    date: datetime = Field(..., description="Event start")
    end_date: datetime | None = None
    description: str | None = None
    location: str | None = None
    child_name: str | None = None
    source_email_id: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped

    @field_validator("date", "end_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)


class ExtractedTodo(BaseModel):
    """Action item proposed by the extractor for one email."""

    description: str = Field(..., min_length=1)
    type: TodoType = TodoType.REMIND
    due_date: datetime | None = None
    child_name: str | None = None
    source_email_id: str | None = None
    url: str | None = None
    amount: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if value is None or value == "":
            return TodoType.REMIND
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_due(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_text(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)


# ---------------------------------------------------------------------------
# Stored rows
# ---------------------------------------------------------------------------


class StoredEvent(BaseModel):
    """
    A persisted event and its calendar delivery state.

    synced implies external_calendar_id; failed implies sync_error;
    retry_count only ever grows.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    start_at: datetime
    end_at: datetime | None = None
    description: str | None = None
    location: str | None = None
    child_name: str | None = None
    confidence: float = 0.0
    source_email_id: str | None = None

    sync_status: SyncStatus = SyncStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    external_calendar_id: str | None = None
    sync_error: str | None = None
    last_sync_attempt: datetime | None = None
    next_retry_at: datetime | None = None
    claimed_at: datetime | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    synced_at: datetime | None = None

    @classmethod
    def from_extracted(
        cls, user_id: str, extracted: ExtractedEvent, now: datetime | None = None
    ) -> StoredEvent:
        created = now or utc_now()
        return cls(
            user_id=user_id,
            title=extracted.title,
            start_at=extracted.date,
            end_at=extracted.end_date,
            description=extracted.description,
            location=extracted.location,
            child_name=extracted.child_name,
            confidence=extracted.confidence,
            source_email_id=extracted.source_email_id,
            created_at=created,
            updated_at=created,
        )

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "start_at": to_db_timestamp(self.start_at),
            "end_at": to_db_timestamp(self.end_at),
            "description": self.description,
            "location": self.location,
            "child_name": self.child_name,
            "confidence": self.confidence,
            "source_email_id": self.source_email_id,
            "sync_status": self.sync_status.value,
            "retry_count": self.retry_count,
            "external_calendar_id": self.external_calendar_id,
            "sync_error": self.sync_error,
            "last_sync_attempt": to_db_timestamp(self.last_sync_attempt),
            "next_retry_at": to_db_timestamp(self.next_retry_at),
            "claimed_at": to_db_timestamp(self.claimed_at),
            "created_at": to_db_timestamp(self.created_at),
            "updated_at": to_db_timestamp(self.updated_at),
            "synced_at": to_db_timestamp(self.synced_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> StoredEvent:
        """Create StoredEvent from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            start_at=datetime.fromisoformat(row["start_at"]),
            end_at=_parse_stored(row["end_at"]),
            description=row["description"],
            location=row["location"],
            child_name=row["child_name"],
            confidence=row["confidence"],
            source_email_id=row["source_email_id"],
            sync_status=SyncStatus(row["sync_status"]),
            retry_count=row["retry_count"],
            external_calendar_id=row["external_calendar_id"],
            sync_error=row["sync_error"],
            last_sync_attempt=_parse_stored(row["last_sync_attempt"]),
            next_retry_at=_parse_stored(row["next_retry_at"]),
            claimed_at=_parse_stored(row["claimed_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            synced_at=_parse_stored(row["synced_at"]),
        )


class StoredTodo(BaseModel):
    """A persisted action item."""

    id: str = Field(default_factory=new_id)
    user_id: str
    description: str
    type: TodoType = TodoType.REMIND
    due_date: datetime | None = None
    status: TodoStatus = TodoStatus.PENDING
    child_name: str | None = None
    source_email_id: str | None = None
    url: str | None = None
    amount: str | None = None
    confidence: float = 0.0
    auto_completed: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @classmethod
    def from_extracted(
        cls, user_id: str, extracted: ExtractedTodo, now: datetime | None = None
    ) -> StoredTodo:
        return cls(
            user_id=user_id,
            description=extracted.description,
            type=extracted.type,
            due_date=extracted.due_date,
            child_name=extracted.child_name,
            source_email_id=extracted.source_email_id,
            url=extracted.url,
            amount=extracted.amount,
            confidence=extracted.confidence,
            created_at=now or utc_now(),
        )

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "description": self.description,
            "type": self.type.value,
            "due_date": to_db_timestamp(self.due_date),
            "status": self.status.value,
            "child_name": self.child_name,
            "source_email_id": self.source_email_id,
            "url": self.url,
            "amount": self.amount,
            "confidence": self.confidence,
            "auto_completed": int(self.auto_completed),
            "created_at": to_db_timestamp(self.created_at),
            "completed_at": to_db_timestamp(self.completed_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> StoredTodo:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            description=row["description"],
            type=TodoType(row["type"]),
            due_date=_parse_stored(row["due_date"]),
            status=TodoStatus(row["status"]),
            child_name=row["child_name"],
            source_email_id=row["source_email_id"],
            url=row["url"],
            amount=row["amount"],
            confidence=row["confidence"],
            auto_completed=bool(row["auto_completed"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            completed_at=_parse_stored(row["completed_at"]),
        )


# ---------------------------------------------------------------------------
# Calendar payloads
# ---------------------------------------------------------------------------


class Reminder(BaseModel):
    method: str = "popup"
    minutes: int = Field(..., ge=0)


class CalendarEventRequest(BaseModel):
    """Insert payload handed to CalendarClient.insert_event."""

    summary: str
    description: str = ""
    location: str | None = None
    start: datetime
    end: datetime
    timezone: str
    reminders: list[Reminder] = Field(default_factory=list)
    color_id: str = "1"
    calendar_id: str = "primary"

    def to_api_body(self) -> dict[str, Any]:
        """Render the Google Calendar events.insert body."""
        body: dict[str, Any] = {
            "summary": self.summary,
            "description": self.description,
            "start": {"dateTime": self.start.isoformat(), "timeZone": self.timezone},
            "end": {"dateTime": self.end.isoformat(), "timeZone": self.timezone},
            "reminders": {
                "useDefault": False,
                "overrides": [r.model_dump() for r in self.reminders],
            },
            "colorId": self.color_id,
        }
        if self.location:
            body["location"] = self.location
        return body


class ExistingCalendarEvent(BaseModel):
    """
    An event already on the user's calendar, as returned by list_events.

    Timed events carry start; all-day events carry start_date only.
    """

    id: str
    summary: str = ""
    start: datetime | None = None
    start_date: date | None = None
    end: datetime | None = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)

    @property
    def is_all_day(self) -> bool:
        return self.start is None and self.start_date is not None


# ---------------------------------------------------------------------------
# Pass results
# ---------------------------------------------------------------------------


class SyncResult(BaseModel):
    """Outcome of one delivery pass."""

    processed: int = 0
    synced: int = 0
    failed: int = 0
    deduplicated: int = 0
    skipped: int = 0
    errors: list[ErrorDetail] = Field(default_factory=list)
    synced_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)
    circuit_open: bool = False


class CleanupResult(BaseModel):
    """Outcome of one sweep."""

    todos_completed: int = 0
    events_removed: int = 0
    todo_ids: list[str] = Field(default_factory=list)
    event_ids: list[str] = Field(default_factory=list)
    cutoff: datetime
