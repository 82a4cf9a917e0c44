"""
Pytest configuration for inboxq tests

Every test gets its own SQLite file (INBOXQ_DB_PATH) with the schema applied
and a fresh connection pool. In-memory fakes stand in for the Gmail, AI and
Calendar collaborators.
"""

from __future__ import annotations

import itertools
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import pytest

from inboxq.events.models import (
    CalendarEventRequest,
    ExistingCalendarEvent,
    ensure_utc,
)
from inboxq.infrastructure.database import close_pool, init_database
from inboxq.observability.telemetry import reset_telemetry
from inboxq.pipeline.models import DateRange, Email, ExtractionBatch

FIXED_NOW = datetime(2026, 3, 2, 7, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point the pool at a per-test database file."""
    db_path = tmp_path / "inboxq_test.db"
    monkeypatch.setenv("INBOXQ_DB_PATH", str(db_path))
    close_pool()
    init_database()
    reset_telemetry()
    yield db_path
    close_pool()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


class FakeFetcher:
    def __init__(self, emails: Sequence[Email] = (), error: Exception | None = None):
        self.emails = list(emails)
        self.error = error
        self.calls: list[tuple[DateRange, int]] = []

    async def fetch_emails(
        self, auth: Any, date_range: DateRange, max_results: int
    ) -> list[Email]:
        self.calls.append((date_range, max_results))
        if self.error is not None:
            raise self.error
        return self.emails[:max_results]


class FakeExtractor:
    """Returns a canned ExtractionBatch per email id."""

    def __init__(
        self,
        by_email: dict[str, ExtractionBatch] | None = None,
        error: Exception | None = None,
    ):
        self.by_email = by_email or {}
        self.error = error
        self.calls: list[list[str]] = []

    async def extract(self, emails: Sequence[Email], ai_provider: str) -> ExtractionBatch:
        self.calls.append([email.id for email in emails])
        if self.error is not None:
            raise self.error
        batch = ExtractionBatch()
        for email in emails:
            found = self.by_email.get(email.id)
            if found is not None:
                batch.events.extend(found.events)
                batch.todos.extend(found.todos)
        return batch


class FakeCalendar:
    """
    In-memory calendar.

    fail_titles: titles whose insert raises; fail_all: every insert raises;
    list_error: list_events raises.
    """

    def __init__(self):
        self.events: dict[str, ExistingCalendarEvent] = {}
        self.inserted: list[CalendarEventRequest] = []
        self.insert_attempts = 0
        self.list_calls = 0
        self.fail_titles: set[str] = set()
        self.fail_all = False
        self.list_error: Exception | None = None
        self._ids = itertools.count(1)

    def add_existing(self, summary: str, start: datetime) -> ExistingCalendarEvent:
        event = ExistingCalendarEvent(id=f"ext-{next(self._ids)}", summary=summary, start=start)
        self.events[event.id] = event
        return event

    async def insert_event(self, auth: Any, request: CalendarEventRequest) -> str:
        self.insert_attempts += 1
        if self.fail_all or request.summary in self.fail_titles:
            raise RuntimeError(f"calendar rejected '{request.summary}'")
        self.inserted.append(request)
        created = self.add_existing(request.summary, request.start)
        return created.id

    async def list_events(
        self, auth: Any, time_min: datetime, time_max: datetime
    ) -> list[ExistingCalendarEvent]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return [
            event
            for event in self.events.values()
            if event.start is not None
            and ensure_utc(time_min) <= ensure_utc(event.start) <= ensure_utc(time_max)
        ]


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def make_email():
    def _make(email_id: str, subject: str = "School newsletter") -> Email:
        return Email(
            id=email_id,
            from_address="office@school.example",
            subject=subject,
            date="2026-03-01T08:00:00Z",
            body=f"Body of {email_id}",
        )

    return _make


@pytest.fixture
def fake_fetcher():
    return FakeFetcher


@pytest.fixture
def fake_extractor():
    return FakeExtractor
