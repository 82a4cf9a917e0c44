"""
Tests for the event/todo store and the delivery state machine.

Validates:
1. persist_extraction inserts pending rows and skips replays
2. Claims are exclusive; stale claims can be reclaimed
3. Nothing leaves synced
4. Retry ceiling excludes exhausted events from delivery
5. Schema constraints back up the state machine
6. Events past the sweep threshold are never claimed
7. Listing filters and explicit deletion
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from inboxq.events.models import (
    ExtractedEvent,
    ExtractedTodo,
    SyncStatus,
    TodoStatus,
    TodoType,
)
from inboxq.events.repository import EventRepository, TodoRepository, persist_extraction
from inboxq.infrastructure.database import db_transaction

USER = "user-1"
START = datetime(2026, 3, 5, 10, 0, tzinfo=UTC)


def _event(title: str = "Swimming Gala", start: datetime = START, email_id: str = "msg-1"):
    return ExtractedEvent(title=title, date=start, source_email_id=email_id, confidence=0.9)


def _persist_one(now, **kwargs):
    outcome = persist_extraction(USER, [_event(**kwargs)], [], now=now)
    return outcome.events[0]


def test_persist_inserts_pending_events(now):
    outcome = persist_extraction(
        USER,
        [_event(), _event("Book Fair", START + timedelta(days=1))],
        [ExtractedTodo(description="Pay for trip", type="pay", amount=12.5, source_email_id="m")],
        now=now,
    )

    assert len(outcome.events) == 2
    assert len(outcome.todos) == 1

    stored = EventRepository.get_by_id(USER, outcome.event_ids[0])
    assert stored.sync_status == SyncStatus.PENDING
    assert stored.retry_count == 0
    assert stored.start_at == START
    assert stored.created_at == now

    todo = TodoRepository.get_by_id(USER, outcome.todos[0].id)
    assert todo.type == TodoType.PAY
    assert todo.amount == "12.5"
    assert todo.status == TodoStatus.PENDING


def test_replayed_extraction_is_skipped(now):
    persist_extraction(USER, [_event()], [], now=now)

    again = persist_extraction(USER, [_event()], [], now=now)

    assert again.events == []
    assert len(EventRepository.list_by_user(USER)) == 1


def test_same_event_from_another_user_is_kept(now):
    persist_extraction(USER, [_event()], [], now=now)
    other = persist_extraction("user-2", [_event()], [], now=now)

    assert len(other.events) == 1


def test_get_by_id_is_user_scoped(now):
    event = _persist_one(now)

    assert EventRepository.get_by_id("user-2", event.id) is None


def test_claim_is_exclusive(now):
    event = _persist_one(now)

    claimed = EventRepository.claim(USER, event.id, max_retries=5, now=now)
    assert claimed is not None
    assert claimed.sync_status == SyncStatus.IN_PROGRESS
    assert claimed.claimed_at == now

    assert EventRepository.claim(USER, event.id, max_retries=5, now=now) is None


def test_stale_claim_can_be_reclaimed(now):
    event = _persist_one(now)
    EventRepository.claim(USER, event.id, max_retries=5, now=now)

    assert EventRepository.claim(USER, event.id, 5, now=now + timedelta(minutes=5)) is None
    later = now + timedelta(minutes=16)
    assert EventRepository.claim(USER, event.id, 5, now=later) is not None
    assert [e.id for e in EventRepository.list_deliverable(USER, 5, now=now)] == []


def test_mark_synced_requires_claim(now):
    event = _persist_one(now)

    assert not EventRepository.mark_synced(USER, event.id, "ext-1", now=now)

    EventRepository.claim(USER, event.id, 5, now=now)
    assert EventRepository.mark_synced(USER, event.id, "ext-1", now=now)

    stored = EventRepository.get_by_id(USER, event.id)
    assert stored.sync_status == SyncStatus.SYNCED
    assert stored.external_calendar_id == "ext-1"
    assert stored.synced_at == now
    assert stored.claimed_at is None


def test_mark_synced_rejects_empty_external_id(now):
    event = _persist_one(now)
    EventRepository.claim(USER, event.id, 5, now=now)

    with pytest.raises(ValueError):
        EventRepository.mark_synced(USER, event.id, "", now=now)


def test_synced_is_terminal(now):
    event = _persist_one(now)
    EventRepository.claim(USER, event.id, 5, now=now)
    EventRepository.mark_synced(USER, event.id, "ext-1", now=now)

    assert EventRepository.claim(USER, event.id, 5, now=now + timedelta(days=1)) is None
    assert not EventRepository.mark_failed(USER, event.id, "boom", None, now=now)
    assert EventRepository.get_by_id(USER, event.id).sync_status == SyncStatus.SYNCED


def test_mark_failed_spends_retry_budget(now):
    event = _persist_one(now)
    EventRepository.claim(USER, event.id, 5, now=now)
    retry_at = now + timedelta(minutes=1)

    assert EventRepository.mark_failed(USER, event.id, "quota exceeded", retry_at, now=now)

    stored = EventRepository.get_by_id(USER, event.id)
    assert stored.sync_status == SyncStatus.FAILED
    assert stored.retry_count == 1
    assert stored.sync_error == "quota exceeded"
    assert stored.next_retry_at == retry_at


def test_retry_ceiling(now):
    event = _persist_one(now)
    EventRepository.claim(USER, event.id, 1, now=now)
    EventRepository.mark_failed(USER, event.id, "boom", None, now=now)

    assert EventRepository.list_deliverable(USER, max_retries=1, now=now) == []
    assert EventRepository.claim(USER, event.id, 1, now=now) is None
    assert [e.id for e in EventRepository.list_exhausted(USER, 1)] == [event.id]

    # A higher ceiling makes it deliverable again
    assert [e.id for e in EventRepository.list_deliverable(USER, 2, now=now)] == [event.id]


def test_list_deliverable_filters_by_ids(now):
    first = _persist_one(now)
    second = _persist_one(now, title="Book Fair")

    found = EventRepository.list_deliverable(USER, 5, event_ids=[second.id], now=now)

    assert [e.id for e in found] == [second.id]
    assert EventRepository.list_deliverable(USER, 5, event_ids=[], now=now) == []
    assert {e.id for e in EventRepository.list_deliverable(USER, 5, now=now)} == {
        first.id,
        second.id,
    }


def test_count_by_status(now):
    first = _persist_one(now)
    second = _persist_one(now, title="Book Fair")
    _persist_one(now, title="Sports Day")
    EventRepository.claim(USER, first.id, 5, now=now)
    EventRepository.mark_synced(USER, first.id, "ext-1", now=now)
    EventRepository.claim(USER, second.id, 5, now=now)

    counts = EventRepository.count_by_status(USER)

    assert counts == {"total": 3, "pending": 1, "in_progress": 1, "synced": 1, "failed": 0}
    assert EventRepository.count_by_status("user-2")["total"] == 0


def test_list_by_user_and_upcoming(now):
    soon = _persist_one(now, title="Book Fair", start=now + timedelta(days=2))
    _persist_one(now, title="Summer Fete", start=now + timedelta(days=30))

    assert len(EventRepository.list_by_user(USER)) == 2
    assert EventRepository.list_by_user(USER, status=SyncStatus.SYNCED) == []
    assert [e.id for e in EventRepository.list_upcoming(USER, days_ahead=7, now=now)] == [soon.id]


def test_todo_complete(now):
    outcome = persist_extraction(
        USER, [], [ExtractedTodo(description="Sign form", type="SIGN")], now=now
    )
    todo_id = outcome.todos[0].id

    assert TodoRepository.complete(USER, todo_id, now=now)
    assert not TodoRepository.complete(USER, todo_id, now=now)

    done = TodoRepository.get_by_id(USER, todo_id)
    assert done.status == TodoStatus.DONE
    assert not done.auto_completed
    assert TodoRepository.list_by_user(USER, status=TodoStatus.PENDING) == []


def test_schema_rejects_synced_without_external_id(now):
    event = _persist_one(now)

    with pytest.raises(sqlite3.IntegrityError):
        with db_transaction() as conn:
            conn.execute("UPDATE events SET sync_status = 'synced' WHERE id = ?", (event.id,))



def test_past_events_are_not_claimable(now):
    past = _persist_one(now, title="Harvest Festival", start=now - timedelta(days=2))
    today = _persist_one(now, title="Assembly", start=now - timedelta(hours=3))

    assert [e.id for e in EventRepository.list_deliverable(USER, 5, now=now)] == [today.id]
    assert EventRepository.claim(USER, past.id, 5, now=now) is None
    assert EventRepository.claim(USER, today.id, 5, now=now) is not None


def test_list_by_user_filters(now):
    emma = persist_extraction(
        USER,
        [
            ExtractedEvent(title="Swimming Gala", date=START, child_name="Emma"),
            ExtractedEvent(title="Book Fair", date=START + timedelta(days=3), child_name="Emma"),
        ],
        [],
        now=now,
    ).events
    _persist_one(now, title="Football", start=START + timedelta(days=1))

    by_child = EventRepository.list_by_user(USER, child_name="Emma")
    assert [e.id for e in by_child] == [e.id for e in emma]

    window = EventRepository.list_by_user(
        USER, date_from=START + timedelta(hours=1), date_to=START + timedelta(days=3)
    )
    assert [e.title for e in window] == ["Football"]

    later = EventRepository.list_by_user(
        USER, child_name="Emma", date_from=START + timedelta(days=1)
    )
    assert [e.title for e in later] == ["Book Fair"]


def test_delete_is_user_scoped(now):
    event = _persist_one(now)

    assert not EventRepository.delete("user-2", event.id)
    assert EventRepository.delete(USER, event.id)
    assert EventRepository.get_by_id(USER, event.id) is None
    assert not EventRepository.delete(USER, event.id)


def test_deleted_claim_cannot_be_marked(now):
    event = _persist_one(now)
    EventRepository.claim(USER, event.id, 5, now=now)
    EventRepository.delete(USER, event.id)

    assert not EventRepository.mark_synced(USER, event.id, "ext-1", now=now)
