"""
Tests for the stale-item sweeper.

Validates:
1. Events older than the threshold are deleted, newer ones kept
2. Exhausted failures and live claims survive the sweep
3. Past-due todos are auto-completed
"""

from __future__ import annotations

from datetime import timedelta

from inboxq.events.models import ExtractedEvent, ExtractedTodo, TodoStatus, to_db_timestamp
from inboxq.events.repository import EventRepository, TodoRepository, persist_extraction
from inboxq.events.sweeper import cleanup_past_items
from inboxq.infrastructure.database import db_transaction
from inboxq.observability.telemetry import get_counter

USER = "user-1"


def _persist(now, title, start):
    event = ExtractedEvent(title=title, date=start, source_email_id="msg-1")
    return persist_extraction(USER, [event], [], now=now).events[0]


def _mark_claimed(event_id, claimed_at):
    with db_transaction() as conn:
        conn.execute(
            "UPDATE events SET sync_status = 'in_progress', claimed_at = ? WHERE id = ?",
            (to_db_timestamp(claimed_at), event_id),
        )


def test_removes_events_past_threshold(now):
    old = _persist(now, "Harvest Festival", now - timedelta(days=3))
    recent = _persist(now, "Assembly", now - timedelta(hours=12))
    future = _persist(now, "Swimming Gala", now + timedelta(days=3))

    cleanup = cleanup_past_items(USER, now=now)

    assert cleanup.event_ids == [old.id]
    assert cleanup.events_removed == 1
    assert cleanup.cutoff == now - timedelta(hours=24)
    assert EventRepository.get_by_id(USER, old.id) is None
    assert EventRepository.get_by_id(USER, recent.id) is not None
    assert EventRepository.get_by_id(USER, future.id) is not None
    assert get_counter("sweeper.events_removed") == 1


def test_custom_threshold(now):
    recent = _persist(now, "Assembly", now - timedelta(hours=12))

    cleanup = cleanup_past_items(USER, now=now, threshold_hours=6)

    assert cleanup.event_ids == [recent.id]


def test_keeps_exhausted_failures(now):
    event = _persist(now, "Harvest Festival", now - timedelta(days=3))
    # Claimed and failed back when the event was still upcoming
    EventRepository.claim(USER, event.id, 1, now=now - timedelta(days=4))
    EventRepository.mark_failed(USER, event.id, "calendar down", None, now=now)

    cleanup = cleanup_past_items(USER, now=now, max_retries=1)

    assert cleanup.events_removed == 0
    assert EventRepository.get_by_id(USER, event.id) is not None


def test_keeps_live_claims_but_not_stale_ones(now):
    live = _persist(now, "Harvest Festival", now - timedelta(days=3))
    stale = _persist(now, "Nativity Play", now - timedelta(days=3))
    _mark_claimed(live.id, now - timedelta(minutes=5))
    _mark_claimed(stale.id, now - timedelta(hours=1))

    cleanup = cleanup_past_items(USER, now=now)

    assert cleanup.event_ids == [stale.id]
    assert EventRepository.get_by_id(USER, live.id) is not None


def test_auto_completes_past_todos(now):
    outcome = persist_extraction(
        USER,
        [],
        [
            ExtractedTodo(description="Return library book", due_date=now - timedelta(days=5)),
            ExtractedTodo(description="Pay for trip", due_date=now + timedelta(days=5)),
            ExtractedTodo(description="Read newsletter"),
        ],
        now=now,
    )
    past, upcoming, undated = outcome.todos

    cleanup = cleanup_past_items(USER, now=now)

    assert cleanup.todo_ids == [past.id]
    assert cleanup.todos_completed == 1
    done = TodoRepository.get_by_id(USER, past.id)
    assert done.status == TodoStatus.DONE
    assert done.auto_completed
    assert done.completed_at == now
    assert TodoRepository.get_by_id(USER, upcoming.id).status == TodoStatus.PENDING
    assert TodoRepository.get_by_id(USER, undated.id).status == TodoStatus.PENDING


def test_sweep_is_user_scoped(now):
    _persist(now, "Harvest Festival", now - timedelta(days=3))

    assert cleanup_past_items("user-2", now=now).events_removed == 0
    assert len(EventRepository.list_by_user(USER)) == 1


def test_sweep_twice_is_noop(now):
    _persist(now, "Harvest Festival", now - timedelta(days=3))
    cleanup_past_items(USER, now=now)

    again = cleanup_past_items(USER, now=now)

    assert again.events_removed == 0
    assert again.todos_completed == 0
