"""
Stale-item sweeper.

Removes events that started more than SWEEP_THRESHOLD_HOURS ago and
auto-completes todos that fell due before the same cutoff. Runs before
delivery so that nothing already in the past is pushed to the calendar.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from inboxq.config import DELIVERY_MAX_RETRIES, SWEEP_THRESHOLD_HOURS
from inboxq.events.models import CleanupResult, utc_now
from inboxq.events.repository import EventRepository, TodoRepository
from inboxq.infrastructure.database import db_transaction, retry_on_db_lock
from inboxq.observability.logging import get_logger
from inboxq.observability.telemetry import counter

logger = get_logger(__name__)


@retry_on_db_lock()
def cleanup_past_items(
    user_id: str,
    now: datetime | None = None,
    threshold_hours: int = SWEEP_THRESHOLD_HOURS,
    max_retries: int = DELIVERY_MAX_RETRIES,
) -> CleanupResult:
    """
    Sweep one user's past events and todos.

    Events that exhausted their retry budget are kept so they stay visible on
    the administrative surface, and live delivery claims are never pulled out
    from under a running pass.

    Args:
        user_id: Owner of the items
        now: Reference time (defaults to the current UTC time)
        threshold_hours: Age past which an item is stale
        max_retries: Retry ceiling used to recognise exhausted failures

    Returns:
        CleanupResult with removed event ids and completed todo ids

    Side Effects:
        - Deletes rows from events
        - Updates todos to done with auto_completed = 1
        - Both in one transaction
    """
    moment = now or utc_now()
    cutoff = moment - timedelta(hours=threshold_hours)

    with db_transaction() as conn:
        event_ids = EventRepository.delete_past(conn, user_id, cutoff, max_retries, moment)
        todo_ids = TodoRepository.auto_complete_past(conn, user_id, cutoff, moment)

    if event_ids or todo_ids:
        counter("sweeper.events_removed", len(event_ids))
        counter("sweeper.todos_completed", len(todo_ids))
        logger.info(
            "Swept user %s: removed %d past events, auto-completed %d todos (cutoff %s)",
            user_id,
            len(event_ids),
            len(todo_ids),
            cutoff.isoformat(),
        )

    return CleanupResult(
        todos_completed=len(todo_ids),
        events_removed=len(event_ids),
        todo_ids=todo_ids,
        event_ids=event_ids,
        cutoff=cutoff,
    )
