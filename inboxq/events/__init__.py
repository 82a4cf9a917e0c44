"""
Event and todo store: models, repositories, calendar dedup, delivery and the
stale-item sweeper.
"""

from inboxq.events.models import (
    CleanupResult,
    StoredEvent,
    StoredTodo,
    SyncResult,
    SyncStatus,
    TodoStatus,
    TodoType,
)

__all__ = [
    # Models
    "CleanupResult",
    "StoredEvent",
    "StoredTodo",
    "SyncResult",
    "SyncStatus",
    "TodoStatus",
    "TodoType",
]
