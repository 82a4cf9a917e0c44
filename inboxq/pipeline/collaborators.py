"""
Interfaces of the external collaborators the pipeline drives.

The Gmail/Calendar HTTP clients, the AI extractor and the per-user feature
flags live outside this package; they are injected into EmailProcessor and
DeliveryEngine and only need to satisfy these protocols.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from inboxq.events.models import CalendarEventRequest, ExistingCalendarEvent

if TYPE_CHECKING:
    from inboxq.pipeline.models import DateRange, Email, ExtractionBatch


@runtime_checkable
class EmailFetcher(Protocol):
    async def fetch_emails(
        self, auth: Any, date_range: DateRange, max_results: int
    ) -> list[Email]: ...


@runtime_checkable
class EventTodoExtractor(Protocol):
    async def extract(self, emails: Sequence[Email], ai_provider: str) -> ExtractionBatch: ...


@runtime_checkable
class CalendarClient(Protocol):
    async def insert_event(self, auth: Any, request: CalendarEventRequest) -> str:
        """Create the event and return its external calendar id."""
        ...

    async def list_events(
        self, auth: Any, time_min: datetime, time_max: datetime
    ) -> list[ExistingCalendarEvent]: ...


# is_calendar_delivery_enabled(user_id)
DeliveryGate = Callable[[str], bool]


def always_enabled(user_id: str) -> bool:
    return True
