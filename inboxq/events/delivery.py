"""
Delivery Engine - pushes stored events to the user's calendar.

Orchestrates between:
- EventRepository (claims and delivery-state transitions)
- Deduplicator (calendar look-up before every insert)
- CalendarClient (list/insert collaborator)
- BackoffPolicy (advisory next_retry_at on failure)

Delivery is at-least-once. A pass never raises because one event failed:
once an event is claimed, any error (insert, calendar lookup, payload build)
is recorded on the event and in SyncResult.errors.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from inboxq.config import (
    DELIVERY_CALENDAR_ID,
    DELIVERY_CIRCUIT_FAIL_MAX,
    DELIVERY_DEFAULT_TIMEZONE,
    DELIVERY_FALLBACK_REMINDER_MINUTES,
    DELIVERY_MAX_RETRIES,
    DELIVERY_REMINDER_HOUR,
)
from inboxq.events.dedup import Deduplicator
from inboxq.events.models import (
    CalendarEventRequest,
    ExistingCalendarEvent,
    Reminder,
    StoredEvent,
    SyncResult,
    ensure_utc,
    utc_now,
)
from inboxq.events.repository import EventRepository
from inboxq.infrastructure.retry import BackoffPolicy, CircuitBreaker
from inboxq.observability.logging import get_logger
from inboxq.observability.telemetry import counter, time_block
from inboxq.pipeline.collaborators import CalendarClient
from inboxq.pipeline.errors import DeliveryError, ErrorDetail, ErrorKind

logger = get_logger(__name__)

CHILD_COLOR_ID = "9"
DEFAULT_COLOR_ID = "1"


def reminder_minutes(start: datetime, timezone: str) -> int:
    """
    Minutes between the event start and 19:00 local time the day before.

    Falls back to DELIVERY_FALLBACK_REMINDER_MINUTES when that moment is not
    before the start.
    """
    tz = ZoneInfo(timezone)
    local_start = ensure_utc(start).astimezone(tz)
    reminder_at = datetime.combine(
        local_start.date() - timedelta(days=1), time(hour=DELIVERY_REMINDER_HOUR), tzinfo=tz
    )
    minutes = int((local_start - reminder_at).total_seconds() // 60)
    return minutes if minutes > 0 else DELIVERY_FALLBACK_REMINDER_MINUTES


def build_description(event: StoredEvent) -> str:
    """Event description decorated with child name, confidence and source email."""
    description = event.description or ""
    if event.child_name:
        description = f"Child: {event.child_name}\n\n{description}"
    if event.confidence is not None:
        description += f"\n\nAI Confidence: {round(event.confidence * 100)}%"
    if event.source_email_id:
        description += f"\n\nSource Email ID: {event.source_email_id}"
    return description


def build_calendar_request(
    event: StoredEvent,
    timezone: str = DELIVERY_DEFAULT_TIMEZONE,
    calendar_id: str = DELIVERY_CALENDAR_ID,
) -> CalendarEventRequest:
    """
    Build the insert payload for a stored event.

    End defaults to start. Child events get their own colour.
    """
    tz = ZoneInfo(timezone)
    start = ensure_utc(event.start_at).astimezone(tz)
    end = ensure_utc(event.end_at).astimezone(tz) if event.end_at else start

    return CalendarEventRequest(
        summary=event.title,
        description=build_description(event),
        location=event.location,
        start=start,
        end=end,
        timezone=timezone,
        reminders=[Reminder(method="popup", minutes=reminder_minutes(event.start_at, timezone))],
        color_id=CHILD_COLOR_ID if event.child_name else DEFAULT_COLOR_ID,
        calendar_id=calendar_id,
    )


class DeliveryEngine:
    """
    Claims deliverable events and writes them to the calendar.

    One engine can serve many users; per-pass state (the circuit breaker)
    lives inside each sync call.
    """

    def __init__(
        self,
        calendar_client: CalendarClient,
        deduplicator: Deduplicator | None = None,
        backoff: BackoffPolicy | None = None,
        timezone: str = DELIVERY_DEFAULT_TIMEZONE,
        calendar_id: str = DELIVERY_CALENDAR_ID,
        circuit_fail_max: int = DELIVERY_CIRCUIT_FAIL_MAX,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.calendar_client = calendar_client
        self.deduplicator = deduplicator or Deduplicator()
        self.backoff = backoff or BackoffPolicy()
        self.timezone = timezone
        self.calendar_id = calendar_id
        self.circuit_fail_max = circuit_fail_max
        self.clock = clock
        self.repository = EventRepository

    async def sync_pending_events_for_user(
        self,
        user_id: str,
        auth: Any,
        max_retries: int = DELIVERY_MAX_RETRIES,
        timezone: str | None = None,
    ) -> SyncResult:
        """
        Retry sweep: deliver every pending/failed event with budget left.

        Args:
            user_id: Owner of the events
            auth: Opaque credentials handed to the calendar client
            max_retries: Events with retry_count >= max_retries are left alone
            timezone: User's IANA timezone (engine default when None)

        Returns:
            SyncResult for the pass
        """
        events = self.repository.list_deliverable(user_id, max_retries, now=self.clock())
        if not events:
            return SyncResult()

        logger.info("Found %d deliverable events for user %s", len(events), user_id)
        return await self._deliver(user_id, auth, events, max_retries, timezone or self.timezone)

    async def sync_events(
        self,
        user_id: str,
        auth: Any,
        event_ids: Sequence[str],
        max_retries: int = DELIVERY_MAX_RETRIES,
        timezone: str | None = None,
    ) -> SyncResult:
        """Deliver a specific set of events (the ones a pipeline run just persisted)."""
        events = self.repository.list_deliverable(
            user_id,
            max_retries,
            limit=max(len(event_ids), 1),
            event_ids=event_ids,
            now=self.clock(),
        )
        if not events:
            return SyncResult()
        return await self._deliver(user_id, auth, events, max_retries, timezone or self.timezone)

    async def _deliver(
        self,
        user_id: str,
        auth: Any,
        events: Sequence[StoredEvent],
        max_retries: int,
        timezone: str,
    ) -> SyncResult:
        result = SyncResult()
        breaker = CircuitBreaker(stage="calendar.insert", fail_max=self.circuit_fail_max)

        for index, candidate in enumerate(events):
            if breaker.is_open:
                # Untouched events keep their state and retry budget
                result.skipped += len(events) - index
                result.circuit_open = True
                logger.error(
                    "Calendar circuit open for user %s; %d events left for the next pass",
                    user_id,
                    len(events) - index,
                )
                break

            claimed = self.repository.claim(user_id, candidate.id, max_retries, now=self.clock())
            if claimed is None:
                result.skipped += 1
                continue

            result.processed += 1
            try:
                await self._deliver_one(user_id, auth, claimed, timezone, breaker, result)
            except Exception as exc:
                # A claimed event must leave in_progress whatever went wrong
                logger.exception("Delivery of event %s failed outside the insert", claimed.id)
                self._record_failure(user_id, claimed, exc, result, step="deliver")

        result.circuit_open = result.circuit_open or breaker.is_open
        counter("delivery.synced", result.synced)
        counter("delivery.failed", result.failed)
        logger.info(
            "Delivery pass for user %s: processed=%d synced=%d (deduplicated=%d) "
            "failed=%d skipped=%d",
            user_id,
            result.processed,
            result.synced,
            result.deduplicated,
            result.failed,
            result.skipped,
        )
        return result

    async def _deliver_one(
        self,
        user_id: str,
        auth: Any,
        event: StoredEvent,
        timezone: str,
        breaker: CircuitBreaker,
        result: SyncResult,
    ) -> None:
        existing = await self._list_window(user_id, auth, event, timezone)
        duplicate = self.deduplicator.find_duplicate(existing, event, timezone)
        if duplicate is not None:
            if self.repository.mark_synced(user_id, event.id, duplicate.id, now=self.clock()):
                result.synced += 1
                result.deduplicated += 1
                result.synced_ids.append(event.id)
                counter("delivery.deduplicated")
            return

        request = build_calendar_request(event, timezone, self.calendar_id)
        try:
            with time_block("delivery.insert"):
                external_id = await self.calendar_client.insert_event(auth, request)
            if not external_id:
                raise DeliveryError("calendar insert returned no event id")
        except Exception as exc:
            breaker.record_failure()
            self._record_failure(user_id, event, exc, result, step="calendar_insert")
            return

        breaker.record_success()
        if self.repository.mark_synced(user_id, event.id, external_id, now=self.clock()):
            result.synced += 1
            result.synced_ids.append(event.id)

    async def _list_window(
        self, user_id: str, auth: Any, event: StoredEvent, timezone: str
    ) -> list[ExistingCalendarEvent]:
        """Calendar events around the candidate; empty when listing fails."""
        time_min, time_max = self.deduplicator.lookup_window(event.start_at, timezone)
        try:
            return list(await self.calendar_client.list_events(auth, time_min, time_max))
        except Exception as exc:
            # Listing is only a safety net; the insert still goes ahead
            counter("delivery.list_errors")
            logger.warning(
                "Calendar listing failed for event %s (user %s), skipping dedup: %s",
                event.id,
                user_id,
                exc,
            )
            return []

    def _record_failure(
        self, user_id: str, event: StoredEvent, exc: Exception, result: SyncResult, step: str
    ) -> None:
        now = self.clock()
        message = str(exc) or type(exc).__name__
        next_retry_at = self.backoff.next_retry_at(event.retry_count, now)
        self.repository.mark_failed(user_id, event.id, message, next_retry_at, now=now)

        result.failed += 1
        result.failed_ids.append(event.id)
        result.errors.append(
            ErrorDetail(
                kind=ErrorKind.DELIVERY,
                message=message,
                step=step,
                event_id=event.id,
                context={
                    "retry_count": event.retry_count + 1,
                    "next_retry_in": self.backoff.describe(event.retry_count),
                },
            )
        )
        logger.warning(
            "Failed to deliver event %s for user %s (attempt %d): %s",
            event.id,
            user_id,
            event.retry_count + 1,
            message,
        )
