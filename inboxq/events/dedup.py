"""
Calendar duplicate detection.

The pipeline can run several times over overlapping date ranges (manual
trigger plus cron) and the extractor has no memory of what is already on the
calendar, so every insert is preceded by a look at the calendar around the
event's start.

Two events are the same when their titles match after normalisation (or are
fuzzy-close) and their start times fall inside the tolerance window.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from rapidfuzz import fuzz

from inboxq.config import (
    DEDUP_TITLE_SIMILARITY,
    DEDUP_TOLERANCE_MINUTES,
    DEDUP_WINDOW_HOURS,
    DELIVERY_DEFAULT_TIMEZONE,
)
from inboxq.events.models import ExistingCalendarEvent, StoredEvent, ensure_utc
from inboxq.observability.logging import get_logger

logger = get_logger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """
    Case-fold, drop punctuation and collapse whitespace.

    >>> normalize_title("  Year 3: Trip to the ZOO!! ")
    'year 3 trip to the zoo'
    """
    if not title:
        return ""
    text = _PUNCTUATION.sub(" ", title.casefold())
    return _WHITESPACE.sub(" ", text).strip()


class Deduplicator:
    """Decides whether a candidate event is already on the calendar."""

    def __init__(
        self,
        tolerance: timedelta = timedelta(minutes=DEDUP_TOLERANCE_MINUTES),
        title_similarity: float = DEDUP_TITLE_SIMILARITY,
        window: timedelta = timedelta(hours=DEDUP_WINDOW_HOURS),
    ):
        if not 0.0 < title_similarity <= 1.0:
            raise ValueError(f"title_similarity must be in (0, 1], got {title_similarity}")
        self.tolerance = tolerance
        self.title_similarity = title_similarity
        self.window = window

    def titles_match(self, left: str, right: str) -> bool:
        a, b = normalize_title(left), normalize_title(right)
        if not a or not b:
            return False
        if a == b:
            return True
        return fuzz.ratio(a, b) / 100.0 >= self.title_similarity

    def starts_match(
        self, existing: ExistingCalendarEvent, candidate_start: datetime, timezone: str
    ) -> bool:
        """
        Timed events: |difference| < tolerance.
        All-day events: same calendar date in the user's timezone.
        """
        if existing.start is not None:
            return abs(ensure_utc(existing.start) - ensure_utc(candidate_start)) < self.tolerance
        if existing.start_date is not None:
            local = ensure_utc(candidate_start).astimezone(ZoneInfo(timezone))
            return local.date() == existing.start_date
        return False

    def find_duplicate(
        self,
        existing_events: Iterable[ExistingCalendarEvent],
        candidate: StoredEvent,
        timezone: str = DELIVERY_DEFAULT_TIMEZONE,
    ) -> ExistingCalendarEvent | None:
        """First existing event that matches the candidate, if any."""
        for existing in existing_events:
            if self.titles_match(candidate.title, existing.summary) and self.starts_match(
                existing, candidate.start_at, timezone
            ):
                logger.info(
                    "Duplicate event found: '%s' similar to existing %s",
                    candidate.title,
                    existing.id,
                )
                return existing
        return None

    def is_duplicate(
        self,
        existing_events: Iterable[ExistingCalendarEvent],
        candidate: StoredEvent,
        timezone: str = DELIVERY_DEFAULT_TIMEZONE,
    ) -> bool:
        return self.find_duplicate(existing_events, candidate, timezone) is not None

    def lookup_window(
        self, start: datetime, timezone: str = DELIVERY_DEFAULT_TIMEZONE
    ) -> tuple[datetime, datetime]:
        """
        Calendar listing range around start, computed in the user's timezone
        and returned in UTC.
        """
        local = ensure_utc(start).astimezone(ZoneInfo(timezone))
        return (
            ensure_utc(local - self.window),
            ensure_utc(local + self.window),
        )
