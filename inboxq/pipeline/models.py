"""
Pipeline run models: fetched emails, run options, extraction batch and the
per-run result.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from inboxq.config import (
    DEFAULT_TIMEZONE,
    PIPELINE_DEFAULT_AI_PROVIDER,
    PIPELINE_DEFAULT_MAX_RESULTS,
)
from inboxq.events.models import ExtractedEvent, ExtractedTodo, coerce_datetime
from inboxq.pipeline.errors import ErrorDetail


class DateRange(str, Enum):
    """How far back the fetch collaborator looks."""

    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_3_DAYS = "last3days"
    LAST_7_DAYS = "last7days"
    LAST_30_DAYS = "last30days"
    LAST_90_DAYS = "last90days"

    @property
    def days_back(self) -> int:
        return _DAYS_BACK[self]

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DAYS_BACK = {
    DateRange.TODAY: 0,
    DateRange.YESTERDAY: 1,
    DateRange.LAST_3_DAYS: 3,
    DateRange.LAST_7_DAYS: 7,
    DateRange.LAST_30_DAYS: 30,
    DateRange.LAST_90_DAYS: 90,
}

_DESCRIPTIONS = {
    DateRange.TODAY: "today",
    DateRange.YESTERDAY: "yesterday",
    DateRange.LAST_3_DAYS: "the last 3 days",
    DateRange.LAST_7_DAYS: "the last 7 days",
    DateRange.LAST_30_DAYS: "the last 30 days",
    DateRange.LAST_90_DAYS: "the last 3 months",
}


class Attachment(BaseModel):
    filename: str
    mime_type: str | None = None
    content: str | None = Field(default=None, description="Extracted text, if any")


class Email(BaseModel):
    """An email as delivered by the fetch collaborator."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    from_address: str = Field(default="", alias="from")
    subject: str = ""
    date: datetime | None = None
    body: str = ""
    attachments: list[Attachment] = Field(default_factory=list)

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> datetime | None:
        return coerce_datetime(value)


class ExtractionBatch(BaseModel):
    """Everything the extractor derived from one batch of emails."""

    events: list[ExtractedEvent] = Field(default_factory=list)
    todos: list[ExtractedTodo] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.events and not self.todos


class ProcessingOptions(BaseModel):
    date_range: DateRange = DateRange.YESTERDAY
    max_results: int = Field(default=PIPELINE_DEFAULT_MAX_RESULTS, ge=1)
    ai_provider: str = PIPELINE_DEFAULT_AI_PROVIDER
    dry_run: bool = False
    timezone: str = DEFAULT_TIMEZONE


class ProcessingResult(BaseModel):
    """
    Aggregate outcome of one pipeline run.

    events_created / todos_created count rows actually inserted; on a dry run
    they count what would have been persisted.
    """

    success: bool = True
    run_id: str = ""
    emails_fetched: int = 0
    emails_processed: int = 0
    emails_skipped: int = 0
    events_created: int = 0
    todos_created: int = 0
    events_synced: int = 0
    events_failed: int = 0
    events_removed: int = 0
    todos_completed: int = 0
    errors: list[ErrorDetail] = Field(default_factory=list)
    processing_time_ms: int = 0
    dry_run: bool = False
