"""
Tests for extraction and pipeline models.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest
from pydantic import ValidationError

from inboxq.events.models import (
    ExistingCalendarEvent,
    ExtractedEvent,
    ExtractedTodo,
    TodoType,
    coerce_datetime,
    to_db_timestamp,
)
from inboxq.pipeline.errors import ErrorKind, ExtractionError
from inboxq.pipeline.models import DateRange, Email, ProcessingOptions


def test_coerce_datetime_variants():
    assert coerce_datetime(None) is None
    assert coerce_datetime("") is None
    assert coerce_datetime("2026-03-05") == datetime(2026, 3, 5, tzinfo=UTC)
    assert coerce_datetime("2026-03-05T10:00:00+01:00") == datetime(2026, 3, 5, 9, tzinfo=UTC)
    assert coerce_datetime(date(2026, 3, 5)) == datetime(2026, 3, 5, tzinfo=UTC)
    # Naive values are taken as UTC
    assert coerce_datetime(datetime(2026, 3, 5, 10)) == datetime(2026, 3, 5, 10, tzinfo=UTC)


def test_coerce_datetime_free_form():
    assert coerce_datetime("5 March 2026 10:00") == datetime(2026, 3, 5, 10, tzinfo=UTC)


def test_coerce_datetime_rejects_other_types():
    with pytest.raises(ValueError):
        coerce_datetime(12345)


def test_db_timestamps_sort_chronologically():
    early = datetime(2026, 3, 5, 9, 59, 59, tzinfo=UTC)
    late = datetime(2026, 3, 5, 10, 0, 0, 1, tzinfo=UTC)

    assert to_db_timestamp(early) < to_db_timestamp(late)
    assert to_db_timestamp(None) is None


def test_extracted_event_title_is_stripped():
    event = ExtractedEvent(title="  Swimming Gala ", date="2026-03-05T10:00:00Z")

    assert event.title == "Swimming Gala"
    assert event.date == datetime(2026, 3, 5, 10, tzinfo=UTC)


def test_extracted_event_rejects_blank_title():
    with pytest.raises(ValidationError):
        ExtractedEvent(title="   ", date="2026-03-05")


def test_extracted_event_rejects_bad_confidence():
    with pytest.raises(ValidationError):
        ExtractedEvent(title="Gala", date="2026-03-05", confidence=1.5)


def test_extracted_todo_type_normalised():
    assert ExtractedTodo(description="Pay", type="pay").type == TodoType.PAY
    assert ExtractedTodo(description="Remember", type=None).type == TodoType.REMIND

    with pytest.raises(ValidationError):
        ExtractedTodo(description="Dance", type="dance")


def test_existing_calendar_event_parses_strings():
    existing = ExistingCalendarEvent(id="ext-1", start="2026-03-05T10:00:00Z")

    assert existing.start == datetime(2026, 3, 5, 10, tzinfo=UTC)
    assert not existing.is_all_day


def test_email_accepts_from_alias():
    email = Email.model_validate({"id": "msg-1", "from": "office@school.example"})

    assert email.from_address == "office@school.example"
    assert email.date is None


def test_date_range_labels():
    assert DateRange.LAST_90_DAYS.description == "the last 3 months"
    assert DateRange("last3days").days_back == 3


def test_processing_options_defaults():
    options = ProcessingOptions()

    assert options.date_range == DateRange.YESTERDAY
    assert not options.dry_run

    with pytest.raises(ValidationError):
        ProcessingOptions(max_results=0)


def test_pipeline_error_detail():
    error = ExtractionError("extract failed: boom", context={"step": "extract", "run_id": "r1"})

    detail = error.to_detail()

    assert detail.kind == ErrorKind.EXTRACTION
    assert detail.step == "extract"
    assert detail.context == {"run_id": "r1"}
    assert "ExtractionError" in repr(error)
