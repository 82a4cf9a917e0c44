"""
Error taxonomy for the processing pipeline.

Fetch, extraction and persistence failures abort a run and are raised as the
matching PipelineError subclass, carrying the failed ProcessingResult.
Delivery failures are absorbed into per-event state and surface only as
ErrorDetail records.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from inboxq.pipeline.models import ProcessingResult


class ErrorKind(str, Enum):
    FETCH = "fetch"
    EXTRACTION = "extraction"
    PERSISTENCE = "persistence"
    DELIVERY = "delivery"


class ErrorDetail(BaseModel):
    """JSON-serialisable error record placed in result error lists."""

    kind: ErrorKind
    message: str
    step: str | None = None
    event_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class PipelineError(Exception):
    """Base exception for pipeline run failures."""

    kind: ErrorKind = ErrorKind.PERSISTENCE

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        result: ProcessingResult | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.result = result

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            kind=self.kind,
            message=self.message,
            step=self.context.get("step"),
            context={k: v for k, v in self.context.items() if k != "step"},
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class FetchError(PipelineError):
    """Email fetch collaborator failed."""

    kind = ErrorKind.FETCH


class ExtractionError(PipelineError):
    """Extraction collaborator failed or returned an unusable batch."""

    kind = ErrorKind.EXTRACTION


class PersistenceError(PipelineError):
    """Writing events, todos or ledger entries failed."""

    kind = ErrorKind.PERSISTENCE


class DeliveryError(PipelineError):
    """A calendar call failed for one event."""

    kind = ErrorKind.DELIVERY
