"""
Structured Logging Kit for inboxq

Provides one-line JSON event logging with:
- Correlation IDs (run id + user id, email ids hashed)
- Event taxonomy for every step of the inbox-to-calendar pipeline
- Sampling (configurable for INFO, 100% for ERROR)
- Privacy redaction (subjects, addresses, phone numbers)

Usage:
    from inboxq.observability.structured import EventType, StructuredLogger

    slog = StructuredLogger(session_id=run_id, user_id="user-1")
    slog.log_event(EventType.EMAILS_FETCHED, count=12)

Output:
    {"ts":"2026-03-02T07:00:01.532Z","level":"INFO","session":"8f0c...","user":"user-1","event":"emails_fetched","count":12}
"""

from __future__ import annotations

import hmac
import json
import logging
import random
import re
import secrets
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from inboxq.config import STRUCTURED_LOG_SAMPLE_RATE_INFO

logger = logging.getLogger("inboxq.structured")

_EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b")
_PHONE_PATTERN = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")


class EventType(str, Enum):
    """Event taxonomy, one group per pipeline step"""

    # 1. Run lifecycle
    RUN_START = "run_start"
    RUN_DONE = "run_done"
    RUN_FAILED = "run_failed"

    # 2. Fetch + ledger
    EMAILS_FETCHED = "emails_fetched"
    EMAILS_SKIPPED = "emails_skipped"
    FETCH_ERROR = "fetch_error"
    LEDGER_MARKED = "ledger_marked"
    LEDGER_ERROR = "ledger_error"

    # 3. Extraction
    EXTRACT_OK = "extract_ok"
    EXTRACT_ERROR = "extract_error"

    # 4. Persistence
    PERSIST_OK = "persist_ok"
    PERSIST_ERROR = "persist_error"

    # 5. Sweep
    SWEEP_OK = "sweep_ok"
    SWEEP_ERROR = "sweep_error"

    # 6. Delivery
    DELIVERY_SKIPPED = "delivery_skipped"
    DELIVERY_CIRCUIT_OPEN = "delivery_circuit_open"
    DELIVERY_DONE = "delivery_done"
    DELIVERY_ERROR = "delivery_error"

    @property
    def severity(self) -> int:
        if self is EventType.RUN_START:
            return logging.DEBUG
        if self.value.endswith(("_error", "_failed", "_circuit_open")):
            return logging.ERROR
        return logging.INFO


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


class StructuredLogger:
    """
    One JSON line per pipeline step, tagged with the run (session) and user

    INFO/DEBUG events are sampled at sample_rate_info; errors are always kept
    unless sample_rate_error says otherwise. Email ids are HMAC-hashed with a
    per-logger salt and subjects are truncated with addresses masked.
    """

    def __init__(
        self,
        session_id: str | None = None,
        user_id: str | None = None,
        sample_rate_info: float = STRUCTURED_LOG_SAMPLE_RATE_INFO,
        sample_rate_error: float = 1.0,
    ):
        self.session_id = session_id or datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        self.user_id = user_id
        self.sample_rate_info = sample_rate_info
        self.sample_rate_error = sample_rate_error
        self._salt = secrets.token_bytes(32)

    def hash_email_id(self, email_id: str) -> str:
        """16 hex chars of HMAC-SHA256(salt, email_id); "unknown" for empty ids."""
        if not email_id:
            return "unknown"
        return hmac.new(self._salt, email_id.encode("utf-8"), "sha256").hexdigest()[:16]

    @staticmethod
    def redact_subject(subject: str, max_len: int = 50) -> str:
        if not subject:
            return ""
        masked = _PHONE_PATTERN.sub("[PHONE]", _EMAIL_PATTERN.sub("[EMAIL]", subject[:max_len]))
        return masked + "..." if len(subject) > max_len else masked

    def _sampled(self, event_type: EventType) -> bool:
        is_error = event_type.severity >= logging.ERROR
        rate = self.sample_rate_error if is_error else self.sample_rate_info
        return random.random() < rate

    def build_event(
        self, event_type: EventType, email_id: str | None = None, **fields: Any
    ) -> dict[str, Any]:
        """Assemble the payload for one event without emitting it."""
        event: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": logging.getLevelName(event_type.severity),
            "session": self.session_id,
        }
        if self.user_id:
            event["user"] = self.user_id
        event["event"] = event_type.value
        if email_id:
            event["email"] = self.hash_email_id(email_id)

        for key, value in fields.items():
            if isinstance(value, str):
                if key == "subject":
                    value = self.redact_subject(value)
                elif len(value) > 200:
                    value = value[:200] + "..."
            event[key] = value
        return event

    def log_event(self, event_type: EventType, email_id: str | None = None, **fields: Any) -> None:
        """Emit the event on the inboxq.structured logger if it survives sampling."""
        if not self._sampled(event_type):
            return

        payload = self.build_event(event_type, email_id=email_id, **fields)
        try:
            line = json.dumps(payload, separators=(",", ":"), default=_json_default)
        except (TypeError, ValueError) as e:
            logger.error("Could not serialize %s event: %s", event_type.value, e)
            return
        logger.log(event_type.severity, line)

    def emails_fetched(self, fetched: int, skipped: int) -> None:
        self.log_event(EventType.EMAILS_FETCHED, count=fetched)
        if skipped:
            self.log_event(EventType.EMAILS_SKIPPED, count=skipped)

    def step_error(self, event_type: EventType, error: BaseException, **fields: Any) -> None:
        """Log a failed step with the exception class and message."""
        self.log_event(event_type, error=type(error).__name__, message=str(error), **fields)
