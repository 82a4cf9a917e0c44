"""
Backoff schedule and circuit breaker for calendar delivery.

Delivery never sleeps inline: BackoffPolicy only computes the advisory
next_retry_at stored on a failed event, and CircuitBreaker stops a delivery
pass once the calendar keeps rejecting inserts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from inboxq.config import (
    DELIVERY_BACKOFF_BASE_SECONDS,
    DELIVERY_BACKOFF_CAP_SECONDS,
    DELIVERY_CIRCUIT_FAIL_MAX,
)
from inboxq.observability.telemetry import counter, log_event


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}{'' if value == 1 else 's'}"


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff: min(base * 2**retry_count, cap)."""

    base_seconds: float = DELIVERY_BACKOFF_BASE_SECONDS
    cap_seconds: float = DELIVERY_BACKOFF_CAP_SECONDS

    def __post_init__(self) -> None:
        if self.base_seconds < 0 or self.cap_seconds < 0:
            raise ValueError("backoff base and cap must be non-negative")

    def delay(self, retry_count: int) -> float:
        """Delay in seconds before retry number retry_count."""
        if retry_count < 0:
            raise ValueError(f"retry_count must be >= 0, got {retry_count}")
        # Large exponents overflow float pow; the cap is reached long before
        if retry_count >= 64:
            return self.cap_seconds
        return min(self.base_seconds * (2**retry_count), self.cap_seconds)

    def delay_timedelta(self, retry_count: int) -> timedelta:
        return timedelta(seconds=self.delay(retry_count))

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        return now + self.delay_timedelta(retry_count)

    def describe(self, retry_count: int) -> str:
        """
        Human-readable delay, e.g. "1 minute", "16 minutes", "1 hour".

        Whole minutes below an hour, whole hours above; sub-minute delays are
        shown in seconds.
        """
        seconds = int(self.delay(retry_count))
        minutes = seconds // 60
        if minutes < 1:
            return _plural(seconds, "second")
        if minutes < 60:
            return _plural(minutes, "minute")
        return _plural(minutes // 60, "hour")


@dataclass
class CircuitBreaker:
    """
    Consecutive-failure breaker for one delivery pass.

    Once open it stays open; the next pass builds a fresh breaker.
    """

    stage: str
    fail_max: int = DELIVERY_CIRCUIT_FAIL_MAX
    _failures: int = field(default=0, init=False)
    _open: bool = field(default=False, init=False)

    @property
    def is_open(self) -> bool:
        return self._open

    def record_success(self) -> None:
        self._failures = 0

    def record_failure(self) -> None:
        """
        Count a consecutive failure; opens the breaker at fail_max.

        Side Effects:
            - Emits circuit.opened telemetry when the breaker trips
        """
        self._failures += 1
        if not self._open and self._failures >= self.fail_max:
            self._open = True
            counter("circuit_open_rate")
            log_event("circuit.opened", stage=self.stage, failures=self._failures)
