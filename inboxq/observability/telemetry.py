"""
In-process telemetry for pipeline runs and delivery passes.

Nothing is exported to a metrics backend. Counters and latency samples live in
module state so the CLI and tests can read them back; log_event writes a
key=value line for anything worth grepping later.

Naming: counters are dotted `<component>.<what>` (delivery.synced,
idempotency.skipped); timers use the same scheme and are stored in
milliseconds.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections import defaultdict
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger("inboxq.telemetry")

_COUNTERS: defaultdict[str, int] = defaultdict(int)
_TIMINGS_MS: defaultdict[str, list[float]] = defaultdict(list)


def log_event(event_name: str, **fields: Any) -> None:
    """
    Emit a telemetry event line. Callers pass ids, never addresses or subjects.

    Side Effects:
        - Writes to logger (info level)
    """
    rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
    logger.info("event=%s %s", event_name, rendered)


def counter(name: str, increment: int = 1) -> int:
    """
    Add increment to a named counter and return the new value.

    Side Effects:
        - Updates module counter state
    """
    _COUNTERS[name] += increment
    logger.debug("counter=%s value=%d", name, _COUNTERS[name])
    return _COUNTERS[name]


def get_counter(name: str) -> int:
    return _COUNTERS.get(name, 0)


@contextlib.contextmanager
def time_block(name: str) -> Iterator[None]:
    """
    Time the enclosed block and record it under name, in milliseconds.

    The sample is recorded even when the block raises.
    """
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        _TIMINGS_MS[name].append(elapsed_ms)
        logger.debug("timing=%s ms=%.2f", name, elapsed_ms)


def get_latency_stats(name: str) -> dict[str, float]:
    """count/min/max/avg/p50/p95 of the samples recorded under name (ms)."""
    samples = sorted(_TIMINGS_MS.get(name, ()))
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p95": 0.0}

    last = len(samples) - 1
    return {
        "count": len(samples),
        "min": samples[0],
        "max": samples[-1],
        "avg": sum(samples) / len(samples),
        "p50": samples[min(int(len(samples) * 0.50), last)],
        "p95": samples[min(int(len(samples) * 0.95), last)],
    }


def reset_telemetry() -> None:
    """Forget every counter and timing sample (tests call this between cases)."""
    _COUNTERS.clear()
    _TIMINGS_MS.clear()
