"""Centralized configuration for the inboxq pipeline.

Re-exports everything from inboxq.infrastructure.settings so existing imports
continue to work, then adds typed constants for database, pipeline, delivery,
dedup and sweep settings.  Environment variable overrides use safe defaults so
the pipeline starts without extra env configuration.
"""

from __future__ import annotations

import os

from inboxq.infrastructure.settings import *  # noqa: F401, F403  (re-export existing)
from inboxq.infrastructure.settings import DEFAULT_CALENDAR_ID, DEFAULT_TIMEZONE


def _env(key: str, default: str) -> str:
    """Read an INBOXQ_* env var with a default."""
    return os.getenv(key, default)


# --- Database ---
DB_POOL_SIZE: int = int(_env("INBOXQ_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(_env("INBOXQ_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(_env("INBOXQ_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(_env("INBOXQ_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(_env("INBOXQ_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(_env("INBOXQ_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(_env("INBOXQ_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(_env("INBOXQ_DB_RETRY_JITTER", "0.1"))

# --- Processing Pipeline ---
PIPELINE_DEFAULT_MAX_RESULTS: int = int(_env("INBOXQ_MAX_RESULTS", "100"))
PIPELINE_DEFAULT_AI_PROVIDER: str = _env("INBOXQ_AI_PROVIDER", "openai")

# --- Calendar Delivery ---
DELIVERY_MAX_RETRIES: int = int(_env("INBOXQ_DELIVERY_MAX_RETRIES", "5"))
DELIVERY_BACKOFF_BASE_SECONDS: float = float(_env("INBOXQ_BACKOFF_BASE_SECONDS", "60"))
DELIVERY_BACKOFF_CAP_SECONDS: float = float(_env("INBOXQ_BACKOFF_CAP_SECONDS", "3600"))
DELIVERY_BATCH_LIMIT: int = 100
DELIVERY_CLAIM_TIMEOUT_SECONDS: int = int(_env("INBOXQ_CLAIM_TIMEOUT_SECONDS", "900"))
DELIVERY_CIRCUIT_FAIL_MAX: int = int(_env("INBOXQ_CIRCUIT_FAIL_MAX", "3"))
DELIVERY_REMINDER_HOUR: int = 19
DELIVERY_FALLBACK_REMINDER_MINUTES: int = 60
DELIVERY_DEFAULT_TIMEZONE: str = DEFAULT_TIMEZONE
DELIVERY_CALENDAR_ID: str = DEFAULT_CALENDAR_ID

# --- Dedup ---
DEDUP_TOLERANCE_MINUTES: int = 60
DEDUP_WINDOW_HOURS: int = 24
DEDUP_TITLE_SIMILARITY: float = float(_env("INBOXQ_DEDUP_TITLE_SIMILARITY", "0.85"))

# --- Sweep ---
SWEEP_THRESHOLD_HOURS: int = int(_env("INBOXQ_SWEEP_THRESHOLD_HOURS", "24"))

# --- Structured logging ---
STRUCTURED_LOG_SAMPLE_RATE_INFO: float = float(_env("INBOXQ_LOG_SAMPLE_RATE_INFO", "1.0"))
