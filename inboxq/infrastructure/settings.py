"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os
from pathlib import Path

# Project paths
INBOXQ_ROOT = Path(__file__).parent.parent

# Default IANA timezone for calendar payloads and dedup windows
DEFAULT_TIMEZONE = os.getenv("INBOXQ_TIMEZONE", "Europe/London")

# Default calendar the delivery engine writes to
DEFAULT_CALENDAR_ID = os.getenv("INBOXQ_CALENDAR_ID", "primary")
