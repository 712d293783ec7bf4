"""Canonical ID and timestamp factories.

All modules import from here instead of defining local _uuid()/_now() copies.

ID Categories
-------------
1. Event IDs: UUID v4 strings, generated once per event.
2. Job IDs: ``"<eventId>-<handlerClass>"``, deterministic so the broker
   can deduplicate a re-published event.

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc`` — never naive.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone


def new_id() -> str:
    """Generate a new UUID v4 string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def epoch_ms() -> int:
    """Wall-clock milliseconds, used for broker scores and timestamps."""
    return int(time.time() * 1000)


def job_id(event_id: str, handler_class: str) -> str:
    """Idempotency key of the job for one (event, handler) pair."""
    return f"{event_id}-{handler_class}"


def job_name(event_type: str, handler_class: str) -> str:
    """Human-readable job name, ``"<eventType>-<handlerClass>"``."""
    return f"{event_type}-{handler_class}"
