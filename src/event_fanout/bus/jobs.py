"""Job model shared by the publisher, the processor and every broker.

Wire record
-----------
``{"handlerClass": str, "event": <event wire form>}``, enqueued under
``jobId = "<eventId>-<handlerClass>"``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from event_fanout.core.config import JobOptions
from event_fanout.core.enums import JobState
from event_fanout.core.errors import UnrecoverableJobError
from event_fanout.core.ids import epoch_ms
from event_fanout.domain.events import WireModel

logger = logging.getLogger(__name__)


class JobRecord(WireModel):
    """Payload stored in the broker for one (event, handler) pair."""

    handler_class: str
    event: dict[str, Any]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> JobRecord:
        return cls.model_validate_json(raw)


@dataclass
class Job:
    """A job as delivered by a broker to a worker."""

    id: str
    name: str
    queue_name: str
    record: JobRecord
    options: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0  # Failed attempts so far
    state: JobState = JobState.WAITING
    failed_reason: str = ""
    timestamp: int = field(default_factory=epoch_ms)


@dataclass(frozen=True)
class EnqueuedJob:
    """One enqueue performed by a publish call."""

    queue_name: str
    job_id: str
    handler_class: str
    created: bool  # False when the broker already held this job id


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0  # Seconds


JobProcessor = Callable[[Job], Awaitable[None]]
CompletedCallback = Callable[[Job], None]
FailedCallback = Callable[[Job, BaseException, bool], None]


def next_attempt(
    exc: BaseException,
    attempts_made: int,
    options: JobOptions,
) -> RetryDecision:
    """Decide what happens after a failure.

    ``attempts_made`` already counts the failure being decided on.
    Unrecoverable errors skip the remaining attempt budget.
    """
    if isinstance(exc, UnrecoverableJobError):
        return RetryDecision(retry=False)
    if attempts_made >= options.attempts:
        return RetryDecision(retry=False)
    return RetryDecision(retry=True, delay=options.backoff.delay_for(attempts_made))


def notify(callback: Callable[..., None] | None, *args: Any) -> None:
    """Invoke an observer callback; its failures never reach the worker."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.warning("Job observer callback failed", exc_info=True)
