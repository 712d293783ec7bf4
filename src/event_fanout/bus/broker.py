"""Broker protocols and factory.

The broker owns jobs from enqueue until they complete or exhaust their
attempts.  It provides at-least-once delivery, retry with backoff and
retention; the routing layer above it never retries on its own.

This module provides:

*  ``JobQueue``    — producer-side handle for one named queue.
*  ``QueueWorker`` — consumer for one named queue with bounded concurrency.
*  ``Broker``      — factory for both, sharing one connection.
*  ``create_broker`` — picks the backend from ``BrokerConfig``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from event_fanout.core.config import BrokerConfig, JobOptions
from event_fanout.core.enums import BrokerBackend

from .jobs import CompletedCallback, FailedCallback, JobProcessor, JobRecord
from .memory_broker import MemoryBroker
from .redis_broker import RedisBroker


@runtime_checkable
class JobQueue(Protocol):
    """Producer side of a named queue."""

    @property
    def name(self) -> str: ...

    async def add(
        self,
        job_id: str,
        name: str,
        record: JobRecord,
        options: JobOptions,
    ) -> bool:
        """Enqueue a job.  Returns ``False`` if ``job_id`` is already held."""
        ...

    async def close(self) -> None: ...


@runtime_checkable
class QueueWorker(Protocol):
    """Consumer side of a named queue."""

    @property
    def queue_name(self) -> str: ...

    @property
    def concurrency(self) -> int: ...

    @property
    def running(self) -> bool: ...

    async def start(self) -> None: ...

    async def close(self) -> None:
        """Stop pulling jobs and wait for in-flight jobs to finish."""
        ...


@runtime_checkable
class Broker(Protocol):

    def queue(self, name: str) -> JobQueue: ...

    def worker(
        self,
        name: str,
        processor: JobProcessor,
        *,
        concurrency: int = 5,
        on_completed: CompletedCallback | None = None,
        on_failed: FailedCallback | None = None,
    ) -> QueueWorker: ...

    async def start(self) -> None: ...
    async def close(self) -> None: ...


def create_broker(config: BrokerConfig) -> MemoryBroker | RedisBroker:
    """Create a broker for the configured backend.

    - MEMORY: MemoryBroker (no external deps, deterministic)
    - REDIS: RedisBroker (persistent, shared across processes)
    """
    if config.backend == BrokerBackend.MEMORY:
        return MemoryBroker()
    return RedisBroker(config)
