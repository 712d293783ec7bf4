"""QueueManager facade for the routing layer.

Wires the handler registry, the loader, the publisher and the processor
onto one broker and owns their lifecycle.

Usage::

    from event_fanout.bus.manager import QueueManager
    from event_fanout.handlers import ALL_HANDLERS

    mgr = QueueManager.from_config(settings)
    await mgr.initialize(ALL_HANDLERS)

    result = await mgr.publish(OrderCreated(aggregate_id="order-456", payload=...))

    # Observability
    metrics = mgr.get_metrics()

    await mgr.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from types import ModuleType
from typing import Any

from event_fanout.core.config import Settings
from event_fanout.domain.events import DomainEvent

from .broker import Broker, create_broker
from .loader import HandlerLoader
from .processor import FailedJob, QueueProcessor
from .publisher import EventPublisher, PublishResult
from .registry import HandlerRegistry

logger = logging.getLogger(__name__)


class QueueManager:
    """Unified facade for the fan-out routing layer.

    Parameters
    ----------
    registry:
        The handler registry shared by publisher and processor.
    broker:
        Broker backend (``MemoryBroker`` or ``RedisBroker``).
    settings:
        Job options and processor concurrency are taken from here.
    on_job_failed:
        Optional callback ``(queue, job_id, exc)`` invoked when a job
        attempt fails.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        broker: Broker,
        settings: Settings | None = None,
        on_job_failed: Callable[[str, str, Exception], None] | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._registry = registry
        self._broker = broker
        self._loader = HandlerLoader(registry)
        self._publisher = EventPublisher(registry, broker, self._settings.jobs)
        self._processor = QueueProcessor(
            registry,
            broker,
            self._settings.processor,
            on_job_failed=on_job_failed,
        )
        self._initialized = False
        self._closed = False

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        settings: Settings | None = None,
        *,
        registry: HandlerRegistry | None = None,
        on_job_failed: Callable[[str, str, Exception], None] | None = None,
    ) -> QueueManager:
        """Build a manager whose broker is selected by ``settings.broker``.

        Parameters
        ----------
        settings:
            Application settings.  Defaults to ``Settings()`` (environment
            variables only).
        registry:
            Registry to populate.  A fresh one is created when ``None``.
        on_job_failed:
            Passed through to the processor.

        Returns
        -------
        QueueManager
        """
        resolved = settings or Settings()
        broker = create_broker(resolved.broker)
        return cls(
            registry=registry if registry is not None else HandlerRegistry(),
            broker=broker,
            settings=resolved,
            on_job_failed=on_job_failed,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(
        self,
        definitions: Iterable[Any] | Mapping[str, Any] | ModuleType,
        *,
        start_workers: bool = True,
    ) -> int:
        """Connect the broker, register *definitions* and start the workers.

        Returns the number of handlers registered.  Registration errors
        propagate and leave no worker running.  ``start_workers=False``
        gives a publish-only manager.
        """
        if self._initialized:
            raise RuntimeError("QueueManager is already initialized")
        self._initialized = True

        await self._broker.start()
        count = self._loader.load(definitions)
        if start_workers:
            await self._processor.start()

        logger.info(
            "QueueManager initialized: %d handler(s) across %d queue(s)",
            count,
            len(self._registry.all_queue_names()),
        )
        return count

    async def shutdown(self) -> None:
        """Close producer queues and workers, then the broker.  Idempotent."""
        if self._closed:
            return
        self._closed = True

        await asyncio.gather(self._publisher.close(), self._processor.stop())
        await self._broker.close()
        logger.info("QueueManager shut down")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def broker(self) -> Broker:
        return self._broker

    @property
    def publisher(self) -> EventPublisher:
        """The event publisher wired to this manager's registry and broker."""
        return self._publisher

    @property
    def processor(self) -> QueueProcessor:
        return self._processor

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def is_running(self) -> bool:
        return self._initialized and not self._closed

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, event: DomainEvent) -> PublishResult:
        """Fan *event* out to its handlers.

        Delegates to ``publisher.publish()``.
        """
        return await self._publisher.publish(event)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Failed-attempt counts keyed by queue."""
        return self._processor.get_error_counts()

    def get_failed_jobs(self) -> list[FailedJob]:
        return self._processor.get_failed_jobs()

    def clear_failed_jobs(self) -> list[FailedJob]:
        """Drain and return all permanently failed job records."""
        return self._processor.clear_failed_jobs()

    @property
    def messages_processed(self) -> int:
        return self._processor.messages_processed

    def get_metrics(self) -> dict[str, Any]:
        """Processor counters plus the routing table size."""
        return {
            "handlers_registered": len(self._registry),
            "queues": self._registry.all_queue_names(),
            "messages_processed": self.messages_processed,
            "error_counts": self.get_error_counts(),
            "failed_job_count": len(self.get_failed_jobs()),
        }
