"""Queue processor: consumer side of the fan-out.

One broker worker per queue known to the registry, each running up to
``concurrency`` jobs at once.  For every job the processor:

1. resolves the binding whose handler matches the job's ``handlerClass``
   among the queue's bindings (no match: ``HandlerNotFoundError``, which
   brokers treat as unrecoverable);
2. fetches the shared handler instance;
3. rebuilds the event from the job's serialized form;
4. invokes ``handle(event)``, awaiting it if it returns an awaitable.

Handler errors propagate untouched to the broker, which owns retry and
backoff.  Completion and failure are reported through logs, Prometheus
metrics, in-process counters and an optional ``on_job_failed`` callback.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field

from event_fanout.core.config import ProcessorConfig
from event_fanout.core.errors import HandlerNotFoundError
from event_fanout.domain.events import reconstruct_event
from event_fanout.observability import metrics
from event_fanout.observability.logger import job_context

from .broker import Broker, QueueWorker
from .jobs import Job, notify
from .registry import HandlerBinding, HandlerRegistry

logger = logging.getLogger(__name__)


@dataclass
class FailedJob:
    """Record of a job that failed with no retry left."""

    queue_name: str
    job_id: str
    handler_class: str
    error: str
    attempts: int
    timestamp: float = field(default_factory=time.monotonic)


class QueueProcessor:
    """Runs one bounded-concurrency worker per registered queue."""

    def __init__(
        self,
        registry: HandlerRegistry,
        broker: Broker,
        config: ProcessorConfig | None = None,
        on_job_failed: Callable[[str, str, Exception], None] | None = None,
    ) -> None:
        self._registry = registry
        self._broker = broker
        self._config = config or ProcessorConfig()
        self._on_job_failed = on_job_failed
        self._workers: dict[str, QueueWorker] = {}

        # Observability
        self._error_counts: dict[str, int] = defaultdict(int)
        self._failed_jobs: list[FailedJob] = []
        self._messages_processed: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start a worker for every queue in the registry."""
        queue_names = self._registry.all_queue_names()
        for queue_name in queue_names:
            await self._create_worker_for_queue(queue_name)

        metrics.set_workers_active(len(self._workers))
        logger.info(
            "Started processing %d queue(s): %s",
            len(queue_names),
            ", ".join(queue_names),
        )

    async def _create_worker_for_queue(self, queue_name: str) -> None:
        if queue_name in self._workers:
            return

        worker = self._broker.worker(
            queue_name,
            self.process_job,
            concurrency=self._config.concurrency,
            on_completed=self._on_completed,
            on_failed=self._on_failed,
        )
        await worker.start()
        self._workers[queue_name] = worker

    async def stop(self) -> None:
        """Close every worker; in-flight jobs finish first."""
        workers = list(self._workers.values())
        self._workers.clear()
        await asyncio.gather(*(worker.close() for worker in workers))
        metrics.set_workers_active(0)

    @property
    def queue_names(self) -> list[str]:
        return list(self._workers)

    @property
    def is_running(self) -> bool:
        return any(worker.running for worker in self._workers.values())

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def process_job(self, job: Job) -> None:
        """Resolve, rebuild and invoke.  Any exception fails this job only."""
        handler_class = job.record.handler_class
        binding = self._resolve_binding(job.queue_name, handler_class)
        handler = self._registry.instance_for(binding.handler_id)
        event = reconstruct_event(job.record.event)

        started = time.perf_counter()
        try:
            with job_context(job.queue_name, job.id, handler_class):
                result = handler.handle(event)
                if inspect.isawaitable(result):
                    await result
        finally:
            metrics.observe_job_duration(job.queue_name, time.perf_counter() - started)

    def _resolve_binding(self, queue_name: str, handler_class: str) -> HandlerBinding:
        for binding in self._registry.bindings_for_queue(queue_name):
            if binding.handler_class == handler_class:
                return binding
        raise HandlerNotFoundError(
            f"Handler {handler_class} not found for queue {queue_name}"
        )

    # ------------------------------------------------------------------
    # Worker signals
    # ------------------------------------------------------------------

    def _on_completed(self, job: Job) -> None:
        self._messages_processed += 1
        metrics.record_completed(job.queue_name, job.record.handler_class)
        logger.info("Job %s completed in queue %s", job.id, job.queue_name)

    def _on_failed(self, job: Job, exc: BaseException, will_retry: bool) -> None:
        handler_class = job.record.handler_class
        self._error_counts[job.queue_name] += 1
        metrics.record_failed(job.queue_name, handler_class, final=not will_retry)

        if will_retry:
            logger.warning(
                "Job %s failed in queue %s (attempt %d/%d), will retry: %s",
                job.id,
                job.queue_name,
                job.attempts_made,
                job.options.attempts,
                exc,
            )
        else:
            logger.error(
                "Job %s failed in queue %s after %d attempt(s): %s",
                job.id,
                job.queue_name,
                job.attempts_made,
                exc,
            )
            self._failed_jobs.append(
                FailedJob(
                    queue_name=job.queue_name,
                    job_id=job.id,
                    handler_class=handler_class,
                    error=str(exc),
                    attempts=job.attempts_made,
                )
            )

        notify(self._on_job_failed, job.queue_name, job.id, exc)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Return per-queue failed-attempt counts."""
        return dict(self._error_counts)

    def get_failed_jobs(self) -> list[FailedJob]:
        """Jobs that failed with no retry left (read-only snapshot)."""
        return list(self._failed_jobs)

    def clear_failed_jobs(self) -> list[FailedJob]:
        """Drain the failed-job list and return all entries."""
        drained = self._failed_jobs[:]
        self._failed_jobs.clear()
        return drained

    @property
    def messages_processed(self) -> int:
        """Total jobs completed successfully."""
        return self._messages_processed
