"""Event publisher: fans one event out into one job per bound handler.

Flow
----
1. Look up the bindings for ``event.type``.  None bound: log a warning,
   count the drop and return.  This is never an error.
2. Group the bindings by queue.
3. Serialize the event once; build one job per binding keyed
   ``"<eventId>-<handlerClass>"`` so a re-publish is deduplicated by the
   broker instead of processed twice.
4. Enqueue everything concurrently and wait for every enqueue to settle.
   If any failed, raise ``PublishError``.  Re-publishing is safe thanks to
   the deterministic job ids.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from event_fanout.core.config import JobOptions
from event_fanout.core.errors import PublishError
from event_fanout.core.ids import job_id as make_job_id
from event_fanout.core.ids import job_name
from event_fanout.domain.events import DomainEvent
from event_fanout.observability import metrics

from .broker import Broker, JobQueue
from .jobs import EnqueuedJob, JobRecord
from .registry import HandlerBinding, HandlerRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    """Outcome of one ``publish`` call."""

    event_id: str
    event_type: str
    jobs: list[EnqueuedJob] = field(default_factory=list)
    dropped: bool = False

    @property
    def queue_count(self) -> int:
        return len({job.queue_name for job in self.jobs})

    @property
    def job_ids(self) -> list[str]:
        return [job.job_id for job in self.jobs]


class EventPublisher:
    """Producer side of the fan-out.

    Queue handles are opened lazily, one per queue name, and reused until
    ``close()``.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        broker: Broker,
        job_options: JobOptions | None = None,
    ) -> None:
        self._registry = registry
        self._broker = broker
        self._job_options = job_options or JobOptions()
        self._queues: dict[str, JobQueue] = {}

    def _get_or_create_queue(self, queue_name: str) -> JobQueue:
        if queue_name not in self._queues:
            self._queues[queue_name] = self._broker.queue(queue_name)
        return self._queues[queue_name]

    async def publish(self, event: DomainEvent) -> PublishResult:
        """Enqueue one job per handler bound to ``event.type``.

        Raises
        ------
        PublishError
            If any enqueue failed.  The other enqueues have settled by then.
        """
        event_type = event.type.value
        bindings = self._registry.bindings_for_event_type(event.type)

        if not bindings:
            logger.warning("No handlers registered for event type: %s", event_type)
            metrics.record_dropped(event_type)
            return PublishResult(
                event_id=event.event_id, event_type=event_type, dropped=True,
            )

        by_queue: dict[str, list[HandlerBinding]] = defaultdict(list)
        for binding in bindings:
            by_queue[binding.queue_name].append(binding)

        try:
            wire_event = event.to_wire()
        except Exception as exc:
            raise PublishError(
                f"Failed to serialize event {event.event_id} ({event_type})"
            ) from exc

        pending: list[tuple[HandlerBinding, str]] = []
        operations = []
        for queue_name, queue_bindings in by_queue.items():
            queue = self._get_or_create_queue(queue_name)
            for binding in queue_bindings:
                job_id = make_job_id(event.event_id, binding.handler_class)
                record = JobRecord(handler_class=binding.handler_class, event=wire_event)
                pending.append((binding, job_id))
                operations.append(
                    queue.add(
                        job_id,
                        job_name(event_type, binding.handler_class),
                        record,
                        self._job_options,
                    )
                )

        # Write barrier: every enqueue settles before success or failure is reported.
        outcomes = await asyncio.gather(*operations, return_exceptions=True)

        jobs: list[EnqueuedJob] = []
        failures: list[tuple[str, BaseException]] = []
        for (binding, job_id), outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                failures.append((job_id, outcome))
                continue
            jobs.append(
                EnqueuedJob(
                    queue_name=binding.queue_name,
                    job_id=job_id,
                    handler_class=binding.handler_class,
                    created=bool(outcome),
                )
            )
            if outcome:
                metrics.record_enqueued(binding.queue_name, binding.handler_class)
            else:
                metrics.record_deduplicated(binding.queue_name, binding.handler_class)

        if failures:
            failed_ids = ", ".join(job_id for job_id, _ in failures)
            logger.error(
                "Publishing %s %s failed for %d of %d job(s): %s",
                event_type,
                event.event_id,
                len(failures),
                len(pending),
                failed_ids,
            )
            raise PublishError(
                f"Failed to enqueue {len(failures)} of {len(pending)} job(s) "
                f"for event {event.event_id}: {failed_ids}"
            ) from failures[0][1]

        result = PublishResult(event_id=event.event_id, event_type=event_type, jobs=jobs)
        logger.info(
            "Event %s published to %d queue(s)", event_type, result.queue_count,
        )
        return result

    async def close(self) -> None:
        """Close every producer-side queue handle."""
        queues = list(self._queues.values())
        self._queues.clear()
        await asyncio.gather(*(queue.close() for queue in queues))
