"""In-memory broker for testing and local runs.

No external dependencies.  Mirrors the Redis broker's contract:

- jobs are deduplicated by job id while they are retained,
- each worker runs at most ``concurrency`` jobs at once,
- failures are retried with the job's backoff until its attempt budget
  is spent (``UnrecoverableJobError`` fails immediately),
- completed/failed jobs are retained up to ``remove_on_complete`` /
  ``remove_on_fail`` and then forgotten.

Retries are scheduled with ``loop.call_later``; pass ``delay_scale=0`` to
make backoff instantaneous in tests.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque

from event_fanout.core.config import JobOptions
from event_fanout.core.enums import JobState
from event_fanout.core.errors import BrokerError

from .jobs import (
    CompletedCallback,
    FailedCallback,
    Job,
    JobProcessor,
    JobRecord,
    next_attempt,
    notify,
)

logger = logging.getLogger(__name__)


class MemoryBroker:
    """In-process broker.  Safe within a single asyncio event loop."""

    def __init__(self, *, delay_scale: float = 1.0) -> None:
        self._delay_scale = delay_scale
        # queue name → job id → job
        self._jobs: dict[str, dict[str, Job]] = defaultdict(dict)
        self._waiting: dict[str, asyncio.Queue[str]] = {}
        self._completed: dict[str, deque[str]] = defaultdict(deque)
        self._failed: dict[str, deque[str]] = defaultdict(deque)
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}
        self._queues: dict[str, MemoryJobQueue] = {}
        self._workers: list[MemoryQueueWorker] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._closed = False

    async def close(self) -> None:
        """Stop all workers and drop pending retry timers."""
        await asyncio.gather(*(w.close() for w in self._workers))
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._closed = True

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def queue(self, name: str) -> MemoryJobQueue:
        if name not in self._queues or self._queues[name].closed:
            self._queues[name] = MemoryJobQueue(self, name)
        return self._queues[name]

    def worker(
        self,
        name: str,
        processor: JobProcessor,
        *,
        concurrency: int = 5,
        on_completed: CompletedCallback | None = None,
        on_failed: FailedCallback | None = None,
    ) -> MemoryQueueWorker:
        worker = MemoryQueueWorker(
            self,
            name,
            processor,
            concurrency=concurrency,
            on_completed=on_completed,
            on_failed=on_failed,
        )
        self._workers.append(worker)
        return worker

    # ------------------------------------------------------------------
    # Job state transitions (used by queues and workers)
    # ------------------------------------------------------------------

    def _waiting_for(self, queue_name: str) -> asyncio.Queue[str]:
        if queue_name not in self._waiting:
            self._waiting[queue_name] = asyncio.Queue()
        return self._waiting[queue_name]

    def _enqueue(
        self,
        queue_name: str,
        job_id: str,
        name: str,
        record: JobRecord,
        options: JobOptions,
    ) -> bool:
        if self._closed:
            raise BrokerError("MemoryBroker is closed")
        jobs = self._jobs[queue_name]
        if job_id in jobs:
            return False
        jobs[job_id] = Job(
            id=job_id,
            name=name,
            queue_name=queue_name,
            record=record,
            options=options,
        )
        self._waiting_for(queue_name).put_nowait(job_id)
        return True

    def _complete(self, job: Job) -> None:
        job.state = JobState.COMPLETED
        self._retain(self._completed[job.queue_name], job, job.options.remove_on_complete)

    def _fail(self, job: Job, exc: BaseException) -> bool:
        """Record a failure.  Returns ``True`` if the job will be retried."""
        job.attempts_made += 1
        job.failed_reason = str(exc)
        decision = next_attempt(exc, job.attempts_made, job.options)
        if not decision.retry:
            job.state = JobState.FAILED
            self._retain(self._failed[job.queue_name], job, job.options.remove_on_fail)
            return False

        job.state = JobState.DELAYED
        key = (job.queue_name, job.id)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(
            decision.delay * self._delay_scale, self._promote, key,
        )
        return True

    def _promote(self, key: tuple[str, str]) -> None:
        self._timers.pop(key, None)
        queue_name, job_id = key
        job = self._jobs[queue_name].get(job_id)
        if job is None:
            return
        job.state = JobState.WAITING
        self._waiting_for(queue_name).put_nowait(job_id)

    def _retain(self, bucket: deque[str], job: Job, keep: int) -> None:
        bucket.appendleft(job.id)
        while len(bucket) > keep:
            evicted = bucket.pop()
            self._jobs[job.queue_name].pop(evicted, None)

    # ------------------------------------------------------------------
    # Testing helpers
    # ------------------------------------------------------------------

    def queue_names(self) -> list[str]:
        """Queues that have ever held a job."""
        return list(self._jobs)

    def get_job(self, queue_name: str, job_id: str) -> Job | None:
        return self._jobs.get(queue_name, {}).get(job_id)

    def get_jobs(self, queue_name: str) -> list[Job]:
        """Retained jobs of a queue in enqueue order."""
        return list(self._jobs.get(queue_name, {}).values())

    def completed_jobs(self, queue_name: str) -> list[Job]:
        """Retained completed jobs, most recent first."""
        jobs = self._jobs.get(queue_name, {})
        return [jobs[i] for i in self._completed.get(queue_name, ()) if i in jobs]

    def failed_jobs(self, queue_name: str) -> list[Job]:
        """Retained permanently failed jobs, most recent first."""
        jobs = self._jobs.get(queue_name, {})
        return [jobs[i] for i in self._failed.get(queue_name, ()) if i in jobs]

    def job_counts(self, queue_name: str) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        for job in self._jobs.get(queue_name, {}).values():
            counts[job.state.value] += 1
        return dict(counts)

    def is_idle(self) -> bool:
        """No job running, scheduled for retry, or waiting on a live worker."""
        if self._timers:
            return False
        for worker in self._workers:
            if worker.in_flight:
                return False
            waiting = self._waiting.get(worker.queue_name)
            if worker.running and waiting is not None and not waiting.empty():
                return False
        return True

    async def wait_until_idle(self, timeout: float = 5.0) -> None:
        """Block until ``is_idle()``.  Raises ``TimeoutError`` after *timeout*."""

        async def _poll() -> None:
            while not self.is_idle():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)


class MemoryJobQueue:
    """Producer-side handle onto a ``MemoryBroker`` queue."""

    def __init__(self, broker: MemoryBroker, name: str) -> None:
        self._broker = broker
        self._name = name
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    async def add(
        self,
        job_id: str,
        name: str,
        record: JobRecord,
        options: JobOptions,
    ) -> bool:
        if self.closed:
            raise BrokerError(f"Queue {self._name} is closed")
        return self._broker._enqueue(self._name, job_id, name, record, options)

    async def close(self) -> None:
        self.closed = True


class MemoryQueueWorker:
    """Consumes one ``MemoryBroker`` queue with bounded concurrency."""

    def __init__(
        self,
        broker: MemoryBroker,
        queue_name: str,
        processor: JobProcessor,
        *,
        concurrency: int = 5,
        on_completed: CompletedCallback | None = None,
        on_failed: FailedCallback | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._broker = broker
        self._queue_name = queue_name
        self._processor = processor
        self._concurrency = concurrency
        self._on_completed = on_completed
        self._on_failed = on_failed
        self._slots = asyncio.Semaphore(concurrency)
        self._in_flight: set[asyncio.Task] = set()
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(
            self._consume_loop(), name=f"worker-{self._queue_name}",
        )

    async def close(self) -> None:
        """Stop pulling jobs; in-flight jobs run to completion."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _consume_loop(self) -> None:
        waiting = self._broker._waiting_for(self._queue_name)
        while self._running:
            await self._slots.acquire()
            try:
                job_id = await waiting.get()
            except asyncio.CancelledError:
                self._slots.release()
                break

            job = self._broker.get_job(self._queue_name, job_id)
            if job is None:
                # Evicted by retention while it waited.
                self._slots.release()
                continue

            task = asyncio.create_task(
                self._run_job(job), name=f"job-{self._queue_name}-{job.id}",
            )
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _run_job(self, job: Job) -> None:
        job.state = JobState.ACTIVE
        try:
            await self._processor(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            will_retry = self._broker._fail(job, exc)
            notify(self._on_failed, job, exc, will_retry)
        else:
            self._broker._complete(job)
            notify(self._on_completed, job)
        finally:
            self._slots.release()
