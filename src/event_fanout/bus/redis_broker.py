"""Redis Streams broker implementation.

Each queue is a Redis Stream read through one consumer group, so every job
is delivered to exactly one worker at a time with at-least-once semantics.

Key layout (``prefix`` defaults to ``fanout``)::

    {prefix}:{queue}:job:{jobId}   hash    data, opts, name, state,
                                           attempts_made, failed_reason
    {prefix}:{queue}:stream        stream  {"job_id": jobId} entries
    {prefix}:{queue}:workers       group   consumer group on the stream
    {prefix}:{queue}:delayed       zset    jobIds scored by due time (ms)
    {prefix}:{queue}:completed     list    recent completed jobIds
    {prefix}:{queue}:failed        list    recent failed jobIds

Guarantees:
- The job hash is the dedup gate: it is checked under ``WATCH`` and written
  together with its stream entry in one ``MULTI``, so a job id is enqueued
  once while its hash is retained and a failed enqueue leaves nothing behind.
- Stream entries are only ack'd *after* the job reached an outcome
  (completed, scheduled for retry, or permanently failed), and are deleted
  from the stream in the same transaction.
- Entries left pending by a dead or stopped worker are reclaimed with
  ``XAUTOCLAIM`` once idle for ``stalled_interval_ms``.  Keep that above
  the longest handler run, or a slow job may be delivered twice.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from event_fanout.core.config import BrokerConfig, JobOptions
from event_fanout.core.enums import JobState
from event_fanout.core.errors import BrokerError
from event_fanout.core.ids import epoch_ms, new_id

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

_PROMOTE_BATCH = 100


@dataclass(frozen=True)
class QueueKeys:
    """Redis key names for one queue."""

    prefix: str
    queue: str

    def job(self, job_id: str) -> str:
        return f"{self.prefix}:{self.queue}:job:{job_id}"

    @property
    def stream(self) -> str:
        return f"{self.prefix}:{self.queue}:stream"

    @property
    def group(self) -> str:
        return f"{self.prefix}:{self.queue}:workers"

    @property
    def delayed(self) -> str:
        return f"{self.prefix}:{self.queue}:delayed"

    @property
    def completed(self) -> str:
        return f"{self.prefix}:{self.queue}:completed"

    @property
    def failed(self) -> str:
        return f"{self.prefix}:{self.queue}:failed"


class RedisBroker:
    """Production broker backed by Redis Streams.

    One ``redis.asyncio.Redis`` client is shared by every producer queue
    and worker created from this broker.  Pass ``client`` to reuse an
    existing connection (the broker then leaves closing it to the caller).
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        *,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._config = config or BrokerConfig()
        self._redis = client
        self._owns_client = client is None
        self._queues: dict[str, RedisJobQueue] = {}
        self._workers: list[RedisQueueWorker] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect to Redis (no-op if a client is already attached)."""
        if self._redis is None:
            self._redis = aioredis.Redis(
                host=self._config.host,
                port=self._config.port,
                password=self._config.password,
                db=self._config.db,
                decode_responses=True,
            )
            self._owns_client = True

    async def close(self) -> None:
        """Stop all workers and close the Redis connection."""
        await asyncio.gather(*(w.close() for w in self._workers))
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Accessors / factories
    # ------------------------------------------------------------------

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise BrokerError("RedisBroker not started")
        return self._redis

    def keys(self, queue_name: str) -> QueueKeys:
        return QueueKeys(prefix=self._config.prefix, queue=queue_name)

    def queue(self, name: str) -> RedisJobQueue:
        if name not in self._queues or self._queues[name].closed:
            self._queues[name] = RedisJobQueue(self, name)
        return self._queues[name]

    def worker(
        self,
        name: str,
        processor: JobProcessor,
        *,
        concurrency: int = 5,
        on_completed: CompletedCallback | None = None,
        on_failed: FailedCallback | None = None,
    ) -> RedisQueueWorker:
        worker = RedisQueueWorker(
            self,
            name,
            processor,
            concurrency=concurrency,
            on_completed=on_completed,
            on_failed=on_failed,
        )
        self._workers.append(worker)
        return worker

    def get_error_counts(self) -> dict[str, int]:
        """Return per-queue broker-side error counts."""
        return {w.queue_name: w.error_count for w in self._workers}


class RedisJobQueue:
    """Producer-side handle for one Redis-backed queue."""

    def __init__(self, broker: RedisBroker, name: str) -> None:
        self._broker = broker
        self._name = name
        self._keys = broker.keys(name)
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
        """Store the job hash and append it to the stream in one transaction.

        Returns ``False`` without touching the stream if the job id is
        already held.  A failed call writes nothing, so it can be retried.
        """
        if self.closed:
            raise BrokerError(f"Queue {self._name} is closed")
        key = self._keys.job(job_id)

        async with self._broker.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if await pipe.exists(key):
                        return False
                    pipe.multi()
                    pipe.hset(
                        key,
                        mapping={
                            "data": record.to_json(),
                            "name": name,
                            "opts": options.model_dump_json(),
                            "attempts_made": 0,
                            "state": JobState.WAITING.value,
                            "timestamp": epoch_ms(),
                        },
                    )
                    pipe.xadd(self._keys.stream, {"job_id": job_id})
                    await pipe.execute()
                    return True
                except WatchError:
                    # Another producer wrote the key; re-check it.
                    continue

    async def close(self) -> None:
        # The connection belongs to the broker.
        self.closed = True


class RedisQueueWorker:
    """Consumer-group worker for one queue.

    Runs two loops: the consume loop (stalled-entry reclaim and
    ``XREADGROUP``, both bounded by the concurrency slots it holds) and the
    maintenance loop (delayed-job promotion).
    """

    def __init__(
        self,
        broker: RedisBroker,
        queue_name: str,
        processor: JobProcessor,
        *,
        concurrency: int = 5,
        on_completed: CompletedCallback | None = None,
        on_failed: FailedCallback | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        config = broker.config
        self._broker = broker
        self._queue_name = queue_name
        self._keys = broker.keys(queue_name)
        self._processor = processor
        self._concurrency = concurrency
        self._on_completed = on_completed
        self._on_failed = on_failed
        self._block_ms = config.block_ms
        self._stalled_ms = config.stalled_interval_ms
        self._poll_interval = config.poll_interval_ms / 1000
        self._consumer = f"{socket.gethostname()}-{os.getpid()}-{new_id()[:8]}"
        self._slots = asyncio.Semaphore(concurrency)
        self._in_flight: dict[str, asyncio.Task] = {}
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._error_count = 0
        self._next_reclaim = 0.0
        self._claim_cursor = "0-0"

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
    def consumer_name(self) -> str:
        return self._consumer

    @property
    def error_count(self) -> int:
        return self._error_count

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        await self._ensure_group()
        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._consume_loop(), name=f"consumer-{self._queue_name}",
            ),
            asyncio.create_task(
                self._maintenance_loop(), name=f"maintenance-{self._queue_name}",
            ),
        ]

    async def close(self) -> None:
        """Stop reading; wait for in-flight jobs, leave the rest pending."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    # ------------------------------------------------------------------
    # Consume loop
    # ------------------------------------------------------------------

    async def _consume_loop(self) -> None:
        while self._running:
            held = 0
            try:
                held = await self._reserve_slots()
                if self._reclaim_due():
                    for msg_id, fields in await self._claim_stalled(held):
                        held -= 1
                        await self._dispatch(msg_id, fields)
                    if not held:
                        continue
                entries = await self._broker.redis.xreadgroup(
                    groupname=self._keys.group,
                    consumername=self._consumer,
                    streams={self._keys.stream: ">"},
                    count=held,
                    block=self._block_ms,
                )
                for _stream, messages in entries or []:
                    for msg_id, fields in messages:
                        held -= 1
                        await self._dispatch(msg_id, fields)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Consumer loop error for queue %s", self._queue_name)
                self._error_count += 1
                await asyncio.sleep(1)
            finally:
                for _ in range(held):
                    self._slots.release()

    async def _reserve_slots(self) -> int:
        """Wait for one free slot, then grab any others free right now."""
        await self._slots.acquire()
        held = 1
        while held < self._concurrency and not self._slots.locked():
            await self._slots.acquire()
            held += 1
        return held

    async def _dispatch(self, msg_id: str, fields: dict[str, str] | None) -> None:
        """Run one stream entry.  Takes ownership of one reserved slot."""
        job_id = (fields or {}).get("job_id")
        if job_id and job_id in self._in_flight:
            # Reclaim of a job this worker is already running.
            self._slots.release()
            return
        if not job_id:
            self._slots.release()
            logger.warning(
                "Malformed entry %s on %s: %s", msg_id, self._queue_name, fields,
            )
            await self._ack(msg_id)
            return
        self._in_flight[job_id] = asyncio.create_task(
            self._handle_entry(msg_id, job_id),
            name=f"job-{self._queue_name}-{job_id}",
        )

    async def _handle_entry(self, msg_id: str, job_id: str) -> None:
        redis = self._broker.redis
        key = self._keys.job(job_id)
        try:
            raw = await redis.hgetall(key)
            if not raw or "data" not in raw:
                logger.warning(
                    "Job %s on %s no longer exists; acking", job_id, self._queue_name,
                )
                await self._ack(msg_id)
                return
            if raw.get("state") in (JobState.COMPLETED.value, JobState.FAILED.value):
                await self._ack(msg_id)
                return

            try:
                job = self._load_job(job_id, raw)
            except ValueError as exc:
                logger.error(
                    "Job %s on %s is unreadable: %s", job_id, self._queue_name, exc,
                )
                await self._mark_unreadable(msg_id, job_id, str(exc))
                return

            await redis.hset(key, "state", JobState.ACTIVE.value)
            job.state = JobState.ACTIVE
            try:
                await self._processor(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                will_retry = await self._record_failure(job, msg_id, exc)
                notify(self._on_failed, job, exc, will_retry)
            else:
                await self._record_completion(job, msg_id)
                notify(self._on_completed, job)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Broker I/O failed; the entry stays pending and is reclaimed later.
            logger.exception(
                "Failed to settle job %s on %s", job_id, self._queue_name,
            )
            self._error_count += 1
        finally:
            self._in_flight.pop(job_id, None)
            self._slots.release()

    def _load_job(self, job_id: str, raw: dict[str, str]) -> Job:
        options = (
            JobOptions.model_validate_json(raw["opts"]) if raw.get("opts") else JobOptions()
        )
        return Job(
            id=job_id,
            name=raw.get("name", ""),
            queue_name=self._queue_name,
            record=JobRecord.from_json(raw["data"]),
            options=options,
            attempts_made=int(raw.get("attempts_made", 0)),
            timestamp=int(raw.get("timestamp", 0) or 0),
        )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _record_completion(self, job: Job, msg_id: str) -> None:
        job.state = JobState.COMPLETED
        async with self._broker.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._keys.job(job.id),
                mapping={"state": JobState.COMPLETED.value, "finished_on": epoch_ms()},
            )
            pipe.lpush(self._keys.completed, job.id)
            pipe.xack(self._keys.stream, self._keys.group, msg_id)
            pipe.xdel(self._keys.stream, msg_id)
            await pipe.execute()
        await self._trim(self._keys.completed, job.options.remove_on_complete)

    async def _record_failure(
        self, job: Job, msg_id: str, exc: BaseException,
    ) -> bool:
        """Persist a failure.  Returns ``True`` if the job will be retried."""
        redis = self._broker.redis
        key = self._keys.job(job.id)
        job.attempts_made = int(await redis.hincrby(key, "attempts_made", 1))
        job.failed_reason = str(exc)
        decision = next_attempt(exc, job.attempts_made, job.options)

        if decision.retry:
            job.state = JobState.DELAYED
            due = epoch_ms() + int(decision.delay * 1000)
            async with redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={
                        "state": JobState.DELAYED.value,
                        "failed_reason": job.failed_reason,
                    },
                )
                pipe.zadd(self._keys.delayed, {job.id: due})
                pipe.xack(self._keys.stream, self._keys.group, msg_id)
                pipe.xdel(self._keys.stream, msg_id)
                await pipe.execute()
            return True

        job.state = JobState.FAILED
        await self._settle_failed(msg_id, job.id, job.failed_reason)
        await self._trim(self._keys.failed, job.options.remove_on_fail)
        return False

    async def _mark_unreadable(self, msg_id: str, job_id: str, reason: str) -> None:
        await self._settle_failed(msg_id, job_id, reason)
        await self._trim(self._keys.failed, JobOptions().remove_on_fail)

    async def _settle_failed(self, msg_id: str, job_id: str, reason: str) -> None:
        async with self._broker.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._keys.job(job_id),
                mapping={
                    "state": JobState.FAILED.value,
                    "failed_reason": reason,
                    "finished_on": epoch_ms(),
                },
            )
            pipe.lpush(self._keys.failed, job_id)
            pipe.xack(self._keys.stream, self._keys.group, msg_id)
            pipe.xdel(self._keys.stream, msg_id)
            await pipe.execute()

    async def _trim(self, list_key: str, keep: int) -> None:
        """Keep the ``keep`` newest ids in *list_key*; delete evicted job hashes.

        The list is watched between the read and the trim, so an id pushed
        concurrently is either evicted with its hash or kept.
        """
        async with self._broker.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(list_key)
                    evicted = await pipe.lrange(list_key, keep, -1)
                    if not evicted:
                        return
                    pipe.multi()
                    pipe.delete(*(self._keys.job(job_id) for job_id in evicted))
                    if keep == 0:
                        pipe.delete(list_key)
                    else:
                        pipe.ltrim(list_key, 0, keep - 1)
                    await pipe.execute()
                    return
                except WatchError:
                    continue

    async def _ack(self, msg_id: str) -> None:
        async with self._broker.redis.pipeline(transaction=True) as pipe:
            pipe.xack(self._keys.stream, self._keys.group, msg_id)
            pipe.xdel(self._keys.stream, msg_id)
            await pipe.execute()

    # ------------------------------------------------------------------
    # Stall recovery
    # ------------------------------------------------------------------

    def _reclaim_due(self) -> bool:
        """Throttle ``XAUTOCLAIM`` to once per poll interval."""
        now = time.monotonic()
        if now < self._next_reclaim:
            return False
        self._next_reclaim = now + self._poll_interval
        return True

    async def _claim_stalled(self, count: int) -> list:
        """Claim up to *count* entries idle past ``stalled_interval_ms``.

        The entries are owned by this consumer afterwards; the consume loop
        dispatches them on slots it already holds.
        """
        result = await self._broker.redis.xautoclaim(
            self._keys.stream,
            self._keys.group,
            self._consumer,
            min_idle_time=self._stalled_ms,
            start_id=self._claim_cursor,
            count=count,
        )
        if not result:
            self._claim_cursor = "0-0"
            return []
        # Cursor "0-0" means the pending list was scanned to its end.
        self._claim_cursor = result[0] or "0-0"
        messages = list(result[1])[:count]
        if messages:
            logger.warning(
                "Reclaimed %d stalled job(s) on %s", len(messages), self._queue_name,
            )
        return messages

    # ------------------------------------------------------------------
    # Maintenance loop
    # ------------------------------------------------------------------

    async def _maintenance_loop(self) -> None:
        while self._running:
            try:
                await self._promote_delayed()
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Maintenance error for queue %s", self._queue_name)
                self._error_count += 1
                await asyncio.sleep(1)

    async def _promote_delayed(self) -> int:
        """Move due retries back onto the stream.  Returns the count moved."""
        redis = self._broker.redis
        due = await redis.zrangebyscore(
            self._keys.delayed, "-inf", epoch_ms(), start=0, num=_PROMOTE_BATCH,
        )
        promoted = 0
        for job_id in due:
            # zrem decides the race between workers of the same queue.
            if not await redis.zrem(self._keys.delayed, job_id):
                continue
            async with redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._keys.job(job_id), "state", JobState.WAITING.value)
                pipe.xadd(self._keys.stream, {"job_id": job_id})
                await pipe.execute()
            promoted += 1
        return promoted

    async def _ensure_group(self) -> None:
        """Create consumer group, ignoring BUSYGROUP if it already exists."""
        try:
            await self._broker.redis.xgroup_create(
                self._keys.stream, self._keys.group, id="0", mkstream=True,
            )
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
