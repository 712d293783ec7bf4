"""Tests for QueueProcessor dispatch, observability and lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from event_fanout.bus.jobs import Job, JobRecord
from event_fanout.bus.processor import QueueProcessor
from event_fanout.bus.publisher import EventPublisher
from event_fanout.core.config import JobOptions, ProcessorConfig
from event_fanout.core.enums import EventType, HandlerId
from event_fanout.core.errors import EventDeserializationError, HandlerNotFoundError
from event_fanout.domain.events import OrderCreated
from event_fanout.domain.handlers import HandlerDefinition

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _Recorder:
    """Async handler recording events; the first ``fail_times`` calls raise."""

    def __init__(self, fail_times: int = 0, delay: float = 0.0) -> None:
        self.events = []
        self.calls = 0
        self._fail_times = fail_times
        self._delay = delay

    async def handle(self, event) -> None:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self.calls <= self._fail_times:
            raise RuntimeError(f"attempt {self.calls} failed")
        self.events.append(event)


class _SyncRecorder:
    def __init__(self) -> None:
        self.events = []

    def handle(self, event) -> None:
        self.events.append(event)


def _definition(handler_id: HandlerId, handler, queue_name: str) -> HandlerDefinition:
    return HandlerDefinition(
        handler_id=handler_id,
        event_type=EventType.ORDER_CREATED,
        queue_name=queue_name,
        factory=lambda: handler,
    )


def _job(queue_name: str, handler_class: str, event: dict) -> Job:
    return Job(
        id=f"evt-{handler_class}",
        name="order.created",
        queue_name=queue_name,
        record=JobRecord(handler_class=handler_class, event=event),
    )


# ===========================================================================
# process_job
# ===========================================================================


class TestProcessJob:

    @pytest.mark.asyncio
    async def test_resolves_handler_and_rebuilds_event(self, registry, memory_broker, order_event):
        handler = _Recorder()
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, handler, "email-q"))
        processor = QueueProcessor(registry, memory_broker)

        await processor.process_job(_job("email-q", "OrderCreatedEmailHandler", order_event.to_wire()))

        assert len(handler.events) == 1
        received = handler.events[0]
        assert isinstance(received, OrderCreated)
        assert received == order_event
        assert received is not order_event

    @pytest.mark.asyncio
    async def test_sync_handler_supported(self, registry, memory_broker, order_event):
        handler = _SyncRecorder()
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, handler, "email-q"))
        processor = QueueProcessor(registry, memory_broker)

        await processor.process_job(_job("email-q", "OrderCreatedEmailHandler", order_event.to_wire()))

        assert handler.events == [order_event]

    @pytest.mark.asyncio
    async def test_shared_queue_picks_matching_handler(self, registry, memory_broker, order_event):
        email, inventory = _Recorder(), _Recorder()
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, email, "shared-q"))
        registry.register(_definition(HandlerId.ORDER_CREATED_INVENTORY, inventory, "shared-q"))
        processor = QueueProcessor(registry, memory_broker)

        await processor.process_job(
            _job("shared-q", "OrderCreatedInventoryHandler", order_event.to_wire())
        )

        assert email.events == []
        assert len(inventory.events) == 1

    @pytest.mark.asyncio
    async def test_unknown_handler_class_raises(self, registry, memory_broker, order_event):
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, _Recorder(), "email-q"))
        processor = QueueProcessor(registry, memory_broker)

        with pytest.raises(HandlerNotFoundError):
            await processor.process_job(_job("email-q", "GhostHandler", order_event.to_wire()))

    @pytest.mark.asyncio
    async def test_handler_bound_to_other_queue_raises(self, registry, memory_broker, order_event):
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, _Recorder(), "email-q"))
        processor = QueueProcessor(registry, memory_broker)

        with pytest.raises(HandlerNotFoundError):
            await processor.process_job(
                _job("other-q", "OrderCreatedEmailHandler", order_event.to_wire())
            )

    @pytest.mark.asyncio
    async def test_bad_event_raises_deserialization_error(self, registry, memory_broker):
        handler = _Recorder()
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, handler, "email-q"))
        processor = QueueProcessor(registry, memory_broker)

        with pytest.raises(EventDeserializationError):
            await processor.process_job(
                _job("email-q", "OrderCreatedEmailHandler", {"type": "order.created"})
            )
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_handler_error_propagates(self, registry, memory_broker, order_event):
        registry.register(
            _definition(HandlerId.ORDER_CREATED_EMAIL, _Recorder(fail_times=1), "email-q")
        )
        processor = QueueProcessor(registry, memory_broker)

        with pytest.raises(RuntimeError, match="attempt 1 failed"):
            await processor.process_job(
                _job("email-q", "OrderCreatedEmailHandler", order_event.to_wire())
            )


# ===========================================================================
# Running workers
# ===========================================================================


class TestProcessorWorkers:

    @pytest.mark.asyncio
    async def test_start_creates_one_worker_per_queue(self, registry, memory_broker):
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, _Recorder(), "a"))
        registry.register(_definition(HandlerId.ORDER_CREATED_INVENTORY, _Recorder(), "b"))
        processor = QueueProcessor(registry, memory_broker, ProcessorConfig(concurrency=3))

        await processor.start()
        await processor.start()

        assert processor.queue_names == ["a", "b"]
        assert processor.is_running
        assert all(w.concurrency == 3 for w in processor._workers.values())
        await processor.stop()
        assert processor.queue_names == []
        assert not processor.is_running

    @pytest.mark.asyncio
    async def test_retry_then_success(self, registry, memory_broker, order_event, fast_job_options):
        handler = _Recorder(fail_times=1)
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, handler, "email-q"))
        processor = QueueProcessor(registry, memory_broker)
        await processor.start()

        await EventPublisher(registry, memory_broker, fast_job_options).publish(order_event)
        await memory_broker.wait_until_idle()

        assert handler.calls == 2
        assert len(handler.events) == 1
        assert processor.messages_processed == 1
        assert processor.get_error_counts() == {"email-q": 1}
        assert processor.get_failed_jobs() == []
        await processor.stop()

    @pytest.mark.asyncio
    async def test_exhausted_job_recorded_as_failed(self, registry, memory_broker, order_event):
        handler = _Recorder(fail_times=99)
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, handler, "email-q"))
        failed_calls = []
        processor = QueueProcessor(
            registry,
            memory_broker,
            on_job_failed=lambda queue, job_id, exc: failed_calls.append((queue, job_id)),
        )
        await processor.start()

        options = JobOptions(attempts=2, backoff={"delay_ms": 0})
        await EventPublisher(registry, memory_broker, options).publish(order_event)
        await memory_broker.wait_until_idle()

        job_id = f"{order_event.event_id}-OrderCreatedEmailHandler"
        assert handler.calls == 2
        assert failed_calls == [("email-q", job_id), ("email-q", job_id)]
        failed = processor.get_failed_jobs()
        assert len(failed) == 1
        assert failed[0].job_id == job_id
        assert failed[0].attempts == 2
        assert "attempt 2 failed" in failed[0].error

        drained = processor.clear_failed_jobs()
        assert len(drained) == 1
        assert processor.get_failed_jobs() == []
        await processor.stop()

    @pytest.mark.asyncio
    async def test_failing_callback_is_ignored(
        self, registry, memory_broker, order_event, fast_job_options, caplog,
    ):
        def bad_callback(queue, job_id, exc):
            raise ValueError("observer broke")

        handler = _Recorder(fail_times=1)
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, handler, "email-q"))
        processor = QueueProcessor(registry, memory_broker, on_job_failed=bad_callback)
        await processor.start()

        with caplog.at_level("WARNING"):
            await EventPublisher(registry, memory_broker, fast_job_options).publish(order_event)
            await memory_broker.wait_until_idle()

        assert processor.messages_processed == 1
        assert processor.get_error_counts() == {"email-q": 1}
        assert "Job observer callback failed" in caplog.text
        await processor.stop()

    @pytest.mark.asyncio
    async def test_missing_handler_does_not_stop_worker(self, registry, memory_broker, order_event):
        handler = _Recorder()
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, handler, "email-q"))
        processor = QueueProcessor(registry, memory_broker)
        await processor.start()

        queue = memory_broker.queue("email-q")
        options = JobOptions(attempts=3, backoff={"delay_ms": 0})
        await queue.add(
            "ghost", "n", JobRecord(handler_class="GhostHandler", event=order_event.to_wire()), options,
        )
        await queue.add(
            "real",
            "n",
            JobRecord(handler_class="OrderCreatedEmailHandler", event=order_event.to_wire()),
            options,
        )
        await memory_broker.wait_until_idle()

        ghost = memory_broker.get_job("email-q", "ghost")
        assert ghost.attempts_made == 1
        assert ghost.state.value == "failed"
        assert len(handler.events) == 1
        await processor.stop()

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight(self, registry, memory_broker, order_event):
        handler = _Recorder(delay=0.02)
        registry.register(_definition(HandlerId.ORDER_CREATED_EMAIL, handler, "email-q"))
        processor = QueueProcessor(registry, memory_broker)
        await processor.start()

        await EventPublisher(registry, memory_broker).publish(order_event)
        await asyncio.sleep(0.005)
        await processor.stop()

        assert len(handler.events) == 1
