"""End-to-end: publish -> broker -> workers -> handlers on the memory broker.

Verifies that
1. one order.created reaches both order handlers exactly once,
2. handlers receive a rebuilt event equal to the published one,
3. a re-publish never runs a handler twice,
4. a failure in one handler does not affect the other,
5. handlers run concurrently up to the configured limit.
"""

from __future__ import annotations

import asyncio

import pytest

from event_fanout.bus.manager import QueueManager
from event_fanout.bus.memory_broker import MemoryBroker
from event_fanout.bus.registry import HandlerRegistry
from event_fanout.core.config import Settings
from event_fanout.core.enums import BrokerBackend, EventType, HandlerId
from event_fanout.domain.events import OrderCreated
from event_fanout.domain.handlers import HandlerDefinition


class _Probe:
    """Handler that records events and tracks concurrent invocations."""

    def __init__(self, fail_times: int = 0, delay: float = 0.0) -> None:
        self.events: list = []
        self.calls = 0
        self.active = 0
        self.peak = 0
        self._fail_times = fail_times
        self._delay = delay

    async def handle(self, event) -> None:
        self.calls += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self.calls <= self._fail_times:
                raise RuntimeError("inventory service unavailable")
            self.events.append(event)
        finally:
            self.active -= 1


def _settings(attempts: int = 3, concurrency: int = 5) -> Settings:
    return Settings(
        broker={"backend": BrokerBackend.MEMORY},
        jobs={"attempts": attempts, "backoff": {"delay_ms": 0}},
        processor={"concurrency": concurrency},
    )


async def _manager(email: _Probe, inventory: _Probe, settings: Settings) -> QueueManager:
    definitions = [
        HandlerDefinition(
            handler_id=HandlerId.ORDER_CREATED_EMAIL,
            event_type=EventType.ORDER_CREATED,
            queue_name="order-confirmation-email-queue",
            factory=lambda: email,
        ),
        HandlerDefinition(
            handler_id=HandlerId.ORDER_CREATED_INVENTORY,
            event_type=EventType.ORDER_CREATED,
            queue_name="inventory-update-queue",
            factory=lambda: inventory,
        ),
    ]
    mgr = QueueManager(HandlerRegistry(), MemoryBroker(delay_scale=0), settings)
    await mgr.initialize(definitions)
    return mgr


class TestOrderFanOutRoundTrip:

    @pytest.mark.asyncio
    async def test_order_reaches_both_handlers_once(self, order_event):
        email, inventory = _Probe(), _Probe()
        mgr = await _manager(email, inventory, _settings())

        result = await mgr.publish(order_event)
        await mgr.broker.wait_until_idle()

        assert sorted(result.job_ids) == sorted([
            f"{order_event.event_id}-OrderCreatedEmailHandler",
            f"{order_event.event_id}-OrderCreatedInventoryHandler",
        ])
        assert len(email.events) == 1
        assert len(inventory.events) == 1
        received = inventory.events[0]
        assert isinstance(received, OrderCreated)
        assert received == order_event
        assert received.payload.order_id == "order-456"
        assert mgr.messages_processed == 2
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_republish_does_not_run_handlers_twice(self, order_event):
        email, inventory = _Probe(), _Probe()
        mgr = await _manager(email, inventory, _settings())

        await mgr.publish(order_event)
        await mgr.broker.wait_until_idle()
        second = await mgr.publish(order_event)
        await mgr.broker.wait_until_idle()

        assert not any(job.created for job in second.jobs)
        assert email.calls == 1
        assert inventory.calls == 1
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated_and_retried(self, order_event):
        email, inventory = _Probe(), _Probe(fail_times=1)
        mgr = await _manager(email, inventory, _settings(attempts=2))

        await mgr.publish(order_event)
        await mgr.broker.wait_until_idle()

        assert email.calls == 1
        assert inventory.calls == 2
        assert len(inventory.events) == 1
        assert mgr.get_error_counts() == {"inventory-update-queue": 1}
        assert mgr.get_failed_jobs() == []
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_permanent_failure_leaves_other_handler_done(self, order_event):
        email, inventory = _Probe(), _Probe(fail_times=99)
        mgr = await _manager(email, inventory, _settings(attempts=2))

        await mgr.publish(order_event)
        await mgr.broker.wait_until_idle()

        assert len(email.events) == 1
        assert inventory.calls == 2
        failed = mgr.get_failed_jobs()
        assert [f.queue_name for f in failed] == ["inventory-update-queue"]
        await mgr.shutdown()

    @pytest.mark.asyncio
    async def test_concurrency_limit_per_queue(self, order_event):
        email, inventory = _Probe(delay=0.01), _Probe(delay=0.01)
        mgr = await _manager(email, inventory, _settings(concurrency=2))

        for _ in range(6):
            event = OrderCreated(
                aggregate_id=order_event.aggregate_id, payload=order_event.payload,
            )
            await mgr.publish(event)
        await mgr.broker.wait_until_idle()

        assert len(email.events) == 6
        assert email.peak == 2
        assert inventory.peak == 2
        await mgr.shutdown()
