"""Shared fixtures for the event-fanout test suite."""

from __future__ import annotations

import pytest

from event_fanout.bus.memory_broker import MemoryBroker
from event_fanout.bus.registry import HandlerRegistry
from event_fanout.core.config import BackoffPolicy, JobOptions, Settings
from event_fanout.core.enums import BrokerBackend
from event_fanout.domain.events import (
    OrderCreated,
    OrderCreatedPayload,
    OrderItem,
    UserAccountCreated,
    UserAccountCreatedPayload,
)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@pytest.fixture
def user_event() -> UserAccountCreated:
    """The sample sign-up of user-123."""
    return UserAccountCreated(
        aggregate_id="user-123",
        payload=UserAccountCreatedPayload(name="João Silva", email="joao@example.com"),
    )


@pytest.fixture
def order_event() -> OrderCreated:
    """Order order-456: two lines, total 130.0."""
    return OrderCreated(
        aggregate_id="order-456",
        payload=OrderCreatedPayload(
            order_id="order-456",
            customer_id="user-123",
            items=(
                OrderItem(product_id="prod-1", quantity=2, price=50.0),
                OrderItem(product_id="prod-2", quantity=1, price=30.0),
            ),
            total=130.0,
        ),
    )


# ---------------------------------------------------------------------------
# Routing layer
# ---------------------------------------------------------------------------

@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def memory_broker() -> MemoryBroker:
    """Memory broker with instantaneous backoff."""
    return MemoryBroker(delay_scale=0)


@pytest.fixture
def fast_job_options() -> JobOptions:
    return JobOptions(attempts=3, backoff=BackoffPolicy(delay_ms=0))


@pytest.fixture
def memory_settings() -> Settings:
    """Memory backend, three attempts, no backoff delay."""
    return Settings(
        broker={"backend": BrokerBackend.MEMORY},
        jobs={"attempts": 3, "backoff": {"delay_ms": 0}},
        processor={"concurrency": 5},
    )
