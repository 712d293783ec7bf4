"""Application bootstrap.

Wires settings, logging, metrics and the queue manager, then either runs
the workers until a shutdown signal or publishes the demo events.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from .bus.manager import QueueManager
from .bus.memory_broker import MemoryBroker
from .bus.publisher import PublishResult
from .core.config import Settings, load_settings
from .domain.events import (
    DomainEvent,
    OrderCreated,
    OrderCreatedPayload,
    OrderItem,
    UserAccountCreated,
    UserAccountCreatedPayload,
)
from .handlers import ALL_HANDLERS
from .observability.logger import setup_logging

logger = logging.getLogger(__name__)


async def run_worker(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> None:
    """Load config, register the handlers and consume until SIGINT/SIGTERM."""

    # 1. Load settings
    settings = load_settings(config_path=config_path, overrides=overrides)

    # 2. Set up logging
    _setup_logging(settings)

    logger.info(
        "Starting event-fanout worker",
        extra={
            "backend": settings.broker.backend.value,
            "concurrency": settings.processor.concurrency,
        },
    )

    # 3. Metrics
    if settings.observability.metrics_enabled:
        try:
            from .observability.metrics import start_metrics_server

            metrics_port = settings.observability.metrics_port
            start_metrics_server(port=metrics_port)
            logger.info("Prometheus metrics server started on port %d", metrics_port)
        except Exception:
            logger.warning("Failed to start metrics server", exc_info=True)

    # 4. Wire and start
    manager = QueueManager.from_config(settings)
    await manager.initialize(ALL_HANDLERS)

    # Set up graceful shutdown
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Received shutdown signal")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    logger.info(
        "Worker running on %d queue(s). Press Ctrl+C to stop.",
        len(manager.registry.all_queue_names()),
    )
    try:
        await stop_event.wait()
    finally:
        await manager.shutdown()
        logger.info("Shutdown complete")


async def publish_demo(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> list[PublishResult]:
    """Publish the sample events.

    With the memory backend the handlers run in-process and the call
    returns once every job has settled; with Redis the jobs are left for
    the workers.
    """
    settings = load_settings(config_path=config_path, overrides=overrides)
    _setup_logging(settings)

    manager = QueueManager.from_config(settings)
    in_process = isinstance(manager.broker, MemoryBroker)
    await manager.initialize(ALL_HANDLERS, start_workers=in_process)

    results: list[PublishResult] = []
    try:
        for event in sample_events():
            results.append(await manager.publish(event))
        if in_process:
            await manager.broker.wait_until_idle(timeout=30.0)
    finally:
        await manager.shutdown()

    logger.info("Events published successfully")
    return results


def sample_events() -> list[DomainEvent]:
    """A new user account and that user's first order."""
    user_event = UserAccountCreated(
        aggregate_id="user-123",
        payload=UserAccountCreatedPayload(
            name="João Silva",
            email="joao@example.com",
        ),
    )
    order_event = OrderCreated(
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
    return [user_event, order_event]


def _setup_logging(settings: Settings) -> None:
    """Configure structured logging."""
    setup_logging(
        level=settings.observability.log_level,
        format=settings.observability.log_format,
    )
