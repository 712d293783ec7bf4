"""Inventory update for placed orders.

Stock is reduced once per order line.  Runs independently of the order
confirmation email; neither handler knows the other exists.
"""

from __future__ import annotations

import asyncio

from event_fanout.domain.events import OrderCreated
from event_fanout.observability.logger import get_logger

logger = get_logger(__name__)


class OrderCreatedInventoryHandler:
    def __init__(self, delay: float = 0.8) -> None:
        self._delay = delay

    async def handle(self, event: OrderCreated) -> None:
        payload = event.payload
        logger.info(
            "inventory.updating",
            order_id=payload.order_id,
            line_count=len(payload.items),
        )
        for item in payload.items:
            logger.info(
                "inventory.stock_reduced",
                product_id=item.product_id,
                quantity=item.quantity,
            )
        await asyncio.sleep(self._delay)
        logger.info("inventory.updated", order_id=payload.order_id)
