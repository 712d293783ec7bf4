"""Order confirmation email."""

from __future__ import annotations

import asyncio

from event_fanout.domain.events import OrderCreated
from event_fanout.observability.logger import get_logger

logger = get_logger(__name__)


class OrderCreatedEmailHandler:
    def __init__(self, delay: float = 1.5) -> None:
        self._delay = delay

    async def handle(self, event: OrderCreated) -> None:
        payload = event.payload
        logger.info(
            "order_confirmation.sending",
            order_id=payload.order_id,
            customer_id=payload.customer_id,
        )
        await asyncio.sleep(self._delay)
        logger.info(
            "order_confirmation.sent",
            order_id=payload.order_id,
            customer_id=payload.customer_id,
            total=payload.total,
            item_count=len(payload.items),
        )
