"""Welcome email for newly created user accounts."""

from __future__ import annotations

import asyncio

from event_fanout.domain.events import UserAccountCreated
from event_fanout.observability.logger import get_logger

logger = get_logger(__name__)


class UserAccountCreatedHandler:
    """Sends the welcome email.  Delivery is simulated with a sleep."""

    def __init__(self, delay: float = 1.0) -> None:
        self._delay = delay

    async def handle(self, event: UserAccountCreated) -> None:
        payload = event.payload
        logger.info(
            "welcome_email.sending",
            user_id=event.aggregate_id,
            email=payload.email,
        )
        await asyncio.sleep(self._delay)
        logger.info(
            "welcome_email.sent",
            user_id=event.aggregate_id,
            email=payload.email,
            name=payload.name,
        )
