"""Reference handlers and their routing declarations.

``ALL_HANDLERS`` is what the worker loads at startup.
"""

from event_fanout.core.enums import EventType, HandlerId
from event_fanout.domain.handlers import HandlerDefinition
from event_fanout.handlers.order_created_email import OrderCreatedEmailHandler
from event_fanout.handlers.order_created_inventory import OrderCreatedInventoryHandler
from event_fanout.handlers.user_account_created import UserAccountCreatedHandler

USER_ACCOUNT_CREATED = HandlerDefinition(
    handler_id=HandlerId.USER_ACCOUNT_CREATED,
    event_type=EventType.USER_ACCOUNT_CREATED,
    queue_name="user-welcome-email-queue",
    factory=UserAccountCreatedHandler,
)

ORDER_CREATED_EMAIL = HandlerDefinition(
    handler_id=HandlerId.ORDER_CREATED_EMAIL,
    event_type=EventType.ORDER_CREATED,
    queue_name="order-confirmation-email-queue",
    factory=OrderCreatedEmailHandler,
)

ORDER_CREATED_INVENTORY = HandlerDefinition(
    handler_id=HandlerId.ORDER_CREATED_INVENTORY,
    event_type=EventType.ORDER_CREATED,
    queue_name="inventory-update-queue",
    factory=OrderCreatedInventoryHandler,
)

ALL_HANDLERS: tuple[HandlerDefinition, ...] = (
    USER_ACCOUNT_CREATED,
    ORDER_CREATED_EMAIL,
    ORDER_CREATED_INVENTORY,
)

__all__ = [
    "ALL_HANDLERS",
    "ORDER_CREATED_EMAIL",
    "ORDER_CREATED_INVENTORY",
    "USER_ACCOUNT_CREATED",
    "OrderCreatedEmailHandler",
    "OrderCreatedInventoryHandler",
    "UserAccountCreatedHandler",
]
