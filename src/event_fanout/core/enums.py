"""Enumerations used across the event fan-out layer."""

from enum import Enum


class EventType(str, Enum):
    """Routing key of a domain event."""

    USER_ACCOUNT_CREATED = "user.account.created"
    ORDER_CREATED = "order.created"
    PAYMENT_PROCESSED = "payment.processed"


class HandlerId(str, Enum):
    """Stable handler identity.  The value is the ``handlerClass`` on the wire."""

    USER_ACCOUNT_CREATED = "UserAccountCreatedHandler"
    ORDER_CREATED_EMAIL = "OrderCreatedEmailHandler"
    ORDER_CREATED_INVENTORY = "OrderCreatedInventoryHandler"


class BrokerBackend(str, Enum):
    REDIS = "redis"
    MEMORY = "memory"


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
