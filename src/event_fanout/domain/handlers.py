"""Handler capability and its routing declaration.

A handler is anything with ``handle(event)``.  Its routing metadata
(event type, queue, identity) is stated as data in a
``HandlerDefinition`` instead of being attached to the class, so the
registry never has to introspect handler types.

Usage::

    ORDER_CREATED_EMAIL = HandlerDefinition(
        handler_id=HandlerId.ORDER_CREATED_EMAIL,
        event_type=EventType.ORDER_CREATED,
        queue_name="order-confirmation-email-queue",
        factory=OrderCreatedEmailHandler,
    )
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from event_fanout.core.enums import EventType, HandlerId

from .events import DomainEvent


@runtime_checkable
class EventHandler(Protocol):
    """Consumer of one event type.

    The same instance serves every job routed to it, possibly several at
    once, so ``handle`` must be reentrant.  Raising signals failure; the
    broker decides whether to retry.
    """

    def handle(self, event: DomainEvent) -> Awaitable[None] | None: ...


HandlerFactory = Callable[[], EventHandler]


def default_queue_name(event_type: EventType | str) -> str:
    """Queue used when a definition names none: ``"<eventType>-queue"``."""
    value = event_type.value if isinstance(event_type, EventType) else event_type
    return f"{value}-queue"


@dataclass(frozen=True)
class HandlerDefinition:
    """Declares a handler type as a consumer of ``event_type`` on ``queue_name``.

    ``queue_name`` defaults to ``"<eventType>-queue"`` when omitted.
    ``event_type`` may be ``None`` only so that an incomplete declaration
    can be rejected at registration with ``MissingMetadataError``.
    """

    handler_id: HandlerId
    event_type: EventType | None
    factory: HandlerFactory
    queue_name: str | None = None

    def __post_init__(self) -> None:
        if self.queue_name is None and self.event_type:
            object.__setattr__(
                self, "queue_name", default_queue_name(self.event_type),
            )

    @property
    def handler_class(self) -> str:
        """Wire identity written into every job for this handler."""
        return self.handler_id.value
