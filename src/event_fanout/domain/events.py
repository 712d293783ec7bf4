"""Domain events routed through the fan-out layer.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``), payload included.
2.  ``event_id`` is a UUID4 and ``occurred_on`` a UTC timestamp, both
    generated at construction.  Callers cannot supply them; passing either
    to the constructor is a validation error.
3.  The wire form exposes exactly five camelCase keys: ``aggregateId``,
    ``eventId``, ``occurredOn``, ``type`` and ``payload``.
4.  Consumers never share identity with the producer-side instance.
    ``reconstruct_event`` builds a new value from the wire form, copying
    every field as-is (the ``event_id`` is never re-derived).
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, ClassVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from event_fanout.core.enums import EventType
from event_fanout.core.errors import EventDeserializationError
from event_fanout.core.ids import new_id, utc_now

# Validation context flag that admits generated fields (consumer side only).
_RESTORE = "restore"

_GENERATED_FIELDS = frozenset({"event_id", "eventId", "occurred_on", "occurredOn"})


class WireModel(BaseModel):
    """Frozen model serialized with camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class DomainEvent(WireModel):
    """Immutable base for every routed event.

    Subclasses pin ``event_type`` to their tag and narrow ``payload`` to a
    concrete model.
    """

    event_type: ClassVar[EventType | None] = None

    event_id: str = Field(default_factory=new_id)
    aggregate_id: str = Field(min_length=1)
    type: EventType
    occurred_on: datetime = Field(default_factory=utc_now)
    payload: Any = None

    @model_validator(mode="before")
    @classmethod
    def _reject_generated_fields(cls, data: Any, info: ValidationInfo) -> Any:
        restoring = bool(info.context and info.context.get(_RESTORE))
        if isinstance(data, Mapping) and not restoring:
            supplied = _GENERATED_FIELDS.intersection(data)
            if supplied:
                raise ValueError(
                    f"{', '.join(sorted(supplied))} are generated at "
                    "construction and cannot be supplied"
                )
        return data

    @model_validator(mode="before")
    @classmethod
    def _default_type(cls, data: Any) -> Any:
        if (
            isinstance(data, Mapping)
            and cls.event_type is not None
            and "type" not in data
        ):
            return {**data, "type": cls.event_type}
        return data

    @field_validator("occurred_on")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _type_matches_class(self) -> DomainEvent:
        expected = type(self).event_type
        if expected is not None and self.type != expected:
            raise ValueError(
                f"{type(self).__name__} requires type={expected.value!r}, "
                f"got {self.type.value!r}"
            )
        return self

    # -- Wire codec ---------------------------------------------------------

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict with the five camelCase event keys."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> DomainEvent:
        """Restore an event from its wire form, keeping id and timestamp."""
        return cls.model_validate(dict(data), context={_RESTORE: True})


# =========================================================================
# user.account.created
# =========================================================================

class UserAccountCreatedPayload(WireModel):
    name: str
    email: str


class UserAccountCreated(DomainEvent):
    """A user signed up."""

    event_type: ClassVar[EventType] = EventType.USER_ACCOUNT_CREATED

    payload: UserAccountCreatedPayload


# =========================================================================
# order.created
# =========================================================================

class OrderItem(WireModel):
    product_id: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)


class OrderCreatedPayload(WireModel):
    order_id: str
    customer_id: str
    items: tuple[OrderItem, ...] = ()
    total: float = Field(ge=0)


class OrderCreated(DomainEvent):
    """An order was placed."""

    event_type: ClassVar[EventType] = EventType.ORDER_CREATED

    payload: OrderCreatedPayload


# =========================================================================
# payment.processed
# =========================================================================

class PaymentProcessedPayload(WireModel):
    payment_id: str
    order_id: str
    amount: float = Field(ge=0)
    currency: str = "USD"
    status: str = "succeeded"


class PaymentProcessed(DomainEvent):
    """A payment for an order settled."""

    event_type: ClassVar[EventType] = EventType.PAYMENT_PROCESSED

    payload: PaymentProcessedPayload


# ---------------------------------------------------------------------------
# Type registry
# ---------------------------------------------------------------------------

EVENT_TYPE_MAP: dict[EventType, type[DomainEvent]] = {
    cls.event_type: cls
    for cls in (UserAccountCreated, OrderCreated, PaymentProcessed)
}


def get_event_class(event_type: Any) -> type[DomainEvent] | None:
    """Look up the event class for a routing key."""
    try:
        return EVENT_TYPE_MAP.get(EventType(event_type))
    except ValueError:
        return None


def reconstruct_event(data: Mapping[str, Any]) -> DomainEvent:
    """Build a fresh event value from a job's serialized event.

    Raises
    ------
    EventDeserializationError
        If the type is unknown or the data fails validation.
    """
    if not isinstance(data, Mapping):
        raise EventDeserializationError(
            f"Serialized event must be a mapping, got {type(data).__name__}"
        )
    event_cls = get_event_class(data.get("type"))
    if event_cls is None:
        raise EventDeserializationError(
            f"Unknown event type: {data.get('type')!r}"
        )
    try:
        return event_cls.from_wire(data)
    except ValueError as exc:
        raise EventDeserializationError(
            f"Invalid {event_cls.__name__} payload: {exc}"
        ) from exc
