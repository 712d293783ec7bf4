"""Handler registry: event type → bindings, queue → bindings.

The registry is an ordinary object passed to the loader, the publisher and
the processor; nothing about it is process-global, so tests (or several
independent pipelines) can each own one.

Ordering contract
-----------------
All registration must finish before workers start consuming.  The registry
does not serialize a ``register`` against concurrent reads; the two indexes
are updated together without an await point, so under asyncio they are
always a consistent view of the same binding set.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from event_fanout.core.enums import EventType, HandlerId
from event_fanout.core.errors import (
    DuplicateHandlerError,
    HandlerNotFoundError,
    MissingMetadataError,
    RegistrationError,
)
from event_fanout.domain.handlers import EventHandler, HandlerDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerBinding:
    """Registered association of an event type, a queue and a handler."""

    event_type: EventType
    queue_name: str
    handler_id: HandlerId

    @property
    def handler_class(self) -> str:
        return self.handler_id.value


class HandlerRegistry:
    """Indexes handler bindings and owns one instance per handler identity."""

    def __init__(self) -> None:
        self._by_event_type: dict[str, list[HandlerBinding]] = defaultdict(list)
        self._by_queue: dict[str, list[HandlerBinding]] = defaultdict(list)
        self._bindings: dict[HandlerId, HandlerBinding] = {}
        self._instances: dict[HandlerId, EventHandler] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, candidate: Any) -> bool:
        """Register a handler definition.

        Returns ``True`` if a new binding was added.  Candidates that are
        not ``HandlerDefinition`` objects, and repeats of an identity with
        identical routing, are ignored (``False``).

        Raises
        ------
        MissingMetadataError
            If the definition lacks an event type or a queue name.
        DuplicateHandlerError
            If the identity is already bound to a different route.
        RegistrationError
            If the event type is not a known ``EventType``.
        """
        if not isinstance(candidate, HandlerDefinition):
            return False

        definition = candidate
        if not definition.event_type or not definition.queue_name:
            raise MissingMetadataError(
                f"Handler {definition.handler_class} is missing required "
                f"metadata (event_type={definition.event_type!r}, "
                f"queue_name={definition.queue_name!r})"
            )

        try:
            event_type = EventType(definition.event_type)
        except ValueError:
            raise RegistrationError(
                f"Handler {definition.handler_class} is bound to unknown "
                f"event type {definition.event_type!r}"
            ) from None

        binding = HandlerBinding(
            event_type=event_type,
            queue_name=definition.queue_name,
            handler_id=definition.handler_id,
        )

        existing = self._bindings.get(binding.handler_id)
        if existing is not None:
            if existing == binding:
                logger.debug(
                    "Handler %s already registered; skipping", binding.handler_class,
                )
                return False
            raise DuplicateHandlerError(
                f"Handler {binding.handler_class} is already bound to "
                f"{existing.event_type.value} -> {existing.queue_name}"
            )

        # Build the instance first: a failing factory leaves no binding behind.
        instance = definition.factory()

        self._instances[binding.handler_id] = instance
        self._bindings[binding.handler_id] = binding
        self._by_event_type[binding.event_type.value].append(binding)
        self._by_queue[binding.queue_name].append(binding)
        return True

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def bindings_for_event_type(self, event_type: EventType | str) -> list[HandlerBinding]:
        """All bindings for *event_type*, in registration order."""
        return list(self._by_event_type.get(_key(event_type), ()))

    def bindings_for_queue(self, queue_name: str) -> list[HandlerBinding]:
        """All bindings dispatched through *queue_name*, in registration order."""
        return list(self._by_queue.get(queue_name, ()))

    def all_queue_names(self) -> list[str]:
        """Every queue with at least one binding, in first-registration order."""
        return [name for name, bindings in self._by_queue.items() if bindings]

    def all_event_types(self) -> list[str]:
        return [name for name, bindings in self._by_event_type.items() if bindings]

    def instance_for(self, handler_id: HandlerId | str) -> EventHandler:
        """The shared handler instance for *handler_id*."""
        try:
            return self._instances[HandlerId(handler_id)]
        except (KeyError, ValueError):
            raise HandlerNotFoundError(f"Handler {handler_id} is not registered") from None

    @property
    def bindings(self) -> list[HandlerBinding]:
        return list(self._bindings.values())

    def __len__(self) -> int:
        return len(self._bindings)

    def __contains__(self, handler_id: object) -> bool:
        try:
            return HandlerId(handler_id) in self._bindings
        except ValueError:
            return False


def _key(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type
