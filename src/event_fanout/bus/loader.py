"""Handler loader: the bridge from "defined handlers" to the registry."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from types import ModuleType
from typing import Any

from event_fanout.domain.handlers import HandlerDefinition

from .registry import HandlerRegistry

logger = logging.getLogger(__name__)


class HandlerLoader:
    """Registers every ``HandlerDefinition`` found among a set of candidates.

    Candidates may be an iterable, a mapping (its values are scanned) or a
    module (its public attributes, in definition order).  Anything that is
    not a definition is skipped silently.  Loading the same definitions
    twice registers nothing new.
    """

    def __init__(self, registry: HandlerRegistry) -> None:
        self._registry = registry

    def load(self, candidates: Iterable[Any] | Mapping[str, Any] | ModuleType) -> int:
        """Register all definitions in *candidates*.  Returns how many were new."""
        registered = 0
        for definition in self._definitions(candidates):
            if self._registry.register(definition):
                registered += 1
                logger.info(
                    "Registered handler %s: %s -> %s",
                    definition.handler_class,
                    definition.event_type.value,
                    definition.queue_name,
                )

        logger.info("Successfully registered %d handler(s)", registered)
        return registered

    @staticmethod
    def _definitions(
        candidates: Iterable[Any] | Mapping[str, Any] | ModuleType,
    ) -> list[HandlerDefinition]:
        if isinstance(candidates, ModuleType):
            items: Iterable[Any] = (
                value for name, value in vars(candidates).items()
                if not name.startswith("_")
            )
        elif isinstance(candidates, Mapping):
            items = candidates.values()
        else:
            items = candidates
        return [item for item in items if isinstance(item, HandlerDefinition)]
