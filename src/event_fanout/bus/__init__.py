"""Routing layer: registry, loader, publisher, processor and brokers.

``QueueManager`` is the entry point; the other classes are exported for
callers that wire the pieces themselves.
"""

from event_fanout.bus.manager import QueueManager
from event_fanout.bus.processor import QueueProcessor
from event_fanout.bus.publisher import EventPublisher, PublishResult
from event_fanout.bus.registry import HandlerBinding, HandlerRegistry

__all__ = [
    "EventPublisher",
    "HandlerBinding",
    "HandlerRegistry",
    "PublishResult",
    "QueueManager",
    "QueueProcessor",
]
