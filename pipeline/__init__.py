"""
Event pipeline for the parking platform.

- Event contracts and their JSON wire form
- The bus contract, an in-memory broker and the RabbitMQ adapter
- Consumers (billing, analytics, notification) wired up in ``runtime``
"""

from pipeline.event_bus import EventBus, HandlerRegistry, InMemoryEventBus
from pipeline.events import DomainEvent, PaymentProcessed, SpotFreed, SpotOccupied

__all__ = [
    "DomainEvent",
    "EventBus",
    "HandlerRegistry",
    "InMemoryEventBus",
    "PaymentProcessed",
    "SpotFreed",
    "SpotOccupied",
]
