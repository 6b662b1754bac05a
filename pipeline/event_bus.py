"""
Event bus contract and the in-memory broker.

This module provides the pub/sub abstraction every consumer codes against and
an in-process implementation of it that behaves like a durable topic broker:
one queue per (event type, subscriber) pair, acknowledgement after a successful
handler run, negative acknowledgement with requeue on failure, and a
dead-letter path once a message has failed too many times.

Design decisions:
- Publishers hand over typed events; the bus owns the wire form (JSON bytes
  plus an envelope carrying message id, timestamp and persistence flag)
- Handlers are registered in an explicit ``HandlerRegistry`` built at startup
  and passed into the bus, not in module-level state
- Queues survive ``unsubscribe``: messages published while nobody consumes
  wait for the subscriber to come back
- Decoding failures are dead-lettered at once (retrying cannot fix them);
  any other handler exception is requeued until ``max_delivery_attempts``

The RabbitMQ adapter in ``pipeline.rabbitmq`` implements the same contract,
so consumers never know which transport they run on.
"""

import dataclasses
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, TypeVar

from pipeline.events import DomainEvent, from_wire, to_wire, utcnow
from pipeline.exceptions import MalformedEventError

logger = logging.getLogger("event_bus")

E = TypeVar("E", bound=DomainEvent)

# Type alias for event handler functions
EventHandler = Callable[[DomainEvent], None]

DELIVERY_COUNT_HEADER = "x-delivery-count"
DEFAULT_MAX_DELIVERY_ATTEMPTS = 5


def queue_name_for(event_type: str, subscriber: Optional[str] = None) -> str:
    """
    Queue name for an (event type, subscriber) pair.

    ``{EventType}_fila`` for an anonymous subscriber, prefixed with the
    subscriber name otherwise so each consumer gets its own copy.
    """
    if subscriber:
        return f"{subscriber}.{event_type}_fila"
    return f"{event_type}_fila"


@dataclass
class BusMessage:
    """
    A message as it sits on a queue.

    Attributes:
        message_id: The event's ``event_id`` as a string
        routing_key: The event type name
        body: JSON payload
        timestamp: Unix seconds of ``occurred_at``
        persistent: Survive broker restarts (always True for domain events)
        delivery_count: How many times this message has been handed to a handler
    """
    message_id: str
    routing_key: str
    body: bytes
    timestamp: int
    persistent: bool = True
    headers: dict[str, object] = field(default_factory=dict)
    delivery_count: int = 0

    @classmethod
    def from_event(cls, event: DomainEvent) -> "BusMessage":
        return cls(
            message_id=str(event.event_id),
            routing_key=event.event_type,
            body=to_wire(event),
            timestamp=int(event.occurred_at.timestamp()),
        )

    def __str__(self) -> str:
        return f"Message({self.routing_key}, id={self.message_id[:8]}, attempt={self.delivery_count})"


class DeliveryOutcome(str, Enum):
    """What the transport should do with a message after a handler run."""
    ACK = "ack"
    REQUEUE = "requeue"
    DEAD_LETTER = "dead_letter"


@dataclass
class DeadLetter:
    """A message removed from the redelivery loop, kept for manual inspection."""
    message_id: str
    queue: str
    routing_key: str
    body: bytes
    reason: str
    attempts: int
    failed_at: datetime = field(default_factory=utcnow)


# =============================================================================
# Handler Registry
# =============================================================================

@dataclass
class Subscription:
    """One handler bound to one durable queue."""
    event_cls: type[DomainEvent]
    handler: EventHandler
    subscriber: Optional[str]
    queue: str
    active: bool = True

    @property
    def event_type(self) -> str:
        return self.event_cls.EVENT_TYPE


class HandlerRegistry:
    """
    Table of event type -> ordered list of subscriptions.

    Built once at startup and handed to the bus by reference. Subscriptions
    are keyed by queue name, so subscribing the same (event type, subscriber)
    pair twice replaces the handler instead of consuming twice.
    """

    def __init__(self):
        self._by_type: dict[str, list[Subscription]] = {}
        self._lock = threading.RLock()

    def add(self, subscription: Subscription) -> Subscription:
        with self._lock:
            subscriptions = self._by_type.setdefault(subscription.event_type, [])
            for index, existing in enumerate(subscriptions):
                if existing.queue == subscription.queue:
                    subscriptions[index] = subscription
                    return subscription
            subscriptions.append(subscription)
            return subscription

    def get(self, queue: str) -> Optional[Subscription]:
        with self._lock:
            for subscriptions in self._by_type.values():
                for subscription in subscriptions:
                    if subscription.queue == queue:
                        return subscription
        return None

    def for_event_type(self, event_type: str) -> list[Subscription]:
        with self._lock:
            return list(self._by_type.get(event_type, []))

    def event_types(self) -> list[str]:
        with self._lock:
            return list(self._by_type)

    def all(self) -> list[Subscription]:
        with self._lock:
            return [s for subscriptions in self._by_type.values() for s in subscriptions]


# =============================================================================
# Bus Contract
# =============================================================================

class EventBus(ABC):
    """
    Publish/subscribe contract over a durable topic broker.

    Example usage:
        bus = InMemoryEventBus()

        def on_spot_freed(event: SpotFreed) -> None:
            print(f"{event.spot_code} freed, charged {event.amount_charged}")

        bus.subscribe(SpotFreed, on_spot_freed, subscriber="billing")
        bus.publish(SpotFreed(spot_id="1", spot_code="A1", ...))
    """

    def __init__(
        self,
        registry: Optional[HandlerRegistry] = None,
        max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS,
    ):
        if max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be at least 1")
        self.registry = registry if registry is not None else HandlerRegistry()
        self.max_delivery_attempts = max_delivery_attempts
        self._dead_letters: list[DeadLetter] = []
        self._dead_letter_lock = threading.Lock()

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        """
        Send ``event`` to the topic under its event type.

        Raises:
            BusUnavailableError: If the broker cannot take the message
        """

    def subscribe(
        self,
        event_cls: type[E],
        handler: Callable[[E], None],
        subscriber: Optional[str] = None,
    ) -> Subscription:
        """
        Start consuming ``event_cls`` events on the subscriber's own queue.

        Args:
            event_cls: The event contract to receive
            handler: Called once per delivery; raising requeues the message
            subscriber: Logical consumer name (one queue per name)
        """
        queue = queue_name_for(event_cls.EVENT_TYPE, subscriber)
        subscription = self.registry.add(
            Subscription(event_cls=event_cls, handler=handler, subscriber=subscriber, queue=queue)
        )
        self._start_consuming(subscription)
        logger.debug(f"Subscribed {subscriber or 'anonymous'} to '{event_cls.EVENT_TYPE}' on queue {queue}")
        return subscription

    def unsubscribe(self, event_cls: type[DomainEvent], subscriber: Optional[str] = None) -> bool:
        """
        Stop consuming. The queue and anything already on it are kept.

        Returns:
            True if an active subscription was stopped, False otherwise
        """
        subscription = self.registry.get(queue_name_for(event_cls.EVENT_TYPE, subscriber))
        if subscription is None or not subscription.active:
            return False
        subscription.active = False
        self._stop_consuming(subscription)
        logger.debug(f"Unsubscribed {subscriber or 'anonymous'} from '{event_cls.EVENT_TYPE}'")
        return True

    def connect(self) -> None:
        """Open the transport and start consuming every active subscription."""

    def close(self) -> None:
        """Release transport resources."""

    @abstractmethod
    def _start_consuming(self, subscription: Subscription) -> None: ...

    @abstractmethod
    def _stop_consuming(self, subscription: Subscription) -> None: ...

    # -------------------------------------------------------------------------
    # Delivery (shared by all transports)
    # -------------------------------------------------------------------------

    def _deliver(self, subscription: Subscription, message: BusMessage) -> DeliveryOutcome:
        """
        Decode ``message`` and run the subscription's handler.

        ``message.delivery_count`` must already include this attempt.
        """
        try:
            event = from_wire(message.routing_key, message.body)
        except MalformedEventError as e:
            logger.error(f"Dead-lettering {message} from {subscription.queue}: {e}")
            self._record_dead_letter(subscription.queue, message, str(e))
            return DeliveryOutcome.DEAD_LETTER

        try:
            subscription.handler(event)
        except Exception as e:
            logger.error(
                f"Handler on {subscription.queue} raised for {message}: {e!r}",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            if message.delivery_count >= self.max_delivery_attempts:
                reason = f"gave up after {message.delivery_count} attempts: {e!r}"
                logger.error(f"Dead-lettering {message} from {subscription.queue}: {reason}")
                self._record_dead_letter(subscription.queue, message, reason)
                return DeliveryOutcome.DEAD_LETTER
            return DeliveryOutcome.REQUEUE

        logger.info(f"Processed {event} on {subscription.queue}")
        return DeliveryOutcome.ACK

    def _record_dead_letter(self, queue: str, message: BusMessage, reason: str) -> DeadLetter:
        dead_letter = DeadLetter(
            message_id=message.message_id,
            queue=queue,
            routing_key=message.routing_key,
            body=message.body,
            reason=reason,
            attempts=message.delivery_count,
        )
        with self._dead_letter_lock:
            self._dead_letters.append(dead_letter)
        return dead_letter

    def dead_letters(self) -> list[DeadLetter]:
        """Messages that left the redelivery loop in this process."""
        with self._dead_letter_lock:
            return list(self._dead_letters)


# =============================================================================
# In-Memory Broker
# =============================================================================

class InMemoryEventBus(EventBus):
    """
    In-process stand-in for a durable topic broker.

    Each subscription gets a FIFO queue bound to its event type. Publishing
    copies the message onto every bound queue. With ``auto_dispatch`` the
    queues are drained on the publishing thread before ``publish`` returns
    (handy for tests and demos); otherwise call ``dispatch_pending()``.
    """

    def __init__(
        self,
        registry: Optional[HandlerRegistry] = None,
        max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS,
        auto_dispatch: bool = True,
    ):
        super().__init__(registry=registry, max_delivery_attempts=max_delivery_attempts)
        self.auto_dispatch = auto_dispatch
        self._queues: dict[str, deque[BusMessage]] = {}
        self._bindings: dict[str, list[str]] = {}
        self._published: list[BusMessage] = []
        self._lock = threading.RLock()
        self._dispatching = False
        for subscription in self.registry.all():
            self._declare(subscription)

    def publish(self, event: DomainEvent) -> None:
        self.publish_message(BusMessage.from_event(event))

    def publish_message(self, message: BusMessage) -> int:
        """
        Route a raw message to every queue bound to its routing key.

        Returns:
            Number of queues the message was copied to
        """
        with self._lock:
            self._published.append(message)
            queues = list(self._bindings.get(message.routing_key, []))
            for queue in queues:
                self._queues[queue].append(dataclasses.replace(message, headers=dict(message.headers)))

        logger.info(f"Publishing: {message} -> {len(queues)} queue(s)")
        if not queues:
            logger.warning(f"No queues bound for routing key '{message.routing_key}'")

        if self.auto_dispatch:
            self.dispatch_pending()
        return len(queues)

    def dispatch_pending(self) -> int:
        """
        Deliver queued messages to active subscriptions until the queues drain.

        Returns:
            Number of handler invocations made by this call
        """
        with self._lock:
            if self._dispatching:
                # The outer dispatch loop picks up whatever we enqueued.
                return 0
            self._dispatching = True

        deliveries = 0
        try:
            while True:
                item = self._next_message()
                if item is None:
                    return deliveries
                subscription, message = item
                message.delivery_count += 1
                message.headers[DELIVERY_COUNT_HEADER] = message.delivery_count
                deliveries += 1
                outcome = self._deliver(subscription, message)
                if outcome is DeliveryOutcome.REQUEUE:
                    with self._lock:
                        self._queues[subscription.queue].append(message)
        except BaseException:
            with self._lock:
                self._dispatching = False
            raise

    def _next_message(self) -> Optional[tuple[Subscription, BusMessage]]:
        """Pop the next deliverable message, or end the dispatch loop."""
        with self._lock:
            for queue, messages in self._queues.items():
                if not messages:
                    continue
                subscription = self.registry.get(queue)
                if subscription is None or not subscription.active:
                    continue
                return subscription, messages.popleft()
            # Cleared under the same lock publishers check, so nothing is stranded.
            self._dispatching = False
        return None

    def _declare(self, subscription: Subscription) -> None:
        with self._lock:
            self._queues.setdefault(subscription.queue, deque())
            bound = self._bindings.setdefault(subscription.event_type, [])
            if subscription.queue not in bound:
                bound.append(subscription.queue)

    def _start_consuming(self, subscription: Subscription) -> None:
        self._declare(subscription)
        if self.auto_dispatch:
            self.dispatch_pending()

    def _stop_consuming(self, subscription: Subscription) -> None:
        pass

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def pending_count(self, queue: str) -> int:
        """Messages waiting on ``queue`` (0 for an undeclared queue)."""
        with self._lock:
            return len(self._queues.get(queue, ()))

    def queue_names(self) -> list[str]:
        with self._lock:
            return list(self._queues)

    def get_published_messages(self) -> list[BusMessage]:
        """Everything published so far, in order (useful for tests)."""
        with self._lock:
            return list(self._published)

    def get_subscriber_count(self, event_type: str) -> int:
        return sum(1 for s in self.registry.for_event_type(event_type) if s.active)
