"""
RabbitMQ transport for the event bus.

Publishes every event to one durable topic exchange under its event type and
gives each (event type, subscriber) pair its own durable queue bound with the
matching routing key. Messages are persistent and carry the event id as the
AMQP message id.

Design decisions:
- aio-pika owns a single robust connection per process; it reconnects in the
  background and re-declares queues and consumers when the broker comes back
- The connection lives on a private asyncio loop thread, so the synchronous
  bus contract can be used from any thread. Every call into the loop has a
  timeout and surfaces as ``BusUnavailableError`` when the broker is gone
- Handlers are synchronous and run on a thread pool; different deliveries
  may run concurrently (bounded by ``prefetch_count`` and ``handler_workers``)
- Delivery attempts come from the broker's ``x-delivery-count`` header when
  the queue provides one (quorum queues), otherwise they are counted here.
  Past ``max_delivery_attempts`` the message is copied to ``{queue}.dlq``
  and acknowledged
"""

import asyncio
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Awaitable, Optional, TypeVar

import aio_pika
from aio_pika.abc import AbstractIncomingMessage
from aio_pika.exceptions import AMQPError

from pipeline.event_bus import (
    DEFAULT_MAX_DELIVERY_ATTEMPTS,
    DELIVERY_COUNT_HEADER,
    BusMessage,
    DeliveryOutcome,
    EventBus,
    HandlerRegistry,
    Subscription,
)
from pipeline.events import DomainEvent
from pipeline.exceptions import BusUnavailableError

logger = logging.getLogger("rabbitmq_bus")

T = TypeVar("T")

# Locally counted attempts kept for messages still in flight; oldest evicted first
MAX_TRACKED_MESSAGES = 10_000


def dead_letter_queue_for(queue: str) -> str:
    return f"{queue}.dlq"


class RabbitMQEventBus(EventBus):
    """
    Event bus backed by a RabbitMQ topic exchange.

    Example:
        bus = RabbitMQEventBus(host="rabbitmq", exchange_name="estacionamento_eventos")
        bus.connect()
        bus.subscribe(SpotFreed, billing.handle_spot_freed, subscriber="billing")
        ...
        bus.close()
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5672,
        username: str = "guest",
        password: str = "guest",
        virtual_host: str = "/",
        exchange_name: str = "estacionamento_eventos",
        connect_timeout: float = 5.0,
        publish_timeout: float = 5.0,
        prefetch_count: int = 10,
        handler_workers: int = 8,
        registry: Optional[HandlerRegistry] = None,
        max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS,
    ):
        super().__init__(registry=registry, max_delivery_attempts=max_delivery_attempts)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.virtual_host = virtual_host
        self.exchange_name = exchange_name
        self.connect_timeout = connect_timeout
        self.publish_timeout = publish_timeout
        self.prefetch_count = prefetch_count

        self._connection: Any = None
        self._channel: Any = None
        self._exchange: Any = None
        self._queues: dict[str, Any] = {}
        self._consumer_tags: dict[str, str] = {}
        self._attempts: OrderedDict[tuple[str, str], int] = OrderedDict()
        self.max_tracked_messages = MAX_TRACKED_MESSAGES
        self._attempts_lock = threading.Lock()

        self._executor = ThreadPoolExecutor(max_workers=handler_workers, thread_name_prefix="bus-handler")
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="rabbitmq-bus", daemon=True)
        self._thread.start()

    @property
    def url(self) -> str:
        vhost = self.virtual_host.lstrip("/")
        return f"amqp://{self.username}:{self.password}@{self.host}:{self.port}/{vhost}"

    @property
    def is_connected(self) -> bool:
        return self._exchange is not None

    # -------------------------------------------------------------------------
    # Loop bridge
    # -------------------------------------------------------------------------

    def _run(self, coro: Awaitable[T], timeout: float, action: str) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except (FutureTimeoutError, asyncio.TimeoutError) as e:
            future.cancel()
            raise BusUnavailableError(f"RabbitMQ {action} timed out after {timeout}s") from e
        except (AMQPError, ConnectionError, OSError) as e:
            raise BusUnavailableError(f"RabbitMQ {action} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def connect(self) -> None:
        """Open the connection and declare the exchange (idempotent)."""
        if self.is_connected:
            return
        self._run(self._connect(), self.connect_timeout * 2, "connect")
        logger.info(f"Connected to RabbitMQ at {self.host}:{self.port}, exchange '{self.exchange_name}'")

        for subscription in self.registry.all():
            if subscription.active and subscription.queue not in self._consumer_tags:
                self._start_consuming(subscription)

    async def _connect(self) -> None:
        self._connection = await aio_pika.connect_robust(self.url, timeout=self.connect_timeout)
        self._channel = await self._connection.channel(publisher_confirms=True)
        await self._channel.set_qos(prefetch_count=self.prefetch_count)
        self._exchange = await self._channel.declare_exchange(
            self.exchange_name,
            aio_pika.ExchangeType.TOPIC,
            durable=True,
        )

    def close(self) -> None:
        """Cancel consumers, close the connection and stop the loop thread."""
        if self._loop.is_closed():
            return
        if self._connection is not None:
            try:
                self._run(self._close(), self.connect_timeout, "close")
            except BusUnavailableError as e:
                logger.warning(f"Error while closing RabbitMQ connection: {e}")
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=self.connect_timeout)
        self._loop.close()
        self._executor.shutdown(wait=True)
        logger.info("RabbitMQ event bus closed")

    async def _close(self) -> None:
        for queue_name, tag in list(self._consumer_tags.items()):
            await self._queues[queue_name].cancel(tag)
        self._consumer_tags.clear()
        await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchange = None

    # -------------------------------------------------------------------------
    # Publish
    # -------------------------------------------------------------------------

    def publish(self, event: DomainEvent) -> None:
        if not self.is_connected:
            self.connect()
        message = BusMessage.from_event(event)
        self._run(self._publish(message), self.publish_timeout, "publish")
        logger.info(f"Published {event} to '{self.exchange_name}'")

    async def _publish(self, message: BusMessage) -> None:
        amqp_message = aio_pika.Message(
            body=message.body,
            message_id=message.message_id,
            timestamp=message.timestamp,
            type=message.routing_key,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(
            amqp_message,
            routing_key=message.routing_key,
            timeout=self.publish_timeout,
        )

    # -------------------------------------------------------------------------
    # Consume
    # -------------------------------------------------------------------------

    def _start_consuming(self, subscription: Subscription) -> None:
        if not self.is_connected:
            # Consumers are started by connect().
            return
        self._run(self._consume(subscription), self.connect_timeout, "subscribe")
        logger.info(f"Consuming '{subscription.event_type}' on queue {subscription.queue}")

    async def _consume(self, subscription: Subscription) -> None:
        queue = self._queues.get(subscription.queue)
        if queue is None:
            queue = await self._channel.declare_queue(subscription.queue, durable=True)
            await queue.bind(self._exchange, routing_key=subscription.event_type)
            self._queues[subscription.queue] = queue

        async def on_message(incoming: AbstractIncomingMessage) -> None:
            await self._on_message(subscription.queue, incoming)

        self._consumer_tags[subscription.queue] = await queue.consume(on_message, no_ack=False)

    def _stop_consuming(self, subscription: Subscription) -> None:
        if subscription.queue not in self._consumer_tags:
            return
        self._run(self._cancel(subscription.queue), self.connect_timeout, "unsubscribe")

    async def _cancel(self, queue_name: str) -> None:
        tag = self._consumer_tags.pop(queue_name, None)
        if tag is not None:
            await self._queues[queue_name].cancel(tag)

    async def _on_message(self, queue_name: str, incoming: AbstractIncomingMessage) -> None:
        subscription = self.registry.get(queue_name)
        if subscription is None or not subscription.active:
            await incoming.nack(requeue=True)
            return

        message = BusMessage(
            message_id=incoming.message_id or "",
            routing_key=incoming.routing_key or subscription.event_type,
            body=incoming.body,
            timestamp=_unix_seconds(incoming.timestamp),
            headers=dict(incoming.headers or {}),
        )
        message.delivery_count = self._next_attempt(queue_name, message, incoming.redelivered)
        message.headers[DELIVERY_COUNT_HEADER] = message.delivery_count

        outcome = await self._loop.run_in_executor(self._executor, self._deliver, subscription, message)

        if outcome is DeliveryOutcome.REQUEUE:
            await incoming.nack(requeue=True)
            return
        if outcome is DeliveryOutcome.DEAD_LETTER:
            await self._send_to_dead_letter_queue(queue_name, message)
        self._forget_attempts(queue_name, message)
        await incoming.ack()

    async def _send_to_dead_letter_queue(self, queue_name: str, message: BusMessage) -> None:
        dlq_name = dead_letter_queue_for(queue_name)
        await self._channel.declare_queue(dlq_name, durable=True)
        await self._channel.default_exchange.publish(
            aio_pika.Message(
                body=message.body,
                message_id=message.message_id,
                timestamp=message.timestamp,
                type=message.routing_key,
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                headers={
                    "x-original-queue": queue_name,
                    "x-original-routing-key": message.routing_key,
                    DELIVERY_COUNT_HEADER: message.delivery_count,
                },
            ),
            routing_key=dlq_name,
        )

    def _next_attempt(self, queue_name: str, message: BusMessage, redelivered: bool) -> int:
        broker_count = message.headers.get(DELIVERY_COUNT_HEADER)
        with self._attempts_lock:
            key = (queue_name, message.message_id)
            attempt = self._attempts.pop(key, 0) + 1
            self._attempts[key] = attempt
            while len(self._attempts) > self.max_tracked_messages:
                self._attempts.popitem(last=False)
        if isinstance(broker_count, int):
            attempt = max(attempt, broker_count + 1)
        elif redelivered:
            attempt = max(attempt, 2)
        return attempt

    def _forget_attempts(self, queue_name: str, message: BusMessage) -> None:
        with self._attempts_lock:
            self._attempts.pop((queue_name, message.message_id), None)


def _unix_seconds(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return int(value.timestamp())
