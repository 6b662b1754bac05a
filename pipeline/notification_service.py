"""
Notification consumer.

Subscribes to every event type, renders a message per event and fans it out
over the channels the customer has enabled.

Design decisions:
- Subscribes to events, doesn't poll or get called directly
- Each (event, channel) pair has exactly one delivery record; its status goes
  Pending -> Sent | Failed and ``attempts`` counts send attempts
- Channels are independent: a failed e-mail does not stop the in-app push
  for the same event, and channel failures are recorded, not raised
- A redelivered event only re-attempts the channels not yet Sent, so nothing
  reaches the customer twice
- Settings default to e-mail, push and in-app on, SMS off
- Customers may narrow the event types they hear about; an empty list means
  all of them
- Ad-hoc and test messages go through the same fan-out and delivery log

Tradeoffs:
- PRO: Publishers know nothing about notifications; adding an event type
  means a template and a subscription here
- CON: This service must understand every event contract
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID, uuid4

from parking.channels import NotificationChannels
from parking.data_store import NotificationStore
from parking.models import ChannelType, DeliveryStatus, Notification, NotificationSettings
from parking.templates import RenderedMessage, render_notification
from pipeline.event_bus import EventBus
from pipeline.events import DomainEvent, PaymentProcessed, SpotFreed, SpotOccupied, utcnow
from pipeline.exceptions import NotificationNotFoundError

logger = logging.getLogger("notification_service")

# Event types recorded for messages that were not triggered by an event
DIRECT_NOTIFICATION = "NotificacaoDireta"
TEST_NOTIFICATION = "NotificacaoTeste"


def default_email_address(customer_id: str) -> str:
    """Address used when the customer never stored one."""
    return f"cliente{customer_id}@email.com"


class NotificationService:
    """
    Event-driven notification service.

    Example:
        service = NotificationService(event_bus=bus)
        service.start()

        # Every SpotOccupied / SpotFreed / PaymentProcessed now reaches the
        # customer on each enabled channel
        bus.publish(SpotOccupied(...))
    """

    SUBSCRIBER = "notification"
    EVENT_CONTRACTS = (SpotOccupied, SpotFreed, PaymentProcessed)

    def __init__(
        self,
        event_bus: EventBus,
        store: Optional[NotificationStore] = None,
        channels: Optional[NotificationChannels] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            event_bus: Bus to consume from
            store: Delivery log and settings (defaults to a new private store)
            channels: Delivery channels (defaults to simulated channels)
            clock: Timestamp source for delivery records
        """
        self.event_bus = event_bus
        self.store = store or NotificationStore()
        self.channels = channels or NotificationChannels()
        self.clock = clock
        self._in_flight: set[tuple[UUID, str]] = set()
        self._in_flight_lock = threading.Lock()
        self._started = False

    def start(self) -> None:
        """Subscribe to every event type we notify about."""
        if self._started:
            logger.warning("NotificationService already started")
            return
        for event_cls in self.EVENT_CONTRACTS:
            self.event_bus.subscribe(event_cls, self.handle_event, subscriber=self.SUBSCRIBER)
        self._started = True
        logger.info("NotificationService started - subscribed to events")

    def stop(self) -> None:
        if not self._started:
            return
        for event_cls in self.EVENT_CONTRACTS:
            self.event_bus.unsubscribe(event_cls, subscriber=self.SUBSCRIBER)
        self._started = False
        logger.info("NotificationService stopped")

    # =========================================================================
    # Event Handling
    # =========================================================================

    def handle_event(self, event: DomainEvent) -> list[Notification]:
        """
        Notify the event's customer on every enabled channel.

        Returns:
            The delivery records touched for this event
        """
        customer_id = event.customer_id
        settings = self.store.get_settings(customer_id)
        logger.info(f"Handling {event} for customer {customer_id}")

        if not settings.wants(event.event_type):
            logger.info(f"Customer {customer_id} has opted out of {event.event_type} notifications")
            return []
        return self._fan_out(
            event.event_id,
            event.event_type,
            settings,
            lambda channel: render_notification(event, channel.value),
        )

    def send_direct(
        self,
        customer_id: str,
        title: str,
        message: str,
        kind: str = DIRECT_NOTIFICATION,
    ) -> list[Notification]:
        """
        Send an ad-hoc message through the same per-channel fan-out.

        Channel toggles apply; the event type opt-in list does not.

        Returns:
            One delivery record per enabled channel
        """
        settings = self.store.get_settings(customer_id)
        logger.info(f"Sending {kind} notification to customer {customer_id}")
        rendered = RenderedMessage(title=title, body=message)
        return self._fan_out(uuid4(), kind, settings, lambda channel: rendered)

    def send_test(self, customer_id: str, message: str) -> list[Notification]:
        return self.send_direct(customer_id, "Test Notification", message, kind=TEST_NOTIFICATION)

    def _fan_out(
        self,
        event_id: UUID,
        event_type: str,
        settings: NotificationSettings,
        render: Callable[[ChannelType], RenderedMessage],
    ) -> list[Notification]:
        delivered = []
        for channel in ChannelType:
            if not settings.is_enabled(channel):
                logger.info(f"Customer {settings.customer_id} has disabled {channel.value} notifications")
                continue
            notification = self._deliver(event_id, event_type, channel, settings, render)
            if notification is not None:
                delivered.append(notification)
        return delivered

    def _deliver(
        self,
        event_id: UUID,
        event_type: str,
        channel: ChannelType,
        settings: NotificationSettings,
        render: Callable[[ChannelType], RenderedMessage],
    ) -> Optional[Notification]:
        key = (event_id, channel.value)
        label = f"{event_type}(id={str(event_id)[:8]})"
        with self._in_flight_lock:
            if key in self._in_flight:
                logger.warning(f"{label} already being sent on {channel.value}, skipping")
                return None
            self._in_flight.add(key)
        try:
            return self._attempt(event_id, event_type, label, channel, settings, render)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(key)

    def _attempt(
        self,
        event_id: UUID,
        event_type: str,
        label: str,
        channel: ChannelType,
        settings: NotificationSettings,
        render: Callable[[ChannelType], RenderedMessage],
    ) -> Notification:
        existing = self.store.find_notification(event_id, channel)
        if existing is not None and existing.status == DeliveryStatus.SENT:
            logger.warning(f"Duplicate {label}: {channel.value} notification already sent")
            return existing

        rendered = render(channel)
        notification = existing or Notification(
            event_id=event_id,
            event_type=event_type,
            customer_id=settings.customer_id,
            channel=channel,
            title=rendered.title,
            message=rendered.body,
            recipient=self._recipient(channel, settings),
            created_at=self.clock(),
        )
        attempts = notification.attempts + 1

        if notification.recipient is None:
            return self.store.save_notification(notification.model_copy(update={
                "status": DeliveryStatus.FAILED.value,
                "attempts": attempts,
                "last_error": f"No {channel.value} contact on file",
            }))

        result = self.channels.send(
            channel,
            notification.recipient,
            notification.title,
            notification.message,
            html=rendered.html,
        )
        if result.success:
            update = {"status": DeliveryStatus.SENT.value, "sent_at": result.timestamp, "last_error": None}
        else:
            update = {"status": DeliveryStatus.FAILED.value, "last_error": result.error}
        update["attempts"] = attempts
        return self.store.save_notification(notification.model_copy(update=update))

    @staticmethod
    def _recipient(channel: ChannelType, settings: NotificationSettings) -> Optional[str]:
        if channel == ChannelType.EMAIL:
            return settings.email or default_email_address(settings.customer_id)
        if channel == ChannelType.SMS:
            return settings.phone
        return settings.customer_id

    # =========================================================================
    # Queries and Settings
    # =========================================================================

    def get_notifications(
        self,
        customer_id: str,
        status: Optional[DeliveryStatus] = None,
    ) -> list[Notification]:
        return self.store.get_notifications_by_customer(customer_id, status=status)

    def get_settings(self, customer_id: str) -> NotificationSettings:
        return self.store.get_settings(customer_id)

    def update_settings(self, settings: NotificationSettings) -> NotificationSettings:
        logger.info(f"Notification settings updated for customer {settings.customer_id}")
        return self.store.save_settings(settings)

    # =========================================================================
    # Delivery Log Management
    # =========================================================================

    def get_notification(self, notification_id: UUID) -> Notification:
        notification = self.store.get_notification(notification_id)
        if notification is None:
            raise NotificationNotFoundError(str(notification_id))
        return notification

    def unread_count(self, customer_id: str) -> int:
        return self.store.count_unread(customer_id)

    def mark_as_read(self, notification_id: UUID) -> Notification:
        """Mark a notification read. Marking it again keeps the first ``read_at``."""
        notification = self.get_notification(notification_id)
        if notification.read:
            return notification
        return self.store.save_notification(
            notification.model_copy(update={"read": True, "read_at": self.clock()})
        )

    def delete_notification(self, notification_id: UUID) -> None:
        if not self.store.delete_notification(notification_id):
            raise NotificationNotFoundError(str(notification_id))
        logger.info(f"Notification {notification_id} deleted")
