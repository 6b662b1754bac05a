"""
Process wiring: one bus, three consumers, each with its private store.

``build_pipeline`` turns ``Settings`` into a ready-to-start ``ParkingPipeline``.
The API, the CLI demo and the tests all go through it, with the test suite
injecting an in-memory bus, recording channels and a deterministic gateway.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from parking.channels import EmailChannel, InAppChannel, NotificationChannels, PushSink, SmtpConfig
from parking.config import Settings, get_settings
from parking.payments import PaymentAuthorizer, SimulatedPaymentGateway
from pipeline.event_bus import EventBus, HandlerRegistry, InMemoryEventBus
from pipeline.events import DomainEvent, utcnow
from pipeline.notification_service import NotificationService
from pipeline.services.analytics import AnalyticsService
from pipeline.services.billing import BillingService

logger = logging.getLogger("runtime")


@dataclass
class ParkingPipeline:
    """The bus and the consumers attached to it."""
    settings: Settings
    event_bus: EventBus
    billing: BillingService
    analytics: AnalyticsService
    notifications: NotificationService
    started: bool = False

    @property
    def services(self) -> tuple:
        return (self.billing, self.analytics, self.notifications)

    def start(self) -> None:
        if self.started:
            return
        for service in self.services:
            service.start()
        self.event_bus.connect()
        self.started = True
        logger.info(f"{self.settings.service_name} pipeline started ({self.settings.bus_backend} bus)")

    def stop(self) -> None:
        """Stop consuming and release the bus. Queues keep anything unconsumed."""
        if not self.started:
            return
        for service in self.services:
            service.stop()
        self.event_bus.close()
        self.started = False
        logger.info(f"{self.settings.service_name} pipeline stopped")

    def publish(self, event: DomainEvent) -> None:
        self.event_bus.publish(event)


def build_event_bus(settings: Settings, registry: Optional[HandlerRegistry] = None) -> EventBus:
    """Bus for ``settings.bus_backend``."""
    if settings.bus_backend == "rabbitmq":
        # Imported here so the in-memory setup never needs a broker client.
        from pipeline.rabbitmq import RabbitMQEventBus

        return RabbitMQEventBus(
            host=settings.rabbitmq_host,
            port=settings.rabbitmq_port,
            username=settings.rabbitmq_user,
            password=settings.rabbitmq_password,
            virtual_host=settings.rabbitmq_vhost,
            exchange_name=settings.exchange_name,
            connect_timeout=settings.connect_timeout,
            publish_timeout=settings.publish_timeout,
            prefetch_count=settings.prefetch_count,
            handler_workers=settings.handler_workers,
            registry=registry,
            max_delivery_attempts=settings.max_delivery_attempts,
        )
    return InMemoryEventBus(registry=registry, max_delivery_attempts=settings.max_delivery_attempts)


def build_channels(settings: Settings, push_sink: Optional[PushSink] = None) -> NotificationChannels:
    smtp = None
    if settings.smtp_host:
        smtp = SmtpConfig(
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            start_tls=settings.smtp_start_tls,
            timeout=settings.smtp_timeout,
            sender_name=settings.smtp_sender_name,
            sender_address=settings.smtp_sender_address,
        )
    return NotificationChannels(email=EmailChannel(smtp=smtp), in_app=InAppChannel(sink=push_sink))


def build_pipeline(
    settings: Optional[Settings] = None,
    event_bus: Optional[EventBus] = None,
    channels: Optional[NotificationChannels] = None,
    gateway: Optional[PaymentAuthorizer] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ParkingPipeline:
    """
    Assemble the pipeline. Nothing is subscribed until ``start()``.

    Args:
        settings: Defaults to ``get_settings()``
        event_bus: Overrides the bus chosen by ``settings.bus_backend``
        channels: Overrides the channels built from the SMTP settings
        gateway: Overrides the simulated payment gateway
        clock: Timestamp source shared by the consumers
    """
    settings = settings or get_settings()
    event_bus = event_bus or build_event_bus(settings)
    return ParkingPipeline(
        settings=settings,
        event_bus=event_bus,
        billing=BillingService(
            event_bus=event_bus,
            gateway=gateway or SimulatedPaymentGateway(approval_rate=settings.payment_approval_rate),
            due_days=settings.invoice_due_days,
            clock=clock,
        ),
        analytics=AnalyticsService(event_bus=event_bus, clock=clock),
        notifications=NotificationService(
            event_bus=event_bus,
            channels=channels or build_channels(settings),
            clock=clock,
        ),
    )
