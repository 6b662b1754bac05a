"""
In-memory stores for the three consumers.

Each consumer owns a private store; nothing here is shared between billing,
analytics and notification, and there is no transaction spanning two stores.
Consistency between them comes only from events reaching every consumer.

Design decisions:
- One ``RLock`` per store guards every read and write
- ``transaction()`` holds that lock for a whole check-then-write sequence
  (duplicate check, next invoice number, insert) so concurrent deliveries
  cannot interleave inside it
- Models are stored as pydantic objects and replaced, not mutated in place,
  by the ``save_*`` methods
"""

import threading
from collections import OrderedDict
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, Optional
from uuid import UUID

from parking.models import (
    DailyMetric,
    DeliveryStatus,
    Invoice,
    Notification,
    NotificationSettings,
    OccupancyRecord,
    OccupancyStatus,
    Payment,
    PaymentStatus,
    ChannelType,
)
from pipeline.events import SpotFreed

# SpotFreed events held while their SpotOccupied is missing; oldest evicted first
MAX_HELD_FREES = 1_000


class _LockedStore:
    def __init__(self):
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["_LockedStore"]:
        """Hold the store lock for the duration of the block."""
        with self._lock:
            yield self


# =============================================================================
# Billing
# =============================================================================

class BillingStore(_LockedStore):
    """Invoices and payment attempts owned by the billing consumer."""

    def __init__(self):
        super().__init__()
        self._invoices: dict[UUID, Invoice] = {}
        self._payments: dict[UUID, Payment] = {}
        self._invoice_by_event: dict[UUID, UUID] = {}

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            self._invoices[invoice.id] = invoice
            for event_id in invoice.source_event_ids():
                self._invoice_by_event[event_id] = invoice.id
            return invoice

    def get_invoice(self, invoice_id: UUID) -> Optional[Invoice]:
        with self._lock:
            return self._invoices.get(invoice_id)

    def find_invoice_for_event(self, event_id: UUID) -> Optional[Invoice]:
        """Invoice holding the line item produced by ``event_id``, if any."""
        with self._lock:
            invoice_id = self._invoice_by_event.get(event_id)
            return self._invoices.get(invoice_id) if invoice_id else None

    def get_invoices_by_customer(self, customer_id: str) -> list[Invoice]:
        """Customer's invoices, newest first."""
        with self._lock:
            invoices = [i for i in self._invoices.values() if i.customer_id == customer_id]
        return sorted(invoices, key=lambda i: (i.issue_date, i.number), reverse=True)

    def get_invoices(self) -> list[Invoice]:
        with self._lock:
            return list(self._invoices.values())

    def latest_invoice_number(self, prefix: str) -> Optional[str]:
        """Highest invoice number starting with ``prefix`` (``YYYYMM``)."""
        with self._lock:
            numbers = [i.number for i in self._invoices.values() if i.number.startswith(prefix)]
        return max(numbers) if numbers else None

    def save_payment(self, payment: Payment) -> Payment:
        with self._lock:
            self._payments[payment.id] = payment
            return payment

    def get_payments_by_invoice(self, invoice_id: UUID) -> list[Payment]:
        with self._lock:
            return [p for p in self._payments.values() if p.invoice_id == invoice_id]

    def get_payments(
        self,
        status: Optional[PaymentStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Payment]:
        """Payments filtered by status and ``processed_at`` in ``[start, end)``."""
        with self._lock:
            payments = list(self._payments.values())
        if status is not None:
            payments = [p for p in payments if p.status == PaymentStatus(status)]
        if start is not None:
            payments = [p for p in payments if p.processed_at >= start]
        if end is not None:
            payments = [p for p in payments if p.processed_at < end]
        return payments


# =============================================================================
# Analytics
# =============================================================================

class AnalyticsStore(_LockedStore):
    """Occupancy ledger and per-day metrics owned by the analytics consumer."""

    def __init__(self):
        super().__init__()
        self._occupancies: dict[UUID, OccupancyRecord] = {}
        self._metrics: dict[date, DailyMetric] = {}
        self._held_frees: OrderedDict[UUID, SpotFreed] = OrderedDict()

    def save_occupancy(self, record: OccupancyRecord) -> OccupancyRecord:
        with self._lock:
            self._occupancies[record.id] = record
            return record

    def get_occupancy(self, record_id: UUID) -> Optional[OccupancyRecord]:
        with self._lock:
            return self._occupancies.get(record_id)

    def find_open_occupancy(self, spot_id: str) -> Optional[OccupancyRecord]:
        """Most recent record for ``spot_id`` still in Occupied status."""
        with self._lock:
            open_records = [
                r for r in self._occupancies.values()
                if r.spot_id == spot_id and r.status == OccupancyStatus.OCCUPIED
            ]
        if not open_records:
            return None
        return max(open_records, key=lambda r: r.entry_time)

    def hold_free(self, event: SpotFreed) -> None:
        """Keep a SpotFreed that arrived before its SpotOccupied."""
        with self._lock:
            self._held_frees[event.event_id] = event
            while len(self._held_frees) > MAX_HELD_FREES:
                self._held_frees.popitem(last=False)

    def take_held_free(self, spot_id: str, entry_time: datetime) -> Optional[SpotFreed]:
        """
        Remove and return the held SpotFreed for ``spot_id`` that ends this stay.

        That is the earliest exit at or after ``entry_time``.
        """
        with self._lock:
            candidates = [
                e for e in self._held_frees.values()
                if e.spot_id == spot_id and e.exit_time >= entry_time
            ]
            if not candidates:
                return None
            event = min(candidates, key=lambda e: e.exit_time)
            del self._held_frees[event.event_id]
            return event

    def held_frees(self) -> list[SpotFreed]:
        with self._lock:
            return list(self._held_frees.values())

    def find_by_freed_event(self, event_id: UUID) -> Optional[OccupancyRecord]:
        with self._lock:
            for record in self._occupancies.values():
                if record.freed_event_id == event_id:
                    return record
        return None

    def get_occupancies(
        self,
        status: Optional[OccupancyStatus] = None,
        customer_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[OccupancyRecord]:
        """Records filtered by status, customer and ``entry_time`` in ``[start, end)``, newest first."""
        with self._lock:
            records = list(self._occupancies.values())
        if status is not None:
            records = [r for r in records if r.status == OccupancyStatus(status)]
        if customer_id is not None:
            records = [r for r in records if r.customer_id == customer_id]
        if start is not None:
            records = [r for r in records if r.entry_time >= start]
        if end is not None:
            records = [r for r in records if r.entry_time < end]
        return sorted(records, key=lambda r: r.entry_time, reverse=True)

    def freed_on(self, day: date) -> list[OccupancyRecord]:
        """Freed records whose entry falls on ``day``."""
        with self._lock:
            return [
                r for r in self._occupancies.values()
                if r.status == OccupancyStatus.FREED and r.entry_date == day
            ]

    def save_metric(self, metric: DailyMetric) -> DailyMetric:
        with self._lock:
            existing = self._metrics.get(metric.day)
            if existing is not None:
                metric = metric.model_copy(update={"created_at": existing.created_at})
            self._metrics[metric.day] = metric
            return metric

    def get_metric(self, day: date) -> Optional[DailyMetric]:
        with self._lock:
            return self._metrics.get(day)

    def get_metrics(self, start: date, end: date) -> list[DailyMetric]:
        """Metrics for days in ``[start, end]``, oldest first."""
        with self._lock:
            metrics = [m for d, m in self._metrics.items() if start <= d <= end]
        return sorted(metrics, key=lambda m: m.day)


# =============================================================================
# Notifications
# =============================================================================

class NotificationStore(_LockedStore):
    """Delivery log and customer settings owned by the notification consumer."""

    def __init__(self):
        super().__init__()
        self._notifications: dict[UUID, Notification] = {}
        self._settings: dict[str, NotificationSettings] = {}

    def save_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self._notifications[notification.id] = notification
            return notification

    def find_notification(self, event_id: UUID, channel: ChannelType) -> Optional[Notification]:
        """The delivery record for ``event_id`` on ``channel``, if one exists."""
        with self._lock:
            for notification in self._notifications.values():
                if notification.event_id == event_id and notification.channel == ChannelType(channel):
                    return notification
        return None

    def get_notification(self, notification_id: UUID) -> Optional[Notification]:
        with self._lock:
            return self._notifications.get(notification_id)

    def delete_notification(self, notification_id: UUID) -> bool:
        """Remove a record from the log. Returns False if there was none."""
        with self._lock:
            return self._notifications.pop(notification_id, None) is not None

    def count_unread(self, customer_id: str) -> int:
        """Delivered notifications the customer has not read yet."""
        with self._lock:
            return sum(
                1 for n in self._notifications.values()
                if n.customer_id == customer_id and n.status == DeliveryStatus.SENT and not n.read
            )

    def get_notifications_for_event(self, event_id: UUID) -> list[Notification]:
        with self._lock:
            return [n for n in self._notifications.values() if n.event_id == event_id]

    def get_notifications_by_customer(
        self,
        customer_id: str,
        status: Optional[DeliveryStatus] = None,
    ) -> list[Notification]:
        """Customer's delivery log, newest first."""
        with self._lock:
            notifications = [n for n in self._notifications.values() if n.customer_id == customer_id]
        if status is not None:
            notifications = [n for n in notifications if n.status == DeliveryStatus(status)]
        return sorted(notifications, key=lambda n: n.created_at, reverse=True)

    def get_settings(self, customer_id: str) -> NotificationSettings:
        """Stored settings, or the defaults for a customer who never set any."""
        with self._lock:
            settings = self._settings.get(customer_id)
        return settings or NotificationSettings(customer_id=customer_id)

    def save_settings(self, settings: NotificationSettings) -> NotificationSettings:
        with self._lock:
            self._settings[settings.customer_id] = settings
            return settings
