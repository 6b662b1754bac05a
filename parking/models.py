"""
Domain models for the parking consumers.

Each consumer owns its own records:
- Billing: Invoice, InvoiceLineItem, Payment (+ masked card details)
- Analytics: OccupancyRecord, DailyMetric
- Notification: Notification (one delivery attempt log per channel), NotificationSettings

Design decisions:
- Using Pydantic for validation and serialization (the API returns these as-is)
- Money is ``Decimal``; durations are ``timedelta``
- Status values are the strings the rest of the platform already stores
  ("Pendente", "Paga", "Aprovado", ...); code refers to them by enum member
- An invoice's total is derived from its line items, never stored separately
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

from pipeline.events import utcnow


# =============================================================================
# Enums - Status values used across the consumers
# =============================================================================

class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""
    PENDING = "Pendente"
    PAID = "Paga"
    OVERDUE = "Vencida"
    CANCELLED = "Cancelada"


class PaymentStatus(str, Enum):
    """Payment attempt states."""
    PROCESSING = "Processando"
    APPROVED = "Aprovado"
    REJECTED = "Rejeitado"


class OccupancyStatus(str, Enum):
    OCCUPIED = "Ocupada"
    FREED = "Liberada"


class DeliveryStatus(str, Enum):
    """Status of one notification on one channel."""
    PENDING = "Pendente"
    SENT = "Enviada"
    FAILED = "Falha"


class ChannelType(str, Enum):
    """Supported notification channels."""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


# =============================================================================
# Billing
# =============================================================================

class InvoiceLineItem(BaseModel):
    """
    One billable unit on an invoice: a single freed occupancy.

    ``total`` is the amount carried by the spot-freed event, copied verbatim.
    """
    id: UUID = Field(default_factory=uuid4)
    occupancy_event_id: UUID = Field(..., description="SpotFreed event that produced this item")
    spot_id: str
    spot_code: str
    entry_time: datetime
    exit_time: datetime
    occupied_duration: timedelta
    total: Decimal = Field(..., ge=0)
    description: str


class Invoice(BaseModel):
    """
    A customer's bill.

    Numbers are ``YYYYMM`` followed by a six-digit sequence that restarts every
    month (e.g. ``202501000007``).
    """
    id: UUID = Field(default_factory=uuid4)
    customer_id: str
    number: str
    issue_date: datetime
    due_date: datetime
    status: InvoiceStatus = Field(default=InvoiceStatus.PENDING)
    line_items: list[InvoiceLineItem] = Field(default_factory=list)
    payment_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(use_enum_values=True)

    @computed_field
    @property
    def total(self) -> Decimal:
        """Sum of the line item totals."""
        return sum((item.total for item in self.line_items), Decimal("0"))

    @property
    def is_pending(self) -> bool:
        return self.status == InvoiceStatus.PENDING

    def source_event_ids(self) -> set[UUID]:
        return {item.occupancy_event_id for item in self.line_items}


class CardDetails(BaseModel):
    """Masked card data kept with a card payment."""
    masked_number: str = Field(..., max_length=20, description="**** **** **** 1234")
    brand: str = Field(..., max_length=50)
    holder_name: str = Field(..., max_length=100)


class Payment(BaseModel):
    """
    One payment attempt against one invoice.

    Every attempt is stored, approved or not, as an audit trail.
    """
    id: UUID = Field(default_factory=uuid4)
    invoice_id: UUID
    customer_id: str
    amount: Decimal
    method: str
    status: PaymentStatus = Field(default=PaymentStatus.PROCESSING)
    transaction_id: Optional[str] = None
    authorization_code: Optional[str] = None
    processed_at: datetime = Field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    notes: Optional[str] = None
    card: Optional[CardDetails] = None

    model_config = ConfigDict(use_enum_values=True)


class PaymentRequest(BaseModel):
    """A customer's attempt to pay one invoice in full."""
    method: str = Field(..., min_length=1, max_length=50, description="e.g. Pix, Cartao, Boleto")
    amount: Decimal
    card: Optional[CardDetails] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class FinancialReport(BaseModel):
    """Billing totals for invoices issued and payments approved in ``[start, end)``."""
    start: datetime
    end: datetime
    total_billed: Decimal
    total_received: Decimal
    invoices_issued: int
    pending_invoices: int
    approved_payments: int


# =============================================================================
# Analytics
# =============================================================================

class OccupancyRecord(BaseModel):
    """
    Analytics' view of one stay in one spot.

    Keyed by the id of the SpotOccupied event that opened it.
    """
    id: UUID
    spot_id: str
    spot_code: str
    customer_id: str
    customer_name: str
    entry_time: datetime
    exit_time: Optional[datetime] = None
    occupied_duration: Optional[timedelta] = None
    amount_charged: Optional[Decimal] = None
    status: OccupancyStatus = Field(default=OccupancyStatus.OCCUPIED)
    freed_event_id: Optional[UUID] = None

    model_config = ConfigDict(use_enum_values=True)

    @property
    def entry_date(self) -> date:
        return self.entry_time.date()


class DailyMetric(BaseModel):
    """Aggregates over the freed occupancies that started on ``day``."""
    day: date
    total_occupancies: int = 0
    total_revenue: Decimal = Decimal("0")
    average_ticket: Decimal = Decimal("0")
    average_duration: timedelta = timedelta(0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PeriodSummary(BaseModel):
    """Occupancy figures for every stay that started in a period."""
    label: str
    total_occupancies: int
    freed_occupancies: int
    total_revenue: Decimal
    average_ticket: Decimal


class CustomerRanking(BaseModel):
    customer_id: str
    total_spent: Decimal
    total_occupancies: int
    average_ticket: Decimal


class MonthlyRevenue(BaseModel):
    year: int
    month: int
    total_revenue: Decimal
    average_ticket: Decimal
    total_occupancies: int


class OccupancyPage(BaseModel):
    items: list[OccupancyRecord]
    total_items: int
    page: int
    page_size: int
    total_pages: int


class Dashboard(BaseModel):
    today: PeriodSummary
    yesterday: PeriodSummary
    last_30_days: PeriodSummary
    occupied_now: int
    top_customers: list[CustomerRanking]


# =============================================================================
# Notifications
# =============================================================================

class NotificationSettings(BaseModel):
    """
    Per-customer channel toggles and contact details.

    Customers without stored settings get these defaults.
    """
    customer_id: str
    email_enabled: bool = True
    sms_enabled: bool = False
    push_enabled: bool = True
    in_app_enabled: bool = True
    email: Optional[str] = None
    phone: Optional[str] = None
    # Event types the customer wants to hear about; empty means all of them
    event_types: list[str] = Field(default_factory=list)

    def is_enabled(self, channel: ChannelType) -> bool:
        return {
            ChannelType.EMAIL: self.email_enabled,
            ChannelType.SMS: self.sms_enabled,
            ChannelType.PUSH: self.push_enabled,
            ChannelType.IN_APP: self.in_app_enabled,
        }[ChannelType(channel)]

    def enabled_channels(self) -> list[ChannelType]:
        return [channel for channel in ChannelType if self.is_enabled(channel)]

    def wants(self, event_type: str) -> bool:
        return not self.event_types or event_type in self.event_types


class Notification(BaseModel):
    """One rendered message for one customer on one channel, plus its delivery log."""
    id: UUID = Field(default_factory=uuid4)
    event_id: UUID
    event_type: str
    customer_id: str
    channel: ChannelType
    title: str
    message: str
    recipient: Optional[str] = None
    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING)
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None
    read: bool = False
    read_at: Optional[datetime] = None

    model_config = ConfigDict(use_enum_values=True)


class DirectNotificationRequest(BaseModel):
    """An ad-hoc message sent to a customer outside any event."""
    customer_id: str
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


class NotificationTestRequest(BaseModel):
    """A test message, to check a customer's channels end to end."""
    customer_id: str
    message: str = "This is a test notification."


class UnreadCount(BaseModel):
    customer_id: str
    unread: int
