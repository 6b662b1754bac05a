"""
Billing consumer.

Turns every freed occupancy into an invoice and, when the customer later pays
that invoice, publishes a PaymentProcessed event.

Key points:
- The duration and amount travel in the SpotFreed event; billing copies them
  onto the line item and never recomputes the fee
- One invoice per SpotFreed. The event id is stored on the line item, and the
  duplicate check, numbering and insert run in one store transaction, so a
  redelivered event never produces a second invoice
- Invoice numbers are ``YYYYMM`` + a six-digit sequence restarting each month
- Payments run through the ``PaymentAuthorizer`` seam; every attempt is
  persisted, approved or not
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from parking.data_store import BillingStore
from parking.models import (
    FinancialReport,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    Payment,
    PaymentRequest,
    PaymentStatus,
)
from parking.payments import PaymentAuthorizer, SimulatedPaymentGateway
from pipeline.event_bus import EventBus
from pipeline.events import PaymentProcessed, SpotFreed, utcnow
from pipeline.exceptions import InvalidPaymentError, InvoiceNotFoundError, InvoiceNotPayableError

logger = logging.getLogger("billing_service")

SEQUENCE_DIGITS = 6


def invoice_number_prefix(issued_at: datetime) -> str:
    return issued_at.strftime("%Y%m")


def next_invoice_number(issued_at: datetime, latest: Optional[str]) -> str:
    """
    Number for an invoice issued at ``issued_at``.

    Args:
        issued_at: Issue timestamp; its year and month form the prefix
        latest: Highest existing number with the same prefix, if any
    """
    prefix = invoice_number_prefix(issued_at)
    sequence = int(latest[len(prefix):]) + 1 if latest else 1
    return f"{prefix}{sequence:0{SEQUENCE_DIGITS}d}"


def describe_occupancy(spot_code: str, duration: timedelta) -> str:
    hours = duration.total_seconds() / 3600
    return f"Spot {spot_code} occupancy - {hours:.2f}h"


class BillingService:
    """
    Invoice generation and payment processing.

    Example:
        billing = BillingService(event_bus=bus, store=BillingStore())
        billing.start()   # consumes SpotFreed on billing.EventoVagaLiberada_fila

        invoice = billing.get_invoices_for_customer("C1")[0]
        payment = billing.process_payment(invoice.id, PaymentRequest(method="Pix", amount=invoice.total))
    """

    SUBSCRIBER = "billing"

    def __init__(
        self,
        event_bus: EventBus,
        store: Optional[BillingStore] = None,
        gateway: Optional[PaymentAuthorizer] = None,
        due_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.event_bus = event_bus
        self.store = store or BillingStore()
        self.gateway = gateway or SimulatedPaymentGateway()
        self.due_days = due_days
        self.clock = clock
        self._started = False

    def start(self) -> None:
        if self._started:
            logger.warning("BillingService already started")
            return
        self.event_bus.subscribe(SpotFreed, self.handle_spot_freed, subscriber=self.SUBSCRIBER)
        self._started = True
        logger.info("BillingService started - subscribed to events")

    def stop(self) -> None:
        if not self._started:
            return
        self.event_bus.unsubscribe(SpotFreed, subscriber=self.SUBSCRIBER)
        self._started = False
        logger.info("BillingService stopped")

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def handle_spot_freed(self, event: SpotFreed) -> None:
        """Create the invoice for a freed occupancy (once per event id)."""
        self.generate_invoice(event)

    def generate_invoice(self, event: SpotFreed) -> Invoice:
        """
        Invoice ``event``'s occupancy, or return the invoice already created for it.
        """
        with self.store.transaction():
            existing = self.store.find_invoice_for_event(event.event_id)
            if existing is not None:
                logger.warning(
                    f"Duplicate {event} ignored: already invoiced as {existing.number}"
                )
                return existing

            issued_at = self.clock()
            prefix = invoice_number_prefix(issued_at)
            number = next_invoice_number(issued_at, self.store.latest_invoice_number(prefix))
            invoice = Invoice(
                customer_id=event.customer_id,
                number=number,
                issue_date=issued_at,
                due_date=issued_at + timedelta(days=self.due_days),
                line_items=[self._line_item(event)],
                created_at=issued_at,
                updated_at=issued_at,
            )
            self.store.save_invoice(invoice)

        logger.info(
            f"Invoice {invoice.number} issued to customer {invoice.customer_id}: "
            f"{invoice.total} for spot {event.spot_code}"
        )
        return invoice

    def _line_item(self, event: SpotFreed) -> InvoiceLineItem:
        return InvoiceLineItem(
            occupancy_event_id=event.event_id,
            spot_id=event.spot_id,
            spot_code=event.spot_code,
            entry_time=event.entry_time,
            exit_time=event.exit_time,
            occupied_duration=event.occupied_duration,
            total=event.amount_charged,
            description=describe_occupancy(event.spot_code, event.occupied_duration),
        )

    # =========================================================================
    # Payments
    # =========================================================================

    def process_payment(self, invoice_id: UUID, request: PaymentRequest) -> Payment:
        """
        Attempt to pay ``invoice_id`` in full.

        On approval the invoice becomes Paid and a PaymentProcessed event is
        published. On decline the invoice stays Pending. Both outcomes are
        stored as a Payment.

        Raises:
            InvoiceNotFoundError: Unknown invoice
            InvoiceNotPayableError: Invoice is not Pending (e.g. already paid)
            InvalidPaymentError: Amount not positive or not the invoice total
            BusUnavailableError: Payment recorded but the event could not be published
        """
        with self.store.transaction():
            invoice = self.store.get_invoice(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(str(invoice_id))
            if not invoice.is_pending:
                raise InvoiceNotPayableError(str(invoice_id), invoice.status)
            self._validate_amount(invoice, request.amount)

            result = self.gateway.authorize(request.amount, request.method)
            now = self.clock()
            payment = Payment(
                invoice_id=invoice.id,
                customer_id=invoice.customer_id,
                amount=request.amount,
                method=request.method,
                status=PaymentStatus.APPROVED if result.approved else PaymentStatus.REJECTED,
                transaction_id=str(result.transaction_id),
                authorization_code=result.authorization_code,
                processed_at=now,
                approved_at=now if result.approved else None,
                notes=request.notes if result.approved else (request.notes or result.reason),
                card=request.card,
            )
            self.store.save_payment(payment)

            if not result.approved:
                logger.warning(f"Payment for invoice {invoice.number} declined ({request.method})")
                return payment

            self.store.save_invoice(invoice.model_copy(update={
                "status": InvoiceStatus.PAID.value,
                "payment_date": now,
                "payment_method": request.method,
                "updated_at": now,
            }))

        logger.info(f"Invoice {invoice.number} paid: {payment.amount} via {payment.method}")
        self.event_bus.publish(PaymentProcessed(
            transaction_id=result.transaction_id,
            customer_id=invoice.customer_id,
            amount=payment.amount,
            payment_method=payment.method,
            status=PaymentStatus.APPROVED.value,
            authorization_code=payment.authorization_code,
            occurred_at=now,
        ))
        return payment

    @staticmethod
    def _validate_amount(invoice: Invoice, amount: Decimal) -> None:
        if amount <= 0:
            raise InvalidPaymentError(f"Payment amount must be positive, got {amount}")
        if amount != invoice.total:
            raise InvalidPaymentError(
                f"Payment amount {amount} does not match invoice total {invoice.total}"
            )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def get_invoices_for_customer(self, customer_id: str) -> list[Invoice]:
        return self.store.get_invoices_by_customer(customer_id)

    def get_payments(self, invoice_id: UUID) -> list[Payment]:
        return self.store.get_payments_by_invoice(invoice_id)

    def financial_report(self, start: datetime, end: datetime) -> FinancialReport:
        """Totals for invoices issued and payments approved in ``[start, end)``."""
        invoices = [
            i for i in self.store.get_invoices()
            if start <= i.issue_date < end and i.status != InvoiceStatus.CANCELLED
        ]
        payments = self.store.get_payments(status=PaymentStatus.APPROVED, start=start, end=end)
        return FinancialReport(
            start=start,
            end=end,
            total_billed=sum((i.total for i in invoices), Decimal("0")),
            total_received=sum((p.amount for p in payments), Decimal("0")),
            invoices_issued=len(invoices),
            pending_invoices=sum(1 for i in invoices if i.status == InvoiceStatus.PENDING),
            approved_payments=len(payments),
        )
