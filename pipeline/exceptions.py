"""
Error taxonomy for the occupancy-to-billing pipeline.

The bus decides what to do with a failed delivery by looking at the exception
type: decoding problems are dead-lettered at once, anything else raised by a
handler is treated as transient and the message is requeued until the delivery
attempt limit is reached.

Billing errors are raised to whoever asked for a payment (the HTTP layer maps
them to 4xx responses); they never travel through the bus.
"""


class PipelineError(Exception):
    """Base class for every error raised by this project."""


class BusUnavailableError(PipelineError):
    """The broker could not be reached within the configured timeout."""


class MalformedEventError(PipelineError):
    """A message body could not be decoded into its event contract."""

    def __init__(self, event_type: str, reason: str):
        self.event_type = event_type
        self.reason = reason
        super().__init__(f"Malformed {event_type} payload: {reason}")


class UnknownEventTypeError(MalformedEventError):
    """The routing key does not name any known event contract."""

    def __init__(self, event_type: str):
        super().__init__(event_type, "unknown event type")


class BillingError(PipelineError):
    """Base class for money-handling violations."""


class InvoiceNotFoundError(BillingError):
    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} not found")


class InvoiceNotPayableError(BillingError):
    """Raised when a payment is attempted on an invoice that is not pending."""

    def __init__(self, invoice_id: str, status: str):
        self.invoice_id = invoice_id
        self.status = status
        super().__init__(f"Invoice {invoice_id} is not pending payment (status: {status})")


class InvalidPaymentError(BillingError):
    """Raised when a payment amount is not positive or differs from the invoice total."""


class NotificationNotFoundError(PipelineError):
    def __init__(self, notification_id: str):
        self.notification_id = notification_id
        super().__init__(f"Notification {notification_id} not found")
