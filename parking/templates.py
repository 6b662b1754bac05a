"""
Notification message templates.

Every event type has two renditions:
- a short message (title + one line) used for in-app, push and SMS
- a longer HTML message used for e-mail

Design decisions:
- Templates are plain ``str.format`` strings with {variable} placeholders
- The variables are built from the event's own fields by ``build_context``;
  templates never look anything up
- Templates are keyed by event type name, so adding an event means adding a
  context builder and a template here, nothing else
- Event text is HTML-escaped before it goes into an e-mail body; short
  messages are plain text and use it as-is
"""

from dataclasses import dataclass
from html import escape
from datetime import timedelta
from typing import Callable, Optional

from pipeline.events import DomainEvent, EventTypes, PaymentProcessed, SpotFreed, SpotOccupied

DATE_FORMAT = "%d/%m/%Y %H:%M"
TIME_FORMAT = "%H:%M"


@dataclass
class RenderedMessage:
    """One event rendered for one kind of channel."""
    title: str
    body: str
    html: bool = False


@dataclass
class NotificationTemplate:
    """Short and e-mail variants for one event type."""
    event_type: str
    title: str
    short_body: str
    email_subject: str
    email_body: str

    def render_short(self, **kwargs) -> RenderedMessage:
        return RenderedMessage(title=self.title.format(**kwargs), body=self.short_body.format(**kwargs))

    def render_email(self, **kwargs) -> RenderedMessage:
        return RenderedMessage(
            title=self.email_subject.format(**kwargs),
            body=self.email_body.format(**kwargs),
            html=True,
        )


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[str, NotificationTemplate] = {

    EventTypes.SPOT_OCCUPIED: NotificationTemplate(
        event_type=EventTypes.SPOT_OCCUPIED,
        title="Spot Occupied",
        short_body="Your spot {spot_code} was occupied at {entry_clock}.",
        email_subject="Spot Occupancy Confirmation",
        email_body="""<h2>Spot Occupied</h2>
<p>Hi {customer_name},</p>
<p>Your spot <strong>{spot_code}</strong> was occupied successfully.</p>
<p><strong>Details:</strong></p>
<ul>
    <li>Entry: {entry_time}</li>
    <li>Spot code: {spot_code}</li>
</ul>
<p>Thanks for parking with us!</p>
""",
    ),

    EventTypes.SPOT_FREED: NotificationTemplate(
        event_type=EventTypes.SPOT_FREED,
        title="Spot Freed",
        short_body="Your spot {spot_code} was freed. Time: {hours:.1f}h. Amount charged: R$ {amount:.2f}",
        email_subject="Spot Freed - Usage Summary",
        email_body="""<h2>Spot Freed</h2>
<p>Hi customer {customer_id},</p>
<p>Your spot <strong>{spot_code}</strong> was freed.</p>
<p><strong>Usage summary:</strong></p>
<ul>
    <li>Exit: {exit_time}</li>
    <li>Total time: {hours:.1f} hours</li>
    <li>Amount charged: R$ {amount:.2f}</li>
</ul>
<p>Your invoice has been issued.</p>
<p>Thanks for parking with us!</p>
""",
    ),

    EventTypes.PAYMENT_PROCESSED: NotificationTemplate(
        event_type=EventTypes.PAYMENT_PROCESSED,
        title="Payment Processed",
        short_body="Your payment of R$ {amount:.2f} via {payment_method} was processed. Status: {status}",
        email_subject="Payment Confirmation",
        email_body="""<h2>Payment Processed</h2>
<p>Your payment was processed successfully!</p>
<p><strong>Payment details:</strong></p>
<ul>
    <li>Amount: R$ {amount:.2f}</li>
    <li>Method: {payment_method}</li>
    <li>Date: {occurred_at}</li>
    <li>Transaction: {transaction_id}</li>
    <li>Status: {status}</li>
{authorization_line}</ul>
<p>Thanks for parking with us!</p>
""",
    ),
}


# =============================================================================
# Context Builders
# =============================================================================

def _hours(duration: timedelta) -> float:
    return duration.total_seconds() / 3600


def _spot_occupied_context(event: SpotOccupied) -> dict:
    return {
        "spot_code": event.spot_code,
        "customer_name": event.customer_name,
        "entry_clock": event.entry_time.strftime(TIME_FORMAT),
        "entry_time": event.entry_time.strftime(DATE_FORMAT),
    }


def _spot_freed_context(event: SpotFreed) -> dict:
    return {
        "spot_code": event.spot_code,
        "customer_id": event.customer_id,
        "exit_time": event.exit_time.strftime(DATE_FORMAT),
        "hours": _hours(event.occupied_duration),
        "amount": event.amount_charged,
    }


def _payment_processed_context(event: PaymentProcessed) -> dict:
    authorization_line = ""
    if event.authorization_code:
        authorization_line = f"    <li>Authorization code: {escape(event.authorization_code)}</li>\n"
    return {
        "amount": event.amount,
        "payment_method": event.payment_method,
        "status": event.status,
        "occurred_at": event.occurred_at.strftime(DATE_FORMAT),
        "transaction_id": event.transaction_id,
        "authorization_line": authorization_line,
    }


CONTEXT_BUILDERS: dict[str, Callable[..., dict]] = {
    EventTypes.SPOT_OCCUPIED: _spot_occupied_context,
    EventTypes.SPOT_FREED: _spot_freed_context,
    EventTypes.PAYMENT_PROCESSED: _payment_processed_context,
}


# =============================================================================
# Template Access Functions
# =============================================================================

def get_template(event_type: str) -> Optional[NotificationTemplate]:
    """Get a template by event type name."""
    return TEMPLATES.get(event_type)


def build_context(event: DomainEvent) -> dict:
    """Template variables for ``event``."""
    builder = CONTEXT_BUILDERS.get(event.event_type)
    if builder is None:
        raise ValueError(f"No template context for event type: {event.event_type}")
    return builder(event)


# Context values that already hold markup
_MARKUP_KEYS = {"authorization_line"}


def escape_context(context: dict) -> dict:
    """HTML-escape the string values of a template context."""
    return {
        key: escape(value) if isinstance(value, str) and key not in _MARKUP_KEYS else value
        for key, value in context.items()
    }


def render_notification(event: DomainEvent, channel: str) -> RenderedMessage:
    """
    Render ``event`` for a channel.

    Args:
        event: Any event with a template
        channel: "email" gets the HTML variant; "sms", "push" and "in_app"
            get the short one

    Raises:
        ValueError: If there is no template for the event or the channel is unknown
    """
    template = get_template(event.event_type)
    if not template:
        raise ValueError(f"No template found for event type: {event.event_type}")

    context = build_context(event)
    if channel == "email":
        return template.render_email(**escape_context(context))
    elif channel in ("sms", "push", "in_app"):
        return template.render_short(**context)
    else:
        raise ValueError(f"Unknown channel: {channel}")
