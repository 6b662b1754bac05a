"""
Notification delivery channels.

- Email: SMTP relay via aiosmtplib, or log-only when no relay is configured
- SMS and Push: simulated providers that log the send
- In-app: pushed to the customer's group on a real-time sink

Design decisions:
- Every send returns a ``NotificationResult``; channel failures are reported,
  never raised, so one broken channel cannot block the others
- Channels track sent messages for test assertions
- Failures can be simulated per channel with ``fail_rate``
- Channels are synchronous; the SMTP client is async and is driven with
  ``asyncio.run`` from the (loop-less) handler thread
"""

import asyncio
import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Optional, Protocol

import aiosmtplib

from parking.models import ChannelType
from pipeline.events import utcnow

logger = logging.getLogger("notifications")

PUSH_METHOD = "ReceberNotificacao"


def customer_group(customer_id: str) -> str:
    """Real-time group every connection of ``customer_id`` joins."""
    return f"Customer_{customer_id}"


@dataclass
class NotificationResult:
    """
    Result of a notification send attempt.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    channel: ChannelType
    recipient: str
    subject: Optional[str]
    body: str
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        return f"{status} {ChannelType(self.channel).value.upper()} to {self.recipient}: {self.subject or self.body[:50]}"


class _RecordingChannel:
    """Sent-message bookkeeping shared by all channels."""

    channel_type: ChannelType

    def __init__(self, fail_rate: float = 0.0, rng: Optional[random.Random] = None):
        self.fail_rate = fail_rate
        self.sent_messages: list[NotificationResult] = []
        self._rng = rng or random.Random()
        self._history_lock = threading.Lock()

    def _should_fail(self) -> bool:
        return self.fail_rate > 0 and self._rng.random() < self.fail_rate

    def _record(self, result: NotificationResult) -> NotificationResult:
        with self._history_lock:
            self.sent_messages.append(result)
        return result

    def _failure(self, recipient: str, subject: Optional[str], body: str, error: str) -> NotificationResult:
        logger.error(f"[{self.channel_type.value.upper()} FAILED] To: {recipient} | Error: {error}")
        return self._record(NotificationResult(
            success=False,
            channel=self.channel_type,
            recipient=recipient,
            subject=subject,
            body=body,
            error=error,
        ))

    def _success(self, recipient: str, subject: Optional[str], body: str) -> NotificationResult:
        return self._record(NotificationResult(
            success=True,
            channel=self.channel_type,
            recipient=recipient,
            subject=subject,
            body=body,
        ))

    def get_sent_count(self) -> int:
        """Get the number of messages sent (for testing)."""
        return len(self.sent_messages)

    def get_successful_sends(self) -> list[NotificationResult]:
        return [m for m in self.sent_messages if m.success]

    def clear_history(self):
        """Clear sent message history (useful between tests)."""
        with self._history_lock:
            self.sent_messages.clear()

    def find_message_to(self, recipient: str) -> Optional[NotificationResult]:
        """Find a message sent to a specific recipient."""
        for msg in self.sent_messages:
            if msg.recipient == recipient:
                return msg
        return None


# =============================================================================
# Email
# =============================================================================

@dataclass
class SmtpConfig:
    hostname: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    start_tls: bool = True
    timeout: float = 10.0
    sender_name: str = "Sistema de Estacionamento"
    sender_address: str = "noreply@estacionamento.local"


class EmailChannel(_RecordingChannel):
    """
    E-mail channel.

    With an ``SmtpConfig`` each message goes through the relay; without one
    the send is only logged (simulated mode, used by the demo and tests).
    """

    channel_type = ChannelType.EMAIL

    def __init__(
        self,
        smtp: Optional[SmtpConfig] = None,
        fail_rate: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(fail_rate=fail_rate, rng=rng)
        self.smtp = smtp

    def send(self, to: str, subject: str, body: str, html: bool = True) -> NotificationResult:
        """
        Send an e-mail.

        Args:
            to: Recipient e-mail address
            subject: Subject line
            body: Message content
            html: Send ``body`` as HTML (plain text otherwise)
        """
        if self._should_fail():
            return self._failure(to, subject, body, "Simulated email delivery failure")

        if self.smtp is not None:
            try:
                asyncio.run(self._send_smtp(to, subject, body, html))
            except (aiosmtplib.SMTPException, OSError) as e:
                return self._failure(to, subject, body, f"SMTP error: {e}")

        logger.info(f"[EMAIL] To: {to} | Subject: {subject}")
        logger.debug(f"[EMAIL BODY] {body}")
        return self._success(to, subject, body)

    def build_message(self, to: str, subject: str, body: str, html: bool = True) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        sender = self.smtp.sender_address if self.smtp else "noreply@localhost"
        sender_name = self.smtp.sender_name if self.smtp else ""
        message["From"] = formataddr((sender_name, sender))
        message["To"] = to
        message["Subject"] = subject
        message.attach(MIMEText(body, "html" if html else "plain", "utf-8"))
        return message

    async def _send_smtp(self, to: str, subject: str, body: str, html: bool) -> None:
        await aiosmtplib.send(
            self.build_message(to, subject, body, html),
            hostname=self.smtp.hostname,
            port=self.smtp.port,
            username=self.smtp.username,
            password=self.smtp.password,
            start_tls=self.smtp.start_tls,
            timeout=self.smtp.timeout,
        )


# =============================================================================
# SMS and Push (simulated providers)
# =============================================================================

class SMSChannel(_RecordingChannel):
    """Simulated SMS provider."""

    channel_type = ChannelType.SMS

    # SMS typically have character limits
    MAX_LENGTH = 160

    def send(self, to: str, message: str) -> NotificationResult:
        if len(message) > self.MAX_LENGTH:
            logger.warning(
                f"[SMS] Message length ({len(message)}) exceeds {self.MAX_LENGTH} chars, "
                "may be split into multiple messages"
            )
        if self._should_fail():
            return self._failure(to, None, message, "Simulated SMS delivery failure")
        logger.info(f"[SMS] To: {to} | Message: {message}")
        return self._success(to, None, message)


class PushChannel(_RecordingChannel):
    """Simulated mobile push provider, addressed by customer id."""

    channel_type = ChannelType.PUSH

    def send(self, customer_id: str, title: str, message: str) -> NotificationResult:
        if self._should_fail():
            return self._failure(customer_id, title, message, "Simulated push delivery failure")
        logger.info(f"[PUSH] Customer: {customer_id} | Title: {title}")
        return self._success(customer_id, title, message)


# =============================================================================
# In-app (real-time push sink)
# =============================================================================

class PushSink(Protocol):
    def send_to_group(self, group: str, method: str, payload: dict[str, Any]) -> None:
        """Deliver ``payload`` to every connection in ``group``. Fire-and-forget."""
        ...


class InMemoryPushSink:
    """Push sink that keeps every delivery per group (tests and demo)."""

    def __init__(self):
        self.deliveries: list[tuple[str, str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def send_to_group(self, group: str, method: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.deliveries.append((group, method, payload))

    def messages_for(self, group: str) -> list[dict[str, Any]]:
        with self._lock:
            return [payload for g, _, payload in self.deliveries if g == group]


class InAppChannel(_RecordingChannel):
    """Pushes a short message to the customer's real-time group."""

    channel_type = ChannelType.IN_APP

    def __init__(
        self,
        sink: Optional[PushSink] = None,
        fail_rate: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(fail_rate=fail_rate, rng=rng)
        self.sink = sink if sink is not None else InMemoryPushSink()

    def send(self, customer_id: str, title: str, message: str) -> NotificationResult:
        if self._should_fail():
            return self._failure(customer_id, title, message, "Simulated in-app delivery failure")
        group = customer_group(customer_id)
        payload = {"title": title, "message": message, "sent_at": utcnow().isoformat()}
        try:
            self.sink.send_to_group(group, PUSH_METHOD, payload)
        except Exception as e:
            return self._failure(customer_id, title, message, f"Push sink error: {e!r}")
        logger.info(f"[IN-APP] Group: {group} | Title: {title}")
        return self._success(customer_id, title, message)


# =============================================================================
# Facade
# =============================================================================

class NotificationChannels:
    """
    Facade for all notification channels.

    The notification consumer only talks to this class; swap channels in the
    constructor to change providers.
    """

    def __init__(
        self,
        email: Optional[EmailChannel] = None,
        sms: Optional[SMSChannel] = None,
        push: Optional[PushChannel] = None,
        in_app: Optional[InAppChannel] = None,
    ):
        self.email = email or EmailChannel()
        self.sms = sms or SMSChannel()
        self.push = push or PushChannel()
        self.in_app = in_app or InAppChannel()

    def send(
        self,
        channel: ChannelType,
        recipient: str,
        title: str,
        body: str,
        html: bool = False,
    ) -> NotificationResult:
        """
        Send via a named channel.

        Args:
            channel: Target channel
            recipient: E-mail address, phone number, or customer id (push, in-app)
            title: Subject line or notification title (ignored for SMS)
            body: Message content

        Raises:
            ValueError: If channel is not recognized
        """
        channel = ChannelType(channel)
        if channel == ChannelType.EMAIL:
            return self.email.send(recipient, title, body, html=html)
        elif channel == ChannelType.SMS:
            return self.sms.send(recipient, body)
        elif channel == ChannelType.PUSH:
            return self.push.send(recipient, title, body)
        elif channel == ChannelType.IN_APP:
            return self.in_app.send(recipient, title, body)
        else:
            raise ValueError(f"Unknown channel: {channel}")

    def get_all_sent_messages(self) -> list[NotificationResult]:
        """Get all sent messages across all channels."""
        return (
            self.email.sent_messages
            + self.sms.sent_messages
            + self.push.sent_messages
            + self.in_app.sent_messages
        )

    def get_total_sent_count(self) -> int:
        return len(self.get_all_sent_messages())

    def clear_all_history(self):
        for channel in (self.email, self.sms, self.push, self.in_app):
            channel.clear_history()
