"""
Tests for notification channels.

These tests verify that the simulated channels log and track sent
notifications, that the SMTP path hands a proper message to aiosmtplib,
and that in-app messages reach the customer's real-time group.
"""

import random
from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from parking.channels import (
    PUSH_METHOD,
    EmailChannel,
    InAppChannel,
    InMemoryPushSink,
    NotificationChannels,
    NotificationResult,
    PushChannel,
    SMSChannel,
    SmtpConfig,
    customer_group,
)
from parking.models import ChannelType


@pytest.fixture
def email_channel() -> EmailChannel:
    return EmailChannel()


@pytest.fixture
def smtp() -> SmtpConfig:
    return SmtpConfig(hostname="smtp.example.com", port=2525, username="user", password="secret")


class TestEmailChannel:
    """Tests for the e-mail channel in simulated mode."""

    def test_send_email_success(self, email_channel: EmailChannel):
        """Test successful email send."""
        result = email_channel.send(to="c1@example.com", subject="Spot Freed", body="<p>Bye</p>")

        assert result.success is True
        assert result.channel == ChannelType.EMAIL
        assert result.recipient == "c1@example.com"
        assert result.subject == "Spot Freed"
        assert result.error is None

    def test_tracks_sent_messages(self, email_channel: EmailChannel):
        email_channel.send("a@example.com", "Subject A", "Body A")
        email_channel.send("b@example.com", "Subject B", "Body B")

        assert email_channel.get_sent_count() == 2
        assert [m.recipient for m in email_channel.sent_messages] == ["a@example.com", "b@example.com"]

    def test_find_message_to(self, email_channel: EmailChannel):
        email_channel.send("target@example.com", "Hello", "World")
        email_channel.send("other@example.com", "Hi", "There")

        found = email_channel.find_message_to("target@example.com")

        assert found is not None
        assert found.subject == "Hello"
        assert email_channel.find_message_to("nobody@example.com") is None

    def test_clear_history(self, email_channel: EmailChannel):
        email_channel.send("test@example.com", "Test", "Body")
        email_channel.clear_history()
        assert email_channel.get_sent_count() == 0

    def test_simulated_failure(self):
        """Test simulated email failure."""
        result = EmailChannel(fail_rate=1.0).send("test@example.com", "Test", "Body")

        assert result.success is False
        assert "failure" in result.error.lower()

    def test_get_successful_sends(self):
        channel = EmailChannel(fail_rate=0.5, rng=random.Random(42))
        for n in range(20):
            channel.send(f"user{n}@example.com", "Test", "Body")

        successful = channel.get_successful_sends()
        assert 0 < len(successful) < 20
        assert all(m.success for m in successful)


class TestSmtpRelay:
    """Tests for sending through the SMTP relay."""

    def test_send_via_relay(self, smtp):
        channel = EmailChannel(smtp=smtp)
        with patch("parking.channels.aiosmtplib.send", new_callable=AsyncMock) as send:
            result = channel.send("c1@example.com", "Payment Confirmation", "<h2>Paid</h2>")

        assert result.success is True
        send.assert_awaited_once()
        message = send.await_args.args[0]
        assert message["To"] == "c1@example.com"
        assert message["Subject"] == "Payment Confirmation"
        kwargs = send.await_args.kwargs
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["port"] == 2525
        assert kwargs["username"] == "user"
        assert kwargs["start_tls"] is True

    def test_relay_error_is_a_failed_result(self, smtp):
        channel = EmailChannel(smtp=smtp)
        error = aiosmtplib.SMTPException("relay refused")
        with patch("parking.channels.aiosmtplib.send", new_callable=AsyncMock, side_effect=error):
            result = channel.send("c1@example.com", "Subject", "Body")

        assert result.success is False
        assert "relay refused" in result.error
        assert channel.get_successful_sends() == []

    def test_connection_error_is_a_failed_result(self, smtp):
        channel = EmailChannel(smtp=smtp)
        with patch("parking.channels.aiosmtplib.send", new_callable=AsyncMock, side_effect=ConnectionRefusedError()):
            result = channel.send("c1@example.com", "Subject", "Body")

        assert result.success is False
        assert result.error.startswith("SMTP error")

    def test_build_message(self, smtp):
        message = EmailChannel(smtp=smtp).build_message("c1@example.com", "Hi", "<b>x</b>", html=True)

        assert message["From"] == "Sistema de Estacionamento <noreply@estacionamento.local>"
        assert message.get_payload()[0].get_content_subtype() == "html"

    def test_plain_text_message(self, smtp):
        message = EmailChannel(smtp=smtp).build_message("c1@example.com", "Hi", "plain", html=False)
        assert message.get_payload()[0].get_content_subtype() == "plain"


class TestSMSChannel:

    def test_send_sms_success(self):
        sms = SMSChannel()
        result = sms.send(to="+5511999990000", message="Your spot A1 was freed.")

        assert result.success is True
        assert result.channel == ChannelType.SMS
        assert result.subject is None

    def test_long_message_still_sent(self, caplog):
        """Messages over 160 characters are sent with a warning."""
        sms = SMSChannel()
        with caplog.at_level("WARNING", logger="notifications"):
            result = sms.send("+5511999990000", "x" * 200)

        assert result.success is True
        assert "exceeds 160" in caplog.text


class TestPushAndInApp:

    def test_push_addressed_by_customer(self):
        result = PushChannel().send("C1", "Spot Occupied", "Your spot A1 was occupied.")
        assert result.success is True
        assert result.recipient == "C1"

    def test_in_app_pushes_to_customer_group(self):
        sink = InMemoryPushSink()
        result = InAppChannel(sink=sink).send("C1", "Spot Freed", "Bye")

        assert result.success is True
        group, method, payload = sink.deliveries[0]
        assert group == "Customer_C1" == customer_group("C1")
        assert method == PUSH_METHOD
        assert payload["title"] == "Spot Freed"
        assert payload["message"] == "Bye"

    def test_in_app_sink_failure(self):
        class BrokenSink:
            def send_to_group(self, group, method, payload):
                raise RuntimeError("hub down")

        result = InAppChannel(sink=BrokenSink()).send("C1", "Title", "Body")

        assert result.success is False
        assert "hub down" in result.error


class TestNotificationChannels:
    """Tests for the channel facade."""

    def test_routes_by_channel(self):
        channels = NotificationChannels()

        channels.send(ChannelType.EMAIL, "c1@example.com", "Subject", "Body", html=True)
        channels.send(ChannelType.SMS, "+5511999990000", "ignored", "Body")
        channels.send(ChannelType.PUSH, "C1", "Title", "Body")
        channels.send("in_app", "C1", "Title", "Body")

        assert channels.email.get_sent_count() == 1
        assert channels.sms.get_sent_count() == 1
        assert channels.push.get_sent_count() == 1
        assert channels.in_app.get_sent_count() == 1
        assert channels.get_total_sent_count() == 4

    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            NotificationChannels().send("fax", "C1", "Title", "Body")

    def test_clear_all_history(self):
        channels = NotificationChannels()
        channels.send(ChannelType.PUSH, "C1", "Title", "Body")
        channels.clear_all_history()
        assert channels.get_all_sent_messages() == []

    def test_result_str(self):
        result = NotificationResult(
            success=True,
            channel=ChannelType.EMAIL,
            recipient="c1@example.com",
            subject="Hello",
            body="World",
        )
        assert "EMAIL" in str(result)
        assert "c1@example.com" in str(result)
