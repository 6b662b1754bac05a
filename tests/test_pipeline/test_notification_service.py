"""
Tests for the notification consumer.

These tests verify that the notification service correctly:
1. Subscribes to every event type
2. Renders and sends on each channel the customer enabled
3. Records one delivery log entry per (event, channel)
4. Never sends the same notification twice on redelivery
"""

import random
from uuid import uuid4

import pytest

from parking.channels import EmailChannel, InAppChannel, NotificationChannels, customer_group
from parking.models import ChannelType, DeliveryStatus, NotificationSettings
from pipeline.events import EventTypes
from pipeline.exceptions import NotificationNotFoundError
from pipeline.notification_service import (
    DIRECT_NOTIFICATION,
    TEST_NOTIFICATION,
    NotificationService,
    default_email_address,
)


@pytest.fixture
def notifications(event_bus, notification_store, channels, clock):
    service = NotificationService(event_bus=event_bus, store=notification_store, channels=channels, clock=clock)
    service.start()
    yield service
    service.stop()


class TestSubscriptions:

    def test_subscribes_to_every_event_type(self, notifications, event_bus):
        for event_type in (EventTypes.SPOT_OCCUPIED, EventTypes.SPOT_FREED, EventTypes.PAYMENT_PROCESSED):
            assert event_bus.get_subscriber_count(event_type) == 1

    def test_stop_unsubscribes(self, notifications, event_bus):
        notifications.stop()
        assert event_bus.get_subscriber_count(EventTypes.SPOT_OCCUPIED) == 0


class TestFanOut:
    """Tests for sending on enabled channels."""

    def test_default_channels(self, notifications, event_bus, channels, make_occupied):
        """Default settings: e-mail, push and in-app on, SMS off."""
        event_bus.publish(make_occupied())

        assert channels.email.get_sent_count() == 1
        assert channels.push.get_sent_count() == 1
        assert channels.in_app.get_sent_count() == 1
        assert channels.sms.get_sent_count() == 0

    def test_email_uses_default_address(self, notifications, event_bus, channels, make_occupied):
        event_bus.publish(make_occupied())

        msg = channels.email.find_message_to(default_email_address("C1"))
        assert msg is not None
        assert msg.subject == "Spot Occupancy Confirmation"
        assert "<strong>A1</strong>" in msg.body

    def test_in_app_reaches_customer_group(self, notifications, event_bus, push_sink, make_freed):
        event_bus.publish(make_freed())

        payloads = push_sink.messages_for(customer_group("C1"))
        assert len(payloads) == 1
        assert payloads[0]["title"] == "Spot Freed"
        assert "R$ 20.00" in payloads[0]["message"]

    def test_payment_processed_notifies(self, notifications, event_bus, channels, payment_event):
        event_bus.publish(payment_event)

        push = channels.push.get_successful_sends()[0]
        assert push.subject == "Payment Processed"
        assert "Pix" in push.body

    def test_records_one_entry_per_channel(self, notifications, event_bus, make_occupied, clock):
        event = make_occupied()
        event_bus.publish(event)

        records = notifications.store.get_notifications_for_event(event.event_id)
        assert {r.channel for r in records} == {"email", "push", "in_app"}
        for record in records:
            assert record.status == DeliveryStatus.SENT
            assert record.attempts == 1
            assert record.event_type == EventTypes.SPOT_OCCUPIED
            assert record.created_at == clock()

    def test_disabled_channel_is_skipped(self, notifications, event_bus, channels, make_occupied):
        notifications.update_settings(NotificationSettings(customer_id="C1", email_enabled=False))
        event_bus.publish(make_occupied())

        assert channels.email.get_sent_count() == 0
        assert channels.push.get_sent_count() == 1

    def test_sms_goes_to_stored_phone(self, notifications, event_bus, channels, make_occupied):
        notifications.update_settings(NotificationSettings(customer_id="C1", sms_enabled=True, phone="+5511999990000"))
        event_bus.publish(make_occupied())

        assert channels.sms.find_message_to("+5511999990000") is not None

    def test_sms_without_phone_is_recorded_as_failed(self, notifications, event_bus, channels, make_occupied):
        notifications.update_settings(NotificationSettings(customer_id="C1", sms_enabled=True))
        event = make_occupied()
        event_bus.publish(event)

        record = notifications.store.find_notification(event.event_id, ChannelType.SMS)
        assert record.status == DeliveryStatus.FAILED
        assert record.last_error == "No sms contact on file"
        assert channels.sms.get_sent_count() == 0

    def test_handle_event_returns_records(self, notifications, make_occupied):
        records = notifications.handle_event(make_occupied())
        assert len(records) == 3


class TestFailures:
    """Tests for channel failures and redelivery."""

    @pytest.fixture
    def flaky_channels(self, push_sink):
        return NotificationChannels(
            email=EmailChannel(fail_rate=1.0, rng=random.Random(1)),
            in_app=InAppChannel(sink=push_sink),
        )

    @pytest.fixture
    def flaky(self, event_bus, notification_store, flaky_channels, clock):
        service = NotificationService(
            event_bus=event_bus, store=notification_store, channels=flaky_channels, clock=clock
        )
        service.start()
        yield service
        service.stop()

    def test_channel_failure_does_not_block_others(self, flaky, event_bus, flaky_channels, make_occupied):
        event = make_occupied()
        event_bus.publish(event)

        email = flaky.store.find_notification(event.event_id, ChannelType.EMAIL)
        assert email.status == DeliveryStatus.FAILED
        assert email.last_error == "Simulated email delivery failure"
        assert flaky.store.find_notification(event.event_id, ChannelType.IN_APP).status == DeliveryStatus.SENT
        assert event_bus.dead_letters() == []

    def test_redelivery_retries_only_failed_channels(self, flaky, event_bus, flaky_channels, make_occupied):
        event = make_occupied()
        event_bus.publish(event)
        flaky_channels.email.fail_rate = 0.0

        event_bus.publish(event)

        email = flaky.store.find_notification(event.event_id, ChannelType.EMAIL)
        assert email.status == DeliveryStatus.SENT
        assert email.attempts == 2
        assert email.last_error is None
        assert flaky_channels.in_app.get_sent_count() == 1
        assert flaky_channels.push.get_sent_count() == 1

    def test_duplicate_delivery_sends_nothing_twice(self, notifications, event_bus, channels, make_freed):
        event = make_freed()
        event_bus.publish(event)
        event_bus.publish(event)

        assert channels.get_total_sent_count() == 3
        assert len(notifications.store.get_notifications_for_event(event.event_id)) == 3

    def test_push_sink_error_is_recorded(self, event_bus, notification_store, clock, make_occupied):
        class BrokenSink:
            def send_to_group(self, group, method, payload):
                raise ConnectionError("hub offline")

        service = NotificationService(
            event_bus=event_bus,
            store=notification_store,
            channels=NotificationChannels(in_app=InAppChannel(sink=BrokenSink())),
            clock=clock,
        )
        event = make_occupied()
        service.handle_event(event)

        record = notification_store.find_notification(event.event_id, ChannelType.IN_APP)
        assert record.status == DeliveryStatus.FAILED
        assert "hub offline" in record.last_error


class TestQueries:

    def test_get_notifications_by_status(self, notifications, event_bus, make_occupied):
        notifications.update_settings(NotificationSettings(customer_id="C1", sms_enabled=True))
        event_bus.publish(make_occupied())

        failed = notifications.get_notifications("C1", status=DeliveryStatus.FAILED)
        assert [n.channel for n in failed] == ["sms"]
        assert len(notifications.get_notifications("C1")) == 4

    def test_settings_default_and_update(self, notifications):
        assert notifications.get_settings("C9").enabled_channels() == [
            ChannelType.EMAIL,
            ChannelType.PUSH,
            ChannelType.IN_APP,
        ]
        notifications.update_settings(NotificationSettings(customer_id="C9", push_enabled=False, email="c9@x.com"))

        settings = notifications.get_settings("C9")
        assert settings.push_enabled is False
        assert settings.email == "c9@x.com"


class TestEventTypeOptIn:
    """Tests for the per-customer list of event types."""

    def test_empty_list_means_every_event(self, notifications, event_bus, make_occupied, payment_event):
        event_bus.publish(make_occupied())
        event_bus.publish(payment_event)

        assert len(notifications.get_notifications("C1")) == 6

    def test_event_type_not_in_list_is_skipped(self, notifications, event_bus, channels, make_occupied, make_freed):
        notifications.update_settings(NotificationSettings(
            customer_id="C1",
            event_types=[EventTypes.SPOT_FREED],
        ))

        event_bus.publish(make_occupied())
        assert channels.get_total_sent_count() == 0

        event_bus.publish(make_freed())
        assert {n.event_type for n in notifications.get_notifications("C1")} == {EventTypes.SPOT_FREED}

    def test_opted_out_event_returns_no_records(self, notifications, payment_event):
        notifications.update_settings(NotificationSettings(customer_id="C1", event_types=[EventTypes.SPOT_OCCUPIED]))

        assert notifications.handle_event(payment_event) == []
        assert notifications.get_notifications("C1") == []


class TestDirectSends:
    """Tests for ad-hoc and test messages."""

    def test_send_direct_uses_enabled_channels(self, notifications, channels):
        sent = notifications.send_direct("C1", "Maintenance", "Level 2 closes at 22:00")

        assert {n.channel for n in sent} == {"email", "push", "in_app"}
        assert {n.status for n in sent} == {DeliveryStatus.SENT}
        assert {n.event_type for n in sent} == {DIRECT_NOTIFICATION}
        assert len({n.event_id for n in sent}) == 1
        assert channels.email.find_message_to(default_email_address("C1")).body == "Level 2 closes at 22:00"

    def test_send_direct_ignores_event_type_list(self, notifications):
        notifications.update_settings(NotificationSettings(customer_id="C1", event_types=[EventTypes.SPOT_FREED]))

        assert len(notifications.send_direct("C1", "Hello", "Hi there")) == 3

    def test_each_direct_send_is_a_new_record(self, notifications):
        notifications.send_direct("C1", "Hello", "first")
        notifications.send_direct("C1", "Hello", "second")

        assert len(notifications.get_notifications("C1")) == 6

    def test_send_test(self, notifications, push_sink):
        sent = notifications.send_test("C1", "ping")

        assert {n.event_type for n in sent} == {TEST_NOTIFICATION}
        assert push_sink.messages_for(customer_group("C1"))[0]["message"] == "ping"


class TestDeliveryLog:
    """Tests for read state and deletion."""

    def test_unread_count_counts_delivered(self, notifications, event_bus, make_occupied):
        notifications.update_settings(NotificationSettings(customer_id="C1", sms_enabled=True))
        event_bus.publish(make_occupied())

        # sms failed (no phone), so only three reached the customer
        assert notifications.unread_count("C1") == 3
        assert notifications.unread_count("C2") == 0

    def test_mark_as_read(self, notifications, event_bus, make_occupied, clock):
        event_bus.publish(make_occupied())
        notification = notifications.get_notifications("C1")[0]

        read = notifications.mark_as_read(notification.id)

        assert read.read is True
        assert read.read_at == clock()
        assert notifications.unread_count("C1") == 2

    def test_mark_as_read_twice_keeps_first_timestamp(self, notifications, event_bus, make_occupied, clock):
        event_bus.publish(make_occupied())
        notification_id = notifications.get_notifications("C1")[0].id
        first = notifications.mark_as_read(notification_id)

        clock.advance(minutes=5)
        assert notifications.mark_as_read(notification_id).read_at == first.read_at

    def test_mark_unknown_as_read(self, notifications):
        with pytest.raises(NotificationNotFoundError):
            notifications.mark_as_read(uuid4())

    def test_delete_notification(self, notifications, event_bus, make_occupied):
        event_bus.publish(make_occupied())
        notification_id = notifications.get_notifications("C1")[0].id

        notifications.delete_notification(notification_id)

        assert notification_id not in {n.id for n in notifications.get_notifications("C1")}
        with pytest.raises(NotificationNotFoundError):
            notifications.delete_notification(notification_id)
