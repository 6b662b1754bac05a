"""
Shared pytest fixtures for the parking event pipeline tests.

These fixtures provide a fixed clock, fresh stores, an in-memory bus and
recording channels so tests don't interfere with each other.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from parking.channels import InAppChannel, InMemoryPushSink, NotificationChannels
from parking.config import Settings
from parking.data_store import AnalyticsStore, BillingStore, NotificationStore
from parking.payments import SimulatedPaymentGateway
from pipeline.event_bus import InMemoryEventBus
from pipeline.events import PaymentProcessed, SpotFreed, SpotOccupied
from pipeline.runtime import build_pipeline


class FixedClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Infrastructure Fixtures
# =============================================================================

@pytest.fixture
def t0() -> datetime:
    """Entry time used by the scenarios: 15 Jan 2025, 10:00 UTC."""
    return datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(t0: datetime) -> FixedClock:
    """Clock fixed at 12:00 on the scenario day."""
    return FixedClock(t0 + timedelta(hours=2))


@pytest.fixture
def settings() -> Settings:
    """Settings that ignore the environment and any local .env file."""
    return Settings(_env_file=None, bus_backend="memory")


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    """Fresh in-memory bus delivering on the publishing thread."""
    return InMemoryEventBus()


@pytest.fixture
def billing_store() -> BillingStore:
    return BillingStore()


@pytest.fixture
def analytics_store() -> AnalyticsStore:
    return AnalyticsStore()


@pytest.fixture
def notification_store() -> NotificationStore:
    return NotificationStore()


@pytest.fixture
def push_sink() -> InMemoryPushSink:
    """Real-time sink that records every group push."""
    return InMemoryPushSink()


@pytest.fixture
def channels(push_sink: InMemoryPushSink) -> NotificationChannels:
    """Fresh NotificationChannels facade (simulated e-mail, recording in-app sink)."""
    return NotificationChannels(in_app=InAppChannel(sink=push_sink))


@pytest.fixture
def approving_gateway() -> SimulatedPaymentGateway:
    """Gateway that approves every payment."""
    return SimulatedPaymentGateway(approval_rate=1.0)


@pytest.fixture
def declining_gateway() -> SimulatedPaymentGateway:
    """Gateway that declines every payment."""
    return SimulatedPaymentGateway(approval_rate=0.0)


@pytest.fixture
def pipeline(settings, event_bus, channels, approving_gateway, clock):
    """Started pipeline over the in-memory bus; stopped after the test."""
    pipeline = build_pipeline(
        settings=settings,
        event_bus=event_bus,
        channels=channels,
        gateway=approving_gateway,
        clock=clock,
    )
    pipeline.start()
    yield pipeline
    pipeline.stop()


# =============================================================================
# Event Fixtures
# =============================================================================

@pytest.fixture
def make_occupied(t0: datetime):
    """Factory for SpotOccupied events (spot A1, customer C1 by default)."""

    def make(spot_code: str = "A1", customer_id: str = "C1", entry_time: datetime = None, **kwargs) -> SpotOccupied:
        return SpotOccupied(
            spot_id=kwargs.pop("spot_id", f"spot-{spot_code}"),
            spot_code=spot_code,
            customer_id=customer_id,
            customer_name=kwargs.pop("customer_name", "Maria Silva"),
            entry_time=entry_time or t0,
            **kwargs,
        )

    return make


@pytest.fixture
def make_freed(t0: datetime):
    """Factory for SpotFreed events (A1, C1, two hours, 20.00 by default)."""

    def make(
        spot_code: str = "A1",
        customer_id: str = "C1",
        duration: timedelta = timedelta(hours=2),
        amount: str = "20.00",
        entry_time: datetime = None,
        **kwargs,
    ) -> SpotFreed:
        entry = entry_time or t0
        return SpotFreed(
            spot_id=kwargs.pop("spot_id", f"spot-{spot_code}"),
            spot_code=spot_code,
            customer_id=customer_id,
            exit_time=entry + duration,
            occupied_duration=duration,
            amount_charged=Decimal(amount),
            **kwargs,
        )

    return make


@pytest.fixture
def payment_event() -> PaymentProcessed:
    return PaymentProcessed(
        customer_id="C1",
        amount=Decimal("20.00"),
        payment_method="Pix",
        status="Aprovado",
        authorization_code="AB12CD34",
    )
