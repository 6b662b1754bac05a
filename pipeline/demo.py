"""
Demonstration scripts for the parking event pipeline.

Each scenario builds a fresh in-memory pipeline, publishes events the way the
occupancy service would and prints what the consumers did. Run them through
``cli.py demo <scenario>`` to get the log output alongside.
"""

from datetime import timedelta
from decimal import Decimal

from parking.config import Settings
from parking.models import PaymentRequest
from parking.payments import SimulatedPaymentGateway
from pipeline.event_bus import BusMessage, InMemoryEventBus
from pipeline.events import EventTypes, SpotFreed, SpotOccupied, utcnow
from pipeline.runtime import ParkingPipeline, build_pipeline


def _banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(f"DEMO: {title}")
    print("=" * 70 + "\n")


def _section(text: str) -> None:
    print("\n" + "-" * 70)
    print(text)
    print("-" * 70 + "\n")


def _fresh_pipeline(approval_rate: float = 1.0) -> ParkingPipeline:
    pipeline = build_pipeline(
        settings=Settings(_env_file=None, bus_backend="memory", smtp_host=None),
        event_bus=InMemoryEventBus(),
        gateway=SimulatedPaymentGateway(approval_rate=approval_rate),
    )
    pipeline.start()
    return pipeline


def _park(pipeline: ParkingPipeline, spot_code: str = "A1", customer_id: str = "C1") -> SpotFreed:
    entry = utcnow() - timedelta(hours=2)
    pipeline.publish(SpotOccupied(
        spot_id=f"spot-{spot_code}",
        spot_code=spot_code,
        customer_id=customer_id,
        customer_name="Maria Silva",
        entry_time=entry,
    ))
    freed = SpotFreed(
        spot_id=f"spot-{spot_code}",
        spot_code=spot_code,
        customer_id=customer_id,
        exit_time=entry + timedelta(hours=2),
        occupied_duration=timedelta(hours=2),
        amount_charged=Decimal("20.00"),
    )
    pipeline.publish(freed)
    return freed


def run_occupancy_billing_demo():
    """
    A customer parks in A1 for two hours.

    Billing issues one invoice, analytics closes the occupancy and updates
    the day, notification tells the customer twice (occupied, freed).
    """
    _banner("Occupancy -> Billing")
    pipeline = _fresh_pipeline()

    _section("ACTION: Publishing SpotOccupied and SpotFreed for spot A1, customer C1")
    _park(pipeline)

    invoices = pipeline.billing.get_invoices_for_customer("C1")
    print("\nInvoices:")
    for invoice in invoices:
        print(f"  {invoice.number}  total={invoice.total}  status={invoice.status}  due={invoice.due_date:%Y-%m-%d}")
    print("\nToday's metric:")
    for metric in pipeline.analytics.daily_metrics():
        print(f"  {metric.day}  occupancies={metric.total_occupancies}  revenue={metric.total_revenue}")
    print("\nNotifications sent:")
    for msg in pipeline.notifications.channels.get_all_sent_messages():
        print(f"  {msg}")
    pipeline.stop()


def run_duplicate_delivery_demo():
    """The broker redelivers SpotFreed; nobody applies it twice."""
    _banner("Duplicate Delivery")
    pipeline = _fresh_pipeline()
    freed = _park(pipeline)
    sent_before = pipeline.notifications.channels.get_total_sent_count()

    _section(f"ACTION: Redelivering {freed}")
    pipeline.publish(freed)

    print(f"\nInvoices for C1: {len(pipeline.billing.get_invoices_for_customer('C1'))}")
    print(f"Notifications sent by the redelivery: "
          f"{pipeline.notifications.channels.get_total_sent_count() - sent_before}")
    pipeline.stop()


def run_payment_demo():
    """The customer pays the invoice via Pix; PaymentProcessed goes out."""
    _banner("Payment")
    pipeline = _fresh_pipeline(approval_rate=1.0)
    _park(pipeline)
    invoice = pipeline.billing.get_invoices_for_customer("C1")[0]

    _section(f"ACTION: Paying invoice {invoice.number} ({invoice.total}) via Pix")
    payment = pipeline.billing.process_payment(invoice.id, PaymentRequest(method="Pix", amount=invoice.total))

    print(f"\nPayment: {payment.status} (auth {payment.authorization_code})")
    print(f"Invoice: {pipeline.billing.get_invoice(invoice.id).status}")
    published = [m for m in pipeline.event_bus.get_published_messages()
                 if m.routing_key == EventTypes.PAYMENT_PROCESSED]
    print(f"PaymentProcessed events published: {len(published)}")
    pipeline.stop()


def run_poison_message_demo():
    """A malformed SpotFreed is dead-lettered instead of looping forever."""
    _banner("Poison Message")
    pipeline = _fresh_pipeline()

    _section("ACTION: Publishing a SpotFreed body with no fields")
    pipeline.event_bus.publish_message(BusMessage(
        message_id="poison-1",
        routing_key=EventTypes.SPOT_FREED,
        body=b"{}",
        timestamp=int(utcnow().timestamp()),
    ))

    print("\nDead letters:")
    for dead_letter in pipeline.event_bus.dead_letters():
        print(f"  {dead_letter.queue}: {dead_letter.reason[:80]}")
    pipeline.stop()


def run_out_of_order_demo():
    """SpotFreed arrives before its SpotOccupied; analytics holds it until the stay opens."""
    _banner("Out-of-Order Delivery")
    pipeline = _fresh_pipeline()

    _section("ACTION: Publishing SpotFreed for spot B7 without a prior SpotOccupied")
    pipeline.publish(SpotFreed(
        spot_id="spot-B7",
        spot_code="B7",
        customer_id="C2",
        exit_time=utcnow(),
        occupied_duration=timedelta(minutes=45),
        amount_charged=Decimal("7.50"),
    ))

    print(f"\nHeld SpotFreed events: {len(pipeline.analytics.store.held_frees())}")

    _section("ACTION: The late SpotOccupied for spot B7 arrives")
    pipeline.publish(SpotOccupied(
        spot_id="spot-B7",
        spot_code="B7",
        customer_id="C2",
        customer_name="Joao Souza",
        entry_time=utcnow() - timedelta(minutes=45),
    ))

    page = pipeline.analytics.occupancies()
    print(f"\nOccupancy records: {page.total_items}")
    print(f"Still occupied: {pipeline.analytics.dashboard().occupied_now}")
    print(f"Invoices for C2: {len(pipeline.billing.get_invoices_for_customer('C2'))}")
    print(f"Dead letters: {len(pipeline.event_bus.dead_letters())}")
    pipeline.stop()


SCENARIOS = {
    "occupancy-billing": run_occupancy_billing_demo,
    "duplicate": run_duplicate_delivery_demo,
    "payment": run_payment_demo,
    "poison": run_poison_message_demo,
    "out-of-order": run_out_of_order_demo,
}


def run_all_demos():
    for scenario in SCENARIOS.values():
        scenario()
