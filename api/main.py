"""
FastAPI application over the parking event pipeline.

This application provides:
1. Billing: invoices, payments and the financial report (/api/billing/...)
2. Analytics: dashboard, daily metrics, occupancies, revenue (/api/analytics/...)
3. Notifications: delivery log, read state, ad-hoc sends and per-customer settings (/api/notifications/...)
4. Admin: dead-lettered messages (/admin/dead-letters)
5. Demo: publish a raw event, standing in for the occupancy service (/demo/events/...)

Run with:
    uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from parking.config import configure_logging, get_settings
from parking.models import (
    Dashboard,
    DailyMetric,
    DeliveryStatus,
    DirectNotificationRequest,
    FinancialReport,
    Invoice,
    MonthlyRevenue,
    Notification,
    NotificationSettings,
    NotificationTestRequest,
    OccupancyPage,
    OccupancyStatus,
    Payment,
    PaymentRequest,
    PaymentStatus,
    UnreadCount,
)
from pipeline.events import as_utc, from_wire, utcnow
from pipeline.exceptions import (
    BusUnavailableError,
    InvalidPaymentError,
    InvoiceNotFoundError,
    InvoiceNotPayableError,
    MalformedEventError,
    NotificationNotFoundError,
)
from pipeline.runtime import ParkingPipeline, build_pipeline

logger = logging.getLogger("api")


# Response models
class DeadLetterView(BaseModel):
    message_id: str
    queue: str
    routing_key: str
    reason: str
    attempts: int
    failed_at: datetime
    body: str


class PublishedEvent(BaseModel):
    event_id: UUID
    event_type: str


def get_pipeline(request: Request) -> ParkingPipeline:
    return request.app.state.pipeline


def create_app(pipeline: Optional[ParkingPipeline] = None) -> FastAPI:
    """
    Build the application.

    Args:
        pipeline: Pipeline to serve; built from ``get_settings()`` at startup
            when omitted. Either way it is started and stopped with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "pipeline", None) is None:
            settings = get_settings()
            configure_logging(settings.log_level)
            app.state.pipeline = build_pipeline(settings)
        logger.info("Starting parking events API")
        app.state.pipeline.start()
        yield
        app.state.pipeline.stop()
        logger.info("Shutting down")

    app = FastAPI(
        title="Parking Events",
        description="Billing, analytics and notification consumers of the parking event pipeline.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    _register_error_handlers(app)
    _register_routes(app)
    return app


# =============================================================================
# Error Mapping
# =============================================================================

def _register_error_handlers(app: FastAPI) -> None:

    def handler(status_code: int):
        async def respond(request: Request, exc: Exception) -> JSONResponse:
            logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
        return respond

    app.add_exception_handler(InvoiceNotFoundError, handler(404))
    app.add_exception_handler(NotificationNotFoundError, handler(404))
    app.add_exception_handler(InvoiceNotPayableError, handler(409))
    app.add_exception_handler(InvalidPaymentError, handler(422))
    app.add_exception_handler(MalformedEventError, handler(422))
    app.add_exception_handler(BusUnavailableError, handler(503))


# =============================================================================
# Routes
# =============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["Health"])
    def health_check(pipeline: ParkingPipeline = Depends(get_pipeline)):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": pipeline.settings.service_name,
            "bus": pipeline.settings.bus_backend,
        }

    # -------------------------------------------------------------------------
    # Billing
    # -------------------------------------------------------------------------

    @app.get("/api/billing/customers/{customer_id}/invoices", response_model=list[Invoice], tags=["Billing"])
    def list_invoices(customer_id: str, pipeline: ParkingPipeline = Depends(get_pipeline)):
        """Customer's invoices, newest first."""
        return pipeline.billing.get_invoices_for_customer(customer_id)

    @app.get("/api/billing/invoices/{invoice_id}", response_model=Invoice, tags=["Billing"])
    def get_invoice(invoice_id: UUID, pipeline: ParkingPipeline = Depends(get_pipeline)):
        return pipeline.billing.get_invoice(invoice_id)

    @app.get("/api/billing/invoices/{invoice_id}/payments", response_model=list[Payment], tags=["Billing"])
    def list_payments(invoice_id: UUID, pipeline: ParkingPipeline = Depends(get_pipeline)):
        """Every payment attempt on the invoice, approved or not."""
        pipeline.billing.get_invoice(invoice_id)
        return pipeline.billing.get_payments(invoice_id)

    @app.post("/api/billing/invoices/{invoice_id}/payments", response_model=Payment, tags=["Billing"])
    def pay_invoice(
        invoice_id: UUID,
        request: PaymentRequest,
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        """
        Pay an invoice in full.

        Returns 200 with the approved payment, or 402 with the rejected one
        (the invoice stays pending and can be paid again).
        """
        payment = pipeline.billing.process_payment(invoice_id, request)
        if payment.status == PaymentStatus.REJECTED:
            return JSONResponse(status_code=402, content=payment.model_dump(mode="json"))
        return payment

    @app.get("/api/billing/report", response_model=FinancialReport, tags=["Billing"])
    def financial_report(
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        """Totals for the period (default: the last 30 days)."""
        end = as_utc(end) if end else utcnow()
        start = as_utc(start) if start else end - timedelta(days=30)
        return pipeline.billing.financial_report(start, end)

    # -------------------------------------------------------------------------
    # Analytics
    # -------------------------------------------------------------------------

    @app.get("/api/analytics/dashboard", response_model=Dashboard, tags=["Analytics"])
    def dashboard(pipeline: ParkingPipeline = Depends(get_pipeline)):
        return pipeline.analytics.dashboard()

    @app.get("/api/analytics/daily-metrics", response_model=list[DailyMetric], tags=["Analytics"])
    def daily_metrics(
        start: Optional[date] = None,
        end: Optional[date] = None,
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        return pipeline.analytics.daily_metrics(start, end)

    @app.get("/api/analytics/occupancies", response_model=OccupancyPage, tags=["Analytics"])
    def occupancies(
        status: Optional[OccupancyStatus] = None,
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=50, ge=1),
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        """Occupancy records, newest first. ``page_size`` is capped at 100."""
        return pipeline.analytics.occupancies(status=status, page=page, page_size=page_size)

    @app.get("/api/analytics/revenue", response_model=list[MonthlyRevenue], tags=["Analytics"])
    def revenue(
        start: Optional[date] = None,
        end: Optional[date] = None,
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        return pipeline.analytics.revenue_by_month(start, end)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    @app.get(
        "/api/notifications/customers/{customer_id}",
        response_model=list[Notification],
        tags=["Notifications"],
    )
    def list_notifications(
        customer_id: str,
        status: Optional[DeliveryStatus] = None,
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        return pipeline.notifications.get_notifications(customer_id, status=status)

    @app.get(
        "/api/notifications/customers/{customer_id}/settings",
        response_model=NotificationSettings,
        tags=["Notifications"],
    )
    def get_notification_settings(customer_id: str, pipeline: ParkingPipeline = Depends(get_pipeline)):
        return pipeline.notifications.get_settings(customer_id)

    @app.put(
        "/api/notifications/customers/{customer_id}/settings",
        response_model=NotificationSettings,
        tags=["Notifications"],
    )
    def put_notification_settings(
        customer_id: str,
        settings: NotificationSettings,
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        """Replace the customer's settings (the path id wins over the body)."""
        settings = settings.model_copy(update={"customer_id": customer_id})
        return pipeline.notifications.update_settings(settings)

    @app.get(
        "/api/notifications/customers/{customer_id}/unread",
        response_model=UnreadCount,
        tags=["Notifications"],
    )
    def unread_count(customer_id: str, pipeline: ParkingPipeline = Depends(get_pipeline)):
        """How many delivered notifications the customer has not read."""
        return UnreadCount(customer_id=customer_id, unread=pipeline.notifications.unread_count(customer_id))

    @app.put("/api/notifications/{notification_id}/read", response_model=Notification, tags=["Notifications"])
    def mark_as_read(notification_id: UUID, pipeline: ParkingPipeline = Depends(get_pipeline)):
        return pipeline.notifications.mark_as_read(notification_id)

    @app.delete("/api/notifications/{notification_id}", status_code=204, tags=["Notifications"])
    def delete_notification(notification_id: UUID, pipeline: ParkingPipeline = Depends(get_pipeline)):
        pipeline.notifications.delete_notification(notification_id)

    @app.post("/api/notifications/send", response_model=list[Notification], tags=["Notifications"])
    def send_notification(request: DirectNotificationRequest, pipeline: ParkingPipeline = Depends(get_pipeline)):
        """Send an ad-hoc message on every channel the customer has enabled."""
        return pipeline.notifications.send_direct(request.customer_id, request.title, request.message)

    @app.post("/api/notifications/test", response_model=list[Notification], tags=["Notifications"])
    def send_test_notification(
        request: NotificationTestRequest,
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        return pipeline.notifications.send_test(request.customer_id, request.message)

    # -------------------------------------------------------------------------
    # Admin and Demo
    # -------------------------------------------------------------------------

    @app.get("/admin/dead-letters", response_model=list[DeadLetterView], tags=["Admin"])
    def dead_letters(pipeline: ParkingPipeline = Depends(get_pipeline)):
        """Messages removed from redelivery in this process, for manual inspection."""
        return [
            DeadLetterView(
                message_id=d.message_id,
                queue=d.queue,
                routing_key=d.routing_key,
                reason=d.reason,
                attempts=d.attempts,
                failed_at=d.failed_at,
                body=d.body.decode("utf-8", errors="replace"),
            )
            for d in pipeline.event_bus.dead_letters()
        ]

    @app.post("/demo/events/{event_type}", response_model=PublishedEvent, status_code=202, tags=["Demo"])
    def publish_event(
        event_type: str,
        payload: dict[str, Any] = Body(...),
        pipeline: ParkingPipeline = Depends(get_pipeline),
    ):
        """
        Publish a raw event payload (wire field names, e.g. ``VagaId``).

        Stands in for the occupancy service, which owns these events.
        """
        event = from_wire(event_type, json.dumps(payload).encode("utf-8"))
        pipeline.publish(event)
        return PublishedEvent(event_id=event.event_id, event_type=event.event_type)


app = create_app()
