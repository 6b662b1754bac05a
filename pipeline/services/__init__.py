"""
Consumers with their own stores and logic.

- Billing: invoices freed occupancies and takes payments
- Analytics: occupancy ledger and daily metrics

Each one subscribes on its own queues and never calls another consumer.
"""

from pipeline.services.analytics import AnalyticsService
from pipeline.services.billing import BillingService

__all__ = [
    "AnalyticsService",
    "BillingService",
]
