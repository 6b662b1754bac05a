"""
Analytics consumer.

Keeps an occupancy ledger from SpotOccupied/SpotFreed and maintains one
DailyMetric per calendar day of entry.

Key points:
- A day's metric is always recomputed from all freed records that entered on
  that day and stored as the computed value, never incremented, so applying
  the same SpotFreed twice cannot double-count
- Each event id is applied once (``ProcessedEventLog``)
- SpotFreed with no open occupancy for the spot (lost or reordered
  SpotOccupied) is logged, held and acknowledged; a later SpotOccupied for
  that spot whose entry precedes the held exit closes its record at once
"""

import logging
import math
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from parking.data_store import AnalyticsStore
from parking.models import (
    CustomerRanking,
    DailyMetric,
    Dashboard,
    MonthlyRevenue,
    OccupancyPage,
    OccupancyRecord,
    OccupancyStatus,
    PeriodSummary,
)
from pipeline.event_bus import EventBus
from pipeline.events import SpotFreed, SpotOccupied, utcnow
from pipeline.idempotency import ProcessedEventLog

logger = logging.getLogger("analytics_service")

CENTS = Decimal("0.01")
MAX_PAGE_SIZE = 100
TOP_CUSTOMERS = 10
TRAILING_DAYS = 30


def _average(total: Decimal, count: int) -> Decimal:
    if count == 0:
        return Decimal("0")
    return (total / count).quantize(CENTS)


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class AnalyticsService:
    """
    Occupancy ledger and daily aggregates.

    Example:
        analytics = AnalyticsService(event_bus=bus)
        analytics.start()
        ...
        analytics.dashboard().occupied_now
    """

    SUBSCRIBER = "analytics"

    def __init__(
        self,
        event_bus: EventBus,
        store: Optional[AnalyticsStore] = None,
        processed: Optional[ProcessedEventLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.event_bus = event_bus
        self.store = store or AnalyticsStore()
        self.processed = processed or ProcessedEventLog(self.SUBSCRIBER)
        self.clock = clock
        self._started = False

    def start(self) -> None:
        if self._started:
            logger.warning("AnalyticsService already started")
            return
        self.event_bus.subscribe(SpotOccupied, self.handle_spot_occupied, subscriber=self.SUBSCRIBER)
        self.event_bus.subscribe(SpotFreed, self.handle_spot_freed, subscriber=self.SUBSCRIBER)
        self._started = True
        logger.info("AnalyticsService started - subscribed to events")

    def stop(self) -> None:
        if not self._started:
            return
        self.event_bus.unsubscribe(SpotOccupied, subscriber=self.SUBSCRIBER)
        self.event_bus.unsubscribe(SpotFreed, subscriber=self.SUBSCRIBER)
        self._started = False
        logger.info("AnalyticsService stopped")

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def handle_spot_occupied(self, event: SpotOccupied) -> None:
        """Open an occupancy record for the spot, closing it at once if its SpotFreed came first."""
        if not self.processed.claim(event.event_id):
            return
        early = None
        try:
            with self.store.transaction():
                record = self.store.save_occupancy(OccupancyRecord(
                    id=event.event_id,
                    spot_id=event.spot_id,
                    spot_code=event.spot_code,
                    customer_id=event.customer_id,
                    customer_name=event.customer_name,
                    entry_time=event.entry_time,
                ))
                early = self.store.take_held_free(event.spot_id, event.entry_time)
                if early is not None:
                    self._close(record, early)
        except Exception:
            if early is not None:
                self.store.hold_free(early)
            self.processed.release(event.event_id)
            raise
        logger.info(f"Spot {event.spot_code} occupied by customer {event.customer_id}")
        if early is not None:
            logger.info(f"Spot {event.spot_code} closed with held {early}")

    def handle_spot_freed(self, event: SpotFreed) -> None:
        """Close the spot's open occupancy and recompute its entry day."""
        if not self.processed.claim(event.event_id):
            return
        try:
            with self.store.transaction():
                record = self.store.find_open_occupancy(event.spot_id)
                if record is None:
                    self.store.hold_free(event)
                    logger.warning(
                        f"{event} for spot {event.spot_code} has no open occupancy; "
                        "held until its SpotOccupied arrives"
                    )
                    return
                metric = self._close(record, event)
        except Exception:
            self.processed.release(event.event_id)
            raise
        logger.info(
            f"Spot {event.spot_code} freed; {metric.day} now has "
            f"{metric.total_occupancies} occupancies, revenue {metric.total_revenue}"
        )

    def _close(self, record: OccupancyRecord, event: SpotFreed) -> DailyMetric:
        freed = record.model_copy(update={
            "exit_time": event.exit_time,
            "occupied_duration": event.occupied_duration,
            "amount_charged": event.amount_charged,
            "status": OccupancyStatus.FREED.value,
            "freed_event_id": event.event_id,
        })
        self.store.save_occupancy(freed)
        return self.recompute_day(freed.entry_date)

    def recompute_day(self, day: date) -> DailyMetric:
        """Rebuild ``day``'s metric from every freed record that entered on it."""
        with self.store.transaction():
            records = self.store.freed_on(day)
            count = len(records)
            revenue = sum((r.amount_charged or Decimal("0") for r in records), Decimal("0"))
            duration = sum((r.occupied_duration or timedelta(0) for r in records), timedelta(0))
            now = self.clock()
            return self.store.save_metric(DailyMetric(
                day=day,
                total_occupancies=count,
                total_revenue=revenue,
                average_ticket=_average(revenue, count),
                average_duration=duration / count if count else timedelta(0),
                created_at=now,
                updated_at=now,
            ))

    # =========================================================================
    # Queries
    # =========================================================================

    def summarize(self, label: str, start: datetime, end: datetime) -> PeriodSummary:
        """Figures for stays that entered in ``[start, end)``."""
        records = self.store.get_occupancies(start=start, end=end)
        freed = [r for r in records if r.status == OccupancyStatus.FREED]
        revenue = sum((r.amount_charged or Decimal("0") for r in freed), Decimal("0"))
        return PeriodSummary(
            label=label,
            total_occupancies=len(records),
            freed_occupancies=len(freed),
            total_revenue=revenue,
            average_ticket=_average(revenue, len(freed)),
        )

    def top_customers(self, since: datetime, limit: int = TOP_CUSTOMERS) -> list[CustomerRanking]:
        """Customers ranked by amount charged on stays entered since ``since``."""
        spent: dict[str, list[Decimal]] = defaultdict(list)
        for record in self.store.get_occupancies(status=OccupancyStatus.FREED, start=since):
            spent[record.customer_id].append(record.amount_charged or Decimal("0"))
        rankings = [
            CustomerRanking(
                customer_id=customer_id,
                total_spent=sum(amounts, Decimal("0")),
                total_occupancies=len(amounts),
                average_ticket=_average(sum(amounts, Decimal("0")), len(amounts)),
            )
            for customer_id, amounts in spent.items()
        ]
        rankings.sort(key=lambda r: r.total_spent, reverse=True)
        return rankings[:limit]

    def dashboard(self) -> Dashboard:
        now = self.clock()
        today = now.date()
        yesterday = today - timedelta(days=1)
        month_ago = _start_of(today - timedelta(days=TRAILING_DAYS))
        return Dashboard(
            today=self.summarize(today.isoformat(), _start_of(today), _start_of(today + timedelta(days=1))),
            yesterday=self.summarize(yesterday.isoformat(), _start_of(yesterday), _start_of(today)),
            last_30_days=self.summarize(
                f"{month_ago.date().isoformat()} - {today.isoformat()}",
                month_ago,
                _start_of(today + timedelta(days=1)),
            ),
            occupied_now=len(self.store.get_occupancies(status=OccupancyStatus.OCCUPIED)),
            top_customers=self.top_customers(since=month_ago),
        )

    def daily_metrics(self, start: Optional[date] = None, end: Optional[date] = None) -> list[DailyMetric]:
        """Metrics between ``start`` and ``end`` inclusive (default: the last 30 days)."""
        end = end or self.clock().date()
        start = start or end - timedelta(days=TRAILING_DAYS)
        return self.store.get_metrics(start, end)

    def occupancies(
        self,
        status: Optional[OccupancyStatus] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> OccupancyPage:
        """Occupancy records, newest entry first, one page at a time."""
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        records = self.store.get_occupancies(status=status)
        offset = (page - 1) * page_size
        return OccupancyPage(
            items=records[offset:offset + page_size],
            total_items=len(records),
            page=page,
            page_size=page_size,
            total_pages=math.ceil(len(records) / page_size),
        )

    def revenue_by_month(self, start: Optional[date] = None, end: Optional[date] = None) -> list[MonthlyRevenue]:
        """Daily metrics in ``[start, end]`` grouped by year and month."""
        months: dict[tuple[int, int], list[DailyMetric]] = defaultdict(list)
        for metric in self.daily_metrics(start, end):
            months[(metric.day.year, metric.day.month)].append(metric)
        return [
            MonthlyRevenue(
                year=year,
                month=month,
                total_revenue=sum((m.total_revenue for m in metrics), Decimal("0")),
                average_ticket=_average(sum((m.average_ticket for m in metrics), Decimal("0")), len(metrics)),
                total_occupancies=sum(m.total_occupancies for m in metrics),
            )
            for (year, month), metrics in sorted(months.items())
        ]
