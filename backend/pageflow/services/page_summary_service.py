import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pageflow.analytics.errors import UpstreamSource, failure_message
from pageflow.analytics.ranges import (
    DEFAULT_UTC_OFFSET,
    RangeBounds,
    TimeRange,
    get_range_bounds,
    requires_sub_day_precision,
    to_date_key,
)
from pageflow.analytics.sessions import (
    NOT_SET,
    SessionReconstructionEngine,
    normalize_page_title,
    parse_count,
)
from pageflow.clients.base import ReportRequest, ReportResponse, UpstreamSources
from pageflow.core.cache import RequestCoalescingCache
from pageflow.core.exceptions import ConfigurationMissingError
from pageflow.schemas.analytics import PageSummaryResult, TopLandingPageRow, TopPageRow
from pageflow.services.warehouse_aggregates import WarehouseAggregateLoader

logger = logging.getLogger(__name__)

REPORTING_NOT_CONFIGURED_MESSAGE = "GA4 property ID or service account credentials are not set."
ROLLING_NEEDS_WAREHOUSE_MESSAGE = (
    "A strict rolling 24h summary needs the GA4 BigQuery export to be configured."
)


@dataclass(frozen=True)
class WarehouseStrategy:
    """Precise rolling window aggregated inside the warehouse."""


@dataclass(frozen=True)
class ReportingStrategy:
    """Whole-day pre-aggregated reports."""


@dataclass(frozen=True)
class DisabledStrategy:
    message: str


SummaryStrategy = WarehouseStrategy | ReportingStrategy | DisabledStrategy


def select_summary_strategy(time_range: TimeRange, sources: UpstreamSources) -> SummaryStrategy:
    """Pick the upstream for a page summary from the range and configuration."""
    sub_day = requires_sub_day_precision(time_range)
    if sub_day and sources.warehouse_enabled:
        return WarehouseStrategy()
    if sources.reporting_enabled:
        return ReportingStrategy()
    if sub_day:
        return DisabledStrategy(ROLLING_NEEDS_WAREHOUSE_MESSAGE)
    return DisabledStrategy(REPORTING_NOT_CONFIGURED_MESSAGE)


def normalize_report_path(value: str | None) -> str:
    if not value or value == NOT_SET:
        return NOT_SET
    return value


def pages_request(property_id: str, bounds: RangeBounds, offset: timedelta, limit: int) -> ReportRequest:
    return ReportRequest(
        property_id=property_id,
        start_date=to_date_key(bounds.current_start, offset),
        end_date=to_date_key(bounds.now, offset),
        dimensions=["pagePath", "pageTitle"],
        metrics=["screenPageViews", "activeUsers"],
        order_by_metric="screenPageViews",
        limit=limit,
    )


def landing_pages_request(
    property_id: str, bounds: RangeBounds, offset: timedelta, limit: int
) -> ReportRequest:
    return ReportRequest(
        property_id=property_id,
        start_date=to_date_key(bounds.current_start, offset),
        end_date=to_date_key(bounds.now, offset),
        dimensions=["landingPagePlusQueryString"],
        metrics=["sessions", "activeUsers"],
        order_by_metric="sessions",
        limit=limit,
    )


def top_pages_from_report(report: ReportResponse) -> list[TopPageRow]:
    return [
        TopPageRow(
            path=normalize_report_path(row.dimension(0)),
            title=normalize_page_title(row.dimension(1)),
            views=parse_count(row.metric(0)),
            active_users=parse_count(row.metric(1)),
        )
        for row in report.rows
    ]


def landing_pages_from_report(report: ReportResponse) -> list[TopLandingPageRow]:
    return [
        TopLandingPageRow(
            landing_page=normalize_report_path(row.dimension(0)),
            sessions=parse_count(row.metric(0)),
            active_users=parse_count(row.metric(1)),
        )
        for row in report.rows
    ]


class PageSummaryService:
    """Top pages and landing pages from the reporting API or the warehouse."""

    def __init__(
        self,
        sources: UpstreamSources,
        engine: SessionReconstructionEngine,
        cache: RequestCoalescingCache,
        *,
        warehouse: WarehouseAggregateLoader | None = None,
        utc_offset: timedelta = DEFAULT_UTC_OFFSET,
        clock: Callable[[], datetime] | None = None,
    ):
        self.sources = sources
        self.engine = engine
        self.cache = cache
        self.utc_offset = utc_offset
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.warehouse = warehouse or WarehouseAggregateLoader(sources, engine, cache, clock=self.clock)

    def cache_key(self, time_range: TimeRange) -> str:
        return self.sources.cache_key("page-summary", time_range.value)

    async def get_page_summary(self, time_range: TimeRange) -> PageSummaryResult:
        """Resolve the summary for ``time_range``, coalesced and cached."""
        return await self.cache.resolve(
            self.cache_key(time_range), lambda: self.build_page_summary(time_range)
        )

    async def build_page_summary(
        self, time_range: TimeRange, now: datetime | None = None
    ) -> PageSummaryResult:
        strategy = select_summary_strategy(time_range, self.sources)
        logger.debug("Page summary for %s uses %s", time_range.value, type(strategy).__name__)

        if isinstance(strategy, DisabledStrategy):
            return PageSummaryResult(status="disabled", status_message=strategy.message)
        if isinstance(strategy, WarehouseStrategy):
            return await self._from_warehouse(time_range, now)
        return await self._from_reporting(get_range_bounds(time_range, now or self.clock()))

    async def _from_reporting(self, bounds: RangeBounds) -> PageSummaryResult:
        property_id = self.sources.property_id
        reporting = self.sources.reporting
        if reporting is None or not property_id:
            return PageSummaryResult(status="disabled", status_message=REPORTING_NOT_CONFIGURED_MESSAGE)

        limit = self.engine.page_limit
        try:
            pages_report, landing_report = await asyncio.gather(
                self.sources.call(
                    reporting.run_report(pages_request(property_id, bounds, self.utc_offset, limit))
                ),
                self.sources.call(
                    reporting.run_report(
                        landing_pages_request(property_id, bounds, self.utc_offset, limit)
                    )
                ),
            )
            return PageSummaryResult(
                status="ready",
                source="reporting",
                top_pages=top_pages_from_report(pages_report),
                top_landing_pages=landing_pages_from_report(landing_report),
            )
        except Exception as exc:
            return PageSummaryResult(
                status="error",
                status_message=failure_message(exc, UpstreamSource.REPORTING),
            )

    async def _from_warehouse(
        self, time_range: TimeRange, now: datetime | None
    ) -> PageSummaryResult:
        try:
            aggregates = await self.warehouse.load(time_range, now)
            return PageSummaryResult(
                status="ready",
                source="warehouse",
                top_pages=aggregates.top_pages,
                top_landing_pages=aggregates.landing_pages,
            )
        except ConfigurationMissingError as exc:
            return PageSummaryResult(status="disabled", status_message=str(exc))
        except Exception as exc:
            return PageSummaryResult(
                status="error",
                status_message=failure_message(exc, UpstreamSource.WAREHOUSE),
            )
