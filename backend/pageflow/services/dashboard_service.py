import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from pageflow.analytics.errors import MESSAGES, FailureCategory, UpstreamSource
from pageflow.analytics.ranges import TimeRange
from pageflow.analytics.sessions import SessionReconstructionEngine
from pageflow.clients.base import UpstreamSources
from pageflow.core.cache import RequestCoalescingCache
from pageflow.core.config import Settings
from pageflow.schemas.analytics import DashboardResult, PageFlowResult, PageSummaryResult
from pageflow.services.page_flow_service import PageFlowService
from pageflow.services.page_summary_service import PageSummaryService
from pageflow.services.warehouse_aggregates import WarehouseAggregateLoader

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> SessionReconstructionEngine:
    return SessionReconstructionEngine(
        settings.TRACKED_PAGE_PATHS,
        utc_offset=settings.utc_offset,
        flow_limit=settings.FLOW_LIMIT,
        page_limit=settings.PAGE_LIMIT,
        continuation=settings.DROPOFF_CONTINUATION,
    )


def build_cache(settings: Settings) -> RequestCoalescingCache:
    return RequestCoalescingCache(
        maxsize=settings.SUMMARY_CACHE_MAX_ENTRIES,
        ttl=settings.SUMMARY_CACHE_TTL_SECONDS,
    )


def create_dashboard_service(
    settings: Settings,
    sources: UpstreamSources,
    *,
    cache: RequestCoalescingCache | None = None,
    clock: Callable[[], datetime] | None = None,
) -> "DashboardService":
    """Wire both resolvers around one shared engine, cache and aggregate loader."""
    engine = build_engine(settings)
    cache = cache if cache is not None else build_cache(settings)
    warehouse = WarehouseAggregateLoader(sources, engine, cache, clock=clock)
    return DashboardService(
        PageSummaryService(
            sources, engine, cache, warehouse=warehouse, utc_offset=settings.utc_offset, clock=clock
        ),
        PageFlowService(sources, engine, cache, warehouse=warehouse, clock=clock),
    )


class DashboardService:
    """Joins the page summary and the page flow into one dashboard result."""

    def __init__(self, summary: PageSummaryService, flow: PageFlowService):
        self.summary = summary
        self.flow = flow

    async def get_dashboard(self, time_range: TimeRange) -> DashboardResult:
        """Resolve both halves concurrently; neither failure hides the other."""
        summary, flow = await asyncio.gather(
            self.summary.get_page_summary(time_range),
            self.flow.get_page_flow(time_range),
            return_exceptions=True,
        )

        if isinstance(summary, BaseException):
            logger.error("Page summary resolution raised", exc_info=summary)
            summary = PageSummaryResult(
                status="error",
                status_message=MESSAGES[UpstreamSource.REPORTING][FailureCategory.UNKNOWN],
            )
        if isinstance(flow, BaseException):
            logger.error("Page flow resolution raised", exc_info=flow)
            flow = PageFlowResult(
                status="error",
                status_message=MESSAGES[UpstreamSource.WAREHOUSE][FailureCategory.UNKNOWN],
            )

        return DashboardResult.combine(time_range, summary, flow)
