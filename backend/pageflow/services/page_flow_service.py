import logging
from collections.abc import Callable
from datetime import datetime, timezone

from pageflow.analytics.errors import UpstreamSource, failure_message
from pageflow.analytics.ranges import TimeRange
from pageflow.analytics.sessions import SessionReconstructionEngine
from pageflow.clients.base import UpstreamSources
from pageflow.core.cache import RequestCoalescingCache
from pageflow.core.exceptions import ConfigurationMissingError
from pageflow.schemas.analytics import PageFlowResult
from pageflow.services.warehouse_aggregates import WarehouseAggregateLoader

logger = logging.getLogger(__name__)

PAGE_FLOW_NOT_CONFIGURED_MESSAGE = (
    "Page transitions and drop-off become available once the GA4 BigQuery export is configured."
)


class PageFlowService:
    """Transitions, drop-off and daily trend from the warehouse aggregates."""

    def __init__(
        self,
        sources: UpstreamSources,
        engine: SessionReconstructionEngine,
        cache: RequestCoalescingCache,
        *,
        warehouse: WarehouseAggregateLoader | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.sources = sources
        self.engine = engine
        self.cache = cache
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.warehouse = warehouse or WarehouseAggregateLoader(sources, engine, cache, clock=self.clock)

    def cache_key(self, time_range: TimeRange) -> str:
        return self.sources.cache_key("page-flow", time_range.value)

    async def get_page_flow(self, time_range: TimeRange) -> PageFlowResult:
        """Resolve the page flow for ``time_range``, coalesced and cached."""
        return await self.cache.resolve(
            self.cache_key(time_range), lambda: self.build_page_flow(time_range)
        )

    async def build_page_flow(
        self, time_range: TimeRange, now: datetime | None = None
    ) -> PageFlowResult:
        if not self.sources.warehouse_enabled:
            return PageFlowResult(status="disabled", status_message=PAGE_FLOW_NOT_CONFIGURED_MESSAGE)

        try:
            aggregates = await self.warehouse.load(time_range, now)
            return PageFlowResult(
                status="ready",
                top_transitions=aggregates.transitions,
                top_dropoff_pages=aggregates.dropoff,
                daily_page_views=aggregates.daily_views,
            )
        except ConfigurationMissingError as exc:
            return PageFlowResult(status="disabled", status_message=str(exc))
        except Exception as exc:
            return PageFlowResult(
                status="error",
                status_message=failure_message(exc, UpstreamSource.WAREHOUSE),
            )
