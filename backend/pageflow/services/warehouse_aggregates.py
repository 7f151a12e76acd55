import logging
from collections.abc import Callable
from datetime import datetime, timezone

from pageflow.analytics.aggregates import WarehouseAggregates, parse_aggregate_row
from pageflow.analytics.queries import build_aggregate_query, intraday_table_id
from pageflow.analytics.ranges import RangeBounds, TimeRange, get_range_bounds, to_date_suffix
from pageflow.analytics.sessions import SessionReconstructionEngine
from pageflow.clients.base import UpstreamSources, WarehouseClient, WarehouseTarget
from pageflow.core.cache import RequestCoalescingCache
from pageflow.core.exceptions import ConfigurationMissingError

logger = logging.getLogger(__name__)


def require_warehouse(sources: UpstreamSources) -> tuple[WarehouseClient, WarehouseTarget]:
    if sources.warehouse is None or sources.warehouse_target is None:
        raise ConfigurationMissingError("GA4 BigQuery export is not configured.")
    return sources.warehouse, sources.warehouse_target


async def has_intraday_table(sources: UpstreamSources, date_suffix: str) -> bool:
    """Whether today's not-yet-finalized export table exists.

    This is a metadata lookup: a missing table is an expected answer, while
    any other failure propagates like every upstream error.
    """
    warehouse, target = require_warehouse(sources)
    return await sources.call(
        warehouse.table_exists(target.dataset_id, intraday_table_id(date_suffix))
    )


async def fetch_warehouse_aggregates(
    sources: UpstreamSources,
    engine: SessionReconstructionEngine,
    bounds: RangeBounds,
    *,
    today: datetime,
) -> WarehouseAggregates:
    """Aggregate every page view in ``bounds`` inside the warehouse.

    When the window ends today, today's intraday table is unioned in if it
    exists, so the newest events are not missing until the daily export
    is finalized.
    """
    warehouse, target = require_warehouse(sources)

    include_intraday = False
    end_suffix = to_date_suffix(bounds.now, engine.utc_offset)
    if end_suffix == to_date_suffix(today, engine.utc_offset):
        include_intraday = await has_intraday_table(sources, end_suffix)
        logger.info(
            "Intraday table %s %s",
            intraday_table_id(end_suffix),
            "found, merging" if include_intraday else "not present, skipping",
        )

    query = build_aggregate_query(
        target.project_id,
        target.dataset_id,
        bounds,
        tracked_pages=engine.tracked_pages,
        route_templates=engine.route_templates,
        page_limit=engine.page_limit,
        flow_limit=engine.flow_limit,
        continuation=engine.continuation,
        include_intraday=include_intraday,
        utc_offset=engine.utc_offset,
    )
    rows = await sources.call(warehouse.query(query.render(), query.params, target.location))
    aggregates = parse_aggregate_row(rows, engine, bounds)
    logger.debug(
        "Warehouse aggregates for %s: %d pages, %d transitions",
        bounds.range.value,
        len(aggregates.top_pages),
        len(aggregates.transitions),
    )
    return aggregates


class WarehouseAggregateLoader:
    """Shares one aggregate query per window between the two resolvers.

    The page summary and the page flow both read from the same scan, so a
    dashboard load runs one intraday lookup and one query per range. Loads
    for the current time go through the cache under a range key; loads for
    an explicit ``now`` bypass it.
    """

    def __init__(
        self,
        sources: UpstreamSources,
        engine: SessionReconstructionEngine,
        cache: RequestCoalescingCache,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.sources = sources
        self.engine = engine
        self.cache = cache
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def cache_key(self, time_range: TimeRange) -> str:
        return self.sources.cache_key("warehouse-aggregates", time_range.value)

    async def load(self, time_range: TimeRange, now: datetime | None = None) -> WarehouseAggregates:
        require_warehouse(self.sources)
        if now is not None:
            return await self._fetch(time_range, now)
        return await self.cache.resolve(
            self.cache_key(time_range),
            lambda: self._fetch(time_range, self.clock()),
            is_cacheable=lambda value: isinstance(value, WarehouseAggregates),
        )

    async def _fetch(self, time_range: TimeRange, now: datetime) -> WarehouseAggregates:
        bounds = get_range_bounds(time_range, now)
        return await fetch_warehouse_aggregates(
            self.sources, self.engine, bounds, today=self.clock()
        )
