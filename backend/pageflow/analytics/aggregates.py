"""Page-view aggregates computed by the warehouse, shaped like the engine's.

The aggregate query returns one row whose array columns hold pre-grouped
counts. They are ranked and limited here with the same helpers the
reference aggregations use, so the summary and the page flow read the
same numbers regardless of where the grouping ran.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pageflow.analytics.queries import AGGREGATE_COLUMNS
from pageflow.analytics.ranges import RangeBounds
from pageflow.analytics.sessions import (
    SessionReconstructionEngine,
    fill_daily_views,
    normalize_page_title,
    parse_count,
    rank_dropoff,
    rank_landing_pages,
    rank_top_pages,
    rank_transitions,
)
from pageflow.core.exceptions import UpstreamError
from pageflow.schemas.analytics import (
    DailyPageViewPoint,
    DropoffRow,
    TopLandingPageRow,
    TopPageRow,
    TransitionEdge,
)


@dataclass(frozen=True)
class WarehouseAggregates:
    """Everything both resolvers need from one scan of a window's page views."""

    top_pages: list[TopPageRow]
    landing_pages: list[TopLandingPageRow]
    transitions: list[TransitionEdge]
    dropoff: list[DropoffRow]
    daily_views: list[DailyPageViewPoint]


def _entries(row: Mapping[str, Any], column: str) -> list[Mapping[str, Any]]:
    entries = row.get(column) or []
    if not isinstance(entries, Sequence) or not all(isinstance(e, Mapping) for e in entries):
        raise UpstreamError(f"Unexpected shape for aggregate column {column}")
    return list(entries)


def parse_aggregate_row(
    rows: Sequence[Mapping[str, Any]],
    engine: SessionReconstructionEngine,
    bounds: RangeBounds,
) -> WarehouseAggregates:
    """Turn the single aggregate row into ranked result rows.

    An empty result (no row at all) means no page views in the window.
    """
    if len(rows) > 1:
        raise UpstreamError(f"Aggregate query returned {len(rows)} rows, expected one")
    row = rows[0] if rows else {}
    missing = [column for column in AGGREGATE_COLUMNS if rows and column not in row]
    if missing:
        raise UpstreamError(f"Aggregate query is missing columns: {', '.join(missing)}")

    transitions = {
        (str(e["from_page"]), str(e["to_page"])): parse_count(e.get("transition_count"))
        for e in _entries(row, "transitions")
    }
    dropoff = [
        DropoffRow.from_counts(
            str(e["page"]),
            parse_count(e.get("reached_sessions")),
            parse_count(e.get("continued_sessions")),
        )
        for e in _entries(row, "dropoff")
    ]
    top_pages = [
        TopPageRow(
            path=str(e["path"]),
            title=normalize_page_title(e.get("title")),
            views=parse_count(e.get("views")),
            active_users=parse_count(e.get("active_users")),
        )
        for e in _entries(row, "top_pages")
    ]
    landing_pages = [
        TopLandingPageRow(
            landing_page=str(e["landing_page"]),
            sessions=parse_count(e.get("sessions")),
            active_users=parse_count(e.get("active_users")),
        )
        for e in _entries(row, "landing_pages")
    ]
    daily = {
        str(e["bucket"]): (parse_count(e.get("views")), parse_count(e.get("sessions")))
        for e in _entries(row, "daily_views")
    }

    return WarehouseAggregates(
        top_pages=rank_top_pages(top_pages, engine.page_limit),
        landing_pages=rank_landing_pages(landing_pages, engine.page_limit),
        transitions=rank_transitions(transitions, engine.flow_limit),
        dropoff=rank_dropoff(dropoff, engine.flow_limit),
        daily_views=fill_daily_views(daily, bounds, engine.utc_offset),
    )
