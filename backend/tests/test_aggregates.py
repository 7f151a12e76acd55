"""Tests for shaping the warehouse aggregate row into result rows."""

import pytest
from fakes import NOW, pageview, session_rows, warehouse_aggregate_row

from pageflow.analytics.aggregates import parse_aggregate_row
from pageflow.analytics.queries import build_pageview_params
from pageflow.analytics.ranges import TimeRange, get_range_bounds
from pageflow.analytics.sessions import SessionReconstructionEngine
from pageflow.core.exceptions import UpstreamError

TRACKED = ["/", "/pricing", "/login", "/signup"]


@pytest.fixture
def engine() -> SessionReconstructionEngine:
    return SessionReconstructionEngine(TRACKED, page_limit=2, flow_limit=2)


@pytest.fixture
def bounds():
    return get_range_bounds(TimeRange.LAST_24_HOURS, NOW)


def aggregate_row(**columns) -> dict:
    row = {"top_pages": [], "landing_pages": [], "transitions": [], "dropoff": [], "daily_views": []}
    row.update(columns)
    return row


def test_empty_result_means_no_page_views(engine, bounds):
    aggregates = parse_aggregate_row([], engine, bounds)

    assert aggregates.top_pages == []
    assert aggregates.transitions == []
    assert [p.views for p in aggregates.daily_views] == [0, 0]


def test_rows_are_ranked_and_limited(engine, bounds):
    row = aggregate_row(
        top_pages=[
            {"path": "/login", "title": " Login ", "views": 2, "active_users": 2},
            {"path": "/pricing", "title": "(not set)", "views": "5", "active_users": 3},
            {"path": "/", "title": None, "views": 2, "active_users": 1},
        ],
        transitions=[
            {"from_page": "/", "to_page": "/login", "transition_count": 1},
            {"from_page": "/", "to_page": "/pricing", "transition_count": 3},
        ],
        dropoff=[{"page": "/pricing", "reached_sessions": 4, "continued_sessions": 1}],
        daily_views=[{"bucket": "2026-03-10", "views": 7, "sessions": 3}],
    )

    aggregates = parse_aggregate_row([row], engine, bounds)

    assert [(p.path, p.title) for p in aggregates.top_pages] == [("/pricing", None), ("/login", "Login")]
    assert [(e.to_page, e.share_pct) for e in aggregates.transitions] == [
        ("/pricing", 0.75),
        ("/login", 0.25),
    ]
    assert aggregates.dropoff[0].dropoff_sessions == 3
    assert aggregates.dropoff[0].dropoff_rate == 0.75
    assert (aggregates.daily_views[-1].views, aggregates.daily_views[-1].sessions) == (7, 3)


def test_matches_reference_aggregation(bounds):
    """Test warehouse-shaped counts give the same results as session reconstruction."""
    engine = SessionReconstructionEngine(TRACKED)
    rows = (
        session_rows("a", 1, "/", "/posts/1", "/pricing")
        + session_rows("b", 1, "/pricing", "/login")
        + [pageview("c", 1, "/signup", seconds=30, title="Sign up")]
    )
    params = build_pageview_params(bounds) | {"trackedPages": list(TRACKED), "pageLimit": 8, "flowLimit": 10}

    aggregates = parse_aggregate_row([warehouse_aggregate_row(rows, params)], engine, bounds)
    sessions = engine.reconstruct(rows)

    assert aggregates.top_pages == engine.top_pages(sessions)
    assert aggregates.landing_pages == engine.landing_pages(sessions)
    assert aggregates.transitions == engine.transitions(sessions)
    assert aggregates.dropoff == engine.dropoff(sessions)
    assert aggregates.daily_views == engine.daily_views(sessions, bounds)


@pytest.mark.parametrize(
    "rows",
    [
        [aggregate_row(), aggregate_row()],
        [{"top_pages": []}],
        [aggregate_row(transitions="not-an-array")],
    ],
)
def test_unexpected_shapes_are_upstream_errors(engine, bounds, rows):
    with pytest.raises(UpstreamError):
        parse_aggregate_row(rows, engine, bounds)
