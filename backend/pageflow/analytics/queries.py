"""Composable warehouse SQL for the GA4 BigQuery export.

Queries are assembled from named fragments instead of nested string
concatenation. Only validated identifiers (project, dataset, table prefix)
are ever placed into the SQL text; every value, the tracked-page allow-list
and the route templates included, is a named ``@parameter`` bound by the
warehouse client.

The page-view aggregate query runs the session rules of
``pageflow.analytics.sessions`` inside the warehouse:

* ``raw_pageviews`` selects the few columns needed from the daily (and
  optionally intraday) export tables;
* ``extracted_pageviews`` and ``normalized_pageviews`` derive the session
  key, the canonical path and the cleaned title;
* ``ordered_pageviews`` orders each session by timestamp and the batch
  fields, numbering views and linking each to the next path with ``LEAD``;
* the remaining fragments group those rows into transitions, drop-off, top
  pages, landing pages and daily counts.

The final select returns a single row with one array column per
aggregate, so the whole page-view dataset is scanned once per window.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from pageflow.analytics.ranges import DEFAULT_UTC_OFFSET, RangeBounds, to_date_suffix
from pageflow.analytics.sessions import ContinuationRule, RouteTemplate

DAILY_TABLE_PREFIX = "events_"
INTRADAY_TABLE_PREFIX = "events_intraday_"

AGGREGATE_COLUMNS = ("top_pages", "landing_pages", "transitions", "dropoff", "daily_views")

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_-]+$")

# Session order: timestamp first, then the batch fields with NULLs first.
SESSION_ORDER = "event_timestamp, batch_page_id, batch_ordering_id, batch_event_index"


def quote_table(project_id: str, dataset_id: str, table: str) -> str:
    """Backtick-quote a fully qualified table name after validating its parts."""
    for part in (project_id, dataset_id, table.rstrip("*")):
        if not _IDENTIFIER.match(part):
            raise ValueError(f"Invalid warehouse identifier: {part!r}")
    return f"`{project_id}.{dataset_id}.{table}`"


def intraday_table_id(today_suffix: str) -> str:
    return f"{INTRADAY_TABLE_PREFIX}{today_suffix}"


def format_utc_offset(offset: timedelta) -> str:
    """``+09:00`` style time zone for the warehouse date functions."""
    minutes = int(offset.total_seconds()) // 60
    sign = "-" if minutes < 0 else "+"
    hours, minutes = divmod(abs(minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"


def _event_param(key: str, value_type: str) -> str:
    return f"(SELECT value.{value_type} FROM UNNEST(event_params) WHERE key = '{key}')"


@dataclass(frozen=True)
class QueryFragment:
    """A named piece of SQL, rendered as a CTE."""

    name: str
    sql: str

    def render(self) -> str:
        return f"{self.name} AS (\n{self.sql.strip()}\n)"


@dataclass
class WarehouseQuery:
    """CTE fragments plus a final SELECT, and the parameters they reference."""

    select: str
    ctes: list[QueryFragment] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)

    def with_cte(self, fragment: QueryFragment) -> "WarehouseQuery":
        if any(existing.name == fragment.name for existing in self.ctes):
            raise ValueError(f"Duplicate CTE name: {fragment.name}")
        self.ctes.append(fragment)
        return self

    def render(self) -> str:
        parts = []
        if self.ctes:
            parts.append("WITH " + ",\n".join(cte.render() for cte in self.ctes))
        parts.append(self.select.strip())
        return "\n".join(parts)

    def referenced_params(self) -> set[str]:
        return set(re.findall(r"@(\w+)", self.render()))


RAW_PAGEVIEW_COLUMNS = f"""
  user_pseudo_id,
  {_event_param("ga_session_id", "int_value")} AS ga_session_id,
  event_timestamp,
  batch_page_id,
  batch_ordering_id,
  batch_event_index,
  {_event_param("page_location", "string_value")} AS page_location,
  {_event_param("page_title", "string_value")} AS page_title
"""

PAGEVIEW_FILTER = f"""
  event_name = 'page_view'
  AND TIMESTAMP_MICROS(event_timestamp) BETWEEN TIMESTAMP(@startTimestamp) AND TIMESTAMP(@endTimestamp)
  AND {_event_param("ga_session_id", "int_value")} IS NOT NULL
"""

DAILY_SUFFIX_FILTER = (
    "_TABLE_SUFFIX BETWEEN @startDateSuffix AND @endDateSuffix"
    " AND _TABLE_SUFFIX NOT LIKE 'intraday_%'"
)
INTRADAY_SUFFIX_FILTER = "_TABLE_SUFFIX = @todayDateSuffix"


def raw_pageview_select(table: str, suffix_filter: str) -> str:
    return (
        f"SELECT{RAW_PAGEVIEW_COLUMNS}FROM {table}\n"
        f"WHERE{PAGEVIEW_FILTER}  AND {suffix_filter}"
    )


def raw_pageviews_fragment(
    project_id: str, dataset_id: str, include_intraday: bool
) -> QueryFragment:
    """Page views from finalized daily tables, plus today's intraday table if asked."""
    selects = [
        raw_pageview_select(
            quote_table(project_id, dataset_id, f"{DAILY_TABLE_PREFIX}*"),
            DAILY_SUFFIX_FILTER,
        )
    ]
    if include_intraday:
        selects.append(
            raw_pageview_select(
                quote_table(project_id, dataset_id, f"{INTRADAY_TABLE_PREFIX}*"),
                INTRADAY_SUFFIX_FILTER,
            )
        )
    return QueryFragment("raw_pageviews", "\nUNION ALL\n".join(selects))


EXTRACTED_PAGEVIEWS = QueryFragment(
    "extracted_pageviews",
    r"""
SELECT
  TRIM(user_pseudo_id) AS visitor_id,
  CONCAT(TRIM(user_pseudo_id), '.', CAST(ga_session_id AS STRING)) AS session_key,
  event_timestamp,
  batch_page_id,
  batch_ordering_id,
  batch_event_index,
  COALESCE(
    NULLIF(RTRIM(TRIM(COALESCE(
      REGEXP_EXTRACT(TRIM(page_location), r'^(?i:https?)://[^/?#]+(/[^?#]*)'),
      REGEXP_EXTRACT(TRIM(page_location), r'^(/[^?#]*)'),
      '/'
    )), '/'), ''),
    '/'
  ) AS base_path,
  NULLIF(NULLIF(TRIM(page_title), ''), '(not set)') AS page_title
FROM raw_pageviews
WHERE NULLIF(TRIM(user_pseudo_id), '') IS NOT NULL
""",
)


def route_template_params(route_templates: Sequence[RouteTemplate]) -> dict[str, str]:
    """Anchored patterns and their templates, one parameter pair per route."""
    params: dict[str, str] = {}
    for index, route in enumerate(route_templates):
        params[f"routePattern{index}"] = f"^(?:{route.pattern.pattern})$"
        params[f"routeTemplate{index}"] = route.template
    return params


def normalized_pageviews_fragment(route_templates: Sequence[RouteTemplate]) -> QueryFragment:
    """Collapse dynamic routes into their templates, first match wins."""
    if route_templates:
        branches = "\n".join(
            f"    WHEN REGEXP_CONTAINS(base_path, @routePattern{index}) THEN @routeTemplate{index}"
            for index in range(len(route_templates))
        )
        page_path = f"CASE\n{branches}\n    ELSE base_path\n  END"
    else:
        page_path = "base_path"

    return QueryFragment(
        "normalized_pageviews",
        f"""
SELECT
  visitor_id,
  session_key,
  event_timestamp,
  batch_page_id,
  batch_ordering_id,
  batch_event_index,
  {page_path} AS page_path,
  page_title
FROM extracted_pageviews
""",
    )


ORDERED_PAGEVIEWS = QueryFragment(
    "ordered_pageviews",
    f"""
SELECT
  *,
  ROW_NUMBER() OVER session_views AS view_index,
  LEAD(page_path) OVER session_views AS next_page
FROM normalized_pageviews
WINDOW session_views AS (PARTITION BY session_key ORDER BY {SESSION_ORDER})
""",
)

TRACKED_VIEWS = QueryFragment(
    "tracked_views",
    """
SELECT session_key, page_path, view_index, next_page
FROM ordered_pageviews
WHERE page_path IN UNNEST(@trackedPages)
""",
)

TRANSITION_COUNTS = QueryFragment(
    "transition_counts",
    """
SELECT page_path AS from_page, next_page AS to_page, COUNT(*) AS transition_count
FROM tracked_views
WHERE next_page IN UNNEST(@trackedPages) AND next_page != page_path
GROUP BY from_page, to_page
ORDER BY transition_count DESC, from_page, to_page
LIMIT @flowLimit
""",
)

# A session continues past a page when any different tracked page is seen
# after the first view of that page.
ANY_LATER_CONTINUATION = QueryFragment(
    "session_continuation",
    """
SELECT
  first_views.session_key,
  first_views.page_path,
  COALESCE(LOGICAL_OR(later.view_index > first_views.first_index), FALSE) AS continued
FROM (
  SELECT session_key, page_path, MIN(view_index) AS first_index
  FROM tracked_views
  GROUP BY session_key, page_path
) AS first_views
LEFT JOIN tracked_views AS later
  ON later.session_key = first_views.session_key
  AND later.page_path != first_views.page_path
GROUP BY first_views.session_key, first_views.page_path
""",
)

# A session continues past a page when one of its views is immediately
# followed by a different tracked page.
NEXT_VIEW_CONTINUATION = QueryFragment(
    "session_continuation",
    """
SELECT
  session_key,
  page_path,
  COALESCE(
    LOGICAL_OR(next_page IS NOT NULL AND next_page != page_path AND next_page IN UNNEST(@trackedPages)),
    FALSE
  ) AS continued
FROM tracked_views
GROUP BY session_key, page_path
""",
)

CONTINUATION_FRAGMENTS = {
    ContinuationRule.ANY_LATER_TRACKED_PAGE: ANY_LATER_CONTINUATION,
    ContinuationRule.NEXT_VIEW_TRACKED: NEXT_VIEW_CONTINUATION,
}

DROPOFF_COUNTS = QueryFragment(
    "dropoff_counts",
    """
SELECT
  page_path AS page,
  COUNT(*) AS reached_sessions,
  COUNTIF(continued) AS continued_sessions
FROM session_continuation
GROUP BY page
ORDER BY
  COUNT(*) - COUNTIF(continued) DESC,
  SAFE_DIVIDE(COUNT(*) - COUNTIF(continued), COUNT(*)) DESC,
  page
LIMIT @flowLimit
""",
)

TOP_PAGE_COUNTS = QueryFragment(
    "top_page_counts",
    """
SELECT
  page_path AS path,
  ARRAY_AGG(
    page_title IGNORE NULLS
    ORDER BY event_timestamp DESC, batch_page_id DESC, batch_ordering_id DESC, batch_event_index DESC
    LIMIT 1
  )[SAFE_OFFSET(0)] AS title,
  COUNT(*) AS views,
  COUNT(DISTINCT visitor_id) AS active_users
FROM ordered_pageviews
GROUP BY path
ORDER BY views DESC, active_users DESC, path
LIMIT @pageLimit
""",
)

# Landing page is the first view of the session, tracked or not.
LANDING_PAGE_COUNTS = QueryFragment(
    "landing_page_counts",
    """
SELECT
  page_path AS landing_page,
  COUNT(*) AS sessions,
  COUNT(DISTINCT visitor_id) AS active_users
FROM ordered_pageviews
WHERE view_index = 1
GROUP BY landing_page
ORDER BY sessions DESC, active_users DESC, landing_page
LIMIT @pageLimit
""",
)

DAILY_COUNTS = QueryFragment(
    "daily_counts",
    """
SELECT
  FORMAT_DATE('%F', DATE(TIMESTAMP_MICROS(event_timestamp), @reportTimeZone)) AS bucket,
  COUNT(*) AS views,
  COUNT(DISTINCT session_key) AS sessions
FROM ordered_pageviews
GROUP BY bucket
""",
)

AGGREGATE_SELECT = """
SELECT
  ARRAY(SELECT AS STRUCT * FROM top_page_counts) AS top_pages,
  ARRAY(SELECT AS STRUCT * FROM landing_page_counts) AS landing_pages,
  ARRAY(SELECT AS STRUCT * FROM transition_counts) AS transitions,
  ARRAY(SELECT AS STRUCT * FROM dropoff_counts) AS dropoff,
  ARRAY(SELECT AS STRUCT * FROM daily_counts) AS daily_views
"""


def build_pageview_params(
    bounds: RangeBounds, utc_offset: timedelta = DEFAULT_UTC_OFFSET
) -> dict[str, Any]:
    """Bound parameters selecting the page views of ``bounds``."""
    return {
        "startTimestamp": bounds.current_start_iso,
        "endTimestamp": bounds.now_iso,
        "startDateSuffix": to_date_suffix(bounds.current_start, utc_offset),
        "endDateSuffix": to_date_suffix(bounds.now, utc_offset),
        "todayDateSuffix": to_date_suffix(bounds.now, utc_offset),
    }


def build_aggregate_query(
    project_id: str,
    dataset_id: str,
    bounds: RangeBounds,
    *,
    tracked_pages: Sequence[str],
    route_templates: Sequence[RouteTemplate],
    page_limit: int,
    flow_limit: int,
    continuation: ContinuationRule = ContinuationRule.ANY_LATER_TRACKED_PAGE,
    include_intraday: bool,
    utc_offset: timedelta = DEFAULT_UTC_OFFSET,
) -> WarehouseQuery:
    """Every page-view aggregate of the window in one single-row query."""
    params = build_pageview_params(bounds, utc_offset)
    if not include_intraday:
        params.pop("todayDateSuffix")
    params.update(
        trackedPages=list(tracked_pages),
        pageLimit=page_limit,
        flowLimit=flow_limit,
        reportTimeZone=format_utc_offset(utc_offset),
        **route_template_params(route_templates),
    )

    query = WarehouseQuery(select=AGGREGATE_SELECT, params=params)
    query.with_cte(raw_pageviews_fragment(project_id, dataset_id, include_intraday))
    query.with_cte(EXTRACTED_PAGEVIEWS)
    query.with_cte(normalized_pageviews_fragment(route_templates))
    query.with_cte(ORDERED_PAGEVIEWS)
    query.with_cte(TRACKED_VIEWS)
    query.with_cte(TRANSITION_COUNTS)
    query.with_cte(CONTINUATION_FRAGMENTS[continuation])
    query.with_cte(DROPOFF_COUNTS)
    query.with_cte(TOP_PAGE_COUNTS)
    query.with_cte(LANDING_PAGE_COUNTS)
    query.with_cte(DAILY_COUNTS)
    return query
