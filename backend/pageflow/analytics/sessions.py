"""Session reconstruction and page-flow aggregation over raw page views.

Raw page-view rows come from the event warehouse export, one row per
``page_view`` event. They are turned into sessions in four steps:

1. derive a session key from the visitor pseudo-id and the visit id,
   dropping events that cannot be attributed to a visit;
2. normalize the page location into a canonical path template and the
   page title into ``None`` when it carries no information;
3. order each session's views by event timestamp and the batch ingestion
   fields, because timestamps alone collide within an upload batch;
4. link every view to the view that follows it in the same session.

The aggregations (transitions, drop-off, top pages, landing pages, daily
trend) all work on the resulting sessions and perform no I/O. In production
the warehouse applies the same rules in SQL (see ``pageflow.analytics.queries``)
and only the ``rank_*`` and ``fill_daily_views`` helpers run on its
aggregate rows, so the two paths rank and shape results identically.
"""

import logging
import math
import re
from collections import Counter, defaultdict
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pageflow.analytics.ranges import (
    DEFAULT_UTC_OFFSET,
    RangeBounds,
    enumerate_date_keys,
    format_date_label,
    to_date_key,
)
from pageflow.schemas.analytics import (
    DailyPageViewPoint,
    DropoffRow,
    TopLandingPageRow,
    TopPageRow,
    TransitionEdge,
)

logger = logging.getLogger(__name__)

ROOT_PATH = "/"
NOT_SET = "(not set)"

DEFAULT_FLOW_LIMIT = 10
DEFAULT_PAGE_LIMIT = 8

_ABSOLUTE_URL = re.compile(r"^https?://[^/?#]+(/[^?#]*)", re.IGNORECASE)
_RELATIVE_PATH = re.compile(r"^(/[^?#]*)")


@dataclass(frozen=True)
class RouteTemplate:
    """Collapses a dynamic route such as ``/posts/abc123`` into ``/posts/[id]``."""

    pattern: re.Pattern[str]
    template: str

    @classmethod
    def compile(cls, pattern: str, template: str) -> "RouteTemplate":
        return cls(re.compile(pattern), template)

    def apply(self, path: str) -> str | None:
        return self.template if self.pattern.fullmatch(path) else None


DEFAULT_ROUTE_TEMPLATES: tuple[RouteTemplate, ...] = (
    RouteTemplate.compile(r"/posts/[^/]+", "/posts/[id]"),
    RouteTemplate.compile(r"/users/[^/]+", "/users/[userId]"),
)


class ContinuationRule(str, Enum):
    """What counts as "continuing" past a tracked page in drop-off analysis."""

    # Any different tracked page viewed later in the same session.
    ANY_LATER_TRACKED_PAGE = "any_later"
    # Some view of the page is immediately followed by a different tracked page.
    NEXT_VIEW_TRACKED = "next_view"


def parse_numeric(value: Any) -> float:
    """Parse an upstream numeric value, returning 0 for anything unusable."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def parse_count(value: Any) -> int:
    return int(parse_numeric(value))


def derive_session_key(visitor_id: Any, visit_id: Any) -> str | None:
    """Combine the visitor pseudo-id and the per-visit id into a session key."""
    if visitor_id is None or visit_id is None:
        return None
    visitor = str(visitor_id).strip()
    visit = str(visit_id).strip()
    if not visitor or not visit:
        return None
    return f"{visitor}.{visit}"


def extract_path(location: str | None) -> str:
    """Path part of an absolute URL or a relative path, ``/`` otherwise."""
    if not location:
        return ROOT_PATH
    location = location.strip()
    match = _ABSOLUTE_URL.match(location) or _RELATIVE_PATH.match(location)
    if match is None:
        return ROOT_PATH
    return match.group(1)


def normalize_page_path(
    location: str | None,
    route_templates: Sequence[RouteTemplate] = DEFAULT_ROUTE_TEMPLATES,
) -> str:
    """Reduce a page location to its canonical path template."""
    path = extract_path(location).strip().rstrip("/")
    if not path:
        return ROOT_PATH

    for route in route_templates:
        template = route.apply(path)
        if template is not None:
            return template
    return path


def normalize_page_title(title: str | None) -> str | None:
    if title is None:
        return None
    title = title.strip()
    if not title or title == NOT_SET:
        return None
    return title


def _nulls_first(value: int | None) -> tuple[int, int]:
    return (0, 0) if value is None else (1, value)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class RawPageViewEvent:
    """One ``page_view`` row as exported by the event warehouse."""

    visitor_id: str | None
    visit_id: int | str | None
    event_timestamp: int  # microseconds since the epoch
    page_location: str | None = None
    page_title: str | None = None
    batch_page_id: int | None = None
    batch_ordering_id: int | None = None
    batch_event_index: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RawPageViewEvent":
        return cls(
            visitor_id=row.get("user_pseudo_id"),
            visit_id=row.get("ga_session_id"),
            event_timestamp=parse_count(row.get("event_timestamp")),
            page_location=row.get("page_location"),
            page_title=row.get("page_title"),
            batch_page_id=_optional_int(row.get("batch_page_id")),
            batch_ordering_id=_optional_int(row.get("batch_ordering_id")),
            batch_event_index=_optional_int(row.get("batch_event_index")),
        )


@dataclass(frozen=True)
class NormalizedPageView:
    session_key: str
    visitor_id: str
    event_timestamp: int
    path: str
    title: str | None
    ordering_key: tuple[Any, ...]

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.event_timestamp / 1_000_000, tz=timezone.utc)


@dataclass
class Session:
    """The ordered page views of one visit."""

    key: str
    visitor_id: str
    views: list[NormalizedPageView] = field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [view.path for view in self.views]

    @property
    def landing_view(self) -> NormalizedPageView | None:
        return self.views[0] if self.views else None


def normalize_event(
    event: RawPageViewEvent,
    route_templates: Sequence[RouteTemplate] = DEFAULT_ROUTE_TEMPLATES,
) -> NormalizedPageView | None:
    """Normalize one raw event, or ``None`` when it has no session key."""
    session_key = derive_session_key(event.visitor_id, event.visit_id)
    if session_key is None:
        return None
    return NormalizedPageView(
        session_key=session_key,
        visitor_id=str(event.visitor_id),
        event_timestamp=event.event_timestamp,
        path=normalize_page_path(event.page_location, route_templates),
        title=normalize_page_title(event.page_title),
        ordering_key=(
            event.event_timestamp,
            _nulls_first(event.batch_page_id),
            _nulls_first(event.batch_ordering_id),
            _nulls_first(event.batch_event_index),
        ),
    )


def build_sessions(
    events: Iterable[RawPageViewEvent | Mapping[str, Any]],
    route_templates: Sequence[RouteTemplate] = DEFAULT_ROUTE_TEMPLATES,
) -> list[Session]:
    """Group events into sessions, each ordered deterministically.

    Sessions are returned sorted by key so that every aggregation sees the
    same input order regardless of how the warehouse streamed the rows.
    """
    sessions: dict[str, Session] = {}
    discarded = 0

    for item in events:
        event = item if isinstance(item, RawPageViewEvent) else RawPageViewEvent.from_row(item)
        view = normalize_event(event, route_templates)
        if view is None:
            discarded += 1
            continue
        session = sessions.get(view.session_key)
        if session is None:
            session = sessions[view.session_key] = Session(view.session_key, view.visitor_id)
        session.views.append(view)

    for session in sessions.values():
        session.views.sort(key=lambda v: v.ordering_key)

    if discarded:
        logger.debug("Discarded %d page views without a session key", discarded)

    return [sessions[key] for key in sorted(sessions)]


def link_next_pages(session: Session) -> Iterator[tuple[NormalizedPageView, str | None]]:
    """Yield each view with the path of the view that follows it, if any."""
    views = session.views
    for index, view in enumerate(views):
        following = views[index + 1].path if index + 1 < len(views) else None
        yield view, following


def aggregate_transitions(
    sessions: Iterable[Session],
    tracked_pages: Iterable[str],
    limit: int = DEFAULT_FLOW_LIMIT,
) -> list[TransitionEdge]:
    """Count direct moves between two different tracked pages."""
    tracked = frozenset(tracked_pages)
    counts: Counter[tuple[str, str]] = Counter()

    for session in sessions:
        for view, next_page in link_next_pages(session):
            if (
                next_page is not None
                and view.path in tracked
                and next_page in tracked
                and next_page != view.path
            ):
                counts[(view.path, next_page)] += 1

    return rank_transitions(counts, limit)


def rank_transitions(
    counts: Mapping[tuple[str, str], int],
    limit: int = DEFAULT_FLOW_LIMIT,
) -> list[TransitionEdge]:
    """Keep the busiest edges; shares are relative to the edges kept."""
    ranked = sorted(
        ((edge, count) for edge, count in counts.items() if count > 0),
        key=lambda item: (-item[1], item[0][0], item[0][1]),
    )[:limit]
    total = sum(count for _, count in ranked)

    return [
        TransitionEdge(
            from_page=from_page,
            to_page=to_page,
            count=count,
            share_pct=count / total if total > 0 else 0.0,
        )
        for (from_page, to_page), count in ranked
    ]


def _continued_pages(
    paths: Sequence[str],
    tracked: frozenset[str],
    rule: ContinuationRule,
) -> set[str]:
    continued: set[str] = set()

    if rule is ContinuationRule.NEXT_VIEW_TRACKED:
        for current, following in zip(paths, paths[1:]):
            if current in tracked and following in tracked and following != current:
                continued.add(current)
        return continued

    # Walk backwards, remembering which tracked pages appear later on.
    later: set[str] = set()
    for path in reversed(paths):
        if path in tracked:
            if later - {path}:
                continued.add(path)
            later.add(path)
    return continued


def aggregate_dropoff(
    sessions: Iterable[Session],
    tracked_pages: Iterable[str],
    limit: int = DEFAULT_FLOW_LIMIT,
    rule: ContinuationRule = ContinuationRule.ANY_LATER_TRACKED_PAGE,
) -> list[DropoffRow]:
    """Per tracked page, how many sessions reached it and stopped there."""
    tracked = frozenset(tracked_pages)
    reached: Counter[str] = Counter()
    continued: Counter[str] = Counter()

    for session in sessions:
        paths = session.paths
        visited = {path for path in paths if path in tracked}
        if not visited:
            continue
        reached.update(visited)
        continued.update(_continued_pages(paths, tracked, rule))

    rows = [DropoffRow.from_counts(page, reached[page], continued[page]) for page in reached]
    return rank_dropoff(rows, limit)


def rank_dropoff(rows: Iterable[DropoffRow], limit: int = DEFAULT_FLOW_LIMIT) -> list[DropoffRow]:
    return sorted(rows, key=lambda row: (-row.dropoff_sessions, -row.dropoff_rate, row.page))[:limit]


def aggregate_top_pages(
    sessions: Iterable[Session],
    limit: int = DEFAULT_PAGE_LIMIT,
) -> list[TopPageRow]:
    """Views and distinct visitors per canonical path."""
    views: Counter[str] = Counter()
    visitors: dict[str, set[str]] = defaultdict(set)
    titles: dict[str, NormalizedPageView] = {}

    for session in sessions:
        for view in session.views:
            views[view.path] += 1
            visitors[view.path].add(view.visitor_id)
            if view.title is not None:
                latest = titles.get(view.path)
                if latest is None or view.ordering_key > latest.ordering_key:
                    titles[view.path] = view

    rows = [
        TopPageRow(
            path=path,
            title=titles[path].title if path in titles else None,
            views=count,
            active_users=len(visitors[path]),
        )
        for path, count in views.items()
    ]
    return rank_top_pages(rows, limit)


def rank_top_pages(rows: Iterable[TopPageRow], limit: int = DEFAULT_PAGE_LIMIT) -> list[TopPageRow]:
    return sorted(rows, key=lambda row: (-row.views, -row.active_users, row.path))[:limit]


def aggregate_landing_pages(
    sessions: Iterable[Session],
    limit: int = DEFAULT_PAGE_LIMIT,
) -> list[TopLandingPageRow]:
    """Sessions and distinct visitors per first page of the session."""
    landings: Counter[str] = Counter()
    visitors: dict[str, set[str]] = defaultdict(set)

    for session in sessions:
        landing = session.landing_view
        if landing is None:
            continue
        landings[landing.path] += 1
        visitors[landing.path].add(session.visitor_id)

    rows = [
        TopLandingPageRow(
            landing_page=path,
            sessions=count,
            active_users=len(visitors[path]),
        )
        for path, count in landings.items()
    ]
    return rank_landing_pages(rows, limit)


def rank_landing_pages(
    rows: Iterable[TopLandingPageRow], limit: int = DEFAULT_PAGE_LIMIT
) -> list[TopLandingPageRow]:
    return sorted(rows, key=lambda row: (-row.sessions, -row.active_users, row.landing_page))[:limit]


def aggregate_daily_views(
    sessions: Iterable[Session],
    bounds: RangeBounds,
    utc_offset: timedelta = DEFAULT_UTC_OFFSET,
) -> list[DailyPageViewPoint]:
    """Page views and sessions per day, with empty days kept as zero."""
    views: Counter[str] = Counter()
    session_keys: dict[str, set[str]] = defaultdict(set)

    for session in sessions:
        for view in session.views:
            key = to_date_key(view.occurred_at, utc_offset)
            views[key] += 1
            session_keys[key].add(session.key)

    counts = {key: (views[key], len(session_keys[key])) for key in views}
    return fill_daily_views(counts, bounds, utc_offset)


def fill_daily_views(
    counts: Mapping[str, tuple[int, int]],
    bounds: RangeBounds,
    utc_offset: timedelta = DEFAULT_UTC_OFFSET,
) -> list[DailyPageViewPoint]:
    """One point per day of ``bounds`` from ``(views, sessions)`` per date key.

    Days without counts are kept as zero and keys outside the window are
    ignored.
    """
    keys = enumerate_date_keys(bounds.current_start, bounds.now, utc_offset)
    return [
        DailyPageViewPoint(
            bucket=key,
            label=format_date_label(key),
            views=counts.get(key, (0, 0))[0],
            sessions=counts.get(key, (0, 0))[1],
        )
        for key in keys
    ]


class SessionReconstructionEngine:
    """Page-flow aggregation configured for one deployment.

    Holds the tracked-page allow-list, the dynamic route templates, the day
    bucketing offset and the result limits. The warehouse query is built
    from this configuration, and the aggregations over sessions rebuilt from
    raw rows define what that query must return.
    """

    def __init__(
        self,
        tracked_pages: Iterable[str],
        *,
        route_templates: Sequence[RouteTemplate] = DEFAULT_ROUTE_TEMPLATES,
        utc_offset: timedelta = DEFAULT_UTC_OFFSET,
        flow_limit: int = DEFAULT_FLOW_LIMIT,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        continuation: ContinuationRule = ContinuationRule.ANY_LATER_TRACKED_PAGE,
    ):
        self.route_templates = tuple(route_templates)
        self.tracked_pages = tuple(
            dict.fromkeys(normalize_page_path(p, self.route_templates) for p in tracked_pages)
        )
        self.utc_offset = utc_offset
        self.flow_limit = flow_limit
        self.page_limit = page_limit
        self.continuation = continuation

    def reconstruct(
        self, events: Iterable[RawPageViewEvent | Mapping[str, Any]]
    ) -> list[Session]:
        return build_sessions(events, self.route_templates)

    def transitions(self, sessions: Sequence[Session]) -> list[TransitionEdge]:
        return aggregate_transitions(sessions, self.tracked_pages, self.flow_limit)

    def dropoff(self, sessions: Sequence[Session]) -> list[DropoffRow]:
        return aggregate_dropoff(sessions, self.tracked_pages, self.flow_limit, self.continuation)

    def top_pages(self, sessions: Sequence[Session]) -> list[TopPageRow]:
        return aggregate_top_pages(sessions, self.page_limit)

    def landing_pages(self, sessions: Sequence[Session]) -> list[TopLandingPageRow]:
        return aggregate_landing_pages(sessions, self.page_limit)

    def daily_views(
        self, sessions: Sequence[Session], bounds: RangeBounds
    ) -> list[DailyPageViewPoint]:
        return aggregate_daily_views(sessions, bounds, self.utc_offset)
