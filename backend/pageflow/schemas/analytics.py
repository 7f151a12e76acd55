from typing import Literal

from pydantic import BaseModel, Field

from pageflow.analytics.ranges import TimeRange

DashboardStatus = Literal["ready", "disabled", "error"]
SummarySource = Literal["reporting", "warehouse"]


class TopPageRow(BaseModel):
    """Most viewed page in the window."""

    path: str
    title: str | None = None
    views: int
    active_users: int


class TopLandingPageRow(BaseModel):
    """Page that sessions most often started on."""

    landing_page: str
    sessions: int
    active_users: int


class TransitionEdge(BaseModel):
    """Page-to-page navigation between two tracked pages."""

    from_page: str
    to_page: str
    count: int
    share_pct: float


class DropoffRow(BaseModel):
    """Sessions that reached a tracked page and went no further."""

    page: str
    reached_sessions: int
    continued_sessions: int
    dropoff_sessions: int
    dropoff_rate: float

    @classmethod
    def from_counts(cls, page: str, reached: int, continued: int) -> "DropoffRow":
        dropoff = reached - continued
        return cls(
            page=page,
            reached_sessions=reached,
            continued_sessions=continued,
            dropoff_sessions=dropoff,
            dropoff_rate=dropoff / reached if reached > 0 else 0.0,
        )


class DailyPageViewPoint(BaseModel):
    """Page views and sessions for one fixed-offset day."""

    bucket: str  # YYYY-MM-DD
    label: str  # M/D
    views: int
    sessions: int


class PageSummaryResult(BaseModel):
    """Top pages and landing pages from one of the two upstream sources."""

    status: DashboardStatus
    status_message: str | None = None
    source: SummarySource | None = None
    top_pages: list[TopPageRow] = Field(default_factory=list)
    top_landing_pages: list[TopLandingPageRow] = Field(default_factory=list)


class PageFlowResult(BaseModel):
    """Navigation funnel built from reconstructed sessions."""

    status: DashboardStatus
    status_message: str | None = None
    top_transitions: list[TransitionEdge] = Field(default_factory=list)
    top_dropoff_pages: list[DropoffRow] = Field(default_factory=list)
    daily_page_views: list[DailyPageViewPoint] = Field(default_factory=list)


class DashboardResult(BaseModel):
    """Everything the analytics dashboard renders for one range."""

    range: TimeRange
    status: DashboardStatus
    status_message: str | None = None
    source: SummarySource | None = None
    top_pages: list[TopPageRow] = Field(default_factory=list)
    top_landing_pages: list[TopLandingPageRow] = Field(default_factory=list)
    page_flow_status: DashboardStatus
    page_flow_status_message: str | None = None
    top_transitions: list[TransitionEdge] = Field(default_factory=list)
    top_dropoff_pages: list[DropoffRow] = Field(default_factory=list)
    daily_page_views: list[DailyPageViewPoint] = Field(default_factory=list)

    @classmethod
    def combine(
        cls,
        time_range: TimeRange,
        summary: PageSummaryResult,
        flow: PageFlowResult,
    ) -> "DashboardResult":
        return cls(
            range=time_range,
            status=summary.status,
            status_message=summary.status_message,
            source=summary.source,
            top_pages=summary.top_pages,
            top_landing_pages=summary.top_landing_pages,
            page_flow_status=flow.status,
            page_flow_status_message=flow.status_message,
            top_transitions=flow.top_transitions,
            top_dropoff_pages=flow.top_dropoff_pages,
            daily_page_views=flow.daily_page_views,
        )
