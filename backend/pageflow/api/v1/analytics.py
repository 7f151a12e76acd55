from fastapi import APIRouter, Depends, Query, Request

from pageflow.analytics.ranges import DEFAULT_RANGE, TimeRange
from pageflow.api.deps import get_dashboard_service
from pageflow.core.config import settings
from pageflow.core.limiter import limiter
from pageflow.schemas.analytics import DashboardResult, PageFlowResult, PageSummaryResult
from pageflow.services.dashboard_service import DashboardService

router = APIRouter()


@router.get("/dashboard", response_model=DashboardResult)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_dashboard(
    request: Request,
    time_range: TimeRange = Query(DEFAULT_RANGE, alias="range"),
    service: DashboardService = Depends(get_dashboard_service),
):
    """Get top pages, landing pages, transitions and drop-off for a range."""
    return await service.get_dashboard(time_range)


@router.get("/page-summary", response_model=PageSummaryResult)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_page_summary(
    request: Request,
    time_range: TimeRange = Query(DEFAULT_RANGE, alias="range"),
    service: DashboardService = Depends(get_dashboard_service),
):
    """Get top pages and landing pages for a range."""
    return await service.summary.get_page_summary(time_range)


@router.get("/page-flow", response_model=PageFlowResult)
@limiter.limit(f"{settings.RATE_LIMIT_PER_MINUTE}/minute")
async def get_page_flow(
    request: Request,
    time_range: TimeRange = Query(DEFAULT_RANGE, alias="range"),
    service: DashboardService = Depends(get_dashboard_service),
):
    """Get page transitions, drop-off and the daily page-view trend for a range."""
    return await service.flow.get_page_flow(time_range)
