from fastapi import Request

from pageflow.clients.base import UpstreamSources
from pageflow.core.exceptions import ServiceUnavailableError
from pageflow.services.dashboard_service import DashboardService


async def get_dashboard_service(request: Request) -> DashboardService:
    """FastAPI dependency: returns the process-wide dashboard service."""
    service = getattr(request.app.state, "dashboard_service", None)
    if service is None:
        raise ServiceUnavailableError(detail="Analytics service not initialised")
    return service  # type: ignore[no-any-return]


async def get_upstream_sources(request: Request) -> UpstreamSources:
    """FastAPI dependency: returns the configured upstream bundle."""
    sources = getattr(request.app.state, "sources", None)
    if sources is None:
        raise ServiceUnavailableError(detail="Analytics service not initialised")
    return sources  # type: ignore[no-any-return]
