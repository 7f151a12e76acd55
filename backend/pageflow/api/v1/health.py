from fastapi import APIRouter, Depends

from pageflow.api.deps import get_upstream_sources
from pageflow.clients.base import UpstreamSources
from pageflow.schemas.common import MessageResponse, ReadinessResponse

router = APIRouter()


@router.get("/", response_model=MessageResponse)
async def health_check():
    """Basic health check endpoint."""
    return {"message": "healthy"}


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(sources: UpstreamSources = Depends(get_upstream_sources)):
    """Readiness check - reports which upstream sources are configured."""
    return ReadinessResponse(
        message="ready",
        reporting_configured=sources.reporting_enabled,
        warehouse_configured=sources.warehouse_enabled,
    )
