from pydantic import BaseModel


class MessageResponse(BaseModel):
    """Simple message response."""

    message: str


class ReadinessResponse(BaseModel):
    """Readiness report listing which upstream sources are configured."""

    message: str
    reporting_configured: bool
    warehouse_configured: bool
