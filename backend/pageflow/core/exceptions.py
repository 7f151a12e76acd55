from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base exception for HTTP-facing application errors."""

    def __init__(self, status_code: int, detail: Any = None):
        super().__init__(status_code=status_code, detail=detail)


class ServiceUnavailableError(AppException):
    def __init__(self, detail: Any = "Service unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class ConfigurationMissingError(Exception):
    """Required upstream credentials or identifiers are not configured.

    Resolvers turn this into a ``disabled`` result, never an ``error``.
    """


class UpstreamError(Exception):
    """An upstream call failed or returned something unusable.

    Carries the same ``code`` / ``message`` / ``details`` triple that the
    Google client libraries expose, so the failure classifier can treat
    adapter-raised and library-raised errors alike.
    """

    def __init__(
        self,
        message: str,
        *,
        code: int | str | None = None,
        details: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
