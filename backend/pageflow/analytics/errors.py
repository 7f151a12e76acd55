"""Map upstream failures onto a small user-facing taxonomy.

The raw failure is always logged for operators; dashboard users only ever
see the sanitized message of its category.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class UpstreamSource(str, Enum):
    REPORTING = "reporting"
    WAREHOUSE = "warehouse"


class FailureCategory(str, Enum):
    API_NOT_ENABLED = "api-not-enabled"
    CONNECTIVITY = "connectivity"
    PERMISSION_DENIED = "permission-denied"
    NOT_FOUND = "not-found"
    LOCATION_MISMATCH = "location-mismatch"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FailureInfo:
    code: str
    message: str
    details: str

    @property
    def text(self) -> str:
        return f"{self.message} {self.details}".lower()


@dataclass(frozen=True)
class ClassificationRule:
    category: FailureCategory
    substrings: tuple[str, ...] = ()
    codes: tuple[str, ...] = ()
    sources: frozenset[UpstreamSource] | None = None  # None = every source

    def matches(self, failure: FailureInfo, source: UpstreamSource) -> bool:
        if self.sources is not None and source not in self.sources:
            return False
        if failure.code and failure.code in self.codes:
            return True
        text = failure.text
        return any(fragment in text for fragment in self.substrings)


_WAREHOUSE_ONLY = frozenset({UpstreamSource.WAREHOUSE})

# Order matters: the first matching rule wins.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        FailureCategory.API_NOT_ENABLED,
        substrings=("has not been used in project", "is disabled", "enable it by visiting"),
    ),
    ClassificationRule(
        FailureCategory.CONNECTIVITY,
        substrings=(
            "unavailable",
            "name resolution failed",
            "deadline exceeded",
            "timed out",
            "connection refused",
            "connection reset",
        ),
        codes=("14", "4"),
    ),
    ClassificationRule(
        FailureCategory.PERMISSION_DENIED,
        substrings=("permission_denied", "permission denied", "access denied"),
        codes=("7", "403"),
    ),
    ClassificationRule(
        FailureCategory.NOT_FOUND,
        substrings=("not found", "unknown property"),
        codes=("5", "404"),
    ),
    ClassificationRule(
        FailureCategory.NOT_FOUND,
        substrings=("dataset", "table"),
        sources=_WAREHOUSE_ONLY,
    ),
    ClassificationRule(
        FailureCategory.LOCATION_MISMATCH,
        substrings=("location", "region"),
        sources=_WAREHOUSE_ONLY,
    ),
)

MESSAGES: dict[UpstreamSource, dict[FailureCategory, str]] = {
    UpstreamSource.REPORTING: {
        FailureCategory.API_NOT_ENABLED: (
            "The Google Analytics Data API is not enabled for the GCP project. "
            "Enable analyticsdata.googleapis.com."
        ),
        FailureCategory.CONNECTIVITY: (
            "Could not reach the GA4 Data API. Check that this environment can "
            "connect to analyticsdata.googleapis.com."
        ),
        FailureCategory.PERMISSION_DENIED: (
            "The service account lacks access to the GA4 property. "
            "Check the property's access settings."
        ),
        FailureCategory.NOT_FOUND: (
            "The GA4 property was not found. Check that the numeric property ID is correct."
        ),
        FailureCategory.LOCATION_MISMATCH: (
            "The GA4 request was rejected for its region. Check the property settings."
        ),
        FailureCategory.UNKNOWN: (
            "Failed to load GA4 data. Check the credentials, property permissions "
            "or outbound network settings."
        ),
    },
    UpstreamSource.WAREHOUSE: {
        FailureCategory.API_NOT_ENABLED: (
            "The BigQuery API is not enabled for the GCP project. "
            "Enable bigquery.googleapis.com."
        ),
        FailureCategory.CONNECTIVITY: (
            "Could not reach BigQuery. Check the outbound network settings "
            "or try again shortly."
        ),
        FailureCategory.PERMISSION_DENIED: (
            "The service account lacks BigQuery read access. "
            "Check its dataset and job permissions."
        ),
        FailureCategory.NOT_FOUND: (
            "The BigQuery dataset or table was not found. Check the dataset name."
        ),
        FailureCategory.LOCATION_MISMATCH: (
            "The BigQuery location does not match. Check GA4_BIGQUERY_LOCATION."
        ),
        FailureCategory.UNKNOWN: (
            "Failed to load page analytics from BigQuery. Check the dataset name, "
            "location and permissions."
        ),
    },
}


def _status_code(exc: BaseException) -> str:
    grpc_code = getattr(exc, "grpc_status_code", None)
    if grpc_code is not None:
        value = getattr(grpc_code, "value", grpc_code)
        if isinstance(value, tuple) and value:
            value = value[0]
        return str(value)

    code = getattr(exc, "code", None)
    if callable(code):
        # grpc.RpcError exposes code() as a method
        try:
            code = code()
        except Exception:
            return ""
        code = getattr(code, "value", code)
        if isinstance(code, tuple) and code:
            code = code[0]
    return "" if code is None else str(code)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(_text(item) for item in value)
    return str(value)


def describe_failure(exc: BaseException) -> FailureInfo:
    """Extract code, message and details from any exception."""
    try:
        code = _status_code(exc)
        message = _text(getattr(exc, "message", None)) or _text(exc)
        details = _text(getattr(exc, "details", None))
    except Exception:
        return FailureInfo(code="", message=type(exc).__name__, details="")
    if not message and isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        message = "deadline exceeded"
    return FailureInfo(code=code, message=message, details=details)


def classify_failure(exc: BaseException, source: UpstreamSource) -> FailureCategory:
    """First matching rule wins; nothing matching is ``unknown``."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return FailureCategory.CONNECTIVITY

    failure = describe_failure(exc)
    for rule in CLASSIFICATION_RULES:
        if rule.matches(failure, source):
            return rule.category
    return FailureCategory.UNKNOWN


def failure_message(exc: BaseException, source: UpstreamSource) -> str:
    """Log the raw failure and return the sanitized user-facing message."""
    failure = describe_failure(exc)
    category = classify_failure(exc, source)
    logger.error(
        "%s upstream failure (%s): code=%s message=%s details=%s",
        source.value,
        category.value,
        failure.code or "-",
        failure.message,
        failure.details or "-",
        exc_info=exc,
    )
    return MESSAGES[source][category]
