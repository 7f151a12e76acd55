"""Upstream client interfaces and the injected capability bundle.

Resolvers only ever see these protocols. The Google-backed implementations
live next to this module; tests plug in in-memory fakes.
"""

import asyncio
import base64
import binascii
import json
import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from pageflow.core.exceptions import ConfigurationMissingError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ReportRequest:
    """Whole-day report over the reporting API."""

    property_id: str
    start_date: str  # YYYY-MM-DD
    end_date: str  # YYYY-MM-DD
    dimensions: Sequence[str]
    metrics: Sequence[str]
    order_by_metric: str | None = None
    descending: bool = True
    limit: int = 10


@dataclass(frozen=True)
class ReportRow:
    dimension_values: list[str | None]
    metric_values: list[str | None]

    def dimension(self, index: int) -> str | None:
        return self.dimension_values[index] if index < len(self.dimension_values) else None

    def metric(self, index: int) -> str | None:
        return self.metric_values[index] if index < len(self.metric_values) else None


@dataclass(frozen=True)
class ReportResponse:
    rows: list[ReportRow] = field(default_factory=list)


class ReportingClient(Protocol):
    async def run_report(self, request: ReportRequest) -> ReportResponse: ...


class WarehouseClient(Protocol):
    async def table_exists(self, dataset_id: str, table_id: str) -> bool: ...

    async def query(
        self, sql: str, params: dict[str, Any], location: str
    ) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class WarehouseTarget:
    project_id: str
    dataset_id: str
    location: str


@dataclass(frozen=True)
class UpstreamSources:
    """Which upstreams this process may use, and how to reach them."""

    reporting: ReportingClient | None = None
    property_id: str | None = None
    warehouse: WarehouseClient | None = None
    warehouse_target: WarehouseTarget | None = None
    timeout_seconds: float | None = 30.0

    @property
    def reporting_enabled(self) -> bool:
        return self.reporting is not None and bool(self.property_id)

    @property
    def warehouse_enabled(self) -> bool:
        return self.warehouse is not None and self.warehouse_target is not None

    def cache_key(self, *parts: str) -> str:
        target = self.warehouse_target
        return ":".join(
            [
                self.property_id or "",
                target.project_id if target else "",
                target.dataset_id if target else "",
                target.location if target else "",
                *parts,
            ]
        )

    async def call(self, awaitable: Awaitable[T]) -> T:
        """Await an upstream call under the configured deadline."""
        if self.timeout_seconds is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)


def decode_service_account(encoded: str | None) -> dict[str, Any]:
    """Decode a base64 service-account JSON and check the fields we need."""
    if not encoded:
        raise ConfigurationMissingError("GA4 service account is not configured.")

    try:
        info = json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigurationMissingError("GA4 service account is not valid base64 JSON.") from exc

    if not isinstance(info, dict) or not info.get("client_email") or not info.get("private_key"):
        raise ConfigurationMissingError("GA4 service account credentials are incomplete.")
    return info
