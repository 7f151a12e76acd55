"""GA4 Data API reporting client."""

import logging
from typing import Any

from google.analytics.data_v1beta import BetaAnalyticsDataAsyncClient
from google.analytics.data_v1beta.types import (
    DateRange,
    Dimension,
    Metric,
    OrderBy,
    RunReportRequest,
)
from google.oauth2 import service_account

from pageflow.clients.base import ReportRequest, ReportResponse, ReportRow
from pageflow.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


def build_run_report_request(request: ReportRequest) -> RunReportRequest:
    order_bys = []
    if request.order_by_metric:
        order_bys.append(
            OrderBy(
                metric=OrderBy.MetricOrderBy(metric_name=request.order_by_metric),
                desc=request.descending,
            )
        )

    return RunReportRequest(
        property=f"properties/{request.property_id}",
        date_ranges=[DateRange(start_date=request.start_date, end_date=request.end_date)],
        dimensions=[Dimension(name=name) for name in request.dimensions],
        metrics=[Metric(name=name) for name in request.metrics],
        order_bys=order_bys,
        limit=request.limit,
        keep_empty_rows=False,
        return_property_quota=True,
    )


def convert_report(request: ReportRequest, response: Any) -> ReportResponse:
    """Turn a ``RunReportResponse`` into plain rows, checking its shape."""
    rows = []
    for row in response.rows:
        dimension_values = [value.value for value in row.dimension_values]
        metric_values = [value.value for value in row.metric_values]
        if len(dimension_values) != len(request.dimensions) or len(metric_values) != len(
            request.metrics
        ):
            raise UpstreamError(
                "GA4 report row does not match the requested dimensions and metrics",
                details=f"got {len(dimension_values)}/{len(metric_values)} values",
            )
        rows.append(ReportRow(dimension_values=dimension_values, metric_values=metric_values))
    return ReportResponse(rows=rows)


class Ga4ReportingClient:
    """Runs whole-day reports against a GA4 property.

    The underlying async gRPC client is created on first use so that it binds
    to the running event loop rather than the one active at import time.
    """

    def __init__(self, credentials_info: dict[str, Any]):
        self._credentials = service_account.Credentials.from_service_account_info(
            credentials_info
        )
        self._client: BetaAnalyticsDataAsyncClient | None = None

    def _get_client(self) -> BetaAnalyticsDataAsyncClient:
        if self._client is None:
            self._client = BetaAnalyticsDataAsyncClient(credentials=self._credentials)
        return self._client

    async def run_report(self, request: ReportRequest) -> ReportResponse:
        response = await self._get_client().run_report(
            request=build_run_report_request(request)
        )
        if response.property_quota:
            logger.debug("GA4 property quota: %s", response.property_quota)
        return convert_report(request, response)
