"""BigQuery client for the GA4 event export."""

import asyncio
import logging
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

from google.api_core.exceptions import NotFound
from google.cloud import bigquery
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

_SCALAR_TYPES: tuple[tuple[type, str], ...] = (
    # bool before int: bool is an int subclass
    (bool, "BOOL"),
    (int, "INT64"),
    (float, "FLOAT64"),
    (datetime, "TIMESTAMP"),
    (date, "DATE"),
    (str, "STRING"),
)


def _scalar_type(value: Any) -> str:
    for python_type, bigquery_type in _SCALAR_TYPES:
        if isinstance(value, python_type):
            return bigquery_type
    raise TypeError(f"Unsupported query parameter type: {type(value).__name__}")


def to_query_parameter(
    name: str, value: Any
) -> bigquery.ScalarQueryParameter | bigquery.ArrayQueryParameter:
    """Bind a Python value as a named BigQuery parameter."""
    if isinstance(value, Sequence) and not isinstance(value, str):
        items = list(value)
        element_type = _scalar_type(items[0]) if items else "STRING"
        return bigquery.ArrayQueryParameter(name, element_type, items)
    return bigquery.ScalarQueryParameter(name, _scalar_type(value), value)


class BigQueryWarehouseClient:
    """Runs parameterized queries and metadata lookups in one GCP project."""

    def __init__(self, project_id: str, credentials_info: dict[str, Any] | None = None):
        self.project_id = project_id
        self._credentials = (
            service_account.Credentials.from_service_account_info(credentials_info)
            if credentials_info
            else None
        )
        self._client: bigquery.Client | None = None

    def _get_client(self) -> bigquery.Client:
        if self._client is None:
            self._client = bigquery.Client(project=self.project_id, credentials=self._credentials)
        return self._client

    async def table_exists(self, dataset_id: str, table_id: str) -> bool:
        return await asyncio.to_thread(self._table_exists, dataset_id, table_id)

    async def query(
        self, sql: str, params: dict[str, Any], location: str
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._query, sql, params, location)

    def _table_exists(self, dataset_id: str, table_id: str) -> bool:
        try:
            self._get_client().get_table(f"{self.project_id}.{dataset_id}.{table_id}")
        except NotFound:
            return False
        return True

    def _query(self, sql: str, params: dict[str, Any], location: str) -> list[dict[str, Any]]:
        job_config = bigquery.QueryJobConfig(
            query_parameters=[to_query_parameter(name, value) for name, value in params.items()]
        )
        job = self._get_client().query(sql, job_config=job_config, location=location)
        rows = [dict(row.items()) for row in job.result()]
        logger.debug("BigQuery job %s returned %d rows", job.job_id, len(rows))
        return rows
