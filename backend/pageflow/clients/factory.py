import logging

from pageflow.clients.base import UpstreamSources, WarehouseTarget, decode_service_account
from pageflow.core.config import Settings
from pageflow.core.exceptions import ConfigurationMissingError

logger = logging.getLogger(__name__)


def build_sources(settings: Settings) -> UpstreamSources:
    """Construct the upstream clients that the configuration allows.

    Missing identifiers leave a source out of the bundle; the resolvers then
    report ``disabled`` with setup guidance instead of failing.
    """
    credentials_info = None
    if settings.GA4_SERVICE_ACCOUNT_JSON_BASE64:
        try:
            credentials_info = decode_service_account(settings.GA4_SERVICE_ACCOUNT_JSON_BASE64)
        except ConfigurationMissingError as exc:
            logger.warning("Ignoring GA4 service account: %s", exc)

    reporting = None
    if settings.GA4_PROPERTY_ID and credentials_info:
        from pageflow.clients.reporting import Ga4ReportingClient

        reporting = Ga4ReportingClient(credentials_info)
    else:
        logger.info("GA4 Data API not configured; whole-day reports disabled")

    warehouse = None
    target = None
    if settings.warehouse_configured:
        from pageflow.clients.warehouse import BigQueryWarehouseClient

        target = WarehouseTarget(
            project_id=settings.GA4_BIGQUERY_PROJECT_ID,  # type: ignore[arg-type]
            dataset_id=settings.GA4_BIGQUERY_DATASET,  # type: ignore[arg-type]
            location=settings.GA4_BIGQUERY_LOCATION,  # type: ignore[arg-type]
        )
        warehouse = BigQueryWarehouseClient(target.project_id, credentials_info)
    else:
        logger.info("GA4 BigQuery export not configured; rolling windows and page flow disabled")

    return UpstreamSources(
        reporting=reporting,
        property_id=settings.GA4_PROPERTY_ID,
        warehouse=warehouse,
        warehouse_target=target,
        timeout_seconds=settings.UPSTREAM_TIMEOUT_SECONDS,
    )
