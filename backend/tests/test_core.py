"""Unit tests for configuration, logging and the upstream adapters."""

import base64
import json
import logging
from datetime import timedelta
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from pageflow.analytics.sessions import ContinuationRule
from pageflow.clients.base import ReportRequest, decode_service_account
from pageflow.clients.factory import build_sources
from pageflow.clients.reporting import build_run_report_request, convert_report
from pageflow.clients.warehouse import BigQueryWarehouseClient, to_query_parameter
from pageflow.core.config import Settings, setup_logging
from pageflow.core.exceptions import ConfigurationMissingError, UpstreamError
from pageflow.services.dashboard_service import build_cache, build_engine


def encode(info: dict) -> str:
    return base64.b64encode(json.dumps(info).encode()).decode()


class TestSettings:
    """Tests for settings validation."""

    def test_defaults(self, test_settings: Settings):
        assert test_settings.utc_offset == timedelta(hours=9)
        assert test_settings.TRACKED_PAGE_PATHS[0] == "/"
        assert test_settings.DROPOFF_CONTINUATION is ContinuationRule.ANY_LATER_TRACKED_PAGE
        assert not test_settings.warehouse_configured

    def test_tracked_pages_are_normalized(self):
        settings = Settings(_env_file=None, TRACKED_PAGE_PATHS=["/pricing/", "/pricing", " /login "])
        assert settings.TRACKED_PAGE_PATHS == ["/pricing", "/login"]

    def test_tracked_pages_required(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, TRACKED_PAGE_PATHS=[])

    @pytest.mark.parametrize("offset", [15, -15])
    def test_offset_range(self, offset: int):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, REPORT_UTC_OFFSET_HOURS=offset)

    @pytest.mark.parametrize("field", ["PAGE_LIMIT", "FLOW_LIMIT", "SUMMARY_CACHE_MAX_ENTRIES"])
    def test_limits_must_be_positive(self, field: str):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_continuation_rule_from_string(self):
        settings = Settings(_env_file=None, DROPOFF_CONTINUATION="next_view")
        assert settings.DROPOFF_CONTINUATION is ContinuationRule.NEXT_VIEW_TRACKED

    def test_warehouse_needs_all_identifiers(self):
        partial = Settings(_env_file=None, GA4_BIGQUERY_PROJECT_ID="demo", GA4_BIGQUERY_DATASET="analytics")
        assert not partial.warehouse_configured

    def test_engine_and_cache_follow_settings(self):
        settings = Settings(_env_file=None, FLOW_LIMIT=3, PAGE_LIMIT=4, REPORT_UTC_OFFSET_HOURS=0)
        engine = build_engine(settings)
        assert (engine.flow_limit, engine.page_limit) == (3, 4)
        assert engine.utc_offset == timedelta(0)
        assert engine.tracked_pages == tuple(settings.TRACKED_PAGE_PATHS)
        assert len(build_cache(settings)) == 0


def test_setup_logging_quiets_third_party_loggers():
    setup_logging()
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
    assert logging.getLogger("urllib3").level == logging.WARNING


class TestServiceAccount:
    def test_decode(self):
        info = {"client_email": "svc@demo.iam.gserviceaccount.com", "private_key": "key"}
        assert decode_service_account(encode(info)) == info

    @pytest.mark.parametrize(
        "encoded",
        [None, "", "not base64 !!!", base64.b64encode(b"not json").decode(), encode({"client_email": "x"})],
    )
    def test_invalid(self, encoded):
        with pytest.raises(ConfigurationMissingError):
            decode_service_account(encoded)


class TestBuildSources:
    def test_nothing_configured(self, test_settings: Settings):
        sources = build_sources(test_settings)
        assert not sources.reporting_enabled
        assert not sources.warehouse_enabled

    def test_warehouse_only(self):
        settings = Settings(
            _env_file=None,
            GA4_BIGQUERY_PROJECT_ID="demo-project",
            GA4_BIGQUERY_DATASET="analytics_123",
            GA4_BIGQUERY_LOCATION="asia-northeast1",
            UPSTREAM_TIMEOUT_SECONDS=12.0,
        )
        sources = build_sources(settings)

        assert sources.warehouse_enabled
        assert not sources.reporting_enabled
        assert isinstance(sources.warehouse, BigQueryWarehouseClient)
        assert sources.warehouse_target.location == "asia-northeast1"
        assert sources.timeout_seconds == 12.0

    def test_property_without_credentials_is_not_ready(self):
        """Test reporting readiness comes from the built sources alone."""
        settings = Settings(_env_file=None, GA4_PROPERTY_ID="123456789")

        assert not build_sources(settings).reporting_enabled
        assert not hasattr(settings, "reporting_configured")

    def test_invalid_credentials_disable_reporting(self, caplog):
        settings = Settings(
            _env_file=None,
            GA4_PROPERTY_ID="123456789",
            GA4_SERVICE_ACCOUNT_JSON_BASE64="garbage",
        )
        with caplog.at_level(logging.WARNING, logger="pageflow.clients.factory"):
            sources = build_sources(settings)

        assert not sources.reporting_enabled
        assert "Ignoring GA4 service account" in caplog.text

    def test_cache_key_includes_identifiers(self):
        settings = Settings(
            _env_file=None,
            GA4_BIGQUERY_PROJECT_ID="demo-project",
            GA4_BIGQUERY_DATASET="analytics_123",
            GA4_BIGQUERY_LOCATION="US",
        )
        key = build_sources(settings).cache_key("page-flow", "7d")
        assert key == ":demo-project:analytics_123:US:page-flow:7d"


class TestQueryParameters:
    @pytest.mark.parametrize(
        "value,expected",
        [("20260310", "STRING"), (3, "INT64"), (1.5, "FLOAT64"), (True, "BOOL")],
    )
    def test_scalar(self, value, expected):
        param = to_query_parameter("p", value)
        assert param.name == "p"
        assert param.type_ == expected
        assert param.value == value

    def test_array(self):
        param = to_query_parameter("pages", ["/", "/pricing"])
        assert param.array_type == "STRING"
        assert param.values == ["/", "/pricing"]

    def test_unsupported(self):
        with pytest.raises(TypeError):
            to_query_parameter("p", object())


class TestReportRequests:
    def test_build_run_report_request(self):
        request = build_run_report_request(
            ReportRequest(
                property_id="123456789",
                start_date="2026-03-03",
                end_date="2026-03-10",
                dimensions=["pagePath", "pageTitle"],
                metrics=["screenPageViews", "activeUsers"],
                order_by_metric="screenPageViews",
                limit=8,
            )
        )
        assert request.property == "properties/123456789"
        assert request.date_ranges[0].start_date == "2026-03-03"
        assert request.date_ranges[0].end_date == "2026-03-10"
        assert [d.name for d in request.dimensions] == ["pagePath", "pageTitle"]
        assert [m.name for m in request.metrics] == ["screenPageViews", "activeUsers"]
        assert request.order_bys[0].metric.metric_name == "screenPageViews"
        assert request.order_bys[0].desc is True
        assert request.limit == 8

    def test_convert_report(self):
        request = ReportRequest("1", "2026-03-03", "2026-03-10", ["pagePath"], ["sessions", "activeUsers"])
        response = SimpleNamespace(
            rows=[
                SimpleNamespace(
                    dimension_values=[SimpleNamespace(value="/")],
                    metric_values=[SimpleNamespace(value="7"), SimpleNamespace(value="4")],
                )
            ]
        )
        converted = convert_report(request, response)
        assert converted.rows[0].dimension(0) == "/"
        assert converted.rows[0].metric(1) == "4"
        assert converted.rows[0].metric(2) is None

    def test_convert_report_rejects_mismatched_rows(self):
        request = ReportRequest("1", "2026-03-03", "2026-03-10", ["pagePath"], ["sessions"])
        response = SimpleNamespace(
            rows=[SimpleNamespace(dimension_values=[], metric_values=[SimpleNamespace(value="1")])]
        )
        with pytest.raises(UpstreamError):
            convert_report(request, response)
