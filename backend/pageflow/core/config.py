import logging
import sys
from datetime import timedelta
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pageflow.analytics.sessions import ContinuationRule, normalize_page_path

DEFAULT_TRACKED_PAGE_PATHS = [
    "/",
    "/pricing",
    "/login",
    "/signup",
    "/coordinate",
    "/my-page",
    "/my-page/credits",
    "/my-page/credits/purchase",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Project
    PROJECT_NAME: str = "Pageflow Analytics"
    VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # CORS - empty by default, must be explicitly configured
    CORS_ORIGINS: list[str] = []

    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = 60

    # Logging
    LOG_LEVEL: str = "INFO"

    # GA4 Data API (whole-day reports)
    GA4_PROPERTY_ID: str | None = None
    GA4_SERVICE_ACCOUNT_JSON_BASE64: str | None = None

    # GA4 BigQuery export (rolling windows, page flow)
    GA4_BIGQUERY_PROJECT_ID: str | None = None
    GA4_BIGQUERY_DATASET: str | None = None
    GA4_BIGQUERY_LOCATION: str | None = None

    # Aggregation
    TRACKED_PAGE_PATHS: list[str] = DEFAULT_TRACKED_PAGE_PATHS
    REPORT_UTC_OFFSET_HOURS: int = 9  # fixed offset, no DST
    PAGE_LIMIT: int = 8
    FLOW_LIMIT: int = 10
    DROPOFF_CONTINUATION: ContinuationRule = ContinuationRule.ANY_LATER_TRACKED_PAGE

    # Cache / upstream
    SUMMARY_CACHE_MAX_ENTRIES: int = 16
    SUMMARY_CACHE_TTL_SECONDS: float = 300.0
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0

    @field_validator("REPORT_UTC_OFFSET_HOURS")
    @classmethod
    def validate_offset(cls, v: int) -> int:
        if not -14 <= v <= 14:
            raise ValueError("REPORT_UTC_OFFSET_HOURS must be between -14 and 14")
        return v

    @field_validator("TRACKED_PAGE_PATHS")
    @classmethod
    def validate_tracked_pages(cls, v: list[str]) -> list[str]:
        normalized: list[str] = []
        for path in v:
            canonical = normalize_page_path(path)
            if canonical not in normalized:
                normalized.append(canonical)
        if not normalized:
            raise ValueError("TRACKED_PAGE_PATHS must contain at least one path")
        return normalized

    @field_validator("PAGE_LIMIT", "FLOW_LIMIT", "SUMMARY_CACHE_MAX_ENTRIES")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def warehouse_configured(self) -> bool:
        return bool(
            self.GA4_BIGQUERY_PROJECT_ID
            and self.GA4_BIGQUERY_DATASET
            and self.GA4_BIGQUERY_LOCATION
        )

    @property
    def utc_offset(self) -> timedelta:
        return timedelta(hours=self.REPORT_UTC_OFFSET_HOURS)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


def setup_logging() -> None:
    """Configure structured logging for the application."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(
        logging.INFO if settings.DEBUG else logging.WARNING
    )
