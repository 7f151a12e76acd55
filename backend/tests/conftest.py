import os
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

# Make sure no real upstream configuration leaks into the tests
for _name in (
    "GA4_PROPERTY_ID",
    "GA4_SERVICE_ACCOUNT_JSON_BASE64",
    "GA4_BIGQUERY_PROJECT_ID",
    "GA4_BIGQUERY_DATASET",
    "GA4_BIGQUERY_LOCATION",
):
    os.environ.pop(_name, None)

from fakes import NOW, FakeReportingClient, FakeWarehouseClient, make_sources  # noqa: E402

from pageflow.core.cache import RequestCoalescingCache  # noqa: E402
from pageflow.core.config import Settings  # noqa: E402
from pageflow.services.dashboard_service import create_dashboard_service  # noqa: E402


@pytest.fixture(autouse=True)
def disable_rate_limit():
    from pageflow.core.limiter import limiter

    # Disable rate limiting in tests
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def cache() -> RequestCoalescingCache:
    return RequestCoalescingCache(maxsize=16, ttl=300)


@pytest.fixture
def reporting() -> FakeReportingClient:
    return FakeReportingClient()


@pytest.fixture
def warehouse() -> FakeWarehouseClient:
    return FakeWarehouseClient()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_service(test_settings: Settings, cache: RequestCoalescingCache, clock):
    """Build a dashboard service around the given fake upstreams."""

    def _make(reporting=None, warehouse=None, **kwargs):
        sources = make_sources(reporting=reporting, warehouse=warehouse, **kwargs)
        return create_dashboard_service(test_settings, sources, cache=cache, clock=clock)

    return _make


@pytest.fixture
async def client(make_service, reporting, warehouse) -> AsyncGenerator[AsyncClient, None]:
    from pageflow.main import app

    service = make_service(reporting=reporting, warehouse=warehouse)
    # The ASGI transport does not run the lifespan, so attach state directly
    app.state.sources = service.summary.sources
    app.state.dashboard_service = service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    del app.state.dashboard_service
    del app.state.sources
