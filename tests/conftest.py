import pytest
from unittest.mock import Mock, AsyncMock
from fastapi.testclient import TestClient
from datetime import datetime, timezone
import os
import sys
from typing import Generator, List

# Add the parent directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import create_app
from core.config import ServerConfig
from core.rate_limiter import DailyQuotaTracker
from core.tiers import Tier
from providers.upstream_provider import UpstreamProvider
from services.upstream_service import UpstreamService


class FakeClock:
    """Settable clock for crossing day boundaries in tests"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeUpstreamStream:
    """Stands in for UpstreamStream; optionally fails after the given deltas"""

    def __init__(self, deltas: List[str], error: Exception = None):
        self._deltas = deltas
        self._error = error
        self.close = AsyncMock()

    async def deltas(self):
        for delta in self._deltas:
            yield delta
        if self._error is not None:
            raise self._error


@pytest.fixture
def fake_clock():
    """Clock fixed at noon UTC on 2024-03-01."""
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def quota_tracker(fake_clock):
    """Quota tracker with the default limits and a fixed clock."""
    return DailyQuotaTracker(clock=fake_clock)


@pytest.fixture
def stream_factory():
    """Build fake upstream streams."""
    return FakeUpstreamStream


@pytest.fixture
def mock_providers():
    """One mocked upstream provider per tier."""
    providers = {}
    for tier in Tier:
        provider = Mock(spec=UpstreamProvider)
        provider.tier = tier
        provider.base_url = f"https://upstream.test/{tier.value}/v1"
        provider.complete = AsyncMock(return_value="Hello there")
        provider.open_stream = AsyncMock(
            side_effect=lambda *args, **kwargs: FakeUpstreamStream(["Hel", "lo"])
        )
        provider.list_models = AsyncMock(return_value=[])
        providers[tier] = provider
    return providers


@pytest.fixture
def upstream_service(mock_providers):
    """Upstream service backed by the mocked providers."""
    return UpstreamService(mock_providers)


@pytest.fixture
def test_config():
    """Server configuration for tests."""
    return ServerConfig(upstream_api_key="test-key", cors_origins=["http://testserver"])


@pytest.fixture
def app(test_config, upstream_service, quota_tracker):
    """Application wired with the test doubles."""
    return create_app(
        config=test_config,
        upstream_service=upstream_service,
        quota_tracker=quota_tracker,
    )


@pytest.fixture
def test_client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as client:
        yield client
