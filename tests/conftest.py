"""Pytest configuration and fixtures."""
import pytest
from fastapi.testclient import TestClient

from gatekeeper.http import GuardRequest, GuardResponse
from gatekeeper.main import create_app
from gatekeeper.middleware import (
    CSRFGuard,
    HeaderPolicy,
    RateLimiter,
    RateLimiterConfig,
    SecurityPipeline,
)
from gatekeeper.sessions import InMemorySessionStore
from gatekeeper.settings import Settings


class FakeClock:
    """Manually advanced clock for deterministic time-based tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_store(clock):
    """Session store sharing the fake clock."""
    return InMemorySessionStore(timeout_minutes=30, clock=clock)


@pytest.fixture
def rate_limiter(clock):
    """Limiter from the reference scenario: 5 per minute, burst 7, 1 minute block."""
    config = RateLimiterConfig(max_requests=5, window_seconds=60, burst_limit=7, block_minutes=1)
    return RateLimiter(config, clock=clock)


@pytest.fixture
def csrf_guard(session_store):
    return CSRFGuard(session_store)


@pytest.fixture
def pipeline(rate_limiter, csrf_guard):
    return SecurityPipeline(HeaderPolicy(), rate_limiter, csrf_guard)


@pytest.fixture
def authenticated_session(session_store, csrf_guard):
    """A live session carrying a CSRF token."""
    session = session_store.create_session()
    token = csrf_guard.issue_token(session)
    return session, token


@pytest.fixture
def make_request():
    """Factory for GuardRequest objects with sensible defaults."""
    return _make_request


def _make_request(
    method="GET",
    client_host="1.2.3.4",
    headers=None,
    params=None,
    content_type="",
    request_id=None
):
    return GuardRequest(
        method=method,
        path="/orders",
        client_host=client_host,
        headers=headers or {},
        params=params or {},
        content_type=content_type,
        request_id=request_id,
    )


@pytest.fixture
def response():
    return GuardResponse()


@pytest.fixture
def test_settings():
    """Settings with tight limits so HTTP tests hit them quickly."""
    return Settings(
        RATE_LIMIT_MAX_REQUESTS=3,
        RATE_LIMIT_BURST_LIMIT=4,
        RATE_LIMIT_BLOCK_MINUTES=1,
        ADMIN_API_KEY="admin-secret",
        LOG_FORMAT="text",
    )


@pytest.fixture
def app(test_settings):
    return create_app(test_settings)


@pytest.fixture
def client(app):
    """Test client with the application lifespan running."""
    with TestClient(app) as test_client:
        yield test_client
