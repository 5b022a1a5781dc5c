"""Server-specific test fixtures.

The root ``settings`` fixture is overridden with ServerSettings, so the
shared ``rail``, ``engine`` and ``flow`` fixtures drive the same ledger the
HTTP app serves.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from decimal import Decimal

import pytest
from starlette.testclient import TestClient

from sciflow.core.identity import Principal
from sciflow.server.app import create_app
from sciflow.server.auth import create_access_token
from sciflow.server.config import ServerSettings, clear_settings_cache
from sciflow.server.rate_limit import MemoryCounterStore

JWT_SECRET = "test-jwt-secret-for-testing-must-be-at-least-32-chars"
WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def clean_server_settings():
    """Reset the global server settings between tests."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings(clean_env) -> ServerSettings:
    return ServerSettings(
        jwt_secret=JWT_SECRET,
        stripe_webhook_secret=WEBHOOK_SECRET,
        enabled_rails="base_usdc",
        storage_backend="memory",
        rate_limit_rpm=1000,
        platform_fee_percent=Decimal("5"),
        stake_lock_percent=Decimal("10"),
        rail_backoff_seconds=0.0,
        rail_max_attempts=3,
        commit_max_attempts=3,
    )


@pytest.fixture
def counter_store() -> MemoryCounterStore:
    return MemoryCounterStore()


@pytest.fixture
def app(settings, engine, counter_store):
    return create_app(settings=settings, engine=engine, counter_store=counter_store)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Test client running the app lifespan on one event loop."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(settings) -> Callable[[Principal], dict[str, str]]:
    """Build an Authorization header for a principal."""

    def _headers(principal: Principal) -> dict[str, str]:
        roles = [c.value for c in principal.capabilities]
        token = create_access_token(principal.principal_id, roles, settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers
