"""Fixtures for payment rail tests."""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from sciflow.core.config import CoreSettings
from sciflow.core.models import Currency, Escrow, EscrowStatus, RailName


def mock_http_session(status: int = 200, body: Any = None) -> AsyncMock:
    """An aiohttp.ClientSession stand-in whose request/post return one response."""
    response = AsyncMock()
    response.status = status
    response.json = AsyncMock(return_value=body)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)

    session = AsyncMock()
    session.post = MagicMock(return_value=response)
    session.request = MagicMock(return_value=response)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    return session


@pytest.fixture
def http_session():
    """Factory fixture for mock_http_session."""
    return mock_http_session


@pytest.fixture
def rail_settings() -> CoreSettings:
    return CoreSettings(
        platform_fee_percent=Decimal("5"),
        rail_backoff_seconds=0.0,
        rail_max_attempts=2,
        rail_timeout_seconds=1.0,
        stripe_secret_key="sk_test_123",
        base_deposit_address="0x" + "EE" * 20,
        solana_deposit_address="PLATFORMwa11etXXXXXXXXXXXXXXXXXXXXXXXXXXXX",
        custody_api_url="https://custody.example.org",
        custody_api_key="ck_test",
    )


@pytest.fixture
def make_escrow():
    def factory(rail: RailName, **kwargs: Any) -> Escrow:
        defaults: dict[str, Any] = {
            "id": "esc-1",
            "bounty_id": "b-1",
            "rail": rail,
            "currency": Currency.USD if rail == RailName.CARD else Currency.USDC,
            "budget": Decimal("1000"),
            "total_amount": Decimal("1050"),
            "platform_fee": Decimal("50"),
            "payer_identity": "0x" + "cd" * 20,
            "status": EscrowStatus.LOCKED,
            "deposit_reference": "pi_123",
        }
        defaults.update(kwargs)
        return Escrow(**defaults)

    return factory
