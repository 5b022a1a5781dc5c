"""Tests for sciflow.rails.custody."""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import patch

import pytest

from sciflow.core.exceptions import RailUnavailable, RailVerificationError
from sciflow.rails.custody import CustodyClient

KEY = "release:esc-1:m-1"


@pytest.fixture
def client():
    return CustodyClient("https://custody.example.org/", "ck_test")


class TestCustodyClient:
    async def test_send(self, client, http_session):
        session = http_session(200, {"success": True, "transaction": "0xtx"})

        with patch("aiohttp.ClientSession", return_value=session):
            tx = await client.send("base", "0xusdc", "0xlab", Decimal("270.000000"), KEY, "base_usdc")

        assert tx == "0xtx"
        url = session.post.call_args[0][0]
        kwargs = session.post.call_args[1]
        assert url == "https://custody.example.org/transfers"
        assert kwargs["json"]["amount"] == "270.000000"
        assert kwargs["headers"]["Idempotency-Key"] == KEY

    async def test_unconfigured(self):
        with pytest.raises(RailUnavailable):
            await CustodyClient("", "").send("base", "0xusdc", "0xlab", Decimal("1"), KEY, "base_usdc")

    async def test_overloaded(self, client, http_session):
        with patch("aiohttp.ClientSession", return_value=http_session(429, {})):
            with pytest.raises(RailUnavailable):
                await client.send("base", "0xusdc", "0xlab", Decimal("1"), KEY, "base_usdc")

    async def test_unreadable_error_body(self, client, http_session):
        session = http_session(400, None)
        session.post.return_value.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(RailUnavailable, match="unreadable"):
                await client.send("base", "0xusdc", "0xlab", Decimal("1"), KEY, "base_usdc")

    @pytest.mark.parametrize(
        ("status", "body", "message"),
        [
            (400, {"error": "insufficient funds"}, "insufficient funds"),
            (200, {"success": False, "errorReason": "blocked address"}, "blocked address"),
            (200, {"success": True}, "no transaction reference"),
        ],
    )
    async def test_refused(self, client, http_session, status, body, message):
        with patch("aiohttp.ClientSession", return_value=http_session(status, body)):
            with pytest.raises(RailVerificationError, match=message) as exc_info:
                await client.send("base", "0xusdc", "0xlab", Decimal("1"), KEY, "base_usdc")
        assert not exc_info.value.retryable
