"""Tests for sciflow.rails.evm - USDC on Base."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from sciflow.core.config import CoreSettings
from sciflow.core.exceptions import RailUnavailable, RailVerificationError
from sciflow.core.models import RailName
from sciflow.rails.base import DepositStatus
from sciflow.rails.evm import TRANSFER_TOPIC, BaseUsdcRail, topic_to_address

USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
PLATFORM = "0x" + "ee" * 20
SENDER = "0x" + "cd" * 20


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


def _transfer_log(amount_units: int, to: str = PLATFORM, token: str = USDC) -> dict:
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, _topic(SENDER), _topic(to)],
        "data": hex(amount_units),
    }


def _receipt(*logs: dict, status: str = "0x1") -> dict:
    return {"status": status, "logs": list(logs)}


@pytest.fixture
def custody():
    client = AsyncMock()
    client.send.return_value = "0xtxhash"
    return client


@pytest.fixture
def rail(rail_settings, custody):
    return BaseUsdcRail(rail_settings, custody=custody)


class TestHelpers:
    def test_topic_to_address(self):
        assert topic_to_address(_topic("0x" + "AB" * 20)) == "0x" + "ab" * 20


class TestInitializeDeposit:
    async def test_instructions(self, rail):
        instruction = await rail.initialize_deposit("b-1", SENDER, Decimal("1000"))

        assert instruction.deposit_reference == PLATFORM
        assert instruction.expected_amount == Decimal("1050")
        assert instruction.instructions["chain_id"] == 8453
        assert instruction.instructions["token_contract"] == USDC
        assert instruction.instructions["amount"] == "1050.000000"

    async def test_requires_deposit_address(self, clean_env):
        with pytest.raises(RailUnavailable):
            await BaseUsdcRail(CoreSettings()).initialize_deposit("b-1", SENDER, Decimal("10"))


class TestVerifyDeposit:
    """Deposits are read from the receipt's Transfer logs."""

    async def test_exact_transfer(self, rail):
        rail._rpc = AsyncMock(return_value=_receipt(_transfer_log(1_050_000_000)))

        result = await rail.verify_deposit("0xdeposit", Decimal("1050"))

        assert result.status == DepositStatus.SUCCESS
        assert result.received_amount == Decimal("1050")
        rail._rpc.assert_awaited_once_with("eth_getTransactionReceipt", ["0xdeposit"])

    async def test_within_tolerance(self, rail):
        rail._rpc = AsyncMock(return_value=_receipt(_transfer_log(1_049_500_000)))
        assert (await rail.verify_deposit("0xdeposit", Decimal("1050"))).ok

    async def test_short_payment(self, rail):
        rail._rpc = AsyncMock(return_value=_receipt(_transfer_log(1_000_000_000)))

        result = await rail.verify_deposit("0xdeposit", Decimal("1050"))

        assert result.status == DepositStatus.MISMATCH
        assert result.received_amount == Decimal("1000")

    async def test_split_transfers_are_summed(self, rail):
        rail._rpc = AsyncMock(return_value=_receipt(_transfer_log(50_000_000), _transfer_log(1_000_000_000)))
        assert (await rail.verify_deposit("0xdeposit", Decimal("1050"))).ok

    @pytest.mark.parametrize(
        "log",
        [
            _transfer_log(1_050_000_000, to=SENDER),
            _transfer_log(1_050_000_000, token="0x" + "11" * 20),
        ],
    )
    async def test_other_transfers_ignored(self, rail, log):
        rail._rpc = AsyncMock(return_value=_receipt(log))
        result = await rail.verify_deposit("0xdeposit", Decimal("1050"))
        assert result.status == DepositStatus.MISMATCH
        assert result.received_amount is None

    async def test_not_mined(self, rail):
        rail._rpc = AsyncMock(return_value=None)
        assert (await rail.verify_deposit("0xdeposit", Decimal("1050"))).status == DepositStatus.PENDING

    async def test_reverted(self, rail):
        rail._rpc = AsyncMock(return_value=_receipt(_transfer_log(1_050_000_000), status="0x0"))
        result = await rail.verify_deposit("0xdeposit", Decimal("1050"))
        assert result.detail == "Transaction reverted"

    async def test_rpc_error(self, rail, http_session):
        session = http_session(200, {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "busy"}})
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(RailUnavailable):
                await rail.verify_deposit("0xdeposit", Decimal("1050"))

        payload = session.post.call_args[1]["json"]
        assert payload["method"] == "eth_getTransactionReceipt"


class TestPayouts:
    async def test_release_through_custody(self, rail, custody, make_escrow):
        receipt = await rail.release_portion(make_escrow(RailName.BASE_USDC), "m-1", Decimal("270"), "0x" + "ab" * 20)

        custody.send.assert_awaited_once_with("base", USDC, "0x" + "ab" * 20, Decimal("270"), "release:esc-1:m-1", "base_usdc")
        assert receipt.reference == "0xtxhash"

    async def test_refund_goes_to_payer(self, rail, custody, make_escrow):
        await rail.refund(make_escrow(RailName.BASE_USDC), Decimal("730"), "dispute")
        assert custody.send.call_args[0][2] == "0x" + "cd" * 20
        assert custody.send.call_args[0][4] == "refund:esc-1:dispute"

    @pytest.mark.parametrize("recipient", ["", "ab" * 21, "0x1234"])
    async def test_invalid_address(self, rail, custody, make_escrow, recipient):
        with pytest.raises(RailVerificationError):
            await rail.release_portion(make_escrow(RailName.BASE_USDC), "m-1", Decimal("1"), recipient)
        custody.send.assert_not_awaited()
