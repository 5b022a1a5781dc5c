"""Tests for sciflow.rails.solana - USDC on Solana."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from sciflow.core.exceptions import RailVerificationError
from sciflow.core.models import RailName
from sciflow.rails.base import DepositStatus
from sciflow.rails.solana import SolanaUsdcRail, received_by

MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
PLATFORM = "PLATFORMwa11etXXXXXXXXXXXXXXXXXXXXXXXXXXXX"
LAB_WALLET = "LabWa11et1111111111111111111111111111111111"


def _balance(index: int, amount: str, owner: str = PLATFORM, mint: str = MINT) -> dict:
    return {"accountIndex": index, "mint": mint, "owner": owner, "uiTokenAmount": {"uiAmountString": amount}}


def _tx(pre: list[dict], post: list[dict], err=None) -> dict:
    return {"meta": {"err": err, "preTokenBalances": pre, "postTokenBalances": post}}


@pytest.fixture
def custody():
    client = AsyncMock()
    client.send.return_value = "5ignature"
    return client


@pytest.fixture
def rail(rail_settings, custody):
    return SolanaUsdcRail(rail_settings, custody=custody)


class TestReceivedBy:
    def test_balance_delta(self):
        meta = _tx([_balance(2, "100")], [_balance(2, "1150")])["meta"]
        assert received_by(meta, MINT, PLATFORM) == Decimal("1050")

    def test_new_token_account(self):
        meta = _tx([], [_balance(3, "1050")])["meta"]
        assert received_by(meta, MINT, PLATFORM) == Decimal("1050")

    def test_other_owner_and_mint_ignored(self):
        meta = _tx([], [_balance(1, "1050", owner="someone"), _balance(2, "1050", mint="other")])["meta"]
        assert received_by(meta, MINT, PLATFORM) == 0

    def test_float_fallback(self):
        meta = {"postTokenBalances": [{"accountIndex": 0, "mint": MINT, "owner": PLATFORM, "uiTokenAmount": {"uiAmount": 12.5}}]}
        assert received_by(meta, MINT, PLATFORM) == Decimal("12.5")


class TestVerifyDeposit:
    async def test_success(self, rail):
        rail._rpc = AsyncMock(return_value=_tx([_balance(2, "0")], [_balance(2, "1050")]))

        result = await rail.verify_deposit("sig123", Decimal("1050"))

        assert result.status == DepositStatus.SUCCESS
        method, params = rail._rpc.call_args[0]
        assert method == "getTransaction"
        assert params[1]["encoding"] == "jsonParsed"

    async def test_pending(self, rail):
        rail._rpc = AsyncMock(return_value=None)
        assert (await rail.verify_deposit("sig123", Decimal("1050"))).status == DepositStatus.PENDING

    async def test_failed_transaction(self, rail):
        rail._rpc = AsyncMock(return_value=_tx([], [_balance(2, "1050")], err={"InstructionError": [0, "Custom"]}))
        assert (await rail.verify_deposit("sig123", Decimal("1050"))).status == DepositStatus.MISMATCH

    async def test_underpaid(self, rail):
        rail._rpc = AsyncMock(return_value=_tx([], [_balance(2, "900")]))

        result = await rail.verify_deposit("sig123", Decimal("1050"))

        assert result.status == DepositStatus.MISMATCH
        assert result.received_amount == Decimal("900")


class TestPayouts:
    async def test_release(self, rail, custody, make_escrow):
        receipt = await rail.release_portion(make_escrow(RailName.SOLANA_USDC), "m-2", Decimal("630"), LAB_WALLET)

        custody.send.assert_awaited_once_with("solana", MINT, LAB_WALLET, Decimal("630"), "release:esc-1:m-2", "solana_usdc")
        assert receipt.rail == RailName.SOLANA_USDC

    async def test_invalid_recipient(self, rail, make_escrow):
        with pytest.raises(RailVerificationError):
            await rail.release_portion(make_escrow(RailName.SOLANA_USDC), "m-2", Decimal("1"), "short")

    async def test_instructions_carry_memo(self, rail):
        instruction = await rail.initialize_deposit("b-7", LAB_WALLET, Decimal("100"))
        assert instruction.instructions["memo"] == "sciflow:b-7"
        assert instruction.deposit_reference == PLATFORM
