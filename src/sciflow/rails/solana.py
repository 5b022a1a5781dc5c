# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""USDC on Solana.

A deposit is verified from the jsonParsed transaction: the platform
wallet's USDC token balance after the transaction minus before it.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import aiohttp

from ..core.exceptions import RailUnavailable, RailVerificationError
from ..core.models import Escrow, RailName, to_money
from .base import (
    DepositInstruction,
    DepositStatus,
    DepositVerification,
    PaymentRail,
    RailReceipt,
    fee_breakdown,
    read_json,
    within_tolerance,
)
from .custody import CustodyClient

logger = logging.getLogger(__name__)


def _ui_amount(balance: dict[str, Any]) -> Decimal:
    token_amount = balance.get("uiTokenAmount", {})
    value = token_amount.get("uiAmountString")
    if value is None:
        value = token_amount.get("uiAmount") or 0
    return Decimal(str(value))


def received_by(meta: dict[str, Any], mint: str, owner: str) -> Decimal:
    """Net token balance change of ``owner`` for ``mint`` in one transaction."""
    pre = {
        b.get("accountIndex"): _ui_amount(b)
        for b in meta.get("preTokenBalances", [])
        if b.get("mint") == mint and b.get("owner") == owner
    }
    received = Decimal(0)
    for balance in meta.get("postTokenBalances", []):
        if balance.get("mint") != mint or balance.get("owner") != owner:
            continue
        received += _ui_amount(balance) - pre.get(balance.get("accountIndex"), Decimal(0))
    return received


class SolanaUsdcRail(PaymentRail):
    name = RailName.SOLANA_USDC

    def __init__(self, *args: Any, custody: CustodyClient | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.custody = custody or CustodyClient(
            self.config.custody_api_url, self.config.custody_api_key, self.policy.timeout_seconds
        )

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.config.solana_rpc_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.policy.timeout_seconds),
            ) as response:
                if response.status != 200:
                    raise RailUnavailable(f"Solana RPC returned HTTP {response.status}", rail=self.name.value)
                body = await read_json(response, self.name.value, "RPC node")
        if body.get("error"):
            raise RailUnavailable(f"Solana RPC error: {body['error']}", rail=self.name.value)
        return body.get("result")

    async def initialize_deposit(self, bounty_id: str, payer_identity: str, amount: Decimal) -> DepositInstruction:
        if not self.config.solana_deposit_address:
            raise RailUnavailable("Solana deposit address is not configured", rail=self.name.value)
        total, fee = fee_breakdown(amount, self.config.platform_fee_percent)
        return DepositInstruction(
            rail=self.name,
            deposit_reference=self.config.solana_deposit_address,
            expected_amount=total,
            platform_fee=fee,
            currency=self.currency,
            instructions={
                "network": "solana",
                "mint": self.config.solana_usdc_mint,
                "deposit_address": self.config.solana_deposit_address,
                "amount": str(total),
                "memo": f"sciflow:{bounty_id}",
                "from": payer_identity,
            },
        )

    async def verify_deposit(self, reference: str, expected_amount: Decimal) -> DepositVerification:
        tx = await self._retrying(
            "fetch transaction",
            lambda: self._rpc(
                "getTransaction",
                [reference, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"}],
            ),
        )
        if tx is None:
            return DepositVerification(DepositStatus.PENDING, None, reference, "Transaction not yet confirmed")

        meta = tx.get("meta") or {}
        if meta.get("err"):
            return DepositVerification(DepositStatus.MISMATCH, None, reference, "Transaction failed on chain")

        received = received_by(meta, self.config.solana_usdc_mint, self.config.solana_deposit_address)
        if received <= 0:
            return DepositVerification(DepositStatus.MISMATCH, None, reference, "No USDC transfer to the platform wallet")
        received = to_money(received)
        if within_tolerance(received, expected_amount, self.config.deposit_tolerance_bps, self.config.deposit_tolerance_cap):
            return DepositVerification(DepositStatus.SUCCESS, received, reference)
        return DepositVerification(
            DepositStatus.MISMATCH, received, reference, f"Received {received} USDC, expected {to_money(expected_amount)}"
        )

    async def _send(self, recipient: str, amount: Decimal, key: str, description: str) -> RailReceipt:
        if not recipient or not 32 <= len(recipient) <= 44:
            raise RailVerificationError(f"Invalid Solana address: {recipient!r}", rail=self.name.value)
        tx = await self._retrying(
            description,
            lambda: self.custody.send("solana", self.config.solana_usdc_mint, recipient, to_money(amount), key, self.name.value),
        )
        return RailReceipt(self.name, tx, to_money(amount))

    async def release_portion(self, escrow: Escrow, release_key: str, amount: Decimal, recipient: str) -> RailReceipt:
        return await self._send(recipient, amount, f"release:{escrow.id}:{release_key}", "release payout")

    async def refund(self, escrow: Escrow, amount: Decimal, refund_key: str) -> RailReceipt:
        return await self._send(escrow.payer_identity, amount, f"refund:{escrow.id}:{refund_key}", "refund funder")
