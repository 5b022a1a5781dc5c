# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""USDC on Base.

Deposits are ERC-20 transfers to the platform wallet, verified from the
transaction receipt's Transfer logs. Payouts and refunds go through the
custody service.
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

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
USDC_DECIMALS = 6


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class BaseUsdcRail(PaymentRail):
    name = RailName.BASE_USDC

    def __init__(self, *args: Any, custody: CustodyClient | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.custody = custody or CustodyClient(
            self.config.custody_api_url, self.config.custody_api_key, self.policy.timeout_seconds
        )

    @property
    def deposit_address(self) -> str:
        return self.config.base_deposit_address.lower()

    def normalize_reference(self, reference: str) -> str:
        # transaction hashes are hex; case does not distinguish them
        return reference.strip().lower()

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.config.base_rpc_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.policy.timeout_seconds),
            ) as response:
                if response.status != 200:
                    raise RailUnavailable(f"Base RPC returned HTTP {response.status}", rail=self.name.value)
                body = await read_json(response, self.name.value, "RPC node")
        if body.get("error"):
            raise RailUnavailable(f"Base RPC error: {body['error']}", rail=self.name.value)
        return body.get("result")

    async def initialize_deposit(self, bounty_id: str, payer_identity: str, amount: Decimal) -> DepositInstruction:
        if not self.deposit_address:
            raise RailUnavailable("Base deposit address is not configured", rail=self.name.value)
        total, fee = fee_breakdown(amount, self.config.platform_fee_percent)
        return DepositInstruction(
            rail=self.name,
            deposit_reference=self.deposit_address,
            expected_amount=total,
            platform_fee=fee,
            currency=self.currency,
            instructions={
                "network": "base",
                "chain_id": self.config.base_chain_id,
                "token_contract": self.config.base_usdc_contract,
                "deposit_address": self.deposit_address,
                "amount": str(total),
                "from": payer_identity,
            },
        )

    async def verify_deposit(self, reference: str, expected_amount: Decimal) -> DepositVerification:
        receipt = await self._retrying("fetch transaction receipt", lambda: self._rpc("eth_getTransactionReceipt", [reference]))
        if receipt is None:
            return DepositVerification(DepositStatus.PENDING, None, reference, "Transaction not yet mined")
        if receipt.get("status") != "0x1":
            return DepositVerification(DepositStatus.MISMATCH, None, reference, "Transaction reverted")

        token = self.config.base_usdc_contract.lower()
        received = Decimal(0)
        for log in receipt.get("logs", []):
            topics = log.get("topics", [])
            if log.get("address", "").lower() != token or len(topics) < 3 or topics[0] != TRANSFER_TOPIC:
                continue
            if topic_to_address(topics[2]) != self.deposit_address:
                continue
            received += Decimal(int(log.get("data", "0x0"), 16)) / Decimal(10**USDC_DECIMALS)

        if received == 0:
            return DepositVerification(DepositStatus.MISMATCH, None, reference, "No USDC transfer to the platform wallet")
        received = to_money(received)
        if within_tolerance(received, expected_amount, self.config.deposit_tolerance_bps, self.config.deposit_tolerance_cap):
            return DepositVerification(DepositStatus.SUCCESS, received, reference)
        return DepositVerification(
            DepositStatus.MISMATCH, received, reference, f"Received {received} USDC, expected {to_money(expected_amount)}"
        )

    async def _send(self, recipient: str, amount: Decimal, key: str, description: str) -> RailReceipt:
        if not recipient.startswith("0x") or len(recipient) != 42:
            raise RailVerificationError(f"Invalid Base address: {recipient!r}", rail=self.name.value)
        tx = await self._retrying(
            description,
            lambda: self.custody.send("base", self.config.base_usdc_contract, recipient, to_money(amount), key, self.name.value),
        )
        return RailReceipt(self.name, tx, to_money(amount))

    async def release_portion(self, escrow: Escrow, release_key: str, amount: Decimal, recipient: str) -> RailReceipt:
        return await self._send(recipient, amount, f"release:{escrow.id}:{release_key}", "release payout")

    async def refund(self, escrow: Escrow, amount: Decimal, refund_key: str) -> RailReceipt:
        return await self._send(escrow.payer_identity, amount, f"refund:{escrow.id}:{refund_key}", "refund funder")
