# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Client for the custody service that sends outbound USDC.

Platform wallets are never signed for in-process. Payouts and refunds on
the value-transfer rails are submitted to a custody service, which signs,
broadcasts and deduplicates by idempotency key.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import aiohttp

from ..core.exceptions import RailUnavailable, RailVerificationError
from .base import read_json

logger = logging.getLogger(__name__)


class CustodyClient:
    def __init__(self, base_url: str, api_key: str, timeout_seconds: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def send(
        self,
        network: str,
        token: str,
        recipient: str,
        amount: Decimal,
        idempotency_key: str,
        rail: str,
    ) -> str:
        """Submit a transfer and return its transaction reference.

        Raises:
            RailUnavailable: Custody is unconfigured, unreachable or overloaded.
            RailVerificationError: Custody refused the transfer.
        """
        if not self.configured:
            raise RailUnavailable("Custody service is not configured", rail=rail)

        payload: dict[str, Any] = {
            "network": network,
            "token": token,
            "to": recipient,
            "amount": str(amount),
            "idempotency_key": idempotency_key,
        }
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{self.base_url}/transfers",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}", "Idempotency-Key": idempotency_key},
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                if response.status == 429 or response.status >= 500:
                    raise RailUnavailable(f"Custody service returned HTTP {response.status}", rail=rail)
                result = await read_json(response, rail, "Custody service")
                if response.status >= 400 or not result.get("success", False):
                    reason = result.get("errorReason") or result.get("error") or f"HTTP {response.status}"
                    raise RailVerificationError(f"Custody transfer refused: {reason}", rail=rail)

        transaction = result.get("transaction")
        if not transaction:
            raise RailVerificationError("Custody response carried no transaction reference", rail=rail)
        logger.info(f"{rail}: sent {amount} to {recipient[:8]}... (key={idempotency_key}, tx={transaction})")
        return transaction
