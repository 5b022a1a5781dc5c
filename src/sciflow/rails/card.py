# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Card rail backed by Stripe PaymentIntents with manual capture.

Funding authorizes the card without capturing it; the hold is the escrow.
The first payout or refund captures the intent, payouts then go to the
lab's connected account as transfers.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import aiohttp

from ..core.exceptions import RailUnavailable, RailVerificationError
from ..core.models import Escrow, RailName, new_id, to_money
from .base import (
    DepositInstruction,
    DepositStatus,
    DepositVerification,
    PaymentRail,
    RailReceipt,
    fee_breakdown,
    read_json,
)

logger = logging.getLogger(__name__)

# Intent states where the funder still has to act or the network is still working
PENDING_INTENT_STATES = frozenset({"processing", "requires_action", "requires_confirmation", "requires_payment_method"})


def to_cents(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return to_money(Decimal(cents) / 100)


class CardRail(PaymentRail):
    name = RailName.CARD
    binds_deposit_reference = True

    @property
    def configured(self) -> bool:
        return bool(self.config.stripe_secret_key)

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if not self.configured:
            raise RailUnavailable("Card rail is not configured", rail=self.name.value)

        headers = {"Authorization": f"Bearer {self.config.stripe_secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        url = f"{self.config.stripe_api_base.rstrip('/')}/{path.lstrip('/')}"

        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                data=data,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.policy.timeout_seconds),
            ) as response:
                if response.status == 429 or response.status >= 500:
                    raise RailUnavailable(f"Card processor returned HTTP {response.status}", rail=self.name.value)
                body = await read_json(response, self.name.value, "Card processor")
                if response.status >= 400:
                    error = body.get("error")
                    message = error.get("message") if isinstance(error, dict) else None
                    raise RailVerificationError(
                        f"Card processor rejected request: {message or f'HTTP {response.status}'}", rail=self.name.value
                    )
                return body

    async def initialize_deposit(self, bounty_id: str, payer_identity: str, amount: Decimal) -> DepositInstruction:
        total, fee = fee_breakdown(amount, self.config.platform_fee_percent)
        data = {
            "amount": str(to_cents(total)),
            "currency": "usd",
            "capture_method": "manual",
            "metadata[bounty_id]": bounty_id,
            "metadata[platform_fee]": str(fee),
        }
        if payer_identity.startswith("cus_"):
            data["customer"] = payer_identity
        else:
            data["receipt_email"] = payer_identity

        intent = await self._retrying(
            "create payment intent",
            lambda: self._request("POST", "payment_intents", data, idempotency_key=f"deposit:{bounty_id}:{new_id()}"),
        )
        logger.info(f"Created payment intent {intent['id']} for bounty {bounty_id}")
        return DepositInstruction(
            rail=self.name,
            deposit_reference=intent["id"],
            expected_amount=total,
            platform_fee=fee,
            currency=self.currency,
            instructions={"client_secret": intent.get("client_secret"), "payment_intent_id": intent["id"]},
        )

    async def _get_intent(self, intent_id: str) -> dict[str, Any]:
        return await self._retrying("fetch payment intent", lambda: self._request("GET", f"payment_intents/{intent_id}"))

    async def verify_deposit(self, reference: str, expected_amount: Decimal) -> DepositVerification:
        intent = await self._get_intent(reference)
        status = intent.get("status")
        expected_cents = to_cents(expected_amount)

        if status == "requires_capture":
            capturable = int(intent.get("amount_capturable", 0))
            if capturable == expected_cents:
                return DepositVerification(DepositStatus.SUCCESS, from_cents(capturable), reference)
            return DepositVerification(
                DepositStatus.MISMATCH,
                from_cents(capturable),
                reference,
                f"Authorized {from_cents(capturable)} but expected {to_money(expected_amount)}",
            )
        if status == "succeeded":
            received = int(intent.get("amount_received", 0))
            if received == expected_cents:
                return DepositVerification(DepositStatus.SUCCESS, from_cents(received), reference)
            return DepositVerification(DepositStatus.MISMATCH, from_cents(received), reference, "Captured amount differs")
        if status in PENDING_INTENT_STATES:
            return DepositVerification(DepositStatus.PENDING, None, reference, f"Payment intent is {status}")
        return DepositVerification(DepositStatus.MISMATCH, None, reference, f"Payment intent is {status}")

    async def _ensure_captured(self, escrow: Escrow) -> dict[str, Any]:
        intent_id = escrow.deposit_reference or ""
        intent = await self._get_intent(intent_id)
        if intent.get("status") == "requires_capture":
            intent = await self._retrying(
                "capture payment intent",
                lambda: self._request("POST", f"payment_intents/{intent_id}/capture", idempotency_key=f"capture:{intent_id}"),
            )
            logger.info(f"Captured payment intent {intent_id} for escrow {escrow.id}")
        return intent

    async def release_portion(self, escrow: Escrow, release_key: str, amount: Decimal, recipient: str) -> RailReceipt:
        if not recipient.startswith("acct_"):
            raise RailVerificationError(f"Card payouts need a connected account, got {recipient!r}", rail=self.name.value)
        await self._ensure_captured(escrow)
        data = {
            "amount": str(to_cents(amount)),
            "currency": "usd",
            "destination": recipient,
            "transfer_group": escrow.bounty_id,
            "metadata[release_key]": release_key,
        }
        transfer = await self._retrying(
            "create transfer",
            lambda: self._request("POST", "transfers", data, idempotency_key=f"release:{escrow.id}:{release_key}"),
        )
        return RailReceipt(self.name, transfer["id"], to_money(amount))

    async def refund(self, escrow: Escrow, amount: Decimal, refund_key: str) -> RailReceipt:
        intent_id = escrow.deposit_reference or ""
        intent = await self._get_intent(intent_id)

        # Nothing paid out yet and the whole hold goes back: just void the authorization
        if intent.get("status") == "requires_capture" and escrow.released_amount == 0 and to_money(amount) >= escrow.total_amount:
            await self._retrying(
                "cancel payment intent",
                lambda: self._request("POST", f"payment_intents/{intent_id}/cancel", idempotency_key=f"cancel:{intent_id}"),
            )
            return RailReceipt(self.name, intent_id, to_money(amount))

        await self._ensure_captured(escrow)
        data = {"payment_intent": intent_id, "amount": str(to_cents(amount)), "metadata[refund_key]": refund_key}
        refund = await self._retrying(
            "create refund",
            lambda: self._request("POST", "refunds", data, idempotency_key=f"refund:{escrow.id}:{refund_key}"),
        )
        return RailReceipt(self.name, refund["id"], to_money(amount))
