# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Payment rail interface.

A rail moves money in and out of escrow on one external network. The core
never talks to a network directly; it calls these four operations and
reconciles their results into the ledger.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Any, TypeVar

from ..core.config import CoreSettings, get_config
from ..core.exceptions import RailUnavailable
from ..core.models import Currency, Escrow, RailName, percent_of, to_money
from ..core.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

BPS = Decimal("10000")


class DepositStatus(StrEnum):
    SUCCESS = "success"
    MISMATCH = "mismatch"
    PENDING = "pending"


@dataclass
class DepositInstruction:
    """What the funder needs to fund the escrow."""

    rail: RailName
    deposit_reference: str
    expected_amount: Decimal
    platform_fee: Decimal
    currency: Currency
    instructions: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rail": self.rail.value,
            "deposit_reference": self.deposit_reference,
            "expected_amount": str(self.expected_amount),
            "platform_fee": str(self.platform_fee),
            "currency": self.currency.value,
            "instructions": self.instructions,
        }


@dataclass
class DepositVerification:
    status: DepositStatus
    received_amount: Decimal | None = None
    tx_reference: str | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == DepositStatus.SUCCESS


@dataclass
class RailReceipt:
    """Proof of an outbound transfer; ``reference`` is the rail's own id."""

    rail: RailName
    reference: str
    amount: Decimal


def fee_breakdown(amount: Decimal, fee_percent: Decimal) -> tuple[Decimal, Decimal]:
    """Return ``(total, fee)`` for a budget: total = amount × (1 + fee%)."""
    amount = to_money(amount)
    fee = percent_of(amount, fee_percent)
    return amount + fee, fee


def deposit_tolerance(expected: Decimal, bps: int, cap: Decimal) -> Decimal:
    """Accepted shortfall on a value-transfer deposit."""
    return min(to_money(expected * Decimal(bps) / BPS), to_money(cap))


def within_tolerance(received: Decimal, expected: Decimal, bps: int, cap: Decimal) -> bool:
    return received >= expected - deposit_tolerance(expected, bps, cap)


class PaymentRail(ABC):
    """One external payment network.

    Subclasses implement the raw calls; the public methods add retry,
    timeouts and logging.
    """

    name: RailName
    # True when a deposit is identified by the reference handed out at
    # initialize_deposit, so only that reference may confirm the escrow
    binds_deposit_reference: bool = False

    def __init__(self, config: CoreSettings | None = None, policy: RetryPolicy | None = None) -> None:
        self.config = config or get_config()
        self.policy = policy or RetryPolicy(
            timeout_seconds=self.config.rail_timeout_seconds,
            max_attempts=max(1, self.config.rail_max_attempts),
            backoff_seconds=self.config.rail_backoff_seconds,
        )

    @property
    def currency(self) -> Currency:
        return self.name.currency

    def normalize_reference(self, reference: str) -> str:
        """Canonical form of a deposit reference; one canonical reference funds one escrow."""
        return reference.strip()

    async def _retrying(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await call_with_retry(operation, self.policy, self.name.value, description)

    @abstractmethod
    async def initialize_deposit(self, bounty_id: str, payer_identity: str, amount: Decimal) -> DepositInstruction:
        """Prepare a deposit of ``amount`` plus the platform fee.

        Raises:
            RailUnavailable: The rail is not configured or cannot be reached.
        """
        ...

    @abstractmethod
    async def verify_deposit(self, reference: str, expected_amount: Decimal) -> DepositVerification:
        """Check whether ``reference`` funded the escrow with ``expected_amount``."""
        ...

    @abstractmethod
    async def release_portion(self, escrow: Escrow, release_key: str, amount: Decimal, recipient: str) -> RailReceipt:
        """Pay ``amount`` out of escrow to the lab. ``release_key`` is the idempotency key."""
        ...

    @abstractmethod
    async def refund(self, escrow: Escrow, amount: Decimal, refund_key: str) -> RailReceipt:
        """Return ``amount`` from escrow to the funder."""
        ...


async def read_json(response: Any, rail: str, service: str) -> dict[str, Any]:
    """Decode a JSON object body; anything else is treated as the service being unavailable."""
    try:
        body = await response.json(content_type=None)
    except ValueError as e:
        raise RailUnavailable(f"{service} returned an unreadable body (HTTP {response.status})", rail=rail) from e
    if not isinstance(body, dict):
        raise RailUnavailable(f"{service} returned a non-object body (HTTP {response.status})", rail=rail)
    return body
