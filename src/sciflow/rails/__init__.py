# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Payment rails and the registry that selects them by configuration."""

from __future__ import annotations

import logging

from ..core.config import CoreSettings, get_config
from ..core.exceptions import RailUnavailable, ValidationError
from ..core.models import RailName
from .base import (
    DepositInstruction,
    DepositStatus,
    DepositVerification,
    PaymentRail,
    RailReceipt,
    deposit_tolerance,
    fee_breakdown,
)
from .card import CardRail
from .evm import BaseUsdcRail
from .solana import SolanaUsdcRail

logger = logging.getLogger(__name__)

RAIL_CLASSES: dict[RailName, type[PaymentRail]] = {
    RailName.CARD: CardRail,
    RailName.BASE_USDC: BaseUsdcRail,
    RailName.SOLANA_USDC: SolanaUsdcRail,
}


class RailRegistry:
    """The rails this deployment accepts, keyed by name."""

    def __init__(self, rails: dict[RailName, PaymentRail] | None = None) -> None:
        self._rails: dict[RailName, PaymentRail] = dict(rails or {})

    @classmethod
    def from_config(cls, config: CoreSettings | None = None) -> RailRegistry:
        config = config or get_config()
        rails: dict[RailName, PaymentRail] = {}
        for name in config.enabled_rail_names:
            try:
                rail_name = RailName(name)
            except ValueError:
                logger.warning(f"Ignoring unknown rail '{name}' in SCIFLOW_ENABLED_RAILS")
                continue
            rails[rail_name] = RAIL_CLASSES[rail_name](config)
        return cls(rails)

    def register(self, rail: PaymentRail) -> None:
        self._rails[rail.name] = rail

    def get(self, name: RailName | str) -> PaymentRail:
        try:
            rail_name = RailName(name)
        except ValueError:
            raise ValidationError(f"Unknown payment rail: {name}", field="rail", value=name)
        rail = self._rails.get(rail_name)
        if rail is None:
            raise RailUnavailable(f"Payment rail {rail_name.value} is not enabled", rail=rail_name.value)
        return rail

    def names(self) -> list[str]:
        return [name.value for name in self._rails]


__all__ = [
    "BaseUsdcRail",
    "CardRail",
    "DepositInstruction",
    "DepositStatus",
    "DepositVerification",
    "PaymentRail",
    "RailReceipt",
    "RailRegistry",
    "SolanaUsdcRail",
    "deposit_tolerance",
    "fee_breakdown",
]
