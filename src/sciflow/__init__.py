# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""SciFlow - settlement core for milestone-funded research bounties.

A funder posts a bounty, deposits the budget plus the platform fee into
escrow over one of the payment rails, and a lab delivers the research in
milestones. Each verified milestone releases its share of the accepted bid;
a dispute can freeze the bounty and end with a stake slash, a refund, or a
split.

Architecture:
  Commands (funder / lab / admin / arbitrator)
    → BountyLifecycleEngine (transition table, guards, history)
    → Ledgers (escrow, stake, disputes) inside one storage transaction
    → Payment rails (card, Base USDC, Solana USDC)
    → Best-effort notifications and audit events after commit

CLI entry point: ``sciflow``
"""

__version__ = "0.4.0"

from . import (
    core as core,
)
