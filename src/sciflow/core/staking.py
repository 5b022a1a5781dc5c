# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Stake ledger for lab collateral.

A lab deposits stake; accepting a bounty locks part of it; completion or a
favourable dispute outcome unlocks it; losing a dispute slashes it. Every
change writes a StakingTransaction with the balances that result, and every
change keeps ``0 <= locked_stake <= staking_balance``.

Functions take the open LedgerSession so stake changes commit in the same
unit of work as the bounty transition that caused them.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from .exceptions import InsufficientStakeError, InternalError, ValidationError
from .models import (
    ZERO,
    Lab,
    StakeAnomaly,
    StakingTransaction,
    StakingTransactionType,
    new_id,
    to_money,
)
from .store import LedgerSession

logger = logging.getLogger(__name__)


def _amount(amount: Decimal | str | int, allow_zero: bool = True) -> Decimal:
    try:
        value = to_money(amount)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Stake amount must be a number", field="amount", value=amount)
    if not value.is_finite() or value < 0 or (value == 0 and not allow_zero):
        raise ValidationError("Stake amount must be positive", field="amount", value=amount)
    return value


def _check_balances(lab: Lab) -> None:
    if lab.locked_stake < 0 or lab.staking_balance < 0 or lab.locked_stake > lab.staking_balance:
        raise InternalError(
            f"Stake invariant violated for lab {lab.id}",
            {"staking_balance": str(lab.staking_balance), "locked_stake": str(lab.locked_stake)},
        )


def _record(
    session: LedgerSession,
    lab: Lab,
    kind: StakingTransactionType,
    amount: Decimal,
    bounty_id: str | None,
    notes: str | None = None,
) -> StakingTransaction:
    _check_balances(lab)
    session.put(lab)
    tx = StakingTransaction(
        id=new_id(),
        lab_id=lab.id,
        transaction_type=kind,
        amount=amount,
        balance_after=lab.staking_balance,
        locked_after=lab.locked_stake,
        bounty_id=bounty_id,
        notes=notes,
    )
    session.insert(tx)
    return tx


def deposit(session: LedgerSession, lab_id: str, amount: Decimal | str | int, notes: str | None = None) -> StakingTransaction:
    """Add to the lab's staking balance."""
    value = _amount(amount, allow_zero=False)
    lab = session.require(Lab, lab_id, for_update=True)
    lab.staking_balance += value
    return _record(session, lab, StakingTransactionType.DEPOSIT, value, None, notes)


def withdraw(session: LedgerSession, lab_id: str, amount: Decimal | str | int) -> StakingTransaction:
    """Take unlocked stake out of the ledger.

    Raises:
        InsufficientStakeError: If amount exceeds balance minus locked stake.
    """
    value = _amount(amount, allow_zero=False)
    lab = session.require(Lab, lab_id, for_update=True)
    if value > lab.available_stake:
        raise InsufficientStakeError(
            f"Cannot withdraw {value}: only {lab.available_stake} is unlocked",
            lab_id=lab_id,
            requested=value,
            available=lab.available_stake,
        )
    lab.staking_balance -= value
    return _record(session, lab, StakingTransactionType.WITHDRAWAL, value, None)


def lock(session: LedgerSession, lab_id: str, amount: Decimal | str | int, bounty_id: str) -> StakingTransaction | None:
    """Reserve stake as collateral for a bounty.

    Raises:
        InsufficientStakeError: If amount exceeds balance minus locked stake.
    """
    value = _amount(amount)
    lab = session.require(Lab, lab_id, for_update=True)
    if value > lab.available_stake:
        raise InsufficientStakeError(
            f"Lab {lab_id} needs {value} unlocked stake but has {lab.available_stake}",
            lab_id=lab_id,
            requested=value,
            available=lab.available_stake,
        )
    if value == 0:
        return None
    lab.locked_stake += value
    return _record(session, lab, StakingTransactionType.LOCK, value, bounty_id)


def unlock(session: LedgerSession, lab_id: str, amount: Decimal | str | int, bounty_id: str) -> StakingTransaction | None:
    """Release collateral. Never changes the staking balance.

    Raises:
        InsufficientStakeError: If amount exceeds the locked stake.
    """
    value = _amount(amount)
    lab = session.require(Lab, lab_id, for_update=True)
    if value > lab.locked_stake:
        raise InsufficientStakeError(
            f"Cannot unlock {value}: lab {lab_id} has {lab.locked_stake} locked",
            lab_id=lab_id,
            requested=value,
            available=lab.locked_stake,
        )
    if value == 0:
        return None
    lab.locked_stake -= value
    return _record(session, lab, StakingTransactionType.UNLOCK, value, bounty_id)


def slash(
    session: LedgerSession,
    lab_id: str,
    amount: Decimal | str | int,
    bounty_id: str,
    notes: str | None = None,
) -> StakingTransaction | None:
    """Forfeit stake after a lost dispute.

    Balance drops by the amount and locked stake by as much of it as was
    locked. If the lab holds less than the amount, the slash is clamped at
    zero and the shortfall is recorded as a StakeAnomaly for review.
    """
    value = _amount(amount)
    if value == 0:
        return None
    lab = session.require(Lab, lab_id, for_update=True)

    applied = min(value, lab.staking_balance)
    shortfall = value - applied
    if value > lab.locked_stake:
        logger.warning(f"Slash of {value} for lab {lab_id} exceeds its locked stake {lab.locked_stake}")

    lab.staking_balance -= applied
    lab.locked_stake = max(ZERO, lab.locked_stake - value)
    # Whatever is still locked cannot exceed what is left
    lab.locked_stake = min(lab.locked_stake, lab.staking_balance)

    if shortfall > 0:
        anomaly = StakeAnomaly(
            id=new_id(),
            lab_id=lab_id,
            bounty_id=bounty_id,
            requested=value,
            applied=applied,
            shortfall=shortfall,
        )
        session.insert(anomaly)
        logger.error(f"Slash shortfall for lab {lab_id} on bounty {bounty_id}: requested {value}, applied {applied}")

    logger.warning(f"Slashed {applied} from lab {lab_id} for bounty {bounty_id}")
    return _record(session, lab, StakingTransactionType.SLASH, applied, bounty_id, notes)


def history(session: LedgerSession, lab_id: str) -> list[StakingTransaction]:
    """All stake movements for a lab, oldest first."""
    return sorted(session.find(StakingTransaction, lab_id=lab_id), key=lambda t: t.created_at)
