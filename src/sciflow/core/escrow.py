# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Escrow ledger.

Tracks what was deposited, what has been paid to the lab and what went back
to the funder. Money leaves escrow in three steps:

1. ``plan_*`` validates the movement inside a session (nothing written).
2. ``execute`` performs it on the rail; the movement id is the rail's
   idempotency key, so repeating it never pays twice. ``remember`` stores
   the receipt right away so a retry does not go back to the rail.
3. ``apply`` records it, in the same unit of work as the bounty transition.

Invariants:
    released_amount == sum of EscrowRelease amounts
    released_amount <= total_amount - platform_fee
    at most one EscrowRelease per (escrow, milestone)
    at most one escrow funded per (rail, deposit reference)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from .exceptions import NotFoundError, StateConflictError, ValidationError
from .models import (
    Bounty,
    DepositClaim,
    Escrow,
    EscrowRefund,
    EscrowRelease,
    EscrowStatus,
    MovementReceipt,
    RailName,
    deposit_claim_id,
    new_id,
    refund_id,
    release_id,
    to_money,
    utcnow,
)
from .store import LedgerSession, LedgerStore

logger = logging.getLogger(__name__)

# Escrow states from which money may leave
FUNDED_STATES = frozenset({EscrowStatus.LOCKED, EscrowStatus.PARTIALLY_RELEASED})


class MovementKind(StrEnum):
    RELEASE = "release"
    REFUND = "refund"


class RefundPurpose(StrEnum):
    SURPLUS = "surplus"  # budget left over after the accepted bid is paid
    DISPUTE = "dispute"
    CANCELLATION = "cancellation"


@dataclass(frozen=True)
class Movement:
    """A validated, not yet executed, transfer out of escrow."""

    kind: MovementKind
    escrow_id: str
    bounty_id: str
    key: str
    amount: Decimal
    recipient: str | None = None
    milestone_id: str | None = None
    purpose: str | None = None

    @property
    def record_id(self) -> str:
        if self.kind == MovementKind.RELEASE:
            return release_id(self.escrow_id, self.key)
        return refund_id(self.escrow_id, self.key)


def milestone_release_key(milestone_id: str) -> str:
    return milestone_id


def settlement_release_key(dispute_id: str) -> str:
    return f"settlement:{dispute_id}"


def create_escrow(
    session: LedgerSession,
    bounty: Bounty,
    rail: RailName,
    total_amount: Decimal,
    platform_fee: Decimal,
    payer_identity: str,
    deposit_reference: str,
    escrow_id: str | None = None,
    rail_metadata: dict | None = None,
) -> Escrow:
    """Create (or re-initialise) the pending escrow for a bounty."""
    escrow = Escrow(
        id=escrow_id or new_id(),
        bounty_id=bounty.id,
        rail=rail,
        currency=rail.currency,
        budget=bounty.total_budget,
        total_amount=to_money(total_amount),
        platform_fee=to_money(platform_fee),
        payer_identity=payer_identity,
        deposit_reference=deposit_reference,
        rail_metadata=rail_metadata or {},
    )
    session.put(escrow)
    return escrow


def mark_locked(session: LedgerSession, escrow: Escrow, tx_reference: str | None, received: Decimal | None) -> Escrow:
    if escrow.status != EscrowStatus.PENDING:
        raise StateConflictError(f"Escrow {escrow.id} is already {escrow.status.value}", current_state=escrow.status.value)
    escrow.status = EscrowStatus.LOCKED
    escrow.deposit_tx_reference = tx_reference
    escrow.received_amount = received
    escrow.locked_at = utcnow()
    session.put(escrow)
    logger.info(f"Escrow {escrow.id} locked with {received} ({tx_reference})")
    return escrow


def deposit_claimant(session: LedgerSession, rail: RailName, reference: str) -> str | None:
    """Return the escrow already funded by this deposit, if any."""
    claim = session.get(DepositClaim, deposit_claim_id(rail, reference))
    return claim.escrow_id if claim else None


def claim_deposit(session: LedgerSession, escrow: Escrow, references: set[str]) -> None:
    """Bind deposit references to ``escrow`` so no other escrow can be funded by them.

    Runs in the same unit of work as ``mark_locked``; the unique claim id
    decides between concurrent confirmations of the same deposit.

    Raises:
        StateConflictError: A reference already funded another escrow.
    """
    for reference in sorted(references):
        owner = deposit_claimant(session, escrow.rail, reference)
        if owner == escrow.id:
            continue
        if owner is not None:
            raise StateConflictError(f"Deposit {reference} already funded escrow {owner}")
        session.insert(
            DepositClaim(
                id=deposit_claim_id(escrow.rail, reference),
                escrow_id=escrow.id,
                bounty_id=escrow.bounty_id,
                reference=reference,
            )
        )


def releases(session: LedgerSession, escrow_id: str) -> list[EscrowRelease]:
    return session.find(EscrowRelease, escrow_id=escrow_id)


def refunds(session: LedgerSession, escrow_id: str) -> list[EscrowRefund]:
    return session.find(EscrowRefund, escrow_id=escrow_id)


class EscrowLedger:
    """Validates, executes and records money leaving escrow."""

    def __init__(self, rails) -> None:
        self.rails = rails
        self._in_flight: set[str] = set()

    # -------------------------------------------------------------------------
    # planning
    # -------------------------------------------------------------------------

    def plan_release(
        self,
        session: LedgerSession,
        escrow: Escrow,
        key: str,
        amount: Decimal,
        recipient: str,
        milestone_id: str | None = None,
    ) -> Movement:
        """Validate a payout to the lab.

        Raises:
            StateConflictError: Already released or in flight, escrow not
                funded, or the payout would exceed total minus fee.
            ValidationError: Non-positive amount or missing recipient.
        """
        amount = to_money(amount)
        movement = Movement(MovementKind.RELEASE, escrow.id, escrow.bounty_id, key, amount, recipient, milestone_id)
        if session.exists(EscrowRelease, movement.record_id) or movement.record_id in self._in_flight:
            raise StateConflictError(f"Payout {key} for escrow {escrow.id} was already released", attempted="release")
        if escrow.status not in FUNDED_STATES:
            raise StateConflictError(
                f"Escrow {escrow.id} is {escrow.status.value}; nothing can be released",
                current_state=escrow.status.value,
                attempted="release",
            )
        if amount <= 0:
            raise ValidationError("Release amount must be positive", field="amount", value=amount)
        if not recipient:
            raise ValidationError("Lab has no payout account for this rail", field="recipient")
        if escrow.released_amount + amount > escrow.releasable_ceiling:
            raise StateConflictError(
                f"Releasing {amount} would exceed the releasable {escrow.releasable_ceiling} of escrow {escrow.id}",
                attempted="release",
            )
        return movement

    def plan_refund(self, session: LedgerSession, escrow: Escrow, purpose: RefundPurpose | str, amount: Decimal) -> Movement:
        amount = to_money(amount)
        movement = Movement(MovementKind.REFUND, escrow.id, escrow.bounty_id, str(purpose), amount, purpose=str(purpose))
        if session.exists(EscrowRefund, movement.record_id) or movement.record_id in self._in_flight:
            raise StateConflictError(f"Refund {purpose} for escrow {escrow.id} was already made", attempted="refund")
        if escrow.status not in FUNDED_STATES:
            raise StateConflictError(
                f"Escrow {escrow.id} is {escrow.status.value}; nothing can be refunded",
                current_state=escrow.status.value,
                attempted="refund",
            )
        if amount <= 0:
            raise ValidationError("Refund amount must be positive", field="amount", value=amount)
        if amount > escrow.outstanding:
            raise StateConflictError(f"Refund {amount} exceeds the {escrow.outstanding} held in escrow {escrow.id}")
        return movement

    # -------------------------------------------------------------------------
    # execution
    # -------------------------------------------------------------------------

    async def execute(self, escrow: Escrow, movement: Movement):
        """Perform the movement on the escrow's rail and return the receipt."""
        if movement.record_id in self._in_flight:
            raise StateConflictError(f"{movement.kind.value} {movement.key} is already in flight")
        rail = self.rails.get(escrow.rail)
        self._in_flight.add(movement.record_id)
        try:
            if movement.kind == MovementKind.RELEASE:
                receipt = await rail.release_portion(escrow, movement.key, movement.amount, movement.recipient or "")
            else:
                receipt = await rail.refund(escrow, movement.amount, movement.key)
        finally:
            self._in_flight.discard(movement.record_id)
        logger.info(f"Escrow {escrow.id}: {movement.kind.value} {movement.amount} done ({receipt.reference})")
        return receipt

    # -------------------------------------------------------------------------
    # recording
    # -------------------------------------------------------------------------

    def stored_receipt(self, session: LedgerSession, movement: Movement) -> str | None:
        """Rail reference of a movement that was executed but never applied."""
        receipt = session.get(MovementReceipt, movement.record_id)
        return receipt.rail_reference if receipt else None

    def remember(self, session: LedgerSession, movement: Movement, rail_reference: str) -> None:
        """Persist a rail receipt as soon as the transfer went through."""
        session.put(
            MovementReceipt(
                id=movement.record_id,
                escrow_id=movement.escrow_id,
                kind=movement.kind.value,
                key=movement.key,
                amount=movement.amount,
                rail_reference=rail_reference,
            )
        )

    def apply(self, session: LedgerSession, movement: Movement, rail_reference: str) -> Escrow:
        """Record an executed movement and update the escrow totals."""
        escrow = session.require(Escrow, movement.escrow_id, for_update=True)
        if movement.kind == MovementKind.RELEASE:
            session.insert(
                EscrowRelease(
                    id=movement.record_id,
                    escrow_id=escrow.id,
                    bounty_id=escrow.bounty_id,
                    release_key=movement.key,
                    amount=movement.amount,
                    milestone_id=movement.milestone_id,
                    recipient=movement.recipient,
                    rail_reference=rail_reference,
                )
            )
            escrow.released_amount += movement.amount
            if escrow.released_amount > escrow.releasable_ceiling:
                raise StateConflictError(f"Escrow {escrow.id} would release more than it holds for the lab")
            escrow.status = (
                EscrowStatus.FULLY_RELEASED
                if escrow.released_amount == escrow.releasable_ceiling
                else EscrowStatus.PARTIALLY_RELEASED
            )
        else:
            session.insert(
                EscrowRefund(
                    id=movement.record_id,
                    escrow_id=escrow.id,
                    bounty_id=escrow.bounty_id,
                    purpose=movement.purpose or movement.key,
                    amount=movement.amount,
                    rail_reference=rail_reference,
                )
            )
            escrow.refunded_amount += movement.amount
            if escrow.outstanding <= escrow.platform_fee:
                escrow.status = (
                    EscrowStatus.FULLY_RELEASED if movement.purpose == RefundPurpose.SURPLUS else EscrowStatus.REFUNDED
                )
        session.put(escrow)
        return escrow

    # -------------------------------------------------------------------------
    # standalone operations
    # -------------------------------------------------------------------------

    async def release_portion(
        self,
        store: LedgerStore,
        escrow_id: str,
        milestone_id: str,
        amount: Decimal,
        recipient: str,
    ) -> EscrowRelease:
        """Pay one milestone's share out of escrow outside the bounty engine."""
        with store.transaction() as session:
            escrow = session.require(Escrow, escrow_id)
            movement = self.plan_release(session, escrow, milestone_release_key(milestone_id), amount, recipient, milestone_id)
        receipt = await self.execute(escrow, movement)
        with store.transaction() as session:
            self.apply(session, movement, receipt.reference)
            release = session.get(EscrowRelease, movement.record_id)
        if release is None:
            raise NotFoundError("EscrowRelease", movement.record_id)
        return release

    async def refund(self, store: LedgerStore, escrow_id: str, amount: Decimal, purpose: RefundPurpose | str) -> EscrowRefund:
        """Return funds to the funder outside the bounty engine."""
        with store.transaction() as session:
            escrow = session.require(Escrow, escrow_id)
            movement = self.plan_refund(session, escrow, purpose, amount)
        receipt = await self.execute(escrow, movement)
        with store.transaction() as session:
            self.apply(session, movement, receipt.reference)
            refund = session.get(EscrowRefund, movement.record_id)
        if refund is None:
            raise NotFoundError("EscrowRefund", movement.record_id)
        return refund
