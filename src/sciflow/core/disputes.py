# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Dispute and slashing resolver.

A dispute freezes a bounty in research until an admin or arbitrator
resolves it with one of three outcomes:

- funder_wins:    slash ``slash_percentage`` of the stake locked for the
                  bounty, unlock the rest, refund the funder everything not
                  yet paid to the lab (REFUNDING)
- lab_wins:       unlock the stake, pay the lab the rest of its bid, return
                  the unused budget to the funder (PAID_OUT)
- partial_refund: unlock the stake, split the unpaid bid between funder
                  (``refund_percentage``) and lab (PARTIAL_SETTLEMENT)

Resolution records the money still owed as a SettlementPlan; moving that
money is a separate command so every command stays one atomic step.
The platform fee is never part of a dispute settlement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from urllib.parse import urlparse

from . import staking
from .escrow import settlement_release_key
from .exceptions import StateConflictError, ValidationError
from .identity import Capability, Principal, require_capability
from .models import (
    HUNDRED,
    ZERO,
    Bounty,
    Dispute,
    DisputeReason,
    DisputeResolution,
    DisputeStatus,
    Escrow,
    SettlementKind,
    SettlementPlan,
    new_id,
    percent_of,
    to_money,
    utcnow,
)
from .states import DISPUTABLE_STATES, BountyEvent
from .store import LedgerSession

logger = logging.getLogger(__name__)

DESCRIPTION_MIN_LENGTH = 20
DESCRIPTION_MAX_LENGTH = 5000
MAX_EVIDENCE_LINKS = 20

RESOLUTION_EVENTS = {
    DisputeResolution.FUNDER_WINS: BountyEvent.RESOLVE_FUNDER_WINS,
    DisputeResolution.LAB_WINS: BountyEvent.RESOLVE_LAB_WINS,
    DisputeResolution.PARTIAL_REFUND: BountyEvent.RESOLVE_PARTIAL,
}

# open -> under_review -> arbitration
ESCALATION = {
    DisputeStatus.OPEN: DisputeStatus.UNDER_REVIEW,
    DisputeStatus.UNDER_REVIEW: DisputeStatus.ARBITRATION,
}


def _percentage(value: Decimal | str | int | float | None, field: str) -> Decimal | None:
    if value is None:
        return None
    try:
        pct = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    if not pct.is_finite():
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    if pct < 0 or pct > HUNDRED:
        raise ValidationError(f"{field} must be between 0 and 100", field=field, value=value)
    return pct


def validate_evidence_links(links: list[str] | None) -> list[str]:
    links = list(links or [])
    if len(links) > MAX_EVIDENCE_LINKS:
        raise ValidationError(f"At most {MAX_EVIDENCE_LINKS} evidence links", field="evidence_links")
    for link in links:
        parsed = urlparse(link)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("Evidence links must be http(s) URLs", field="evidence_links", value=link)
    return links


def active_dispute(session: LedgerSession, bounty_id: str) -> Dispute | None:
    """The bounty's unresolved dispute, if any."""
    for dispute in session.find(Dispute, bounty_id=bounty_id):
        if not dispute.is_resolved:
            return dispute
    return None


def open_dispute(
    session: LedgerSession,
    bounty: Bounty,
    principal: Principal,
    initiator_role: str,
    reason: DisputeReason | str,
    description: str,
    evidence_links: list[str] | None = None,
) -> Dispute:
    """Validate and insert a new dispute (the caller fires OPEN_DISPUTE).

    Raises:
        ValidationError: Unknown reason, short description, bad links.
        StateConflictError: Bounty not in research or already disputed.
    """
    try:
        reason = DisputeReason(reason)
    except ValueError:
        raise ValidationError(f"Unknown dispute reason: {reason}", field="reason", value=reason)

    description = (description or "").strip()
    if len(description) < DESCRIPTION_MIN_LENGTH:
        raise ValidationError(
            f"Description must be at least {DESCRIPTION_MIN_LENGTH} characters", field="description"
        )
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters", field="description")
    links = validate_evidence_links(evidence_links)

    if bounty.state not in DISPUTABLE_STATES:
        raise StateConflictError(
            f"Bounty {bounty.id} cannot be disputed in state {bounty.state.value}",
            current_state=bounty.state.value,
            attempted=BountyEvent.OPEN_DISPUTE.value,
        )
    existing = active_dispute(session, bounty.id)
    if existing is not None:
        raise StateConflictError(f"Bounty {bounty.id} already has an open dispute ({existing.id})")

    dispute = Dispute(
        id=new_id(),
        bounty_id=bounty.id,
        initiator_id=principal.principal_id,
        initiator_role=initiator_role,
        reason=reason,
        description=description,
        evidence_links=links,
    )
    session.insert(dispute)
    logger.warning(f"Dispute {dispute.id} opened on bounty {bounty.id} by {initiator_role}: {reason.value}")
    return dispute


def escalate(session: LedgerSession, dispute: Dispute) -> Dispute:
    """Move a dispute one step up: open -> under_review -> arbitration."""
    target = ESCALATION.get(dispute.status)
    if target is None:
        raise StateConflictError(
            f"Dispute {dispute.id} cannot be escalated from {dispute.status.value}",
            current_state=dispute.status.value,
            attempted=BountyEvent.ESCALATE_DISPUTE.value,
        )
    dispute.status = target
    dispute.updated_at = utcnow()
    session.put(dispute)
    return dispute


@dataclass
class ResolutionOutcome:
    event: BountyEvent
    slash_amount: Decimal
    unlock_amount: Decimal
    plan: SettlementPlan


def settle_amounts(
    bounty: Bounty,
    escrow: Escrow,
    resolution: DisputeResolution,
    refund_percentage: Decimal | None,
) -> tuple[Decimal, Decimal]:
    """Return ``(funder_refund, lab_payout)`` still owed for a resolution."""
    budget = bounty.total_budget
    bid = bounty.accepted_bid if bounty.accepted_bid is not None else budget
    released = escrow.released_amount
    remaining_bid = max(ZERO, bid - released)
    surplus = max(ZERO, budget - bid)

    if resolution == DisputeResolution.FUNDER_WINS:
        return to_money(budget - released), ZERO
    if resolution == DisputeResolution.LAB_WINS:
        return to_money(surplus), to_money(remaining_bid)

    assert refund_percentage is not None
    funder_share = percent_of(remaining_bid, refund_percentage)
    return to_money(funder_share + surplus), to_money(remaining_bid - funder_share)


class DisputeResolver:
    """Computes and applies dispute resolutions inside a session."""

    def resolve(
        self,
        session: LedgerSession,
        principal: Principal,
        dispute: Dispute,
        bounty: Bounty,
        escrow: Escrow,
        resolution: DisputeResolution | str,
        slash_percentage: Decimal | str | int | float | None = None,
        refund_percentage: Decimal | str | int | float | None = None,
        notes: str | None = None,
    ) -> ResolutionOutcome:
        """Resolve ``dispute``; stake changes are written to ``session``.

        The caller fires the returned event on the bounty in the same
        session so the dispute row, stake changes and transition commit
        together.

        Raises:
            AuthorizationError: Principal is neither admin nor arbitrator.
            StateConflictError: The dispute is already resolved.
            ValidationError: Bad percentages or missing refund_percentage.
        """
        require_capability(principal, Capability.ADMIN, Capability.ARBITRATOR)
        if dispute.is_resolved:
            raise StateConflictError(
                f"Dispute {dispute.id} is already resolved",
                current_state=dispute.status.value,
                attempted="resolve",
            )

        try:
            resolution = DisputeResolution(resolution)
        except ValueError:
            raise ValidationError(f"Unknown resolution: {resolution}", field="resolution", value=resolution)
        slash_pct = _percentage(slash_percentage, "slash_percentage")
        refund_pct = _percentage(refund_percentage, "refund_percentage")
        if resolution == DisputeResolution.PARTIAL_REFUND and refund_pct is None:
            raise ValidationError("refund_percentage is required for partial_refund", field="refund_percentage")

        locked = bounty.locked_stake
        slash_amount = ZERO
        if resolution == DisputeResolution.FUNDER_WINS and slash_pct:
            slash_amount = percent_of(locked, slash_pct)
        unlock_amount = max(ZERO, locked - slash_amount)

        if bounty.lab_id is not None:
            if slash_amount > 0:
                staking.slash(session, bounty.lab_id, slash_amount, bounty.id, notes=f"dispute {dispute.id}")
            if unlock_amount > 0:
                staking.unlock(session, bounty.lab_id, unlock_amount, bounty.id)
        bounty.locked_stake = ZERO

        funder_refund, lab_payout = settle_amounts(bounty, escrow, resolution, refund_pct)
        plan = SettlementPlan(
            plan_type=SettlementKind.DISPUTE,
            key=settlement_release_key(dispute.id),
            funder_refund=funder_refund,
            lab_payout=lab_payout,
            dispute_id=dispute.id,
        )

        now = utcnow()
        dispute.status = DisputeStatus.RESOLVED
        dispute.resolution = resolution
        dispute.slash_percentage = slash_pct
        dispute.slash_amount = slash_amount
        dispute.refund_percentage = refund_pct
        dispute.settlement = plan
        dispute.arbitrator_id = principal.principal_id
        dispute.arbitrator_notes = notes
        dispute.resolved_at = now
        dispute.updated_at = now
        session.put(dispute)

        logger.warning(
            f"Dispute {dispute.id} resolved {resolution.value}: slash {slash_amount}, unlock {unlock_amount}, "
            f"refund {funder_refund}, lab payout {lab_payout}"
        )
        return ResolutionOutcome(RESOLUTION_EVENTS[resolution], slash_amount, unlock_amount, plan)
