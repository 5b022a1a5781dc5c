# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Bounty lifecycle states and the transition table.

The table is the only authority on bounty state changes. Each entry maps a
``(state, event)`` pair to a target state and the roles allowed to fire it.
Pairs missing from the table are state conflicts; there is no fallback.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from .exceptions import AuthorizationError, StateConflictError
from .identity import Capability, Principal


class BountyState(StrEnum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    FUNDING = "funding"
    OPEN_FOR_PROPOSALS = "open_for_proposals"
    RESEARCH_ACTIVE = "research_active"
    MILESTONE_REVIEW = "milestone_review"
    DISPUTED = "disputed"
    REFUNDING = "refunding"
    PAID_OUT = "paid_out"
    PARTIAL_SETTLEMENT = "partial_settlement"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({BountyState.COMPLETED, BountyState.CANCELLED})

# States in which a dispute may be raised.
DISPUTABLE_STATES = frozenset({BountyState.RESEARCH_ACTIVE, BountyState.MILESTONE_REVIEW})

# States that wait for execute_settlement.
SETTLEMENT_STATES = frozenset({BountyState.REFUNDING, BountyState.PAID_OUT, BountyState.PARTIAL_SETTLEMENT})


class BountyEvent(StrEnum):
    CREATE = "create"
    UPDATE_DRAFT = "update_draft"
    SUBMIT = "submit"
    CANCEL = "cancel"
    APPROVE = "approve"
    REJECT = "reject"
    INIT_FUNDING = "init_funding"
    DEPOSIT_VERIFIED = "deposit_verified"
    SUBMIT_PROPOSAL = "submit_proposal"
    WITHDRAW_PROPOSAL = "withdraw_proposal"
    ACCEPT_PROPOSAL = "accept_proposal"
    REJECT_PROPOSAL = "reject_proposal"
    SUBMIT_EVIDENCE = "submit_evidence"
    VERIFY_MILESTONE = "verify_milestone"
    VERIFY_FINAL_MILESTONE = "verify_final_milestone"
    REJECT_MILESTONE = "reject_milestone"
    OPEN_DISPUTE = "open_dispute"
    ESCALATE_DISPUTE = "escalate_dispute"
    RESOLVE_FUNDER_WINS = "resolve_funder_wins"
    RESOLVE_LAB_WINS = "resolve_lab_wins"
    RESOLVE_PARTIAL = "resolve_partial"
    EXECUTE_SETTLEMENT = "execute_settlement"
    EXECUTE_CANCELLATION_REFUND = "execute_cancellation_refund"


class Role(StrEnum):
    """A principal's standing relative to one bounty."""

    FUNDER = "funder"  # any principal with the funder capability
    OWNER_FUNDER = "owner_funder"
    LAB = "lab"  # any principal with the lab capability
    ASSIGNED_LAB = "assigned_lab"
    ADMIN = "admin"
    ARBITRATOR = "arbitrator"


@dataclass(frozen=True)
class Transition:
    source: BountyState | None
    event: BountyEvent
    target: BountyState
    roles: frozenset[Role]
    requires_reason: bool = False

    @property
    def is_self_transition(self) -> bool:
        return self.source == self.target


def _t(
    source: BountyState | None,
    event: BountyEvent,
    target: BountyState,
    *roles: Role,
    requires_reason: bool = False,
) -> Transition:
    return Transition(source, event, target, frozenset(roles), requires_reason)


S = BountyState
E = BountyEvent
R = Role

CREATE_TRANSITION = _t(None, E.CREATE, S.DRAFT, R.FUNDER)

_STAFF = (R.ADMIN, R.ARBITRATOR)

_TABLE: tuple[Transition, ...] = (
    _t(S.DRAFT, E.UPDATE_DRAFT, S.DRAFT, R.OWNER_FUNDER),
    _t(S.DRAFT, E.SUBMIT, S.PENDING_APPROVAL, R.OWNER_FUNDER),
    _t(S.DRAFT, E.CANCEL, S.CANCELLED, R.OWNER_FUNDER),
    _t(S.PENDING_APPROVAL, E.APPROVE, S.FUNDING, R.ADMIN),
    _t(S.PENDING_APPROVAL, E.REJECT, S.CANCELLED, R.ADMIN, requires_reason=True),
    _t(S.FUNDING, E.INIT_FUNDING, S.FUNDING, R.OWNER_FUNDER),
    _t(S.FUNDING, E.DEPOSIT_VERIFIED, S.OPEN_FOR_PROPOSALS, R.OWNER_FUNDER, R.ADMIN),
    _t(S.OPEN_FOR_PROPOSALS, E.SUBMIT_PROPOSAL, S.OPEN_FOR_PROPOSALS, R.LAB),
    _t(S.OPEN_FOR_PROPOSALS, E.WITHDRAW_PROPOSAL, S.OPEN_FOR_PROPOSALS, R.LAB),
    _t(S.OPEN_FOR_PROPOSALS, E.ACCEPT_PROPOSAL, S.RESEARCH_ACTIVE, R.OWNER_FUNDER),
    _t(S.OPEN_FOR_PROPOSALS, E.REJECT_PROPOSAL, S.OPEN_FOR_PROPOSALS, R.OWNER_FUNDER, R.ADMIN, requires_reason=True),
    _t(S.OPEN_FOR_PROPOSALS, E.CANCEL, S.REFUNDING, R.OWNER_FUNDER),
    _t(S.RESEARCH_ACTIVE, E.SUBMIT_EVIDENCE, S.MILESTONE_REVIEW, R.ASSIGNED_LAB),
    _t(S.MILESTONE_REVIEW, E.VERIFY_MILESTONE, S.RESEARCH_ACTIVE, R.OWNER_FUNDER, R.ADMIN),
    _t(S.MILESTONE_REVIEW, E.VERIFY_FINAL_MILESTONE, S.COMPLETED, R.OWNER_FUNDER, R.ADMIN),
    _t(S.MILESTONE_REVIEW, E.REJECT_MILESTONE, S.RESEARCH_ACTIVE, R.OWNER_FUNDER, R.ADMIN),
    _t(S.RESEARCH_ACTIVE, E.OPEN_DISPUTE, S.DISPUTED, R.OWNER_FUNDER, R.ASSIGNED_LAB),
    _t(S.MILESTONE_REVIEW, E.OPEN_DISPUTE, S.DISPUTED, R.OWNER_FUNDER, R.ASSIGNED_LAB),
    _t(S.DISPUTED, E.ESCALATE_DISPUTE, S.DISPUTED, *_STAFF),
    _t(S.DISPUTED, E.RESOLVE_FUNDER_WINS, S.REFUNDING, *_STAFF),
    _t(S.DISPUTED, E.RESOLVE_LAB_WINS, S.PAID_OUT, *_STAFF),
    _t(S.DISPUTED, E.RESOLVE_PARTIAL, S.PARTIAL_SETTLEMENT, *_STAFF),
    _t(S.REFUNDING, E.EXECUTE_SETTLEMENT, S.COMPLETED, *_STAFF),
    _t(S.PAID_OUT, E.EXECUTE_SETTLEMENT, S.COMPLETED, *_STAFF),
    _t(S.PARTIAL_SETTLEMENT, E.EXECUTE_SETTLEMENT, S.COMPLETED, *_STAFF),
    _t(S.REFUNDING, E.EXECUTE_CANCELLATION_REFUND, S.CANCELLED, R.OWNER_FUNDER, R.ADMIN),
)

TRANSITIONS: dict[tuple[BountyState, BountyEvent], Transition] = {(t.source, t.event): t for t in _TABLE}  # type: ignore[misc]


def lookup(state: BountyState, event: BountyEvent) -> Transition:
    """Find the transition for ``(state, event)``.

    Raises:
        StateConflictError: If the table has no such entry.
    """
    transition = TRANSITIONS.get((state, event))
    if transition is None:
        raise StateConflictError(
            f"Cannot {event.value} a bounty in state {state.value}",
            current_state=state.value,
            attempted=event.value,
        )
    return transition


def allowed_events(state: BountyState) -> list[BountyEvent]:
    """Events that have a transition out of ``state``."""
    return [event for (source, event) in TRANSITIONS if source == state]


def roles_for(
    principal: Principal,
    funder_id: str | None = None,
    assigned_lab_owner_id: str | None = None,
) -> frozenset[Role]:
    """Compute the roles ``principal`` holds with respect to one bounty."""
    roles: set[Role] = set()
    caps = principal.capabilities
    if Capability.ADMIN in caps:
        roles.add(Role.ADMIN)
    if Capability.ARBITRATOR in caps:
        roles.add(Role.ARBITRATOR)
    if Capability.FUNDER in caps:
        roles.add(Role.FUNDER)
        if funder_id is not None and principal.principal_id == funder_id:
            roles.add(Role.OWNER_FUNDER)
    if Capability.LAB in caps:
        roles.add(Role.LAB)
        if assigned_lab_owner_id is not None and principal.principal_id == assigned_lab_owner_id:
            roles.add(Role.ASSIGNED_LAB)
    return frozenset(roles)


def authorize(transition: Transition, principal: Principal, roles: frozenset[Role]) -> None:
    """Raise AuthorizationError unless one of ``roles`` may fire ``transition``."""
    if not transition.roles & roles:
        raise AuthorizationError(
            f"Principal {principal.principal_id} may not {transition.event.value} this bounty",
            principal_id=principal.principal_id,
            required=sorted(r.value for r in transition.roles),
        )
