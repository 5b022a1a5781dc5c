"""Tests for sciflow.core.states - the bounty transition table."""

from __future__ import annotations

import pytest

from sciflow.core.exceptions import AuthorizationError, StateConflictError
from sciflow.core.identity import Principal
from sciflow.core.states import (
    CREATE_TRANSITION,
    DISPUTABLE_STATES,
    SETTLEMENT_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    BountyEvent,
    BountyState,
    Role,
    allowed_events,
    authorize,
    lookup,
    roles_for,
)

S = BountyState
E = BountyEvent


class TestTable:
    """The table is the single authority on state changes."""

    @pytest.mark.parametrize(
        ("state", "event", "target"),
        [
            (S.DRAFT, E.SUBMIT, S.PENDING_APPROVAL),
            (S.PENDING_APPROVAL, E.APPROVE, S.FUNDING),
            (S.PENDING_APPROVAL, E.REJECT, S.CANCELLED),
            (S.FUNDING, E.DEPOSIT_VERIFIED, S.OPEN_FOR_PROPOSALS),
            (S.OPEN_FOR_PROPOSALS, E.ACCEPT_PROPOSAL, S.RESEARCH_ACTIVE),
            (S.OPEN_FOR_PROPOSALS, E.REJECT_PROPOSAL, S.OPEN_FOR_PROPOSALS),
            (S.OPEN_FOR_PROPOSALS, E.CANCEL, S.REFUNDING),
            (S.RESEARCH_ACTIVE, E.SUBMIT_EVIDENCE, S.MILESTONE_REVIEW),
            (S.MILESTONE_REVIEW, E.VERIFY_MILESTONE, S.RESEARCH_ACTIVE),
            (S.MILESTONE_REVIEW, E.VERIFY_FINAL_MILESTONE, S.COMPLETED),
            (S.DISPUTED, E.RESOLVE_FUNDER_WINS, S.REFUNDING),
            (S.DISPUTED, E.RESOLVE_LAB_WINS, S.PAID_OUT),
            (S.DISPUTED, E.RESOLVE_PARTIAL, S.PARTIAL_SETTLEMENT),
            (S.REFUNDING, E.EXECUTE_CANCELLATION_REFUND, S.CANCELLED),
        ],
    )
    def test_targets(self, state, event, target):
        assert lookup(state, event).target == target

    @pytest.mark.parametrize(
        ("state", "event"),
        [
            (S.DRAFT, E.APPROVE),
            (S.FUNDING, E.SUBMIT_PROPOSAL),
            (S.OPEN_FOR_PROPOSALS, E.OPEN_DISPUTE),
            (S.COMPLETED, E.CANCEL),
            (S.RESEARCH_ACTIVE, E.CANCEL),
        ],
    )
    def test_missing_pairs_conflict(self, state, event):
        with pytest.raises(StateConflictError) as exc_info:
            lookup(state, event)
        assert exc_info.value.current_state == state.value
        assert exc_info.value.attempted == event.value

    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert allowed_events(state) == []
            assert state.is_terminal

    def test_settlement_states_exit_by_settlement(self):
        for state in SETTLEMENT_STATES:
            assert E.EXECUTE_SETTLEMENT in allowed_events(state)

    def test_disputes_only_during_research(self):
        sources = {t.source for t in TRANSITIONS.values() if t.event == E.OPEN_DISPUTE}
        assert sources == set(DISPUTABLE_STATES)

    def test_self_transitions(self):
        assert lookup(S.FUNDING, E.INIT_FUNDING).is_self_transition
        assert lookup(S.OPEN_FOR_PROPOSALS, E.SUBMIT_PROPOSAL).is_self_transition
        assert lookup(S.OPEN_FOR_PROPOSALS, E.REJECT_PROPOSAL).is_self_transition
        assert not lookup(S.DRAFT, E.SUBMIT).is_self_transition

    def test_reject_requires_reason(self):
        assert lookup(S.PENDING_APPROVAL, E.REJECT).requires_reason
        assert not lookup(S.PENDING_APPROVAL, E.APPROVE).requires_reason
        assert lookup(S.OPEN_FOR_PROPOSALS, E.REJECT_PROPOSAL).requires_reason


class TestRoles:
    def test_owner_funder(self):
        funder = Principal.of("f-1", "funder")
        assert roles_for(funder, "f-1") == {Role.FUNDER, Role.OWNER_FUNDER}
        assert roles_for(funder, "f-2") == {Role.FUNDER}

    def test_assigned_lab(self):
        lab = Principal.of("l-1", "lab")
        assert roles_for(lab, "f-1", "l-1") == {Role.LAB, Role.ASSIGNED_LAB}
        assert roles_for(lab, "f-1", None) == {Role.LAB}

    def test_staff(self):
        staff = Principal.of("s-1", "admin", "arbitrator")
        assert roles_for(staff) == {Role.ADMIN, Role.ARBITRATOR}

    def test_authorize(self):
        funder = Principal.of("f-1", "funder")
        authorize(CREATE_TRANSITION, funder, roles_for(funder))

        with pytest.raises(AuthorizationError) as exc_info:
            authorize(lookup(S.PENDING_APPROVAL, E.APPROVE), funder, roles_for(funder, "f-1"))
        assert exc_info.value.required == ["admin"]
