"""Tests for sciflow.core.disputes - settlement arithmetic and the resolver.

The engine-level flows live in test_engine_disputes.py; these tests drive
the resolver directly against a session.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from sciflow.core import staking
from sciflow.core.disputes import (
    DisputeResolver,
    active_dispute,
    escalate,
    open_dispute,
    settle_amounts,
    validate_evidence_links,
)
from sciflow.core.exceptions import AuthorizationError, StateConflictError, ValidationError
from sciflow.core.identity import Principal
from sciflow.core.models import (
    Bounty,
    Currency,
    Dispute,
    DisputeResolution,
    DisputeStatus,
    Escrow,
    EscrowStatus,
    Lab,
    RailName,
    SettlementKind,
    StakingTransactionType,
)
from sciflow.core.states import BountyEvent, BountyState
from sciflow.core.store import MemoryLedgerStore

FUNDER = Principal.of("funder-1", "funder")
ARBITRATOR = Principal.of("arb-1", "arbitrator")
DESCRIPTION = "Samples were stored above the agreed temperature"


def _bounty(state: BountyState = BountyState.RESEARCH_ACTIVE, bid: str | None = "900") -> Bounty:
    return Bounty(
        id="b-1",
        funder_id="funder-1",
        title="Assay",
        description="",
        total_budget=Decimal("1000"),
        currency=Currency.USDC,
        state=state,
        lab_id="lab-1",
        accepted_bid=Decimal(bid) if bid else None,
        locked_stake=Decimal("90"),
    )


def _escrow(released: str = "0") -> Escrow:
    return Escrow(
        id="e-1",
        bounty_id="b-1",
        rail=RailName.BASE_USDC,
        currency=Currency.USDC,
        budget=Decimal("1000"),
        total_amount=Decimal("1050"),
        platform_fee=Decimal("50"),
        released_amount=Decimal(released),
        status=EscrowStatus.LOCKED,
    )


@pytest.fixture
def ledger():
    store = MemoryLedgerStore()
    with store.transaction() as session:
        session.put(Lab(id="lab-1", owner_id="lab-owner-1", name="Lab"))
        staking.deposit(session, "lab-1", "500")
        staking.lock(session, "lab-1", "90", "b-1")
    return store


# ============================================================================
# settle_amounts
# ============================================================================


class TestSettleAmounts:
    """Funder refund and lab payout still owed, excluding the platform fee."""

    @pytest.mark.parametrize(
        ("resolution", "released", "pct", "expected"),
        [
            (DisputeResolution.FUNDER_WINS, "0", None, ("1000", "0")),
            (DisputeResolution.FUNDER_WINS, "270", None, ("730", "0")),
            (DisputeResolution.LAB_WINS, "0", None, ("100", "900")),
            (DisputeResolution.LAB_WINS, "270", None, ("100", "630")),
            (DisputeResolution.PARTIAL_REFUND, "0", Decimal("40"), ("460", "540")),
            (DisputeResolution.PARTIAL_REFUND, "270", Decimal("100"), ("730", "0")),
            (DisputeResolution.PARTIAL_REFUND, "270", Decimal("0"), ("100", "630")),
        ],
    )
    def test_amounts(self, resolution, released, pct, expected):
        refund, payout = settle_amounts(_bounty(), _escrow(released), resolution, pct)
        assert (refund, payout) == (Decimal(expected[0]), Decimal(expected[1]))

    def test_settlement_never_touches_fee(self):
        escrow = _escrow("270")
        for resolution, pct in ((DisputeResolution.FUNDER_WINS, None), (DisputeResolution.PARTIAL_REFUND, Decimal("25"))):
            refund, payout = settle_amounts(_bounty(), escrow, resolution, pct)
            assert escrow.released_amount + refund + payout == escrow.budget

    def test_budget_is_bid_without_acceptance(self):
        refund, payout = settle_amounts(_bounty(bid=None), _escrow(), DisputeResolution.LAB_WINS, None)
        assert (refund, payout) == (0, Decimal("1000"))


# ============================================================================
# Opening and escalating
# ============================================================================


class TestOpenDispute:
    def test_open(self, ledger):
        with ledger.transaction() as session:
            dispute = open_dispute(
                session, _bounty(), FUNDER, "funder", "sample_tampering", f"  {DESCRIPTION}  ", ["https://x.org/log"]
            )
        assert dispute.description == DESCRIPTION
        assert dispute.status == DisputeStatus.OPEN
        assert ledger.load(Dispute, dispute.id).evidence_links == ["https://x.org/log"]

    @pytest.mark.parametrize(
        ("reason", "description", "field"),
        [
            ("bad_vibes", DESCRIPTION, "reason"),
            ("quality_failure", "too short", "description"),
            ("quality_failure", "x" * 5001, "description"),
        ],
    )
    def test_invalid(self, ledger, reason, description, field):
        with ledger.transaction() as session:
            with pytest.raises(ValidationError) as exc_info:
                open_dispute(session, _bounty(), FUNDER, "funder", reason, description)
        assert exc_info.value.field == field

    def test_wrong_state(self, ledger):
        with ledger.transaction() as session:
            with pytest.raises(StateConflictError):
                open_dispute(session, _bounty(BountyState.OPEN_FOR_PROPOSALS), FUNDER, "funder", "quality_failure", DESCRIPTION)

    def test_one_active_dispute(self, ledger):
        with ledger.transaction() as session:
            first = open_dispute(session, _bounty(), FUNDER, "funder", "quality_failure", DESCRIPTION)
            assert active_dispute(session, "b-1").id == first.id
            with pytest.raises(StateConflictError, match="already has an open dispute"):
                open_dispute(session, _bounty(), FUNDER, "funder", "timeline_breach", DESCRIPTION)

    def test_escalation_path(self, ledger):
        with ledger.transaction() as session:
            dispute = open_dispute(session, _bounty(), FUNDER, "funder", "quality_failure", DESCRIPTION)
            assert escalate(session, dispute).status == DisputeStatus.UNDER_REVIEW
            assert escalate(session, dispute).status == DisputeStatus.ARBITRATION
            with pytest.raises(StateConflictError):
                escalate(session, dispute)


class TestEvidenceLinks:
    def test_accepts_http(self):
        assert validate_evidence_links(None) == []
        assert validate_evidence_links(["http://a.org/x", "https://b.org"]) == ["http://a.org/x", "https://b.org"]

    @pytest.mark.parametrize("link", ["ftp://a.org/x", "javascript:alert(1)", "https://", "not a url"])
    def test_rejects_other_schemes(self, link):
        with pytest.raises(ValidationError):
            validate_evidence_links([link])

    def test_limit(self):
        with pytest.raises(ValidationError):
            validate_evidence_links([f"https://x.org/{i}" for i in range(21)])


# ============================================================================
# Resolver
# ============================================================================


class TestDisputeResolver:
    def _open(self, session) -> Dispute:
        return open_dispute(session, _bounty(), FUNDER, "funder", "data_falsification", DESCRIPTION)

    def test_funder_wins_slashes_locked_stake(self, ledger):
        bounty = _bounty()
        with ledger.transaction() as session:
            dispute = self._open(session)
            outcome = DisputeResolver().resolve(
                session, ARBITRATOR, dispute, bounty, _escrow("270"), "funder_wins", slash_percentage="50", notes="clear"
            )

        assert outcome.event == BountyEvent.RESOLVE_FUNDER_WINS
        assert outcome.slash_amount == Decimal("45")
        assert outcome.unlock_amount == Decimal("45")
        assert outcome.plan.plan_type == SettlementKind.DISPUTE
        assert outcome.plan.key == f"settlement:{dispute.id}"
        assert outcome.plan.funder_refund == Decimal("730")
        assert bounty.locked_stake == 0

        lab = ledger.load(Lab, "lab-1")
        assert lab.staking_balance == Decimal("455")
        assert lab.locked_stake == 0

        stored = ledger.load(Dispute, dispute.id)
        assert stored.is_resolved
        assert stored.arbitrator_id == "arb-1"
        assert stored.arbitrator_notes == "clear"
        assert stored.settlement == outcome.plan

    @pytest.mark.parametrize("resolution", ["lab_wins", "partial_refund"])
    def test_other_outcomes_unlock_everything(self, ledger, resolution):
        with ledger.transaction() as session:
            dispute = self._open(session)
            outcome = DisputeResolver().resolve(
                session, ARBITRATOR, dispute, _bounty(), _escrow(), resolution, slash_percentage="50", refund_percentage="40"
            )
            kinds = [tx.transaction_type for tx in staking.history(session, "lab-1")]

        assert outcome.slash_amount == 0
        assert kinds[-1] == StakingTransactionType.UNLOCK
        assert ledger.load(Lab, "lab-1").staking_balance == Decimal("500")

    def test_parties_cannot_resolve(self, ledger):
        with ledger.transaction() as session:
            dispute = self._open(session)
            with pytest.raises(AuthorizationError):
                DisputeResolver().resolve(session, FUNDER, dispute, _bounty(), _escrow(), "funder_wins")

    @pytest.mark.parametrize(
        ("kwargs", "field"),
        [
            ({"resolution": "split"}, "resolution"),
            ({"resolution": "funder_wins", "slash_percentage": "101"}, "slash_percentage"),
            ({"resolution": "funder_wins", "slash_percentage": "NaN"}, "slash_percentage"),
            ({"resolution": "funder_wins", "slash_percentage": "half"}, "slash_percentage"),
            ({"resolution": "partial_refund"}, "refund_percentage"),
            ({"resolution": "partial_refund", "refund_percentage": -5}, "refund_percentage"),
        ],
    )
    def test_invalid_resolution(self, ledger, kwargs, field):
        with ledger.transaction() as session:
            dispute = self._open(session)
            with pytest.raises(ValidationError) as exc_info:
                DisputeResolver().resolve(session, ARBITRATOR, dispute, _bounty(), _escrow(), **kwargs)
        assert exc_info.value.field == field

    def test_resolve_once(self, ledger):
        with ledger.transaction() as session:
            dispute = self._open(session)
            DisputeResolver().resolve(session, ARBITRATOR, dispute, _bounty(), _escrow(), "lab_wins")
            with pytest.raises(StateConflictError, match="already resolved"):
                DisputeResolver().resolve(session, ARBITRATOR, dispute, _bounty(), _escrow(), "lab_wins")
