"""Global test fixtures for the SciFlow test suite."""

from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

import pytest

from sciflow.core.config import CoreSettings, clear_config_cache
from sciflow.core.engine import BountyLifecycleEngine
from sciflow.core.events import EventDispatcher, MemorySink
from sciflow.core.identity import Principal
from sciflow.core.models import Bounty, Escrow, Lab, Proposal, RailName
from sciflow.core.store import MemoryLedgerStore
from sciflow.rails import RailRegistry
from sciflow.rails.base import (
    DepositInstruction,
    DepositStatus,
    DepositVerification,
    PaymentRail,
    RailReceipt,
    fee_breakdown,
)

# ============================================================================
# PostgreSQL Availability Detection
# ============================================================================


def _check_postgres_available() -> tuple[bool, str | None]:
    """Check if PostgreSQL is available for integration tests.

    Returns:
        Tuple of (is_available, error_message)
    """
    if os.environ.get("SCIFLOW_TEST_POSTGRES") != "1":
        return False, "set SCIFLOW_TEST_POSTGRES=1 to run against a database"
    try:
        import psycopg2
    except ImportError:
        return False, "psycopg2 not installed"

    try:
        conn = psycopg2.connect(
            host=os.environ.get("SCIFLOW_DB_HOST", "localhost"),
            port=int(os.environ.get("SCIFLOW_DB_PORT", "5432")),
            database=os.environ.get("SCIFLOW_DB_NAME", "sciflow"),
            user=os.environ.get("SCIFLOW_DB_USER", "sciflow"),
            password=os.environ.get("SCIFLOW_DB_PASSWORD", ""),
            connect_timeout=3,
        )
        conn.close()
        return True, None
    except psycopg2.OperationalError as e:
        return False, f"PostgreSQL connection failed: {e}"


POSTGRES_AVAILABLE, POSTGRES_ERROR = _check_postgres_available()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "requires_postgres: mark test as requiring a real PostgreSQL database")


def pytest_collection_modifyitems(config, items):
    """Skip tests that require PostgreSQL when it is unavailable."""
    if POSTGRES_AVAILABLE:
        return
    skip_postgres = pytest.mark.skip(reason=f"PostgreSQL not available: {POSTGRES_ERROR}")
    for item in items:
        if "requires_postgres" in item.keywords:
            item.add_marker(skip_postgres)


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """Remove SciFlow and card processor variables from the environment."""
    for key in list(os.environ):
        if key.startswith(("SCIFLOW_", "STRIPE_")):
            monkeypatch.delenv(key, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


# ============================================================================
# Principals
# ============================================================================

FUNDER = Principal.of("funder-1", "funder")
OTHER_FUNDER = Principal.of("funder-2", "funder")
LAB_OWNER = Principal.of("lab-owner-1", "lab")
OTHER_LAB_OWNER = Principal.of("lab-owner-2", "lab")
ADMIN = Principal.of("admin-1", "admin")
ARBITRATOR = Principal.of("arbitrator-1", "arbitrator")

BASE_ADDRESS = "0x" + "ab" * 20
PAYER_ADDRESS = "0x" + "cd" * 20

TWO_MILESTONES = [
    {"title": "Protocol and pilot", "payout_percentage": "30"},
    {"title": "Full dataset", "payout_percentage": "70"},
]


@pytest.fixture
def funder() -> Principal:
    return FUNDER


@pytest.fixture
def lab_owner() -> Principal:
    return LAB_OWNER


@pytest.fixture
def admin() -> Principal:
    return ADMIN


@pytest.fixture
def arbitrator() -> Principal:
    return ARBITRATOR


# ============================================================================
# Rails, store and engine
# ============================================================================


class StubRail(PaymentRail):
    """In-process rail with scripted deposit outcomes.

    Payouts and refunds always succeed and are recorded in order, so tests
    can assert on what left escrow.
    """

    name = RailName.BASE_USDC

    def __init__(self, config: CoreSettings | None = None) -> None:
        super().__init__(config)
        self.deposit_status = DepositStatus.SUCCESS
        self.received_amount: Decimal | None = None
        self.releases: list[tuple[str, Decimal, str]] = []
        self.refunds: list[tuple[str, Decimal]] = []
        self.verify_calls = 0

    async def initialize_deposit(self, bounty_id: str, payer_identity: str, amount: Decimal) -> DepositInstruction:
        total, fee = fee_breakdown(amount, self.config.platform_fee_percent)
        return DepositInstruction(
            rail=self.name,
            deposit_reference=f"dep-{bounty_id}",
            expected_amount=total,
            platform_fee=fee,
            currency=self.currency,
            instructions={"deposit_address": "0xplatform", "from": payer_identity},
        )

    async def verify_deposit(self, reference: str, expected_amount: Decimal) -> DepositVerification:
        self.verify_calls += 1
        if self.deposit_status == DepositStatus.PENDING:
            return DepositVerification(DepositStatus.PENDING, None, reference, "not yet confirmed")
        received = self.received_amount if self.received_amount is not None else expected_amount
        if self.deposit_status == DepositStatus.MISMATCH:
            return DepositVerification(DepositStatus.MISMATCH, received, reference, "amount differs")
        return DepositVerification(DepositStatus.SUCCESS, received, reference)

    async def release_portion(self, escrow: Escrow, release_key: str, amount: Decimal, recipient: str) -> RailReceipt:
        self.releases.append((release_key, amount, recipient))
        return RailReceipt(self.name, f"tx-release-{len(self.releases)}", amount)

    async def refund(self, escrow: Escrow, amount: Decimal, refund_key: str) -> RailReceipt:
        self.refunds.append((refund_key, amount))
        return RailReceipt(self.name, f"tx-refund-{len(self.refunds)}", amount)


@pytest.fixture
def settings() -> CoreSettings:
    return CoreSettings(
        platform_fee_percent=Decimal("5"),
        stake_lock_percent=Decimal("10"),
        rail_backoff_seconds=0.0,
        rail_max_attempts=3,
        commit_max_attempts=3,
        enabled_rails="base_usdc",
    )


@pytest.fixture
def rail(settings) -> StubRail:
    return StubRail(settings)


@pytest.fixture
def store() -> MemoryLedgerStore:
    return MemoryLedgerStore()


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def engine(store, rail, settings, sink) -> BountyLifecycleEngine:
    return BountyLifecycleEngine(
        store,
        RailRegistry({rail.name: rail}),
        config=settings,
        events=EventDispatcher(sink, sink),
    )


class BountyFlow:
    """Drives bounties through the lifecycle for tests that start mid-way."""

    def __init__(self, engine: BountyLifecycleEngine, rail: StubRail) -> None:
        self.engine = engine
        self.rail = rail

    async def lab(
        self,
        owner: Principal = LAB_OWNER,
        stake: str | None = "500",
        tier: str = "verified",
        payout_account: str | None = BASE_ADDRESS,
    ) -> Lab:
        accounts = {self.rail.name.value: payout_account} if payout_account else {}
        lab = await self.engine.register_lab(owner, f"{owner.principal_id} lab", payout_accounts=accounts)
        await self.engine.set_verification_tier(ADMIN, lab.id, tier)
        if stake:
            await self.engine.deposit_stake(owner, lab.id, stake)
        return self.engine.get_lab(lab.id)

    async def draft(self, budget: str = "1000", milestones: list[dict[str, Any]] | None = None, **kwargs: Any) -> Bounty:
        return await self.engine.create_bounty(
            FUNDER,
            title="Replicate the kinase assay",
            description="Independent replication of published results",
            total_budget=budget,
            currency="USDC",
            milestones=milestones if milestones is not None else TWO_MILESTONES,
            **kwargs,
        )

    async def funding(self, budget: str = "1000", **kwargs: Any) -> Bounty:
        bounty = await self.draft(budget, **kwargs)
        await self.engine.submit_bounty(FUNDER, bounty.id)
        return await self.engine.approve_bounty(ADMIN, bounty.id)

    async def open(self, budget: str = "1000", **kwargs: Any) -> Bounty:
        bounty = await self.funding(budget, **kwargs)
        initiated = await self.engine.init_funding(FUNDER, bounty.id, self.rail.name, budget, PAYER_ADDRESS)
        await self.engine.confirm_funding(FUNDER, initiated.escrow_id, f"0xdeposit-{bounty.id}")
        return self.engine.get_bounty(bounty.id)

    async def propose(self, bounty: Bounty, lab: Lab, bid: str = "900", owner: Principal = LAB_OWNER) -> Proposal:
        return await self.engine.submit_proposal(owner, bounty.id, lab.id, bid, methodology="Standard protocol")

    async def active(self, budget: str = "1000", bid: str = "900", **kwargs: Any) -> tuple[Bounty, Lab]:
        bounty = await self.open(budget, **kwargs)
        lab = await self.lab()
        proposal = await self.propose(bounty, lab, bid)
        bounty = await self.engine.accept_proposal(FUNDER, bounty.id, proposal.id)
        return bounty, self.engine.get_lab(lab.id)

    async def submit_current(self, bounty: Bounty, owner: Principal = LAB_OWNER) -> Bounty:
        milestone = self.engine.get_bounty(bounty.id).next_pending_milestone()
        assert milestone is not None
        return await self.engine.submit_milestone_evidence(
            owner,
            milestone.id,
            {"content_hash": f"sha256:{milestone.id}", "url": f"https://data.example.org/{milestone.id}"},
        )


@pytest.fixture
def flow(engine, rail) -> BountyFlow:
    return BountyFlow(engine, rail)
