# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Bounty lifecycle engine.

Every command follows the same shape:

1. Look up ``(state, event)`` in the transition table and check the
   principal's roles against it.
2. Check the command's guards.
3. Compute side effects (escrow movements, stake changes, proposal updates).
4. Append exactly one TransitionRecord and commit, all in one unit of work.

Commands against one bounty are serialised by ``BountyLockManager``.
Money that leaves escrow is executed on the rail under that lock. Each
rail receipt is stored as soon as the call returns and a retry reuses it;
the escrow totals move in the same commit as the transition. Notifications
and audit events go out after the commit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

from . import disputes, staking, states
from .config import CoreSettings, get_config
from .disputes import DisputeResolver
from .escrow import (
    EscrowLedger,
    Movement,
    RefundPurpose,
    claim_deposit,
    create_escrow,
    deposit_claimant,
    mark_locked,
    milestone_release_key,
)
from .events import EventDispatcher
from .evidence import EvidenceStore, MemoryEvidenceStore
from .exceptions import (
    AuthorizationError,
    DatabaseException,
    InternalError,
    NotFoundError,
    RailVerificationError,
    SciflowError,
    StateConflictError,
    ValidationError,
)
from .identity import RAIL_CALLBACK, Capability, Principal, require_capability
from .locks import BountyLockManager
from .logging import command_logger, correlation_context
from .models import (
    HUNDRED,
    ZERO,
    Bounty,
    Currency,
    Dispute,
    DisputeResolution,
    Escrow,
    EscrowStatus,
    EvidenceReference,
    InboundEvent,
    Lab,
    Milestone,
    MilestoneRef,
    MilestoneStatus,
    Proposal,
    ProposalStatus,
    RailName,
    SettlementKind,
    SettlementPlan,
    StakingTransaction,
    VerificationTier,
    new_id,
    percent_of,
    to_money,
    utcnow,
)
from .states import BountyEvent, BountyState, Role, Transition
from .store import LedgerSession, LedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

TITLE_MAX_LENGTH = 200
CANCELLATION_KEY = "cancellation"

# Card callbacks that mean the funder's money is now held
DEPOSIT_EVENT_TYPES = frozenset({"payment_intent.amount_capturable_updated", "payment_intent.succeeded"})
FAILED_DEPOSIT_EVENT_TYPES = frozenset({"payment_intent.payment_failed", "payment_intent.canceled"})


@dataclass
class FundingInitiated:
    """Result of ``init_funding``: the escrow to confirm and how to pay into it."""

    bounty_id: str
    escrow_id: str
    instruction: Any

    def to_dict(self) -> dict[str, Any]:
        return {"bounty_id": self.bounty_id, "escrow_id": self.escrow_id, **self.instruction.to_dict()}


@dataclass
class FundingOutcome:
    """Result of ``confirm_funding``. ``pending`` is a normal outcome, not an error."""

    status: str  # verified | pending
    bounty_id: str
    escrow_id: str
    state: BountyState
    received_amount: Decimal | None = None
    detail: str = ""

    @property
    def verified(self) -> bool:
        return self.status == "verified"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "bounty_id": self.bounty_id,
            "escrow_id": self.escrow_id,
            "state": self.state.value,
            "received_amount": str(self.received_amount) if self.received_amount is not None else None,
            "detail": self.detail,
        }


def _money(value: Any, field: str) -> Decimal:
    try:
        amount = to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    if amount <= 0:
        raise ValidationError(f"{field} must be positive", field=field, value=value)
    return amount


def _parse_datetime(value: Any, field: str) -> datetime | None:
    """Parse an ISO 8601 timestamp; values without an offset are taken as UTC."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"{field} must be an ISO 8601 timestamp", field=field, value=value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def build_milestones(items: Any) -> list[Milestone]:
    """Turn milestone input dicts into Milestones, numbered in order.

    Each item needs ``title`` and ``payout_percentage``; ``description`` and
    ``due_date`` are optional. The 100% total is checked on submission, not
    here, so drafts can be built up incrementally.
    """
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("milestones must be a list of objects", field="milestones")
    milestones = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Milestone {index} must be an object", field="milestones")
        title = str(item.get("title") or "").strip()
        if not title:
            raise ValidationError(f"Milestone {index} needs a title", field="milestones")
        try:
            pct = Decimal(str(item.get("payout_percentage")))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Milestone {index} payout_percentage must be a number", field="milestones")
        if not pct.is_finite() or pct <= 0 or pct > HUNDRED:
            raise ValidationError(f"Milestone {index} payout_percentage must be in (0, 100]", field="milestones", value=str(pct))
        milestones.append(
            Milestone(
                id=str(item.get("id") or new_id()),
                sequence=index,
                title=title,
                payout_percentage=pct,
                description=str(item.get("description") or ""),
                due_date=_parse_datetime(item.get("due_date"), "due_date"),
            )
        )
    return milestones


def _require_full_payout(bounty: Bounty) -> None:
    if not bounty.milestones:
        raise ValidationError("A bounty needs at least one milestone", field="milestones")
    total = bounty.payout_total()
    if total != HUNDRED:
        raise ValidationError(
            f"Milestone payout percentages must sum to 100, got {total}", field="milestones", value=str(total)
        )


class BountyLifecycleEngine:
    """Runs bounty commands against the ledger.

    Args:
        store: Ledger storage backend.
        rails: RailRegistry with the enabled payment rails.
        config: Settings; the global config when omitted.
        events: Post-commit notification and audit dispatcher.
        evidence: Evidence store for ``attach_evidence``.
        locks: Per-bounty lock manager (share one per process).
        resolver: Dispute resolver.
    """

    def __init__(
        self,
        store: LedgerStore,
        rails: Any,
        config: CoreSettings | None = None,
        events: EventDispatcher | None = None,
        evidence: EvidenceStore | None = None,
        locks: BountyLockManager | None = None,
        resolver: DisputeResolver | None = None,
    ) -> None:
        self.store = store
        self.rails = rails
        self.config = config or get_config()
        self.events = events or EventDispatcher()
        self.evidence = evidence or MemoryEvidenceStore()
        self.locks = locks or BountyLockManager()
        self.resolver = resolver or DisputeResolver()
        self.escrow = EscrowLedger(rails)

    # =========================================================================
    # PLUMBING
    # =========================================================================

    @asynccontextmanager
    async def _command(self, name: str, principal: Principal, bounty_id: str | None = None, **arguments: Any) -> AsyncIterator[None]:
        with correlation_context(bounty_id=bounty_id):
            command_logger.log_command(name, principal.principal_id, arguments)
            start = time.perf_counter()
            try:
                yield
            except SciflowError as e:
                command_logger.log_outcome(name, f"rejected ({e.code})", (time.perf_counter() - start) * 1000)
                raise
            command_logger.log_outcome(name, "accepted", (time.perf_counter() - start) * 1000)

    async def _commit(self, work: Callable[[LedgerSession], T], description: str) -> T:
        """Run ``work`` in one unit of work, retrying storage failures.

        ``work`` must load everything it touches from the session it is
        given, since a retry runs it again from scratch.
        """
        attempts = max(1, self.config.commit_max_attempts)
        last_error: DatabaseException | None = None
        for attempt in range(attempts):
            try:
                with self.store.transaction() as session:
                    return work(session)
            except DatabaseException as e:
                last_error = e
                logger.warning(f"Storage error during {description} (attempt {attempt + 1}/{attempts}): {e}")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.rail_backoff_seconds * (2**attempt))
            except SciflowError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error during {description}")
                raise InternalError(f"{description} failed", {"cause": str(e)}) from e
        raise InternalError(f"{description} failed after {attempts} storage attempts", {"cause": str(last_error)})

    def _read(self, work: Callable[[LedgerSession], T]) -> T:
        with self.store.transaction() as session:
            return work(session)

    def _roles(self, session: LedgerSession, principal: Principal, bounty: Bounty | None) -> frozenset[Role]:
        if bounty is None:
            return states.roles_for(principal)
        lab_owner = None
        if bounty.lab_id is not None:
            lab = session.get(Lab, bounty.lab_id)
            lab_owner = lab.owner_id if lab else None
        return states.roles_for(principal, bounty.funder_id, lab_owner)

    def _check(self, session: LedgerSession, bounty: Bounty, event: BountyEvent, principal: Principal) -> Transition:
        """Look up and authorise ``event`` on ``bounty`` (steps 1 and 2 above)."""
        transition = states.lookup(bounty.state, event)
        states.authorize(transition, principal, self._roles(session, principal, bounty))
        return transition

    @staticmethod
    def _apply(
        session: LedgerSession,
        bounty: Bounty,
        transition: Transition,
        principal: Principal,
        reason: str | None = None,
    ) -> None:
        if transition.requires_reason and not (reason or "").strip():
            raise ValidationError(f"A reason is required to {transition.event.value}", field="reason")
        bounty.record(bounty.state, transition.target, transition.event, principal.principal_id, reason)
        session.put(bounty)

    def _bounty_id_for_milestone(self, milestone_id: str) -> str:
        def load(session: LedgerSession) -> str:
            ref = session.get(MilestoneRef, milestone_id)
            if ref is None:
                raise NotFoundError("Milestone", milestone_id)
            return ref.bounty_id

        return self._read(load)

    @staticmethod
    def _milestone(bounty: Bounty, milestone_id: str) -> Milestone:
        milestone = bounty.milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone", milestone_id)
        return milestone

    @staticmethod
    def _payout_account(lab: Lab, escrow: Escrow) -> str | None:
        return lab.payout_accounts.get(escrow.rail.value)

    async def _execute_movements(self, escrow: Escrow, movements: list[Movement]) -> list[str]:
        """Run movements on the rail in order and return their rail references.

        Each receipt is committed as soon as its rail call returns. A retry
        after a later movement failed reuses the stored receipt instead of
        calling the rail again.
        """
        references = []
        for movement in movements:
            reference = self._read(lambda session, m=movement: self.escrow.stored_receipt(session, m))
            if reference is None:
                receipt = await self.escrow.execute(escrow, movement)
                reference = receipt.reference
                await self._commit(
                    lambda session, m=movement, r=reference: self.escrow.remember(session, m, r), "record rail receipt"
                )
            else:
                logger.info(f"Escrow {escrow.id}: reusing {movement.kind.value} {movement.key} receipt ({reference})")
            references.append(reference)
        return references

    # =========================================================================
    # DRAFTING AND APPROVAL
    # =========================================================================

    async def create_bounty(
        self,
        principal: Principal,
        title: str,
        description: str,
        total_budget: Decimal | str | int,
        currency: Currency | str = Currency.USD,
        milestones: list[dict[str, Any]] | None = None,
        deadline: datetime | str | None = None,
        min_verification_tier: VerificationTier | str = VerificationTier.BASIC,
    ) -> Bounty:
        """Create a bounty in DRAFT owned by ``principal``."""
        async with self._command("create_bounty", principal, title=title, total_budget=str(total_budget)):
            states.authorize(states.CREATE_TRANSITION, principal, states.roles_for(principal))
            title = (title or "").strip()
            if not title or len(title) > TITLE_MAX_LENGTH:
                raise ValidationError(f"Title must be 1-{TITLE_MAX_LENGTH} characters", field="title")
            try:
                currency = Currency(currency)
                min_verification_tier = VerificationTier(min_verification_tier)
            except ValueError as e:
                raise ValidationError(str(e))

            bounty = Bounty(
                id=new_id(),
                funder_id=principal.principal_id,
                title=title,
                description=description or "",
                total_budget=_money(total_budget, "total_budget"),
                currency=currency,
                milestones=build_milestones(milestones),
                deadline=_parse_datetime(deadline, "deadline"),
                min_verification_tier=min_verification_tier,
            )
            bounty.record(None, BountyState.DRAFT, BountyEvent.CREATE, principal.principal_id)

            def work(session: LedgerSession) -> Bounty:
                session.insert(bounty)
                for milestone in bounty.milestones:
                    session.put(MilestoneRef(milestone.id, bounty.id))
                return bounty

            created = await self._commit(work, "create_bounty")

        self.events.audit_event("bounty.created", principal.principal_id, created.id, budget=str(created.total_budget))
        return created

    async def update_draft(
        self,
        principal: Principal,
        bounty_id: str,
        title: str | None = None,
        description: str | None = None,
        total_budget: Decimal | str | int | None = None,
        milestones: list[dict[str, Any]] | None = None,
        deadline: datetime | str | None = None,
        min_verification_tier: VerificationTier | str | None = None,
    ) -> Bounty:
        """Edit a bounty that is still a draft. Omitted fields are unchanged."""
        async with self._command("update_draft", principal, bounty_id):
            new_milestones = build_milestones(milestones) if milestones is not None else None
            budget = _money(total_budget, "total_budget") if total_budget is not None else None
            try:
                tier = VerificationTier(min_verification_tier) if min_verification_tier is not None else None
            except ValueError as e:
                raise ValidationError(str(e), field="min_verification_tier")

            def work(session: LedgerSession) -> Bounty:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.UPDATE_DRAFT, principal)
                if title is not None:
                    if not title.strip() or len(title.strip()) > TITLE_MAX_LENGTH:
                        raise ValidationError(f"Title must be 1-{TITLE_MAX_LENGTH} characters", field="title")
                    bounty.title = title.strip()
                if description is not None:
                    bounty.description = description
                if budget is not None:
                    bounty.total_budget = budget
                if new_milestones is not None:
                    bounty.milestones = new_milestones
                    for milestone in new_milestones:
                        session.put(MilestoneRef(milestone.id, bounty.id))
                if deadline is not None:
                    bounty.deadline = _parse_datetime(deadline, "deadline")
                if tier is not None:
                    bounty.min_verification_tier = tier
                self._apply(session, bounty, transition, principal)
                return bounty

            async with self.locks.hold(bounty_id):
                return await self._commit(work, "update_draft")

    async def submit_bounty(self, principal: Principal, bounty_id: str) -> Bounty:
        """DRAFT -> PENDING_APPROVAL once the milestones cover 100% of the payout."""
        async with self._command("submit_bounty", principal, bounty_id):

            def work(session: LedgerSession) -> Bounty:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.SUBMIT, principal)
                _require_full_payout(bounty)
                self._apply(session, bounty, transition, principal)
                return bounty

            async with self.locks.hold(bounty_id):
                bounty = await self._commit(work, "submit_bounty")

        self.events.audit_event("bounty.submitted", principal.principal_id, bounty_id)
        return bounty

    async def approve_bounty(
        self,
        principal: Principal,
        bounty_id: str,
        action: str = "approve",
        reason: str | None = None,
    ) -> Bounty:
        """Admin review: ``approve`` moves to FUNDING, ``reject`` cancels (reason required)."""
        if action not in ("approve", "reject"):
            raise ValidationError("action must be 'approve' or 'reject'", field="action", value=action)
        event = BountyEvent.APPROVE if action == "approve" else BountyEvent.REJECT

        async with self._command("approve_bounty", principal, bounty_id, action=action):

            def work(session: LedgerSession) -> Bounty:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, event, principal)
                self._apply(session, bounty, transition, principal, reason)
                return bounty

            async with self.locks.hold(bounty_id):
                bounty = await self._commit(work, "approve_bounty")

        if event == BountyEvent.APPROVE:
            self.events.notify(bounty.funder_id, "Bounty approved", f"'{bounty.title}' is approved and ready to fund", bounty_id=bounty.id)
        else:
            self.events.notify(bounty.funder_id, "Bounty rejected", f"'{bounty.title}' was rejected: {reason}", bounty_id=bounty.id)
        self.events.audit_event("bounty.approved" if event == BountyEvent.APPROVE else "bounty.rejected", principal.principal_id, bounty_id, reason=reason)
        return bounty

    async def cancel_bounty(self, principal: Principal, bounty_id: str, reason: str | None = None) -> Bounty:
        """Withdraw a bounty before a lab is assigned.

        A draft is cancelled outright. An open, funded bounty moves to
        REFUNDING with a plan to return the whole escrow (fee included);
        ``execute_settlement`` then pays it back and closes the bounty.
        """
        async with self._command("cancel_bounty", principal, bounty_id, reason=reason):

            def work(session: LedgerSession) -> tuple[Bounty, list[Proposal]]:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.CANCEL, principal)
                rejected: list[Proposal] = []
                if transition.target == BountyState.REFUNDING:
                    escrow = session.require(Escrow, bounty.escrow_id or "", for_update=True)
                    bounty.settlement = SettlementPlan(
                        plan_type=SettlementKind.CANCELLATION,
                        key=CANCELLATION_KEY,
                        funder_refund=escrow.outstanding,
                    )
                    rejected = self._reject_pending(session, bounty.id)
                self._apply(session, bounty, transition, principal, reason)
                return bounty, rejected

            async with self.locks.hold(bounty_id):
                bounty, rejected = await self._commit(work, "cancel_bounty")

        for proposal in rejected:
            self._notify_lab(proposal.lab_id, "Bounty cancelled", f"'{bounty.title}' was cancelled by its funder", bounty_id=bounty.id)
        self.events.audit_event("bounty.cancelled", principal.principal_id, bounty_id, reason=reason)
        return bounty

    # =========================================================================
    # FUNDING
    # =========================================================================

    async def init_funding(
        self,
        principal: Principal,
        bounty_id: str,
        rail: RailName | str,
        amount: Decimal | str | int,
        payer_identity: str,
    ) -> FundingInitiated:
        """Open (or re-open) the escrow for a bounty on one rail.

        Calling it again while the deposit is still pending replaces the
        deposit instruction but keeps the escrow id.
        """
        async with self._command("init_funding", principal, bounty_id, rail=str(rail), amount=str(amount), payer=payer_identity):
            value = _money(amount, "amount")
            payment_rail = self.rails.get(rail)

            def precheck(session: LedgerSession) -> Bounty:
                bounty = session.require(Bounty, bounty_id)
                self._check(session, bounty, BountyEvent.INIT_FUNDING, principal)
                if value != bounty.total_budget:
                    raise ValidationError(
                        f"Funding amount {value} must equal the bounty budget {bounty.total_budget}",
                        field="amount",
                        value=str(value),
                    )
                if payment_rail.currency != bounty.currency:
                    raise ValidationError(
                        f"Rail {payment_rail.name.value} settles in {payment_rail.currency.value}, "
                        f"bounty is in {bounty.currency.value}",
                        field="rail",
                    )
                if not payer_identity:
                    raise ValidationError("payer_identity is required", field="payer_identity")
                return bounty

            self._read(precheck)
            instruction = await payment_rail.initialize_deposit(bounty_id, payer_identity, value)

            def work(session: LedgerSession) -> Escrow:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.INIT_FUNDING, principal)
                escrow_id = None
                if bounty.escrow_id:
                    existing = session.get(Escrow, bounty.escrow_id, for_update=True)
                    if existing is not None:
                        if existing.status != EscrowStatus.PENDING:
                            raise StateConflictError(
                                f"Escrow {existing.id} is already {existing.status.value}",
                                current_state=existing.status.value,
                                attempted=BountyEvent.INIT_FUNDING.value,
                            )
                        escrow_id = existing.id
                escrow = create_escrow(
                    session,
                    bounty,
                    payment_rail.name,
                    instruction.expected_amount,
                    instruction.platform_fee,
                    payer_identity,
                    instruction.deposit_reference,
                    escrow_id=escrow_id,
                    rail_metadata=dict(instruction.instructions),
                )
                bounty.escrow_id = escrow.id
                self._apply(session, bounty, transition, principal)
                return escrow

            async with self.locks.hold(bounty_id):
                escrow = await self._commit(work, "init_funding")

        self.events.audit_event("escrow.initialized", principal.principal_id, bounty_id, escrow_id=escrow.id, rail=escrow.rail.value)
        return FundingInitiated(bounty_id, escrow.id, instruction)

    async def confirm_funding(self, principal: Principal, escrow_id: str, reference: str) -> FundingOutcome:
        """Verify the deposit behind ``reference`` and open the bounty for proposals.

        Verification runs before the bounty lock is taken. A pending deposit
        changes nothing; a mismatch raises a non-retryable
        RailVerificationError and also changes nothing. The deposit is
        claimed for this escrow in the same commit that locks it, so one
        deposit never funds two escrows.
        """
        if not reference:
            raise ValidationError("reference is required", field="reference")

        def precheck(session: LedgerSession) -> tuple[Bounty, Escrow]:
            escrow = session.require(Escrow, escrow_id)
            bounty = session.require(Bounty, escrow.bounty_id)
            self._check(session, bounty, BountyEvent.DEPOSIT_VERIFIED, principal)
            if escrow.status != EscrowStatus.PENDING:
                raise StateConflictError(
                    f"Escrow {escrow.id} is already {escrow.status.value}",
                    current_state=escrow.status.value,
                    attempted=BountyEvent.DEPOSIT_VERIFIED.value,
                )
            return bounty, escrow

        bounty, escrow = self._read(precheck)
        async with self._command("confirm_funding", principal, bounty.id, escrow_id=escrow_id, reference=reference):
            rail = self.rails.get(escrow.rail)
            if rail.binds_deposit_reference and reference != escrow.deposit_reference:
                raise ValidationError(
                    f"Escrow {escrow_id} can only be funded by its own deposit reference", field="reference", value=reference
                )
            owner = self._read(lambda session: deposit_claimant(session, escrow.rail, rail.normalize_reference(reference)))
            if owner is not None and owner != escrow_id:
                raise StateConflictError(f"Deposit {reference} already funded escrow {owner}")

            verification = await rail.verify_deposit(reference, escrow.total_amount)

            if verification.status == "pending":
                logger.info(f"Deposit {reference} for escrow {escrow_id} is still pending")
                return FundingOutcome("pending", bounty.id, escrow_id, bounty.state, None, verification.detail)
            if not verification.ok:
                logger.warning(f"Deposit {reference} for escrow {escrow_id} does not match: {verification.detail}")
                raise RailVerificationError(
                    f"Deposit does not match escrow {escrow_id}: {verification.detail}",
                    rail=escrow.rail.value,
                    retryable=False,
                )
            claimed = {rail.normalize_reference(r) for r in (reference, verification.tx_reference) if r}

            def work(session: LedgerSession) -> Bounty:
                current = session.require(Bounty, bounty.id, for_update=True)
                transition = self._check(session, current, BountyEvent.DEPOSIT_VERIFIED, principal)
                locked = session.require(Escrow, escrow_id, for_update=True)
                claim_deposit(session, locked, claimed)
                mark_locked(session, locked, verification.tx_reference or reference, verification.received_amount)
                current.funded_at = utcnow()
                self._apply(session, current, transition, principal)
                return current

            async with self.locks.hold(bounty.id):
                funded = await self._commit(work, "confirm_funding")

        self.events.notify(funded.funder_id, "Bounty funded", f"'{funded.title}' is funded and open for proposals", bounty_id=funded.id)
        self.events.audit_event("escrow.locked", principal.principal_id, funded.id, escrow_id=escrow_id, reference=reference)
        return FundingOutcome("verified", funded.id, escrow_id, funded.state, verification.received_amount, verification.detail)

    # =========================================================================
    # PROPOSALS
    # =========================================================================

    async def submit_proposal(
        self,
        principal: Principal,
        bounty_id: str,
        lab_id: str,
        bid_amount: Decimal | str | int,
        methodology: str = "",
        timeline_days: int | None = None,
    ) -> Proposal:
        async with self._command("submit_proposal", principal, bounty_id, lab_id=lab_id, bid_amount=str(bid_amount)):
            bid = _money(bid_amount, "bid_amount")
            if timeline_days is not None:
                if isinstance(timeline_days, bool) or not isinstance(timeline_days, int):
                    raise ValidationError("timeline_days must be a whole number of days", field="timeline_days", value=timeline_days)
                if timeline_days <= 0:
                    raise ValidationError("timeline_days must be positive", field="timeline_days", value=timeline_days)

            def work(session: LedgerSession) -> tuple[Bounty, Proposal]:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.SUBMIT_PROPOSAL, principal)
                lab = session.require(Lab, lab_id)
                if lab.owner_id != principal.principal_id:
                    raise AuthorizationError(
                        f"Principal {principal.principal_id} does not own lab {lab_id}",
                        principal_id=principal.principal_id,
                    )
                if bid > bounty.total_budget:
                    raise ValidationError(
                        f"Bid {bid} exceeds the bounty budget {bounty.total_budget}", field="bid_amount", value=str(bid)
                    )
                for existing in session.find(Proposal, bounty_id=bounty_id, lab_id=lab_id):
                    if existing.status == ProposalStatus.PENDING:
                        raise StateConflictError(f"Lab {lab_id} already has a pending proposal ({existing.id})")
                proposal = Proposal(
                    id=new_id(),
                    bounty_id=bounty_id,
                    lab_id=lab_id,
                    submitted_by=principal.principal_id,
                    bid_amount=bid,
                    methodology=methodology or "",
                    timeline_days=timeline_days,
                )
                session.insert(proposal)
                self._apply(session, bounty, transition, principal)
                return bounty, proposal

            async with self.locks.hold(bounty_id):
                bounty, proposal = await self._commit(work, "submit_proposal")

        self.events.notify(bounty.funder_id, "New proposal", f"A lab bid {proposal.bid_amount} on '{bounty.title}'", bounty_id=bounty_id, proposal_id=proposal.id)
        self.events.audit_event("proposal.submitted", principal.principal_id, bounty_id, proposal_id=proposal.id)
        return proposal

    async def withdraw_proposal(self, principal: Principal, proposal_id: str) -> Proposal:
        bounty_id = self._read(lambda session: session.require(Proposal, proposal_id).bounty_id)
        async with self._command("withdraw_proposal", principal, bounty_id, proposal_id=proposal_id):

            def work(session: LedgerSession) -> Proposal:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.WITHDRAW_PROPOSAL, principal)
                proposal = session.require(Proposal, proposal_id, for_update=True)
                lab = session.require(Lab, proposal.lab_id)
                if lab.owner_id != principal.principal_id:
                    raise AuthorizationError(
                        f"Only the proposing lab may withdraw proposal {proposal_id}",
                        principal_id=principal.principal_id,
                    )
                if proposal.status != ProposalStatus.PENDING:
                    raise StateConflictError(
                        f"Proposal {proposal_id} is {proposal.status.value}",
                        current_state=proposal.status.value,
                        attempted=BountyEvent.WITHDRAW_PROPOSAL.value,
                    )
                proposal.status = ProposalStatus.WITHDRAWN
                proposal.reviewed_at = utcnow()
                session.put(proposal)
                self._apply(session, bounty, transition, principal)
                return proposal

            async with self.locks.hold(bounty_id):
                proposal = await self._commit(work, "withdraw_proposal")

        self.events.audit_event("proposal.withdrawn", principal.principal_id, bounty_id, proposal_id=proposal_id)
        return proposal

    async def reject_proposal(self, principal: Principal, proposal_id: str, reason: str) -> Proposal:
        """Decline one pending proposal; the bounty stays open for others.

        The reason is required and is passed on to the proposing lab.
        """
        bounty_id = self._read(lambda session: session.require(Proposal, proposal_id).bounty_id)
        async with self._command("reject_proposal", principal, bounty_id, proposal_id=proposal_id):

            def work(session: LedgerSession) -> Proposal:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.REJECT_PROPOSAL, principal)
                proposal = session.require(Proposal, proposal_id, for_update=True)
                if proposal.status != ProposalStatus.PENDING:
                    raise StateConflictError(
                        f"Proposal {proposal_id} is {proposal.status.value}",
                        current_state=proposal.status.value,
                        attempted=BountyEvent.REJECT_PROPOSAL.value,
                    )
                self._apply(session, bounty, transition, principal, reason)
                proposal.status = ProposalStatus.REJECTED
                proposal.reviewed_at = utcnow()
                proposal.rejection_reason = reason.strip()
                session.put(proposal)
                return proposal

            async with self.locks.hold(bounty_id):
                proposal = await self._commit(work, "reject_proposal")

        self._notify_lab(
            proposal.lab_id,
            "Proposal rejected",
            f"Your proposal was declined: {proposal.rejection_reason}",
            bounty_id=bounty_id,
            proposal_id=proposal_id,
        )
        self.events.audit_event(
            "proposal.rejected", principal.principal_id, bounty_id, proposal_id=proposal_id, reason=proposal.rejection_reason
        )
        return proposal

    @staticmethod
    def _reject_pending(session: LedgerSession, bounty_id: str, keep: str | None = None) -> list[Proposal]:
        rejected = []
        now = utcnow()
        for proposal in session.find(Proposal, bounty_id=bounty_id):
            if proposal.id == keep or proposal.status != ProposalStatus.PENDING:
                continue
            proposal.status = ProposalStatus.REJECTED
            proposal.reviewed_at = now
            session.put(proposal)
            rejected.append(proposal)
        return rejected

    async def accept_proposal(self, principal: Principal, bounty_id: str, proposal_id: str) -> Bounty:
        """Assign the bounty to a lab.

        In one unit of work: the proposal is accepted, every other pending
        proposal is rejected, ``stake_lock_percent`` of the bid is locked
        from the lab's stake and the first milestone starts.

        Raises:
            ValidationError: Tier too low, payouts not 100%, or no payout
                account on the escrow's rail.
            InsufficientStakeError: The lab cannot cover the stake lock.
        """
        async with self._command("accept_proposal", principal, bounty_id, proposal_id=proposal_id):

            def work(session: LedgerSession) -> tuple[Bounty, Lab, list[Proposal]]:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.ACCEPT_PROPOSAL, principal)
                proposal = session.require(Proposal, proposal_id, for_update=True)
                if proposal.bounty_id != bounty_id:
                    raise NotFoundError("Proposal", proposal_id)
                if proposal.status != ProposalStatus.PENDING:
                    raise StateConflictError(
                        f"Proposal {proposal_id} is {proposal.status.value}",
                        current_state=proposal.status.value,
                        attempted=BountyEvent.ACCEPT_PROPOSAL.value,
                    )
                lab = session.require(Lab, proposal.lab_id)
                if not lab.verification_tier.meets(bounty.min_verification_tier):
                    raise ValidationError(
                        f"Lab tier {lab.verification_tier.value} is below the required "
                        f"{bounty.min_verification_tier.value}",
                        field="verification_tier",
                        value=lab.verification_tier.value,
                    )
                _require_full_payout(bounty)
                escrow = session.require(Escrow, bounty.escrow_id or "")
                if not self._payout_account(lab, escrow):
                    raise ValidationError(
                        f"Lab {lab.id} has no payout account for rail {escrow.rail.value}", field="payout_accounts"
                    )

                stake = percent_of(proposal.bid_amount, self.config.stake_lock_percent)
                staking.lock(session, lab.id, stake, bounty.id)

                now = utcnow()
                proposal.status = ProposalStatus.ACCEPTED
                proposal.reviewed_at = now
                session.put(proposal)
                rejected = self._reject_pending(session, bounty_id, keep=proposal_id)

                bounty.lab_id = lab.id
                bounty.selected_proposal_id = proposal.id
                bounty.accepted_bid = proposal.bid_amount
                bounty.locked_stake = stake
                bounty.started_at = now
                first = bounty.next_pending_milestone()
                if first is not None:
                    first.status = MilestoneStatus.IN_PROGRESS
                self._apply(session, bounty, transition, principal)
                return bounty, lab, rejected

            async with self.locks.hold(bounty_id):
                bounty, lab, rejected = await self._commit(work, "accept_proposal")

        self.events.notify(lab.owner_id, "Proposal accepted", f"Your proposal for '{bounty.title}' was accepted", bounty_id=bounty_id)
        for proposal in rejected:
            self._notify_lab(proposal.lab_id, "Proposal not selected", f"Another lab was selected for '{bounty.title}'", bounty_id=bounty_id)
        self.events.audit_event(
            "proposal.accepted", principal.principal_id, bounty_id, proposal_id=proposal_id, locked_stake=str(bounty.locked_stake)
        )
        return bounty

    def _notify_lab(self, lab_id: str, title: str, message: str, **data: Any) -> None:
        lab = self._read(lambda session: session.get(Lab, lab_id))
        if lab is not None:
            self.events.notify(lab.owner_id, title, message, **data)

    # =========================================================================
    # MILESTONES
    # =========================================================================

    async def submit_milestone_evidence(
        self,
        principal: Principal,
        milestone_id: str,
        evidence_reference: EvidenceReference | dict[str, Any],
    ) -> Bounty:
        """The assigned lab hands in evidence for the current milestone."""
        if isinstance(evidence_reference, dict):
            if not evidence_reference.get("content_hash") or not evidence_reference.get("url"):
                raise ValidationError("Evidence needs content_hash and url", field="evidence_reference")
            evidence_reference = EvidenceReference.from_dict(evidence_reference)
        bounty_id = self._bounty_id_for_milestone(milestone_id)

        async with self._command("submit_milestone_evidence", principal, bounty_id, milestone_id=milestone_id):

            def work(session: LedgerSession) -> Bounty:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.SUBMIT_EVIDENCE, principal)
                milestone = self._milestone(bounty, milestone_id)
                current = bounty.next_pending_milestone()
                if current is None or current.id != milestone_id:
                    raise StateConflictError(
                        f"Milestone {milestone_id} is not the milestone in progress",
                        current_state=milestone.status.value,
                        attempted=BountyEvent.SUBMIT_EVIDENCE.value,
                    )
                milestone.status = MilestoneStatus.SUBMITTED
                milestone.evidence = evidence_reference
                milestone.submitted_at = utcnow()
                self._apply(session, bounty, transition, principal)
                return bounty

            async with self.locks.hold(bounty_id):
                bounty = await self._commit(work, "submit_milestone_evidence")

        milestone = self._milestone(bounty, milestone_id)
        self.events.notify(
            bounty.funder_id, "Milestone submitted", f"'{milestone.title}' is ready for review", bounty_id=bounty_id, milestone_id=milestone_id
        )
        self.events.audit_event("milestone.submitted", principal.principal_id, bounty_id, milestone_id=milestone_id)
        return bounty

    async def attach_evidence(
        self,
        principal: Principal,
        milestone_id: str,
        payload: bytes,
        filename: str | None = None,
    ) -> Bounty:
        """Store ``payload`` in the evidence store and submit it for the milestone."""
        bounty_id = self._bounty_id_for_milestone(milestone_id)

        def precheck(session: LedgerSession) -> None:
            bounty = session.require(Bounty, bounty_id)
            self._check(session, bounty, BountyEvent.SUBMIT_EVIDENCE, principal)

        self._read(precheck)
        reference = self.evidence.store(payload, filename)
        return await self.submit_milestone_evidence(principal, milestone_id, reference)

    async def verify_milestone(
        self,
        principal: Principal,
        milestone_id: str,
        approve: bool,
        feedback: str | None = None,
    ) -> Bounty:
        """Review submitted evidence.

        Approval pays ``accepted_bid × payout%`` to the lab. The final
        milestone pays whatever is left of the bid, refunds the unused
        budget to the funder, unlocks the lab's stake and completes the
        bounty. Rejection sends the milestone back to the lab.
        """
        bounty_id = self._bounty_id_for_milestone(milestone_id)
        async with self._command("verify_milestone", principal, bounty_id, milestone_id=milestone_id, approve=approve):
            async with self.locks.hold(bounty_id):
                if not approve:
                    bounty = await self._commit(
                        lambda session: self._reject_milestone(session, principal, bounty_id, milestone_id, feedback),
                        "verify_milestone",
                    )
                else:
                    bounty = await self._approve_milestone(principal, bounty_id, milestone_id, feedback)

        milestone = self._milestone(bounty, milestone_id)
        lab_data = {"bounty_id": bounty_id, "milestone_id": milestone_id}
        if not approve:
            self._notify_lab(bounty.lab_id or "", "Milestone needs revision", f"'{milestone.title}': {feedback or 'see feedback'}", **lab_data)
        elif bounty.state == BountyState.COMPLETED:
            self._notify_lab(bounty.lab_id or "", "Bounty completed", f"'{bounty.title}' is complete and paid out", **lab_data)
            self.events.notify(bounty.funder_id, "Bounty completed", f"'{bounty.title}' is complete", bounty_id=bounty_id)
        else:
            self._notify_lab(bounty.lab_id or "", "Milestone approved", f"'{milestone.title}' was approved and paid", **lab_data)
        self.events.audit_event("milestone.verified" if approve else "milestone.rejected", principal.principal_id, bounty_id, milestone_id=milestone_id)
        return bounty

    def _reject_milestone(
        self,
        session: LedgerSession,
        principal: Principal,
        bounty_id: str,
        milestone_id: str,
        feedback: str | None,
    ) -> Bounty:
        bounty = session.require(Bounty, bounty_id, for_update=True)
        transition = self._check(session, bounty, BountyEvent.REJECT_MILESTONE, principal)
        milestone = self._milestone(bounty, milestone_id)
        if milestone.status != MilestoneStatus.SUBMITTED:
            raise StateConflictError(
                f"Milestone {milestone_id} is {milestone.status.value}, not submitted",
                current_state=milestone.status.value,
                attempted=BountyEvent.REJECT_MILESTONE.value,
            )
        milestone.status = MilestoneStatus.REJECTED
        milestone.feedback = feedback
        self._apply(session, bounty, transition, principal, feedback)
        return bounty

    async def _approve_milestone(
        self,
        principal: Principal,
        bounty_id: str,
        milestone_id: str,
        feedback: str | None,
    ) -> Bounty:
        def plan(session: LedgerSession) -> tuple[Escrow, list[Movement]]:
            bounty = session.require(Bounty, bounty_id)
            milestone = self._milestone(bounty, milestone_id)
            final = all(m.status == MilestoneStatus.VERIFIED for m in bounty.milestones if m.id != milestone_id)
            self._check(session, bounty, BountyEvent.VERIFY_FINAL_MILESTONE if final else BountyEvent.VERIFY_MILESTONE, principal)
            if milestone.status != MilestoneStatus.SUBMITTED:
                raise StateConflictError(
                    f"Milestone {milestone_id} is {milestone.status.value}, not submitted",
                    current_state=milestone.status.value,
                    attempted=BountyEvent.VERIFY_MILESTONE.value,
                )
            escrow = session.require(Escrow, bounty.escrow_id or "")
            lab = session.require(Lab, bounty.lab_id or "")
            bid = bounty.accepted_bid if bounty.accepted_bid is not None else bounty.total_budget
            amount = to_money(bid - escrow.released_amount) if final else percent_of(bid, milestone.payout_percentage)

            movements = []
            if amount > 0:
                movements.append(
                    self.escrow.plan_release(
                        session, escrow, milestone_release_key(milestone_id), amount, self._payout_account(lab, escrow) or "", milestone_id
                    )
                )
            surplus = to_money(bounty.total_budget - bid)
            if final and surplus > 0:
                movements.append(self.escrow.plan_refund(session, escrow, RefundPurpose.SURPLUS, surplus))
            return escrow, movements

        escrow, movements = self._read(plan)
        references = await self._execute_movements(escrow, movements)

        def work(session: LedgerSession) -> Bounty:
            bounty = session.require(Bounty, bounty_id, for_update=True)
            milestone = self._milestone(bounty, milestone_id)
            final = all(m.status == MilestoneStatus.VERIFIED for m in bounty.milestones if m.id != milestone_id)
            transition = self._check(
                session, bounty, BountyEvent.VERIFY_FINAL_MILESTONE if final else BountyEvent.VERIFY_MILESTONE, principal
            )
            for movement, reference in zip(movements, references):
                self.escrow.apply(session, movement, reference)

            now = utcnow()
            milestone.status = MilestoneStatus.VERIFIED
            milestone.verified_at = now
            milestone.feedback = feedback
            if final:
                if bounty.lab_id and bounty.locked_stake > 0:
                    staking.unlock(session, bounty.lab_id, bounty.locked_stake, bounty.id)
                bounty.locked_stake = ZERO
                bounty.completed_at = now
            else:
                upcoming = bounty.next_pending_milestone()
                if upcoming is not None and upcoming.status == MilestoneStatus.PENDING:
                    upcoming.status = MilestoneStatus.IN_PROGRESS
            self._apply(session, bounty, transition, principal, feedback)
            return bounty

        return await self._commit(work, "verify_milestone")

    # =========================================================================
    # DISPUTES
    # =========================================================================

    async def open_dispute(
        self,
        principal: Principal,
        bounty_id: str,
        reason: str,
        description: str,
        evidence_links: list[str] | None = None,
    ) -> Dispute:
        """The funder or the assigned lab freezes the bounty pending resolution."""
        async with self._command("open_dispute", principal, bounty_id, reason=reason):

            def work(session: LedgerSession) -> tuple[Bounty, Dispute]:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                roles = self._roles(session, principal, bounty)
                transition = states.lookup(bounty.state, BountyEvent.OPEN_DISPUTE)
                states.authorize(transition, principal, roles)
                initiator_role = "funder" if Role.OWNER_FUNDER in roles else "lab"
                dispute = disputes.open_dispute(session, bounty, principal, initiator_role, reason, description, evidence_links)
                self._apply(session, bounty, transition, principal, dispute.reason.value)
                return bounty, dispute

            async with self.locks.hold(bounty_id):
                bounty, dispute = await self._commit(work, "open_dispute")

        if dispute.initiator_role == "funder":
            self._notify_lab(bounty.lab_id or "", "Dispute opened", f"The funder disputed '{bounty.title}'", bounty_id=bounty_id, dispute_id=dispute.id)
        else:
            self.events.notify(bounty.funder_id, "Dispute opened", f"The lab disputed '{bounty.title}'", bounty_id=bounty_id, dispute_id=dispute.id)
        self.events.audit_event("dispute.opened", principal.principal_id, bounty_id, dispute_id=dispute.id, reason=dispute.reason.value)
        return dispute

    async def escalate_dispute(self, principal: Principal, dispute_id: str) -> Dispute:
        bounty_id = self._read(lambda session: session.require(Dispute, dispute_id).bounty_id)
        async with self._command("escalate_dispute", principal, bounty_id, dispute_id=dispute_id):

            def work(session: LedgerSession) -> Dispute:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                transition = self._check(session, bounty, BountyEvent.ESCALATE_DISPUTE, principal)
                dispute = disputes.escalate(session, session.require(Dispute, dispute_id, for_update=True))
                self._apply(session, bounty, transition, principal, dispute.status.value)
                return dispute

            async with self.locks.hold(bounty_id):
                dispute = await self._commit(work, "escalate_dispute")

        self.events.audit_event("dispute.escalated", principal.principal_id, bounty_id, dispute_id=dispute_id, status=dispute.status.value)
        return dispute

    async def resolve_dispute(
        self,
        principal: Principal,
        dispute_id: str,
        resolution: DisputeResolution | str,
        slash_percentage: Decimal | str | int | None = None,
        refund_percentage: Decimal | str | int | None = None,
        notes: str | None = None,
    ) -> Dispute:
        """Decide a dispute; stake is slashed or unlocked in the same commit.

        The money owed is stored on the bounty as a settlement plan and paid
        by ``execute_settlement``.
        """
        try:
            resolution = DisputeResolution(resolution)
        except ValueError:
            raise ValidationError(f"Unknown resolution: {resolution}", field="resolution", value=resolution)
        bounty_id = self._read(lambda session: session.require(Dispute, dispute_id).bounty_id)

        async with self._command("resolve_dispute", principal, bounty_id, dispute_id=dispute_id, resolution=resolution.value):

            def work(session: LedgerSession) -> tuple[Bounty, Dispute]:
                bounty = session.require(Bounty, bounty_id, for_update=True)
                dispute = session.require(Dispute, dispute_id, for_update=True)
                if dispute.is_resolved:
                    raise StateConflictError(
                        f"Dispute {dispute_id} is already resolved",
                        current_state=dispute.status.value,
                        attempted="resolve",
                    )
                transition = self._check(session, bounty, disputes.RESOLUTION_EVENTS[resolution], principal)
                escrow = session.require(Escrow, bounty.escrow_id or "")
                outcome = self.resolver.resolve(
                    session, principal, dispute, bounty, escrow, resolution, slash_percentage, refund_percentage, notes
                )
                bounty.settlement = outcome.plan
                self._apply(session, bounty, transition, principal, notes)
                return bounty, dispute

            async with self.locks.hold(bounty_id):
                bounty, dispute = await self._commit(work, "resolve_dispute")

        message = f"Dispute on '{bounty.title}' resolved: {resolution.value}"
        self.events.notify(bounty.funder_id, "Dispute resolved", message, bounty_id=bounty_id, dispute_id=dispute_id)
        self._notify_lab(bounty.lab_id or "", "Dispute resolved", message, bounty_id=bounty_id, dispute_id=dispute_id)
        self.events.audit_event(
            "dispute.resolved",
            principal.principal_id,
            bounty_id,
            dispute_id=dispute_id,
            resolution=resolution.value,
            slash_amount=str(dispute.slash_amount),
        )
        return dispute

    async def execute_settlement(self, principal: Principal, bounty_id: str) -> Bounty:
        """Pay out the stored settlement plan and close the bounty.

        The lab payout goes first, then the funder refund. A dispute
        settlement ends in COMPLETED; a cancellation refund ends in CANCELLED.
        """
        async with self._command("execute_settlement", principal, bounty_id):
            async with self.locks.hold(bounty_id):

                def plan(session: LedgerSession) -> tuple[Escrow, list[Movement]]:
                    bounty = session.require(Bounty, bounty_id)
                    settlement = self._pending_settlement(bounty)
                    self._check(session, bounty, self._settlement_event(settlement), principal)
                    escrow = session.require(Escrow, bounty.escrow_id or "")
                    movements = []
                    if settlement.lab_payout > 0:
                        lab = session.require(Lab, bounty.lab_id or "")
                        movements.append(
                            self.escrow.plan_release(
                                session, escrow, settlement.key, settlement.lab_payout, self._payout_account(lab, escrow) or ""
                            )
                        )
                    if settlement.funder_refund > 0:
                        purpose = (
                            RefundPurpose.CANCELLATION
                            if settlement.plan_type == SettlementKind.CANCELLATION
                            else RefundPurpose.DISPUTE
                        )
                        movements.append(self.escrow.plan_refund(session, escrow, purpose, settlement.funder_refund))
                    return escrow, movements

                escrow, movements = self._read(plan)
                references = await self._execute_movements(escrow, movements)

                def work(session: LedgerSession) -> tuple[Bounty, SettlementPlan]:
                    bounty = session.require(Bounty, bounty_id, for_update=True)
                    settlement = self._pending_settlement(bounty)
                    transition = self._check(session, bounty, self._settlement_event(settlement), principal)
                    for movement, reference in zip(movements, references):
                        self.escrow.apply(session, movement, reference)
                    settlement.executed = True
                    if settlement.dispute_id:
                        dispute = session.require(Dispute, settlement.dispute_id, for_update=True)
                        dispute.settlement = settlement
                        session.put(dispute)
                    bounty.completed_at = utcnow()
                    self._apply(session, bounty, transition, principal)
                    return bounty, settlement

                bounty, settlement = await self._commit(work, "execute_settlement")

        message = f"Settlement for '{bounty.title}' is complete"
        if settlement.funder_refund > 0:
            self.events.notify(
                bounty.funder_id, "Refund issued", f"{settlement.funder_refund} returned for '{bounty.title}'", bounty_id=bounty_id
            )
        self.events.notify(bounty.funder_id, "Settlement completed", message, bounty_id=bounty_id)
        if bounty.lab_id:
            self._notify_lab(bounty.lab_id, "Settlement completed", message, bounty_id=bounty_id)
        self.events.audit_event(
            "settlement.executed",
            principal.principal_id,
            bounty_id,
            funder_refund=str(settlement.funder_refund),
            lab_payout=str(settlement.lab_payout),
        )
        return bounty

    @staticmethod
    def _pending_settlement(bounty: Bounty) -> SettlementPlan:
        if bounty.settlement is None or bounty.settlement.executed:
            raise StateConflictError(
                f"Bounty {bounty.id} has no settlement to execute",
                current_state=bounty.state.value,
                attempted=BountyEvent.EXECUTE_SETTLEMENT.value,
            )
        return bounty.settlement

    @staticmethod
    def _settlement_event(settlement: SettlementPlan) -> BountyEvent:
        if settlement.plan_type == SettlementKind.CANCELLATION:
            return BountyEvent.EXECUTE_CANCELLATION_REFUND
        return BountyEvent.EXECUTE_SETTLEMENT

    # =========================================================================
    # RAIL CALLBACKS
    # =========================================================================

    async def handle_rail_event(self, event: InboundEvent) -> str:
        """Apply an authenticated rail callback.

        Returns ``applied``, ``pending`` or ``ignored``. Events for escrows
        that are already funded are ignored, so redelivery is harmless.
        """
        if event.event_type not in DEPOSIT_EVENT_TYPES | FAILED_DEPOSIT_EVENT_TYPES or not event.reference:
            logger.debug(f"Ignoring {event.provider} event {event.id} ({event.event_type})")
            return "ignored"

        matches = self.store.find_all(Escrow, deposit_reference=event.reference)
        escrow = next((e for e in matches if e.status == EscrowStatus.PENDING), None)
        if escrow is None:
            logger.info(f"No pending escrow for {event.provider} reference {event.reference}; ignoring {event.id}")
            return "ignored"

        if event.event_type in FAILED_DEPOSIT_EVENT_TYPES:
            bounty = self.store.load(Bounty, escrow.bounty_id)
            logger.warning(f"Deposit {event.reference} for escrow {escrow.id} failed: {event.event_type}")
            self.events.notify(
                bounty.funder_id, "Payment failed", f"The payment for '{bounty.title}' did not go through", bounty_id=bounty.id
            )
            return "ignored"

        outcome = await self.confirm_funding(RAIL_CALLBACK, escrow.id, event.reference)
        return "applied" if outcome.verified else "pending"

    # =========================================================================
    # LABS AND STAKE
    # =========================================================================

    async def register_lab(
        self,
        principal: Principal,
        name: str,
        payout_accounts: dict[str, str] | None = None,
    ) -> Lab:
        require_capability(principal, Capability.LAB)
        if not (name or "").strip():
            raise ValidationError("Lab name is required", field="name")
        accounts = dict(payout_accounts or {})
        for rail in accounts:
            try:
                RailName(rail)
            except ValueError:
                raise ValidationError(f"Unknown payment rail: {rail}", field="payout_accounts", value=rail)
        lab = Lab(id=new_id(), owner_id=principal.principal_id, name=name.strip(), payout_accounts=accounts)

        def work(session: LedgerSession) -> Lab:
            session.insert(lab)
            return lab

        created = await self._commit(work, "register_lab")
        self.events.audit_event("lab.registered", principal.principal_id, lab_id=created.id)
        return created

    async def set_verification_tier(self, principal: Principal, lab_id: str, tier: VerificationTier | str) -> Lab:
        """Record the outcome of the (external) lab verification workflow."""
        require_capability(principal, Capability.ADMIN)
        try:
            tier = VerificationTier(tier)
        except ValueError:
            raise ValidationError(f"Unknown verification tier: {tier}", field="tier", value=tier)

        def work(session: LedgerSession) -> Lab:
            lab = session.require(Lab, lab_id, for_update=True)
            lab.verification_tier = tier
            session.put(lab)
            return lab

        lab = await self._commit(work, "set_verification_tier")
        self.events.audit_event("lab.tier_changed", principal.principal_id, lab_id=lab_id, tier=tier.value)
        return lab

    def _require_lab_owner(self, session: LedgerSession, principal: Principal, lab_id: str) -> Lab:
        lab = session.require(Lab, lab_id)
        if lab.owner_id != principal.principal_id and not principal.has(Capability.ADMIN):
            raise AuthorizationError(
                f"Principal {principal.principal_id} does not own lab {lab_id}", principal_id=principal.principal_id
            )
        return lab

    async def deposit_stake(self, principal: Principal, lab_id: str, amount: Decimal | str | int) -> StakingTransaction:
        async with self._command("deposit_stake", principal, lab_id=lab_id, amount=str(amount)):

            def work(session: LedgerSession) -> StakingTransaction:
                self._require_lab_owner(session, principal, lab_id)
                return staking.deposit(session, lab_id, amount)

            tx = await self._commit(work, "deposit_stake")
        self.events.audit_event("stake.deposited", principal.principal_id, lab_id=lab_id, amount=str(tx.amount))
        return tx

    async def withdraw_stake(self, principal: Principal, lab_id: str, amount: Decimal | str | int) -> StakingTransaction:
        async with self._command("withdraw_stake", principal, lab_id=lab_id, amount=str(amount)):

            def work(session: LedgerSession) -> StakingTransaction:
                self._require_lab_owner(session, principal, lab_id)
                return staking.withdraw(session, lab_id, amount)

            tx = await self._commit(work, "withdraw_stake")
        self.events.audit_event("stake.withdrawn", principal.principal_id, lab_id=lab_id, amount=str(tx.amount))
        return tx

    # =========================================================================
    # READS
    # =========================================================================

    def get_bounty(self, bounty_id: str) -> Bounty:
        return self.store.load(Bounty, bounty_id)

    def list_bounties(self, state: BountyState | str | None = None, funder_id: str | None = None) -> list[Bounty]:
        filters: dict[str, Any] = {}
        if state is not None:
            try:
                filters["state"] = BountyState(state).value
            except ValueError:
                raise ValidationError(f"Unknown bounty state: {state}", field="state", value=state)
        if funder_id is not None:
            filters["funder_id"] = funder_id
        return sorted(self.store.find_all(Bounty, **filters), key=lambda b: b.created_at)

    def get_escrow(self, escrow_id: str) -> Escrow:
        return self.store.load(Escrow, escrow_id)

    def get_dispute(self, dispute_id: str) -> Dispute:
        return self.store.load(Dispute, dispute_id)

    def get_proposal(self, proposal_id: str) -> Proposal:
        return self.store.load(Proposal, proposal_id)

    def list_proposals(self, bounty_id: str) -> list[Proposal]:
        return sorted(self.store.find_all(Proposal, bounty_id=bounty_id), key=lambda p: p.submitted_at)

    def get_lab(self, lab_id: str) -> Lab:
        return self.store.load(Lab, lab_id)

    def stake_history(self, lab_id: str) -> list[StakingTransaction]:
        return self._read(lambda session: staking.history(session, lab_id))
