# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Ledger entities for SciFlow.

All money is ``Decimal`` quantized to six places (USDC precision). Records
serialize to plain JSON-able dicts so the same objects live in the memory
store and in PostgreSQL JSONB rows.
"""

from __future__ import annotations

import functools
import types
import typing
import uuid
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum, StrEnum
from typing import Any, ClassVar

from .states import BountyEvent, BountyState

MONEY_QUANT = Decimal("0.000001")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_money(value: Any) -> Decimal:
    """Coerce to a Decimal amount with USDC precision."""
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    return to_money(amount * Decimal(percent) / HUNDRED)


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================


class Currency(StrEnum):
    USD = "USD"
    USDC = "USDC"


class RailName(StrEnum):
    CARD = "card"
    BASE_USDC = "base_usdc"
    SOLANA_USDC = "solana_usdc"

    @property
    def currency(self) -> Currency:
        return Currency.USD if self is RailName.CARD else Currency.USDC


_TIER_ORDER = ("unverified", "basic", "verified", "trusted", "institutional")


class VerificationTier(StrEnum):
    UNVERIFIED = "unverified"
    BASIC = "basic"
    VERIFIED = "verified"
    TRUSTED = "trusted"
    INSTITUTIONAL = "institutional"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self.value)

    def meets(self, minimum: VerificationTier) -> bool:
        return self.rank >= minimum.rank


class MilestoneStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ProposalStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class EscrowStatus(StrEnum):
    PENDING = "pending"
    LOCKED = "locked"
    PARTIALLY_RELEASED = "partially_released"
    FULLY_RELEASED = "fully_released"
    REFUNDED = "refunded"


class StakingTransactionType(StrEnum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    LOCK = "lock"
    UNLOCK = "unlock"
    SLASH = "slash"


class DisputeReason(StrEnum):
    DATA_FALSIFICATION = "data_falsification"
    PROTOCOL_DEVIATION = "protocol_deviation"
    SAMPLE_TAMPERING = "sample_tampering"
    TIMELINE_BREACH = "timeline_breach"
    QUALITY_FAILURE = "quality_failure"
    COMMUNICATION_FAILURE = "communication_failure"


class DisputeStatus(StrEnum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    ARBITRATION = "arbitration"
    RESOLVED = "resolved"


class DisputeResolution(StrEnum):
    FUNDER_WINS = "funder_wins"
    LAB_WINS = "lab_wins"
    PARTIAL_REFUND = "partial_refund"


class SettlementKind(StrEnum):
    DISPUTE = "dispute"
    CANCELLATION = "cancellation"


class InboundEventStatus(StrEnum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# =============================================================================
# SERIALIZATION
# =============================================================================


def encode_value(value: Any) -> Any:
    if isinstance(value, Record):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    return value


def _decode(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    origin = typing.get_origin(tp)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        return _decode(args[0], value)
    if origin is list:
        (item_type,) = typing.get_args(tp)
        return [_decode(item_type, v) for v in value]
    if origin is dict:
        return dict(value)
    if tp is Decimal:
        return Decimal(str(value))
    if tp is datetime:
        parsed = datetime.fromisoformat(value)
        # stored timestamps are UTC even when written without an offset
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    if isinstance(tp, type) and issubclass(tp, Record):
        return tp.from_dict(value)
    return value


@functools.cache
def _hints(cls: type) -> dict[str, Any]:
    return typing.get_type_hints(cls)


class Record:
    """Mixin giving dataclass entities a JSON round trip.

    ``record_kind`` names the record type in storage.
    """

    record_kind: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        return {f.name: encode_value(getattr(self, f.name)) for f in fields(self)}  # type: ignore[arg-type]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Any:
        hints = _hints(cls)
        kwargs = {f.name: _decode(hints[f.name], data[f.name]) for f in fields(cls) if f.name in data}  # type: ignore[arg-type]
        return cls(**kwargs)


# =============================================================================
# BOUNTIES
# =============================================================================


@dataclass
class TransitionRecord(Record):
    """One entry of a bounty's append-only state history."""

    from_state: BountyState | None
    to_state: BountyState
    event: BountyEvent
    actor_id: str
    timestamp: datetime = field(default_factory=utcnow)
    reason: str | None = None


@dataclass
class EvidenceReference(Record):
    content_hash: str
    url: str
    size: int | None = None


@dataclass
class Milestone(Record):
    id: str
    sequence: int
    title: str
    payout_percentage: Decimal
    description: str = ""
    status: MilestoneStatus = MilestoneStatus.PENDING
    due_date: datetime | None = None
    evidence: EvidenceReference | None = None
    feedback: str | None = None
    submitted_at: datetime | None = None
    verified_at: datetime | None = None


@dataclass
class MilestoneRef(Record):
    """Index from a milestone id to the bounty that embeds it."""

    record_kind: ClassVar[str] = "milestone_ref"

    id: str
    bounty_id: str


@dataclass
class SettlementPlan(Record):
    """Money movements still owed once a bounty leaves normal execution."""

    plan_type: SettlementKind
    key: str
    funder_refund: Decimal = ZERO
    lab_payout: Decimal = ZERO
    dispute_id: str | None = None
    executed: bool = False


@dataclass
class Bounty(Record):
    record_kind: ClassVar[str] = "bounty"

    id: str
    funder_id: str
    title: str
    description: str
    total_budget: Decimal
    currency: Currency
    state: BountyState = BountyState.DRAFT
    milestones: list[Milestone] = field(default_factory=list)
    state_history: list[TransitionRecord] = field(default_factory=list)
    min_verification_tier: VerificationTier = VerificationTier.BASIC
    deadline: datetime | None = None
    lab_id: str | None = None
    selected_proposal_id: str | None = None
    accepted_bid: Decimal | None = None
    locked_stake: Decimal = ZERO
    escrow_id: str | None = None
    settlement: SettlementPlan | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    funded_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def ordered_milestones(self) -> list[Milestone]:
        return sorted(self.milestones, key=lambda m: m.sequence)

    def milestone(self, milestone_id: str) -> Milestone | None:
        for m in self.milestones:
            if m.id == milestone_id:
                return m
        return None

    def payout_total(self) -> Decimal:
        return sum((m.payout_percentage for m in self.milestones), ZERO)

    def next_pending_milestone(self) -> Milestone | None:
        for m in self.ordered_milestones():
            if m.status in (MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS, MilestoneStatus.REJECTED):
                return m
        return None

    def record(
        self,
        from_state: BountyState | None,
        to_state: BountyState,
        event: BountyEvent,
        actor_id: str,
        reason: str | None = None,
    ) -> TransitionRecord:
        """Apply a transition and append it to the history."""
        entry = TransitionRecord(from_state, to_state, event, actor_id, reason=reason)
        self.state_history.append(entry)
        self.state = to_state
        self.updated_at = entry.timestamp
        return entry


@dataclass
class Proposal(Record):
    record_kind: ClassVar[str] = "proposal"

    id: str
    bounty_id: str
    lab_id: str
    submitted_by: str
    bid_amount: Decimal
    methodology: str = ""
    timeline_days: int | None = None
    status: ProposalStatus = ProposalStatus.PENDING
    submitted_at: datetime = field(default_factory=utcnow)
    reviewed_at: datetime | None = None
    rejection_reason: str | None = None


# =============================================================================
# LABS AND STAKE
# =============================================================================


@dataclass
class Lab(Record):
    record_kind: ClassVar[str] = "lab"

    id: str
    owner_id: str
    name: str
    verification_tier: VerificationTier = VerificationTier.UNVERIFIED
    staking_balance: Decimal = ZERO
    locked_stake: Decimal = ZERO
    payout_accounts: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def available_stake(self) -> Decimal:
        return self.staking_balance - self.locked_stake


@dataclass
class StakingTransaction(Record):
    record_kind: ClassVar[str] = "staking_transaction"

    id: str
    lab_id: str
    transaction_type: StakingTransactionType
    amount: Decimal
    balance_after: Decimal
    locked_after: Decimal
    bounty_id: str | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class StakeAnomaly(Record):
    """A slash that asked for more than the lab had; kept for operator review."""

    record_kind: ClassVar[str] = "stake_anomaly"

    id: str
    lab_id: str
    bounty_id: str | None
    requested: Decimal
    applied: Decimal
    shortfall: Decimal
    created_at: datetime = field(default_factory=utcnow)


# =============================================================================
# ESCROW
# =============================================================================


@dataclass
class Escrow(Record):
    record_kind: ClassVar[str] = "escrow"

    id: str
    bounty_id: str
    rail: RailName
    currency: Currency
    budget: Decimal
    total_amount: Decimal
    platform_fee: Decimal
    payer_identity: str = ""
    released_amount: Decimal = ZERO
    refunded_amount: Decimal = ZERO
    status: EscrowStatus = EscrowStatus.PENDING
    deposit_reference: str | None = None
    deposit_tx_reference: str | None = None
    received_amount: Decimal | None = None
    rail_metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    locked_at: datetime | None = None

    @property
    def releasable_ceiling(self) -> Decimal:
        """Most that can ever leave escrow as lab payouts."""
        return self.total_amount - self.platform_fee

    @property
    def outstanding(self) -> Decimal:
        """Funds still held, net of releases and refunds."""
        return self.total_amount - self.released_amount - self.refunded_amount


def release_id(escrow_id: str, release_key: str) -> str:
    return f"{escrow_id}:{release_key}"


def refund_id(escrow_id: str, refund_key: str) -> str:
    return f"{escrow_id}:refund:{refund_key}"


def deposit_claim_id(rail: RailName, reference: str) -> str:
    return f"{rail.value}:{reference}"


@dataclass
class DepositClaim(Record):
    """Marks a deposit as spent. The id makes ``(rail, reference)`` unique."""

    record_kind: ClassVar[str] = "deposit_claim"

    id: str
    escrow_id: str
    bounty_id: str
    reference: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MovementReceipt(Record):
    """A rail transfer that went through but is not yet applied to the escrow."""

    record_kind: ClassVar[str] = "movement_receipt"

    id: str
    escrow_id: str
    kind: str
    key: str
    amount: Decimal
    rail_reference: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EscrowRelease(Record):
    """A payout to the lab. The id makes ``(escrow, milestone)`` unique."""

    record_kind: ClassVar[str] = "escrow_release"

    id: str
    escrow_id: str
    bounty_id: str
    release_key: str
    amount: Decimal
    milestone_id: str | None = None
    recipient: str | None = None
    rail_reference: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EscrowRefund(Record):
    record_kind: ClassVar[str] = "escrow_refund"

    id: str
    escrow_id: str
    bounty_id: str
    purpose: str
    amount: Decimal
    rail_reference: str | None = None
    created_at: datetime = field(default_factory=utcnow)


# =============================================================================
# DISPUTES
# =============================================================================


@dataclass
class Dispute(Record):
    record_kind: ClassVar[str] = "dispute"

    id: str
    bounty_id: str
    initiator_id: str
    initiator_role: str
    reason: DisputeReason
    description: str
    evidence_links: list[str] = field(default_factory=list)
    status: DisputeStatus = DisputeStatus.OPEN
    resolution: DisputeResolution | None = None
    slash_percentage: Decimal | None = None
    slash_amount: Decimal = ZERO
    refund_percentage: Decimal | None = None
    settlement: SettlementPlan | None = None
    arbitrator_id: str | None = None
    arbitrator_notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status == DisputeStatus.RESOLVED


# =============================================================================
# INBOUND RAIL EVENTS
# =============================================================================


@dataclass
class InboundEvent(Record):
    """An authenticated rail callback waiting to be applied."""

    record_kind: ClassVar[str] = "inbound_event"

    id: str
    provider: str
    event_type: str
    payload: dict[str, Any]
    bounty_id: str | None = None
    escrow_id: str | None = None
    reference: str | None = None
    status: InboundEventStatus = InboundEventStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    received_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None
