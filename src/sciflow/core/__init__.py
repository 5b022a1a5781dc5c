# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""SciFlow Core - ledgers, state machine and shared primitives.

The lifecycle engine lives in ``sciflow.core.engine`` and is imported from
there; it depends on the payment rails, which depend on this package.
"""

from .config import CoreSettings, clear_config_cache, get_config
from .exceptions import (
    AuthorizationError,
    ConfigException,
    DatabaseException,
    InsufficientStakeError,
    InternalError,
    NotFoundError,
    RailUnavailable,
    RailVerificationError,
    SciflowError,
    StateConflictError,
    ValidationError,
)
from .identity import Capability, Principal
from .logging import command_logger, configure_logging, correlation_context
from .models import (
    Bounty,
    Dispute,
    Escrow,
    Lab,
    Milestone,
    Proposal,
    StakingTransaction,
)
from .states import BountyEvent, BountyState
from .store import LedgerSession, LedgerStore, MemoryLedgerStore, create_store

__all__ = [
    # Config
    "CoreSettings",
    "get_config",
    "clear_config_cache",
    # Exceptions
    "SciflowError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "StateConflictError",
    "RailVerificationError",
    "RailUnavailable",
    "InsufficientStakeError",
    "InternalError",
    "DatabaseException",
    "ConfigException",
    # Identity
    "Capability",
    "Principal",
    # Logging
    "configure_logging",
    "correlation_context",
    "command_logger",
    # Models
    "Bounty",
    "Dispute",
    "Escrow",
    "Lab",
    "Milestone",
    "Proposal",
    "StakingTransaction",
    # States
    "BountyState",
    "BountyEvent",
    # Storage
    "LedgerSession",
    "LedgerStore",
    "MemoryLedgerStore",
    "create_store",
]
