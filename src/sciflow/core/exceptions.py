# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Exception hierarchy for SciFlow.

Every failure a command can report maps to one of these types. Guard and
validation failures are raised before anything is written; infrastructure
failures are retried by the engine and surface as InternalError when the
retries run out.
"""

from __future__ import annotations

from typing import Any


class SciflowError(Exception):
    """Base exception for all SciFlow errors.

    ``code`` is the stable, machine-readable kind used by the REST layer.
    """

    code = "SCIFLOW_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(SciflowError):
    """Input is malformed or violates a business rule.

    Raised when:
    - A required field is missing or out of range
    - Milestone percentages do not sum to 100
    - An amount does not match the bounty budget
    - A dispute description is too short
    """

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class AuthorizationError(SciflowError):
    """The principal lacks the capability or ownership a command requires."""

    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str, principal_id: str | None = None, required: list[str] | None = None):
        details: dict[str, Any] = {}
        if principal_id:
            details["principal_id"] = principal_id
        if required:
            details["required"] = required
        super().__init__(message, details)
        self.principal_id = principal_id
        self.required = required or []


class NotFoundError(SciflowError):
    """A referenced bounty, milestone, proposal, escrow, lab or dispute is missing."""

    code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: str):
        message = f"{resource_type} not found: {resource_id}"
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class StateConflictError(SciflowError):
    """The command is not valid in the entity's current state.

    Raised when:
    - No transition exists for (state, event)
    - A dispute is already resolved
    - A milestone payout was already released
    - The bounty already has an unresolved dispute
    """

    code = "STATE_CONFLICT"

    def __init__(self, message: str, current_state: str | None = None, attempted: str | None = None):
        details = {}
        if current_state:
            details["current_state"] = current_state
        if attempted:
            details["attempted"] = attempted
        super().__init__(message, details)
        self.current_state = current_state
        self.attempted = attempted


class RailVerificationError(SciflowError):
    """A payment rail rejected or could not confirm a money movement.

    ``retryable`` is False for a definite mismatch (wrong amount, wrong
    destination, failed transaction) and True when the caller may try again.
    """

    code = "RAIL_VERIFICATION_FAILED"

    def __init__(self, message: str, rail: str | None = None, retryable: bool = False):
        details: dict[str, Any] = {"retryable": retryable}
        if rail:
            details["rail"] = rail
        super().__init__(message, details)
        self.rail = rail
        self.retryable = retryable


class RailUnavailable(RailVerificationError):
    """The rail is unreachable or not configured. Always retryable."""

    code = "RAIL_UNAVAILABLE"

    def __init__(self, message: str, rail: str | None = None):
        super().__init__(message, rail=rail, retryable=True)


class InsufficientStakeError(SciflowError):
    """A stake lock or withdrawal exceeds the lab's available stake."""

    code = "INSUFFICIENT_STAKE"

    def __init__(self, message: str, lab_id: str | None = None, requested: Any = None, available: Any = None):
        details = {}
        if lab_id:
            details["lab_id"] = lab_id
        if requested is not None:
            details["requested"] = str(requested)
        if available is not None:
            details["available"] = str(available)
        super().__init__(message, details)
        self.lab_id = lab_id
        self.requested = requested
        self.available = available


class InternalError(SciflowError):
    """An unexpected failure; the whole command was rolled back."""

    code = "INTERNAL_ERROR"


class DatabaseException(SciflowError):
    """Exception for storage errors.

    Raised when:
    - Database connection fails
    - Query execution fails
    - Transaction commit fails
    """

    code = "DATABASE_ERROR"


class ConfigException(SciflowError):
    """Exception for configuration errors.

    Raised when:
    - A rail is selected but its credentials are missing
    - The storage backend name is unknown
    """

    code = "CONFIG_ERROR"

    def __init__(self, message: str, missing_vars: list[str] | None = None):
        details = {}
        if missing_vars:
            details["missing_vars"] = missing_vars
        super().__init__(message, details)
        self.missing_vars = missing_vars or []
