# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Authenticated principals and their capabilities.

The identity provider is external; it hands the core a principal id and a
set of capabilities. Ownership (funder of a bounty, owner of a lab) is
checked against ledger data, never against the token.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from .exceptions import AuthorizationError


class Capability(StrEnum):
    FUNDER = "funder"
    LAB = "lab"
    ADMIN = "admin"
    ARBITRATOR = "arbitrator"


@dataclass(frozen=True)
class Principal:
    """An authenticated actor issuing a command."""

    principal_id: str
    capabilities: frozenset[Capability] = field(default_factory=frozenset)

    @classmethod
    def of(cls, principal_id: str, *capabilities: Capability | str) -> Principal:
        return cls(principal_id, frozenset(Capability(c) for c in capabilities))

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def has_any(self, capabilities: Iterable[Capability]) -> bool:
        return any(c in self.capabilities for c in capabilities)

    @property
    def is_staff(self) -> bool:
        """Admins and arbitrators act on any bounty regardless of ownership."""
        return self.has_any((Capability.ADMIN, Capability.ARBITRATOR))

    def to_dict(self) -> dict:
        return {
            "principal_id": self.principal_id,
            "capabilities": sorted(c.value for c in self.capabilities),
        }


# System principal used when a verified rail callback drives a transition.
RAIL_CALLBACK = Principal("system:rail-callback", frozenset({Capability.ADMIN}))


def require_capability(principal: Principal, *allowed: Capability) -> None:
    """Raise AuthorizationError unless the principal holds one of ``allowed``."""
    if not principal.has_any(allowed):
        raise AuthorizationError(
            f"Principal {principal.principal_id} lacks required capability",
            principal_id=principal.principal_id,
            required=[c.value for c in allowed],
        )
