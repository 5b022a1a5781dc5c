# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Evidence storage interface.

Milestone evidence (datasets, reports, images) lives outside the ledger.
The ledger keeps only the content hash and a retrieval URL.
"""

from __future__ import annotations

import hashlib
from typing import Protocol, runtime_checkable

from .exceptions import NotFoundError, ValidationError
from .models import EvidenceReference

MAX_EVIDENCE_BYTES = 50 * 1024 * 1024


@runtime_checkable
class EvidenceStore(Protocol):
    def store(self, payload: bytes, filename: str | None = None) -> EvidenceReference: ...


def content_hash(payload: bytes) -> str:
    return "sha256:" + hashlib.sha256(payload).hexdigest()


class MemoryEvidenceStore:
    """Content-addressed in-memory store. URLs are ``<base_url>/<hash>``."""

    def __init__(self, base_url: str = "memory://evidence") -> None:
        self.base_url = base_url.rstrip("/")
        self._blobs: dict[str, bytes] = {}

    def store(self, payload: bytes, filename: str | None = None) -> EvidenceReference:
        if not payload:
            raise ValidationError("Evidence payload is empty", field="payload")
        if len(payload) > MAX_EVIDENCE_BYTES:
            raise ValidationError("Evidence payload exceeds 50 MB", field="payload")
        digest = content_hash(payload)
        self._blobs[digest] = payload
        return EvidenceReference(content_hash=digest, url=f"{self.base_url}/{digest}", size=len(payload))

    def fetch(self, digest: str) -> bytes:
        try:
            return self._blobs[digest]
        except KeyError:
            raise NotFoundError("Evidence", digest)
