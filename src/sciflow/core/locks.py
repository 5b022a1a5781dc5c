# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Per-bounty serialisation.

Commands against the same bounty run one at a time; commands against
different bounties run concurrently. The lock guards the validate-and-commit
step and any outbound money movement that must be ordered with it. Slow
deposit verification happens before the lock is taken.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class BountyLockManager:
    """Hands out one asyncio.Lock per bounty id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, bounty_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(bounty_id, asyncio.Lock())
        self._waiters[bounty_id] = self._waiters.get(bounty_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[bounty_id] -= 1
            if self._waiters[bounty_id] == 0:
                # Nobody else holds or waits on it
                del self._waiters[bounty_id]
                self._locks.pop(bounty_id, None)

    def is_locked(self, bounty_id: str) -> bool:
        lock = self._locks.get(bounty_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
