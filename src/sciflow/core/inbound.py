# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Durable queue for authenticated rail callbacks.

The webhook endpoint only verifies the signature and enqueues; the
processor applies events later. Events for one bounty are applied one at a
time and in arrival order; different bounties are processed concurrently.
Redelivered events (same provider event id) are enqueued once.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

from .exceptions import RailVerificationError, SciflowError
from .models import InboundEvent, InboundEventStatus, utcnow
from .store import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


def enqueue(store: LedgerStore, event: InboundEvent) -> tuple[InboundEvent, bool]:
    """Persist ``event`` unless it is already queued.

    Returns:
        ``(event, created)``; on redelivery the stored event and False.
    """
    with store.transaction() as session:
        existing = session.get(InboundEvent, event.id)
        if existing is not None:
            logger.info(f"Duplicate {event.provider} event {event.id} ignored")
            return existing, False
        session.insert(event)
    logger.info(f"Queued {event.provider} event {event.id} ({event.event_type})")
    return event, True


class InboundProcessor:
    """Drains pending InboundEvents through the lifecycle engine."""

    def __init__(self, store: LedgerStore, engine: Any, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self.store = store
        self.engine = engine
        self.max_attempts = max_attempts
        self._draining = asyncio.Lock()

    def pending(self) -> list[InboundEvent]:
        events = self.store.find_all(InboundEvent, status=InboundEventStatus.PENDING.value)
        return sorted(events, key=lambda e: e.received_at)

    async def process_pending(self) -> dict[str, int]:
        """Process every pending event once; return a count per outcome.

        Concurrent calls run one after the other, so an event is never
        applied by two drains at once.
        """
        async with self._draining:
            return await self._drain()

    async def _drain(self) -> dict[str, int]:
        groups: dict[str, list[InboundEvent]] = defaultdict(list)
        for event in self.pending():
            groups[event.bounty_id or f"event:{event.id}"].append(event)

        counts: dict[str, int] = defaultdict(int)
        results = await asyncio.gather(*(self._process_group(events) for events in groups.values()))
        for outcomes in results:
            for outcome in outcomes:
                counts[outcome] += 1
        return dict(counts)

    async def _process_group(self, events: list[InboundEvent]) -> list[str]:
        return [await self.process_one(event) for event in events]

    async def process_one(self, event: InboundEvent) -> str:
        """Apply one event and record the result on it.

        Returns the engine outcome (``applied``, ``ignored``, ``pending``) or
        ``retry`` / ``failed``.
        """
        event.attempts += 1
        try:
            outcome = await self.engine.handle_rail_event(event)
        except RailVerificationError as e:
            event.last_error = str(e)
            if e.retryable and event.attempts < self.max_attempts:
                logger.warning(f"Event {event.id} will be retried ({event.attempts}/{self.max_attempts}): {e}")
                self._save(event)
                return "retry"
            return self._fail(event, str(e))
        except SciflowError as e:
            return self._fail(event, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error applying event {event.id}")
            return self._fail(event, f"{type(e).__name__}: {e}")

        if outcome == "pending" and event.attempts < self.max_attempts:
            self._save(event)
            return outcome
        event.status = InboundEventStatus.PROCESSED
        event.processed_at = utcnow()
        event.last_error = None
        self._save(event)
        return outcome

    def _fail(self, event: InboundEvent, error: str) -> str:
        logger.error(f"Event {event.id} failed after {event.attempts} attempt(s): {error}")
        event.status = InboundEventStatus.FAILED
        event.last_error = error
        event.processed_at = utcnow()
        self._save(event)
        return "failed"

    def _save(self, event: InboundEvent) -> None:
        with self.store.transaction() as session:
            session.put(event)
