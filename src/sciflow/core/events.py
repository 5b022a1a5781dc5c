# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Post-commit notifications and audit events.

Dispatch happens after the ledger commit, as background tasks. A failing
sink is logged and otherwise ignored: nothing here can roll back or fail a
command that has already been accepted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    user_id: str
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "title": self.title, "message": self.message, "data": self.data}


@dataclass
class AuditEvent:
    """One accepted command, for the activity log."""

    action: str
    actor_id: str
    bounty_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "actor_id": self.actor_id,
            "bounty_id": self.bounty_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@runtime_checkable
class NotificationSink(Protocol):
    async def notify(self, notification: Notification) -> None: ...


@runtime_checkable
class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


class LoggingSink:
    """Writes notifications and audit events to the log. Default sink."""

    def __init__(self, logger_name: str = "sciflow.activity") -> None:
        self._logger = logging.getLogger(logger_name)

    async def notify(self, notification: Notification) -> None:
        self._logger.info(
            f"Notify {notification.user_id}: {notification.title}",
            extra={"extra_data": notification.to_dict()},
        )

    async def record(self, event: AuditEvent) -> None:
        self._logger.info(f"Audit {event.action} by {event.actor_id}", extra={"extra_data": event.to_dict()})


class MemorySink:
    """Collects everything it receives (useful for testing)."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []
        self.audit_events: list[AuditEvent] = []

    async def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    async def record(self, event: AuditEvent) -> None:
        self.audit_events.append(event)

    def titles_for(self, user_id: str) -> list[str]:
        return [n.title for n in self.notifications if n.user_id == user_id]


class EventDispatcher:
    """Fans out notifications and audit events without blocking commands."""

    def __init__(
        self,
        notifications: NotificationSink | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        default = LoggingSink()
        self.notifications = notifications or default
        self.audit = audit or default
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro: Any, what: str) -> None:
        async def guarded() -> None:
            try:
                await coro
            except Exception:  # Intentionally broad: a sink failure must not surface
                logger.exception(f"Failed to deliver {what}")

        task = asyncio.get_running_loop().create_task(guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def notify(self, user_id: str | None, title: str, message: str, **data: Any) -> None:
        if not user_id:
            return
        self._spawn(self.notifications.notify(Notification(user_id, title, message, data)), f"notification '{title}'")

    def audit_event(self, action: str, actor_id: str, bounty_id: str | None = None, **details: Any) -> None:
        self._spawn(self.audit.record(AuditEvent(action, actor_id, bounty_id, details)), f"audit event '{action}'")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
