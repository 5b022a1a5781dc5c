# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Periodic deadline sweep.

Run from cron (``sciflow watchdog``). It only notifies; deadlines never
change bounty state on their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .events import EventDispatcher
from .models import Bounty, Lab, MilestoneStatus, utcnow
from .states import BountyState
from .store import LedgerStore

logger = logging.getLogger(__name__)

APPROVAL_TIMEOUT = timedelta(hours=72)

_OPEN_MILESTONE = (MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS)


@dataclass
class WatchdogReport:
    overdue_milestones: list[str] = field(default_factory=list)
    stale_approvals: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "overdue_milestones": len(self.overdue_milestones),
            "stale_approvals": len(self.stale_approvals),
        }


def sweep(store: LedgerStore, events: EventDispatcher, now: datetime | None = None) -> WatchdogReport:
    """Notify funder and lab about milestones past due; flag slow approvals."""
    now = now or utcnow()
    report = WatchdogReport()

    for bounty in store.find_all(Bounty):
        if bounty.state.is_terminal:
            continue

        if bounty.state == BountyState.PENDING_APPROVAL and now - bounty.updated_at > APPROVAL_TIMEOUT:
            report.stale_approvals.append(bounty.id)
            logger.warning(f"Bounty {bounty.id} has waited for approval since {bounty.updated_at.isoformat()}")
            events.audit_event("bounty.approval_overdue", "system:watchdog", bounty.id)

        lab_owner = None
        if bounty.lab_id:
            lab = store.find_all(Lab, id=bounty.lab_id)
            lab_owner = lab[0].owner_id if lab else None

        for milestone in bounty.ordered_milestones():
            if milestone.status not in _OPEN_MILESTONE or milestone.due_date is None or milestone.due_date >= now:
                continue
            report.overdue_milestones.append(milestone.id)
            data = {"bounty_id": bounty.id, "milestone_id": milestone.id}
            events.notify(
                bounty.funder_id,
                "Milestone deadline breached",
                f"Milestone '{milestone.title}' is past its due date. You may open a dispute or contact the lab.",
                **data,
            )
            events.notify(
                lab_owner,
                "Milestone past due",
                f"Milestone '{milestone.title}' is past its due date. Submit evidence to avoid a dispute.",
                **data,
            )

    if report.overdue_milestones or report.stale_approvals:
        logger.info(f"Watchdog: {report.to_dict()}")
    return report
