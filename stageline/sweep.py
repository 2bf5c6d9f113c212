"""Periodic sweep for approval deadlines and wait-step timeouts."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .constants import WAIT_TIMEOUT_EVENT
from .errors import ConcurrencyConflictError, NotFoundError, StateConflictError
from .models import EventData
from .orchestrator import PipelineOrchestrator
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

SWEEP_TRIGGER = "timeout-sweep"


class SweepReport(BaseModel):
    escalated: List[str] = Field(default_factory=list)
    expired: List[str] = Field(default_factory=list)
    wait_timeouts: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.escalated) + len(self.expired) + len(self.wait_timeouts)


class TimeoutSweeper:
    """Escalates or expires overdue approvals and times out overdue waits.

    Each pass reads the current state before acting, so running it twice (or
    from two processes) never applies the same timeout twice.
    """

    def __init__(self, orchestrator: PipelineOrchestrator, clock: Clock = utcnow) -> None:
        self._orchestrator = orchestrator
        self._clock = clock

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport()
        approvals = self._orchestrator.approvals
        instances = self._orchestrator.instances

        for approval in await approvals.get_expired_approvals(now):
            try:
                if approval.escalation_role:
                    await self._orchestrator.escalate_approval(approval.approval_id)
                    report.escalated.append(approval.approval_id)
                else:
                    await self._orchestrator.expire_approval(approval.approval_id)
                    report.expired.append(approval.approval_id)
            except (StateConflictError, NotFoundError) as e:
                # someone else already handled it
                logger.info(f"Skipping approval {approval.approval_id}: {e}")
                report.skipped.append(approval.approval_id)
            except ConcurrencyConflictError as e:
                # raced a decision; the next pass sees the new state
                logger.warning(
                    f"Conflict on approval {approval.approval_id}, retrying next pass: {e}"
                )
                report.skipped.append(approval.approval_id)

        for instance in await instances.find_overdue_waits(now):
            try:
                result = await self._orchestrator.process_event(
                    WAIT_TIMEOUT_EVENT,
                    EventData(
                        entity_id=instance.entity_id,
                        line_of_business=instance.line_of_business,
                        triggered_by=SWEEP_TRIGGER,
                    ),
                )
            except ConcurrencyConflictError as e:
                logger.warning(
                    f"Conflict on instance {instance.instance_id}, retrying next pass: {e}"
                )
                report.skipped.append(instance.instance_id)
                continue
            if result.processed:
                report.wait_timeouts.append(instance.instance_id)
            else:
                report.skipped.append(instance.instance_id)

        if report.total:
            logger.info(
                f"Sweep at {now.isoformat()}: {len(report.escalated)} escalated, "
                f"{len(report.expired)} expired, {len(report.wait_timeouts)} waits timed out"
            )
        return report
