"""Approval request repository."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from ..constants import APPROVER_ROLE_TIMEOUTS, DEFAULT_APPROVAL_TIMEOUT_HOURS
from ..errors import ApprovalNotFoundError, PipelineValidationError, StateConflictError
from ..models import ApprovalDecision, ApprovalRequest, ApprovalStatus
from ..persistence import DocumentStore
from ..utils.clock import Clock, utcnow
from .base import DocumentRepository

logger = logging.getLogger(__name__)


class ApprovalRepository(DocumentRepository[ApprovalRequest]):
    """Lifecycle of approval requests: pending -> approved/rejected/expired."""

    collection = "approvals"
    model = ApprovalRequest

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock = utcnow,
        role_timeouts: Optional[Mapping[str, float]] = None,
        default_timeout_hours: float = DEFAULT_APPROVAL_TIMEOUT_HOURS,
    ) -> None:
        super().__init__(store, clock)
        self._role_timeouts = dict(
            APPROVER_ROLE_TIMEOUTS if role_timeouts is None else role_timeouts
        )
        self._default_timeout_hours = default_timeout_hours

    def role_timeout(self, role: str) -> float:
        return self._role_timeouts.get(role, self._default_timeout_hours)

    @staticmethod
    def _expiry(start: datetime, hours: float) -> Optional[datetime]:
        return start + timedelta(hours=hours) if hours and hours > 0 else None

    # ------------------------------------------------------------------
    async def create_approval(
        self,
        instance_id: str,
        pipeline_id: str,
        entity_id: str,
        step_id: str,
        approver_role: str,
        *,
        step_name: Optional[str] = None,
        escalation_role: Optional[str] = None,
        timeout_hours: Optional[float] = None,
        entity_reference_id: Optional[str] = None,
        entity_summary: Optional[Dict[str, Any]] = None,
    ) -> ApprovalRequest:
        """Open a pending approval; ``timeout_hours=0`` means it never expires."""
        existing = await self.get_pending_approval_for_instance(instance_id)
        if existing is not None:
            raise StateConflictError(
                f"Instance {instance_id} already has pending approval {existing.approval_id}",
                instance_id=instance_id,
                step_id=existing.step_id,
            )

        now = self.now()
        hours = timeout_hours if timeout_hours is not None else self.role_timeout(approver_role)
        approval = ApprovalRequest(
            approval_id=str(uuid.uuid4()),
            instance_id=instance_id,
            pipeline_id=pipeline_id,
            entity_id=entity_id,
            step_id=step_id,
            step_name=step_name,
            approver_role=approver_role,
            escalation_role=escalation_role,
            status=ApprovalStatus.PENDING,
            entity_reference_id=entity_reference_id,
            entity_summary=entity_summary or {},
            requested_at=now,
            expires_at=self._expiry(now, hours),
            created_at=now,
            updated_at=now,
        )
        created = await self._insert(approval.approval_id, approval)
        logger.info(
            f"Created approval {created.approval_id} for instance {instance_id} "
            f"(role={approver_role}, expires_at={created.expires_at})"
        )
        return created

    async def get_approval(self, approval_id: str) -> ApprovalRequest:
        approval = await self._fetch(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(f"Approval {approval_id} not found")
        return approval

    def _require_pending(self, approval: ApprovalRequest, action: str) -> None:
        if not approval.is_pending:
            raise StateConflictError(
                f"Cannot {action} approval {approval.approval_id}: status is "
                f"{ApprovalStatus(approval.status).value}",
                instance_id=approval.instance_id,
                step_id=approval.step_id,
            )

    async def submit_decision(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        decided_by: str,
        decided_by_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> ApprovalRequest:
        try:
            verdict = ApprovalDecision(decision)
        except ValueError as exc:
            raise PipelineValidationError(
                f"Invalid decision '{decision}'", ["decision must be approved or rejected"]
            ) from exc
        approval = await self.get_approval(approval_id)
        self._require_pending(approval, "decide")

        now = self.now()
        approval.status = ApprovalStatus(verdict.value)
        approval.decision = verdict
        approval.decided_by = decided_by
        approval.decided_by_name = decided_by_name
        approval.decided_at = now
        approval.comment = comment
        approval.updated_at = now
        saved = await self._save(approval_id, approval)
        logger.info(f"Approval {approval_id} {verdict.value} by {decided_by}")
        return saved

    async def escalate_approval(self, approval_id: str, new_role: str) -> ApprovalRequest:
        """Hand the approval to ``new_role`` with a fresh deadline."""
        approval = await self.get_approval(approval_id)
        self._require_pending(approval, "escalate")

        now = self.now()
        previous = approval.approver_role
        approval.approver_role = new_role
        approval.escalation_role = None
        approval.expires_at = self._expiry(now, self.role_timeout(new_role))
        approval.escalated_at = now
        approval.updated_at = now
        saved = await self._save(approval_id, approval)
        logger.info(f"Approval {approval_id} escalated from {previous} to {new_role}")
        return saved

    async def expire_approval(self, approval_id: str) -> ApprovalRequest:
        approval = await self.get_approval(approval_id)
        if approval.status == ApprovalStatus.EXPIRED:
            return approval
        self._require_pending(approval, "expire")
        approval.status = ApprovalStatus.EXPIRED
        approval.updated_at = self.now()
        saved = await self._save(approval_id, approval)
        logger.info(f"Approval {approval_id} expired")
        return saved

    async def cancel_approval(
        self, approval_id: str, cancelled_by: str, reason: Optional[str] = None
    ) -> ApprovalRequest:
        """Close a pending approval because its instance went away."""
        approval = await self.get_approval(approval_id)
        self._require_pending(approval, "cancel")
        now = self.now()
        approval.status = ApprovalStatus.EXPIRED
        approval.decided_by = cancelled_by
        approval.decided_at = now
        approval.comment = reason or "Pipeline instance cancelled"
        approval.updated_at = now
        return await self._save(approval_id, approval)

    # ------------------------------------------------------------------
    # Queries
    async def get_pending_approval_for_instance(
        self, instance_id: str
    ) -> Optional[ApprovalRequest]:
        """Most recent pending approval for the instance."""
        pending = await self._find(instance_id=instance_id, status=ApprovalStatus.PENDING)
        if not pending:
            return None
        return max(pending, key=lambda a: a.requested_at.timestamp())

    async def list_approvals_for_instance(self, instance_id: str) -> List[ApprovalRequest]:
        return self._newest_first(await self._find(instance_id=instance_id))

    async def list_pending_approvals(
        self,
        approver_role: Optional[str] = None,
        pipeline_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[ApprovalRequest]:
        return self._newest_first(
            await self._find(
                status=ApprovalStatus.PENDING,
                approver_role=approver_role,
                pipeline_id=pipeline_id,
                entity_id=entity_id,
            )
        )

    async def list_approvals_by_status(
        self, status: ApprovalStatus | str
    ) -> List[ApprovalRequest]:
        return self._newest_first(await self._find(status=ApprovalStatus(status)))

    async def get_expired_approvals(
        self, now: Optional[datetime] = None
    ) -> List[ApprovalRequest]:
        """Pending approvals whose deadline has passed."""
        now = now or self.now()
        return [
            approval
            for approval in await self._find(status=ApprovalStatus.PENDING)
            if approval.expires_at is not None and approval.expires_at <= now
        ]

    @staticmethod
    def _newest_first(approvals: List[ApprovalRequest]) -> List[ApprovalRequest]:
        return sorted(approvals, key=lambda a: a.requested_at.timestamp(), reverse=True)
