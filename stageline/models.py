"""Domain models for pipeline definitions, instances and approvals."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .steps import (
    PipelineStep,
    StageStep,
    count_enabled,
    enabled_steps,
    entry_step,
    find_step,
    next_enabled_step,
)


class PipelineStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    WAITING_APPROVAL = "waiting_approval"
    WAITING_EVENT = "waiting_event"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)
NON_TERMINAL_STATUSES = frozenset(set(InstanceStatus) - TERMINAL_STATUSES)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class StepOutcome(str, Enum):
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    BRANCHED = "branched"
    CANCELLED = "cancelled"
    FAILED = "failed"


def calculate_progress(completed: int, total: int) -> int:
    """Rounded (half-up) percentage of completed steps, clamped to 0..100."""
    if total <= 0:
        return 0
    percent = (completed * 200 + total) // (2 * total)
    return max(0, min(100, percent))


# ---------------------------------------------------------------------------
# Definitions
class PipelineDefinition(BaseModel):
    """Versioned template describing an ordered graph of steps."""

    pipeline_id: str
    version: int = 1
    name: str
    description: Optional[str] = None
    line_of_business: str
    business_type: Optional[str] = None
    organization_id: Optional[str] = None
    status: PipelineStatus = PipelineStatus.DRAFT
    is_default: bool = False
    steps: List[PipelineStep] = Field(default_factory=list)
    entry_step_id: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    activated_by: Optional[str] = None
    etag: Optional[int] = None

    def find_step(self, step_id: Optional[str]) -> Optional[PipelineStep]:
        return find_step(self.steps, step_id)

    def next_enabled_step(self, step_id: Optional[str]) -> Optional[PipelineStep]:
        return next_enabled_step(self.steps, step_id)

    def entry_step(self) -> Optional[PipelineStep]:
        return entry_step(self.steps)

    def enabled_steps(self) -> List[PipelineStep]:
        return enabled_steps(self.steps)

    @property
    def total_enabled(self) -> int:
        return count_enabled(self.steps)


class PipelineCreate(BaseModel):
    name: str
    description: Optional[str] = None
    line_of_business: str
    business_type: Optional[str] = None
    organization_id: Optional[str] = None
    is_default: bool = False
    steps: List[PipelineStep] = Field(default_factory=list)


class PipelineUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_default: Optional[bool] = None
    steps: Optional[List[PipelineStep]] = None


# ---------------------------------------------------------------------------
# Instances
class StepHistoryEntry(BaseModel):
    step_id: str
    step_type: str
    stage_name: Optional[str] = None
    entered_at: datetime
    exited_at: Optional[datetime] = None
    outcome: Optional[StepOutcome] = None
    triggered_by: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LastError(BaseModel):
    step_id: Optional[str] = None
    message: str
    timestamp: datetime


class PipelineInstance(BaseModel):
    """One live execution of a definition against an entity."""

    instance_id: str
    pipeline_id: str
    pipeline_version: int
    pipeline_name: str
    entity_id: str
    line_of_business: str
    organization_id: Optional[str] = None

    status: InstanceStatus = InstanceStatus.ACTIVE
    current_step_id: Optional[str] = None
    current_step_type: Optional[str] = None
    current_stage_id: Optional[str] = None
    current_stage_name: Optional[str] = None
    progress_percent: int = 0
    completed_steps_count: int = 0
    total_steps_count: int = 0

    next_step_id: Optional[str] = None
    next_step_type: Optional[str] = None
    next_stage_name: Optional[str] = None

    waiting_for_event: Optional[str] = None
    waiting_for_approval_id: Optional[str] = None
    waiting_until: Optional[datetime] = None

    step_history: List[StepHistoryEntry] = Field(default_factory=list)
    last_error: Optional[LastError] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    etag: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return InstanceStatus(self.status) in TERMINAL_STATUSES

    def open_history_entry(self) -> Optional[StepHistoryEntry]:
        for entry in reversed(self.step_history):
            if entry.exited_at is None:
                return entry
        return None

    def set_current_step(self, step: PipelineStep) -> None:
        self.current_step_id = step.id
        self.current_step_type = step.type
        if isinstance(step, StageStep):
            self.current_stage_id = step.stage_id
            self.current_stage_name = step.stage_name

    def set_next_step(self, step: Optional[PipelineStep]) -> None:
        self.next_step_id = step.id if step else None
        self.next_step_type = step.type if step else None
        self.next_stage_name = step.stage_name if isinstance(step, StageStep) else None

    def clear_waiting(self) -> None:
        self.waiting_for_event = None
        self.waiting_for_approval_id = None
        self.waiting_until = None


# ---------------------------------------------------------------------------
# Approvals
class ApprovalRequest(BaseModel):
    """A pending role decision gating an instance."""

    approval_id: str
    instance_id: str
    pipeline_id: str
    entity_id: str
    step_id: str
    step_name: Optional[str] = None
    approver_role: str
    escalation_role: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING

    decision: Optional[ApprovalDecision] = None
    decided_by: Optional[str] = None
    decided_by_name: Optional[str] = None
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None

    entity_reference_id: Optional[str] = None
    entity_summary: Dict[str, Any] = Field(default_factory=dict)

    requested_at: datetime
    expires_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    etag: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return ApprovalStatus(self.status) is ApprovalStatus.PENDING


# ---------------------------------------------------------------------------
# Event processing
class EventData(BaseModel):
    """Payload of an inbound domain event.

    Accepts both snake_case and the camelCase keys used by upstream services.
    Unknown keys are kept and available through ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    entity_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("entity_id", "entityId", "lead_id", "leadId"),
    )
    line_of_business: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("line_of_business", "lineOfBusiness")
    )
    business_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("business_type", "businessType")
    )
    organization_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("organization_id", "organizationId"),
    )
    approval_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("approval_id", "approvalId")
    )
    decision: Optional[str] = None
    triggered_by: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("triggered_by", "triggeredBy")
    )


class ProcessEventResult(BaseModel):
    processed: bool
    instance_id: Optional[str] = None
    action: Optional[str] = None
    error: Optional[str] = None


class NextStepInfo(BaseModel):
    """Where an entity's active pipeline is and what comes next."""

    has_active_pipeline: bool
    instance_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    pipeline_name: Optional[str] = None
    status: Optional[InstanceStatus] = None
    current_step_id: Optional[str] = None
    current_step_type: Optional[str] = None
    current_stage_name: Optional[str] = None
    next_step_id: Optional[str] = None
    next_step_type: Optional[str] = None
    next_stage_name: Optional[str] = None
    waiting_for_event: Optional[str] = None
    waiting_for_approval_id: Optional[str] = None
    waiting_until: Optional[datetime] = None
    progress_percent: int = 0


__all__ = [
    "PipelineStatus",
    "InstanceStatus",
    "TERMINAL_STATUSES",
    "NON_TERMINAL_STATUSES",
    "ApprovalStatus",
    "ApprovalDecision",
    "StepOutcome",
    "calculate_progress",
    "PipelineDefinition",
    "PipelineCreate",
    "PipelineUpdate",
    "StepHistoryEntry",
    "LastError",
    "PipelineInstance",
    "ApprovalRequest",
    "EventData",
    "ProcessEventResult",
    "NextStepInfo",
]
