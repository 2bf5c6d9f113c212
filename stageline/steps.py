"""Typed pipeline steps and helpers for walking a step graph."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated, Dict, Iterable, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field

from .constants import (
    END_SENTINEL,
    NEXT_SENTINEL,
    RESERVED_STEP_IDS,
    get_stage,
    resolve_wait_event_type,
)


class StepType(str, Enum):
    STAGE = "stage"
    APPROVAL = "approval"
    DECISION = "decision"
    NOTIFICATION = "notification"
    WAIT = "wait"


class BaseStep(BaseModel):
    """Fields shared by every step variant."""

    id: Optional[str] = None
    order: Optional[int] = None
    enabled: bool = True
    name: Optional[str] = None
    description: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id or self.type  # type: ignore[attr-defined]


class StageStep(BaseStep):
    """Moves the entity to a business stage."""

    type: Literal["stage"] = "stage"
    stage_id: str
    stage_name: str
    trigger_event: Optional[str] = None

    def resolve_trigger(self) -> Optional[str]:
        """Event that moves an instance onto this stage."""
        if self.trigger_event:
            return self.trigger_event
        stage = get_stage(self.stage_id)
        return stage.trigger_event if stage else None


class ApprovalStep(BaseStep):
    """Blocks until a role-holder approves or rejects."""

    type: Literal["approval"] = "approval"
    approver_role: str
    timeout_hours: Optional[float] = None
    escalation_role: Optional[str] = None
    rejection_step_id: Optional[str] = None


class DecisionStep(BaseStep):
    """Binary branch evaluated synchronously."""

    type: Literal["decision"] = "decision"
    condition_type: str
    condition_value: Optional[Union[str, float, int, bool]] = None
    true_next_step_id: str
    false_next_step_id: str


class NotificationStep(BaseStep):
    type: Literal["notification"] = "notification"
    notification_type: str
    custom_message: Optional[str] = None


class WaitStep(BaseStep):
    """Blocks until a configured external event arrives."""

    type: Literal["wait"] = "wait"
    wait_for_event: str
    timeout_hours: Optional[float] = None
    on_timeout_step_id: Optional[str] = None

    @property
    def event_type(self) -> str:
        return resolve_wait_event_type(self.wait_for_event)


PipelineStep = Annotated[
    Union[StageStep, ApprovalStep, DecisionStep, NotificationStep, WaitStep],
    Field(discriminator="type"),
]

# Steps that never park an instance.
AUTO_CHAIN_TYPES = frozenset({StepType.DECISION.value, StepType.NOTIFICATION.value})


# ---------------------------------------------------------------------------
# Normalisation
def new_step_id() -> str:
    return f"step_{uuid.uuid4().hex[:12]}"


def normalize_steps(steps: Sequence[PipelineStep]) -> List[PipelineStep]:
    """Assign missing ids and default ``order`` to 1-based list position."""
    normalized: List[PipelineStep] = []
    for position, step in enumerate(steps, start=1):
        updates: Dict[str, object] = {}
        if not step.id:
            updates["id"] = new_step_id()
        if step.order is None:
            updates["order"] = position
        normalized.append(step.model_copy(update=updates) if updates else step)
    return normalized


def renumber_steps(steps: Sequence[PipelineStep]) -> List[PipelineStep]:
    """Return steps sorted by order with a dense 1..N ``order`` sequence."""
    return [
        step.model_copy(update={"order": position})
        for position, step in enumerate(sorted_steps(steps), start=1)
    ]


# ---------------------------------------------------------------------------
# Graph navigation
def sorted_steps(steps: Iterable[PipelineStep]) -> List[PipelineStep]:
    return sorted(steps, key=lambda s: s.order if s.order is not None else 0)


def enabled_steps(steps: Iterable[PipelineStep]) -> List[PipelineStep]:
    return [s for s in sorted_steps(steps) if s.enabled]


def count_enabled(steps: Iterable[PipelineStep]) -> int:
    return len(enabled_steps(steps))


def find_step(steps: Iterable[PipelineStep], step_id: Optional[str]) -> Optional[PipelineStep]:
    if step_id is None:
        return None
    for step in steps:
        if step.id == step_id:
            return step
    return None


def entry_step(steps: Iterable[PipelineStep]) -> Optional[PipelineStep]:
    """Lowest-order enabled step."""
    candidates = enabled_steps(steps)
    return candidates[0] if candidates else None


def next_enabled_step(
    steps: Sequence[PipelineStep], step_id: Optional[str]
) -> Optional[PipelineStep]:
    """First enabled step whose order is greater than ``step_id``'s order."""
    current = find_step(steps, step_id)
    if current is None or current.order is None:
        return None
    for step in enabled_steps(steps):
        if step.order is not None and step.order > current.order:
            return step
    return None


def resolve_step_reference(
    steps: Sequence[PipelineStep], reference: Optional[str], origin_id: Optional[str]
) -> Optional[PipelineStep]:
    """Resolve a step reference to the enabled step it lands on.

    ``"end"`` and unknown ids resolve to ``None`` (the instance completes),
    ``"next"`` is the first enabled step after ``origin_id`` and a disabled
    target falls through to the first enabled step after it.
    """
    if not reference or reference == END_SENTINEL:
        return None
    if reference == NEXT_SENTINEL:
        return next_enabled_step(steps, origin_id)
    target = find_step(steps, reference)
    if target is None:
        return None
    if target.enabled:
        return target
    return next_enabled_step(steps, target.id)


def successors(steps: Sequence[PipelineStep], step: PipelineStep) -> List[PipelineStep]:
    """Steps an instance can move to directly from ``step``."""
    found: List[Optional[PipelineStep]] = []
    if isinstance(step, DecisionStep):
        found.append(resolve_step_reference(steps, step.true_next_step_id, step.id))
        found.append(resolve_step_reference(steps, step.false_next_step_id, step.id))
    else:
        found.append(next_enabled_step(steps, step.id))
        if isinstance(step, WaitStep) and step.on_timeout_step_id:
            found.append(resolve_step_reference(steps, step.on_timeout_step_id, step.id))
        if isinstance(step, ApprovalStep) and step.rejection_step_id:
            found.append(resolve_step_reference(steps, step.rejection_step_id, step.id))
    return [s for s in found if s is not None]


def next_stage_trigger(
    steps: Sequence[PipelineStep], step_id: Optional[str]
) -> Optional[str]:
    nxt = next_enabled_step(steps, step_id)
    if isinstance(nxt, StageStep):
        return nxt.resolve_trigger()
    return None


# ---------------------------------------------------------------------------
# Validation
def check_step_identity(steps: Sequence[PipelineStep]) -> List[str]:
    """Problems with ids and orders that make a step list unusable."""
    errors: List[str] = []
    seen_ids: set[str] = set()
    seen_orders: set[int] = set()
    for step in steps:
        if step.id in RESERVED_STEP_IDS:
            errors.append(f"Step id '{step.id}' is reserved")
        if step.id in seen_ids:
            errors.append(f"Duplicate step id '{step.id}'")
        if step.id:
            seen_ids.add(step.id)
        if step.order is not None:
            if step.order in seen_orders:
                errors.append(f"Duplicate step order {step.order}")
            seen_orders.add(step.order)
    return errors


def _reference_problem(
    steps: Sequence[PipelineStep], step: PipelineStep, field: str, reference: Optional[str]
) -> Optional[str]:
    if reference is None or reference in RESERVED_STEP_IDS:
        return None
    if find_step(steps, reference) is None:
        return f"Step '{step.id}' {field} references unknown step '{reference}'"
    if reference == step.id:
        return f"Step '{step.id}' {field} references itself"
    return None


def validate_steps(steps: Sequence[PipelineStep]) -> List[str]:
    """Return every structural problem found in ``steps``.

    An empty list means the graph can be activated.
    """
    errors = check_step_identity(steps)
    enabled = enabled_steps(steps)
    if not enabled:
        errors.append("Pipeline must have at least one enabled step")
        return errors

    for step in steps:
        references: List[tuple[str, Optional[str]]] = []
        if isinstance(step, DecisionStep):
            references += [
                ("true_next_step_id", step.true_next_step_id),
                ("false_next_step_id", step.false_next_step_id),
            ]
        elif isinstance(step, WaitStep):
            references.append(("on_timeout_step_id", step.on_timeout_step_id))
        elif isinstance(step, ApprovalStep):
            references.append(("rejection_step_id", step.rejection_step_id))
        for field, reference in references:
            problem = _reference_problem(steps, step, field, reference)
            if problem:
                errors.append(problem)

    if errors:
        return errors

    start = enabled[0]
    reached = {start.id}
    frontier = [start]
    while frontier:
        current = frontier.pop()
        for nxt in successors(steps, current):
            if nxt.id not in reached:
                reached.add(nxt.id)
                frontier.append(nxt)
    for step in enabled:
        if step.id not in reached:
            errors.append(f"Step '{step.id}' is not reachable from the entry step")
    return errors


__all__ = [
    "StepType",
    "BaseStep",
    "StageStep",
    "ApprovalStep",
    "DecisionStep",
    "NotificationStep",
    "WaitStep",
    "PipelineStep",
    "AUTO_CHAIN_TYPES",
    "new_step_id",
    "normalize_steps",
    "renumber_steps",
    "sorted_steps",
    "enabled_steps",
    "count_enabled",
    "find_step",
    "entry_step",
    "next_enabled_step",
    "next_stage_trigger",
    "resolve_step_reference",
    "successors",
    "check_step_identity",
    "validate_steps",
]
