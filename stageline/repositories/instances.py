"""Pipeline instance repository (the per-entity state machine)."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..errors import (
    DuplicateDocumentError,
    DuplicateInstanceError,
    InstanceNotFoundError,
    PipelineValidationError,
)
from ..models import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    InstanceStatus,
    LastError,
    PipelineDefinition,
    PipelineInstance,
    StepHistoryEntry,
    StepOutcome,
    calculate_progress,
)
from ..steps import PipelineStep, StageStep
from .base import DocumentRepository

logger = logging.getLogger(__name__)

InstanceRef = Union[PipelineInstance, str]

_EXTRA_STATUS_FIELDS = {"cancelled_by", "cancellation_reason", "last_error"}


class InstanceRepository(DocumentRepository[PipelineInstance]):
    """Persist pipeline instances and enforce one live instance per entity.

    Mutators accept either an instance id or a previously loaded
    :class:`PipelineInstance`. When a model is passed its etag guards the
    write, so a decision made on stale state surfaces as
    :class:`~stageline.errors.ConcurrencyConflictError`.
    """

    collection = "instances"
    model = PipelineInstance
    pointer_collection = "entity_pointers"

    # ------------------------------------------------------------------
    # Creation
    async def create_instance(
        self, definition: PipelineDefinition, entity_id: str, triggered_by: str
    ) -> PipelineInstance:
        entry = definition.entry_step()
        if entry is None:
            raise PipelineValidationError(
                f"Pipeline {definition.pipeline_id} has no enabled steps",
                pipeline_id=definition.pipeline_id,
            )

        now = self.now()
        instance_id = str(uuid.uuid4())
        await self._claim_entity(entity_id, instance_id)

        instance = PipelineInstance(
            instance_id=instance_id,
            pipeline_id=definition.pipeline_id,
            pipeline_version=definition.version,
            pipeline_name=definition.name,
            entity_id=entity_id,
            line_of_business=definition.line_of_business,
            organization_id=definition.organization_id,
            status=InstanceStatus.ACTIVE,
            total_steps_count=definition.total_enabled,
            step_history=[self._history_entry(entry, triggered_by, now)],
            created_at=now,
            updated_at=now,
        )
        instance.set_current_step(entry)
        instance.set_next_step(definition.next_enabled_step(entry.id))
        created = await self._insert(instance_id, instance)
        logger.info(
            f"Created instance {instance_id} of pipeline {definition.pipeline_id} "
            f"v{definition.version} for entity {entity_id}"
        )
        return created

    async def _claim_entity(self, entity_id: str, instance_id: str) -> None:
        """Point ``entity_id`` at ``instance_id`` unless a live instance owns it."""
        body = {"entity_id": entity_id, "instance_id": instance_id}
        pointer = await self._store.get(self.pointer_collection, entity_id)
        if pointer is None:
            try:
                await self._store.create(self.pointer_collection, entity_id, body)
            except DuplicateDocumentError as exc:
                raise DuplicateInstanceError(
                    f"Entity {entity_id} already has an active pipeline instance"
                ) from exc
            return

        owner = await self._fetch(pointer.body.get("instance_id", ""))
        if owner is not None and not owner.is_terminal:
            raise DuplicateInstanceError(
                f"Entity {entity_id} already has an active pipeline instance",
                instance_id=owner.instance_id,
            )
        await self._store.replace(self.pointer_collection, entity_id, body, pointer.etag)

    @staticmethod
    def _history_entry(
        step: PipelineStep, triggered_by: str, now: datetime
    ) -> StepHistoryEntry:
        return StepHistoryEntry(
            step_id=step.id or "",
            step_type=step.type,
            stage_name=step.stage_name if isinstance(step, StageStep) else None,
            entered_at=now,
            triggered_by=triggered_by,
        )

    # ------------------------------------------------------------------
    # Reads
    async def get_instance(self, instance_id: str) -> PipelineInstance:
        instance = await self._fetch(instance_id)
        if instance is None:
            raise InstanceNotFoundError(
                f"Instance {instance_id} not found", instance_id=instance_id
            )
        return instance

    async def get_active_instance_for_entity(
        self, entity_id: str
    ) -> Optional[PipelineInstance]:
        pointer = await self._store.get(self.pointer_collection, entity_id)
        if pointer is None:
            return None
        instance = await self._fetch(pointer.body.get("instance_id", ""))
        if instance is None or instance.is_terminal:
            return None
        return instance

    async def list_instances_for_entity(self, entity_id: str) -> List[PipelineInstance]:
        return self._newest_first(await self._find(entity_id=entity_id))

    async def list_instances(
        self,
        status: Optional[InstanceStatus | str] = None,
        pipeline_id: Optional[str] = None,
        line_of_business: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> List[PipelineInstance]:
        return self._newest_first(
            await self._find(
                status=status,
                pipeline_id=pipeline_id,
                line_of_business=line_of_business,
                entity_id=entity_id,
            )
        )

    async def list_active_instances(self) -> List[PipelineInstance]:
        return self._newest_first(await self._find(status=NON_TERMINAL_STATUSES))

    async def find_instances_waiting_for_event(
        self, event_type: str, entity_id: Optional[str] = None
    ) -> List[PipelineInstance]:
        return await self._find(
            status=InstanceStatus.WAITING_EVENT,
            waiting_for_event=event_type,
            entity_id=entity_id,
        )

    async def find_overdue_waits(
        self, now: Optional[datetime] = None
    ) -> List[PipelineInstance]:
        """Instances waiting for an event whose deadline has passed."""
        now = now or self.now()
        return [
            instance
            for instance in await self._find(status=InstanceStatus.WAITING_EVENT)
            if instance.waiting_until is not None and instance.waiting_until <= now
        ]

    async def get_step_history(self, instance_id: str) -> List[StepHistoryEntry]:
        return (await self.get_instance(instance_id)).step_history

    @staticmethod
    def _newest_first(instances: List[PipelineInstance]) -> List[PipelineInstance]:
        return sorted(
            instances,
            key=lambda i: i.created_at.timestamp() if i.created_at else 0.0,
            reverse=True,
        )

    # ------------------------------------------------------------------
    # Mutations
    async def _resolve(self, ref: InstanceRef) -> PipelineInstance:
        if isinstance(ref, PipelineInstance):
            return ref.model_copy(deep=True)
        return await self.get_instance(ref)

    async def _mutate(
        self, ref: InstanceRef, change: Callable[[PipelineInstance, datetime], None]
    ) -> PipelineInstance:
        instance = await self._resolve(ref)
        now = self.now()
        change(instance, now)
        instance.updated_at = now
        return await self._save(instance.instance_id, instance)

    async def move_to_step(
        self,
        ref: InstanceRef,
        step: PipelineStep,
        triggered_by: str,
        outcome: StepOutcome | str = StepOutcome.COMPLETED,
        next_step: Optional[PipelineStep] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PipelineInstance:
        """Close the open history entry and enter ``step``."""

        def change(instance: PipelineInstance, now: datetime) -> None:
            self._close_open_entry(instance, now, outcome, metadata)
            instance.step_history.append(self._history_entry(step, triggered_by, now))
            instance.completed_steps_count += 1
            progress = calculate_progress(
                instance.completed_steps_count, instance.total_steps_count
            )
            instance.progress_percent = max(instance.progress_percent, progress)
            instance.clear_waiting()
            instance.status = InstanceStatus.ACTIVE
            instance.set_current_step(step)
            instance.set_next_step(next_step)

        moved = await self._mutate(ref, change)
        logger.info(
            f"Instance {moved.instance_id} moved to step {step.id} ({step.type}), "
            f"progress {moved.progress_percent}%"
        )
        return moved

    @staticmethod
    def _close_open_entry(
        instance: PipelineInstance,
        now: datetime,
        outcome: StepOutcome | str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = instance.open_history_entry()
        if entry is None:
            return
        entry.exited_at = now
        entry.outcome = StepOutcome(outcome)
        if metadata:
            entry.metadata.update(metadata)

    async def set_waiting_for_event(
        self, ref: InstanceRef, event_type: str, until: Optional[datetime] = None
    ) -> PipelineInstance:
        def change(instance: PipelineInstance, now: datetime) -> None:
            instance.status = InstanceStatus.WAITING_EVENT
            instance.waiting_for_event = event_type
            instance.waiting_for_approval_id = None
            instance.waiting_until = until

        return await self._mutate(ref, change)

    async def set_waiting_for_approval(
        self, ref: InstanceRef, approval_id: str, until: Optional[datetime] = None
    ) -> PipelineInstance:
        def change(instance: PipelineInstance, now: datetime) -> None:
            instance.status = InstanceStatus.WAITING_APPROVAL
            instance.waiting_for_approval_id = approval_id
            instance.waiting_for_event = None
            instance.waiting_until = until

        return await self._mutate(ref, change)

    async def update_waiting_deadline(
        self, ref: InstanceRef, until: Optional[datetime]
    ) -> PipelineInstance:
        def change(instance: PipelineInstance, now: datetime) -> None:
            instance.waiting_until = until

        return await self._mutate(ref, change)

    async def update_next_step_info(
        self, ref: InstanceRef, next_step: Optional[PipelineStep]
    ) -> PipelineInstance:
        def change(instance: PipelineInstance, now: datetime) -> None:
            instance.set_next_step(next_step)

        return await self._mutate(ref, change)

    async def update_instance_status(
        self, ref: InstanceRef, status: InstanceStatus | str, **extra: Any
    ) -> PipelineInstance:
        """Generic status transition; terminal statuses stamp ``completed_at``."""
        unknown = set(extra) - _EXTRA_STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unsupported instance fields: {sorted(unknown)}")
        new_status = InstanceStatus(status)

        def change(instance: PipelineInstance, now: datetime) -> None:
            instance.status = new_status
            for field, value in extra.items():
                setattr(instance, field, value)
            if new_status in TERMINAL_STATUSES:
                instance.completed_at = now
                instance.clear_waiting()

        updated = await self._mutate(ref, change)
        logger.info(f"Instance {updated.instance_id} status -> {new_status.value}")
        return updated

    async def complete_instance(
        self,
        ref: InstanceRef,
        status: InstanceStatus | str = InstanceStatus.COMPLETED,
        outcome: StepOutcome | str = StepOutcome.COMPLETED,
        **extra: Any,
    ) -> PipelineInstance:
        """Terminal transition that also closes the open history entry."""
        new_status = InstanceStatus(status)
        if new_status not in TERMINAL_STATUSES:
            raise ValueError(f"{new_status.value} is not a terminal status")
        unknown = set(extra) - _EXTRA_STATUS_FIELDS
        if unknown:
            raise ValueError(f"Unsupported instance fields: {sorted(unknown)}")

        def change(instance: PipelineInstance, now: datetime) -> None:
            self._close_open_entry(instance, now, outcome)
            instance.status = new_status
            instance.completed_at = now
            instance.clear_waiting()
            instance.set_next_step(None)
            for field, value in extra.items():
                setattr(instance, field, value)
            if new_status is InstanceStatus.COMPLETED:
                instance.completed_steps_count = min(
                    instance.completed_steps_count + 1, instance.total_steps_count
                )
                instance.progress_percent = 100

        completed = await self._mutate(ref, change)
        logger.info(f"Instance {completed.instance_id} finished as {new_status.value}")
        return completed

    async def record_error(
        self, ref: InstanceRef, step_id: Optional[str], message: str
    ) -> PipelineInstance:
        """Force the instance to ``failed`` and remember why."""

        def change(instance: PipelineInstance, now: datetime) -> None:
            self._close_open_entry(instance, now, StepOutcome.FAILED)
            instance.status = InstanceStatus.FAILED
            instance.last_error = LastError(step_id=step_id, message=message, timestamp=now)
            instance.completed_at = now
            instance.clear_waiting()

        failed = await self._mutate(ref, change)
        logger.error(
            f"Instance {failed.instance_id} failed at step {step_id}: {message}"
        )
        return failed


__all__ = ["InstanceRepository", "InstanceRef"]
