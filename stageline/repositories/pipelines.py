"""Pipeline definition repository."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import TypeAdapter

from ..errors import (
    PipelineNotFoundError,
    PipelineValidationError,
    StateConflictError,
    StepNotFoundError,
)
from ..models import PipelineCreate, PipelineDefinition, PipelineStatus, PipelineUpdate
from ..steps import (
    PipelineStep,
    check_step_identity,
    entry_step,
    find_step,
    new_step_id,
    normalize_steps,
    renumber_steps,
    sorted_steps,
    validate_steps,
)
from .base import DocumentRepository

logger = logging.getLogger(__name__)

_step_adapter: TypeAdapter[PipelineStep] = TypeAdapter(PipelineStep)


def _timestamp(stamp: Optional[datetime]) -> float:
    return stamp.timestamp() if stamp else 0.0


class PipelineRepository(DocumentRepository[PipelineDefinition]):
    """Stores every version of every pipeline definition.

    Documents are keyed by ``"<pipeline_id>:<version>"``. Editing a draft
    changes it in place; editing any other status writes a new draft version
    so running instances keep the version they started on.
    """

    collection = "pipelines"
    model = PipelineDefinition

    @staticmethod
    def _key_for(pipeline_id: str, version: int) -> str:
        return f"{pipeline_id}:{version}"

    def _key(self, definition: PipelineDefinition) -> str:
        return self._key_for(definition.pipeline_id, definition.version)

    async def _versions(self, pipeline_id: str) -> List[PipelineDefinition]:
        versions = await self._find(pipeline_id=pipeline_id)
        return sorted(versions, key=lambda d: d.version)

    @staticmethod
    def _prepare_steps(steps: List[PipelineStep]) -> List[PipelineStep]:
        prepared = normalize_steps(steps)
        problems = check_step_identity(prepared)
        if problems:
            raise PipelineValidationError("Invalid pipeline steps", problems)
        return prepared

    @staticmethod
    def _entry_id(steps: List[PipelineStep]) -> Optional[str]:
        entry = entry_step(steps)
        return entry.id if entry else None

    # ------------------------------------------------------------------
    # Create / read
    async def create_pipeline(
        self, request: PipelineCreate, created_by: str
    ) -> PipelineDefinition:
        now = self.now()
        steps = self._prepare_steps(list(request.steps))
        definition = PipelineDefinition(
            pipeline_id=str(uuid.uuid4()),
            version=1,
            name=request.name,
            description=request.description,
            line_of_business=request.line_of_business,
            business_type=request.business_type,
            organization_id=request.organization_id,
            status=PipelineStatus.DRAFT,
            is_default=request.is_default,
            steps=steps,
            entry_step_id=self._entry_id(steps),
            created_at=now,
            created_by=created_by,
            updated_at=now,
            updated_by=created_by,
        )
        created = await self._insert(self._key(definition), definition)
        logger.info(
            f"Created pipeline {created.pipeline_id} '{created.name}' for {created.line_of_business}"
        )
        return created

    async def get_pipeline(self, pipeline_id: str) -> PipelineDefinition:
        """Latest non-deprecated version."""
        for definition in reversed(await self._versions(pipeline_id)):
            if definition.status != PipelineStatus.DEPRECATED:
                return definition
        raise PipelineNotFoundError(
            f"Pipeline {pipeline_id} not found", pipeline_id=pipeline_id
        )

    async def get_pipeline_version(
        self, pipeline_id: str, version: int
    ) -> PipelineDefinition:
        definition = await self._fetch(self._key_for(pipeline_id, version))
        if definition is None:
            raise PipelineNotFoundError(
                f"Pipeline {pipeline_id} version {version} not found",
                pipeline_id=pipeline_id,
            )
        return definition

    async def list_pipeline_versions(self, pipeline_id: str) -> List[PipelineDefinition]:
        return await self._versions(pipeline_id)

    async def list_pipelines(
        self,
        line_of_business: Optional[str] = None,
        status: Optional[PipelineStatus | str] = None,
        organization_id: Optional[str] = None,
    ) -> List[PipelineDefinition]:
        """Latest matching version of each pipeline, newest first."""
        rows = await self._find(
            line_of_business=line_of_business, organization_id=organization_id
        )
        wanted = PipelineStatus(status) if status else None
        latest: Dict[str, PipelineDefinition] = {}
        for definition in rows:
            if wanted is not None and definition.status != wanted:
                continue
            if wanted is None and definition.status == PipelineStatus.DEPRECATED:
                continue
            current = latest.get(definition.pipeline_id)
            if current is None or definition.version > current.version:
                latest[definition.pipeline_id] = definition
        return sorted(
            latest.values(),
            key=lambda d: _timestamp(d.updated_at or d.created_at),
            reverse=True,
        )

    # ------------------------------------------------------------------
    # Update
    async def update_pipeline(
        self, pipeline_id: str, updates: PipelineUpdate, updated_by: str
    ) -> PipelineDefinition:
        current = await self.get_pipeline(pipeline_id)
        now = self.now()
        changes: Dict[str, Any] = updates.model_dump(exclude_unset=True, exclude={"steps"})
        changes = {k: v for k, v in changes.items() if v is not None}
        if updates.steps is not None:
            steps = self._prepare_steps(list(updates.steps))
            changes["steps"] = steps
            changes["entry_step_id"] = self._entry_id(steps)
        changes["updated_at"] = now
        changes["updated_by"] = updated_by

        if current.status == PipelineStatus.DRAFT:
            saved = await self._save(self._key(current), current.model_copy(update=changes))
            logger.info(f"Updated draft pipeline {pipeline_id} v{saved.version}")
            return saved

        draft = current.model_copy(
            update={
                **changes,
                "version": current.version + 1,
                "status": PipelineStatus.DRAFT,
                "created_at": now,
                "created_by": updated_by,
                "activated_at": None,
                "activated_by": None,
                "etag": None,
            }
        )
        created = await self._insert(self._key(draft), draft)
        logger.info(
            f"Created draft version {created.version} of pipeline {pipeline_id} "
            f"(v{current.version} is {current.status.value})"
        )
        return created

    # ------------------------------------------------------------------
    # Lifecycle
    async def activate_pipeline(
        self, pipeline_id: str, activated_by: str, version: Optional[int] = None
    ) -> PipelineDefinition:
        """Validate and activate a version (the latest by default)."""
        target = (
            await self.get_pipeline_version(pipeline_id, version)
            if version is not None
            else await self.get_pipeline(pipeline_id)
        )
        if target.status == PipelineStatus.DEPRECATED:
            raise StateConflictError(
                f"Pipeline {pipeline_id} v{target.version} is deprecated",
                pipeline_id=pipeline_id,
            )

        problems = validate_steps(target.steps)
        if problems:
            raise PipelineValidationError(
                f"Pipeline {pipeline_id} cannot be activated",
                problems,
                pipeline_id=pipeline_id,
            )

        now = self.now()
        if target.is_default:
            for other in await self._find(
                status=PipelineStatus.ACTIVE,
                line_of_business=target.line_of_business,
                is_default=True,
            ):
                if other.pipeline_id == pipeline_id:
                    continue
                if (other.business_type, other.organization_id) != (
                    target.business_type,
                    target.organization_id,
                ):
                    continue
                await self._set_status(other, PipelineStatus.INACTIVE, activated_by)
                logger.info(
                    f"Deactivated previous default pipeline {other.pipeline_id} "
                    f"for {target.line_of_business}"
                )

        for other in await self._versions(pipeline_id):
            if other.version != target.version and other.status == PipelineStatus.ACTIVE:
                await self._set_status(other, PipelineStatus.INACTIVE, activated_by)

        activated = await self._save(
            self._key(target),
            target.model_copy(
                update={
                    "status": PipelineStatus.ACTIVE,
                    "entry_step_id": self._entry_id(target.steps),
                    "activated_at": now,
                    "activated_by": activated_by,
                    "updated_at": now,
                    "updated_by": activated_by,
                }
            ),
        )
        logger.info(f"Activated pipeline {pipeline_id} v{activated.version}")
        return activated

    async def _set_status(
        self, definition: PipelineDefinition, status: PipelineStatus, actor: str
    ) -> PipelineDefinition:
        return await self._save(
            self._key(definition),
            definition.model_copy(
                update={"status": status, "updated_at": self.now(), "updated_by": actor}
            ),
        )

    async def deactivate_pipeline(
        self, pipeline_id: str, deactivated_by: str
    ) -> PipelineDefinition:
        versions = [
            d for d in await self._versions(pipeline_id) if d.status == PipelineStatus.ACTIVE
        ]
        if not versions:
            current = await self.get_pipeline(pipeline_id)
            return await self._set_status(current, PipelineStatus.INACTIVE, deactivated_by)
        result = versions[-1]
        for definition in versions:
            result = await self._set_status(
                definition, PipelineStatus.INACTIVE, deactivated_by
            )
        logger.info(f"Deactivated pipeline {pipeline_id}")
        return result

    async def delete_pipeline(self, pipeline_id: str, deleted_by: str) -> None:
        """Soft delete: every version becomes ``deprecated``."""
        await self.get_pipeline(pipeline_id)
        for definition in await self._versions(pipeline_id):
            if definition.status != PipelineStatus.DEPRECATED:
                await self._set_status(definition, PipelineStatus.DEPRECATED, deleted_by)
        logger.info(f"Deprecated pipeline {pipeline_id}")

    # ------------------------------------------------------------------
    # Resolution
    async def get_active_pipeline_for_scope(
        self,
        line_of_business: str,
        business_type: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Optional[PipelineDefinition]:
        """Pick the active definition that applies to an entity.

        Candidates whose business type or organization is set must match the
        requested value. Non-default definitions win over defaults, then more
        specific matches, then the most recent activation.
        """
        candidates = []
        for definition in await self._find(
            status=PipelineStatus.ACTIVE, line_of_business=line_of_business
        ):
            if business_type and definition.business_type not in (None, business_type):
                continue
            if organization_id and definition.organization_id not in (None, organization_id):
                continue
            candidates.append(definition)
        if not candidates:
            return None

        def rank(definition: PipelineDefinition):
            specificity = int(
                bool(business_type) and definition.business_type == business_type
            ) + int(bool(organization_id) and definition.organization_id == organization_id)
            return (
                not definition.is_default,
                specificity,
                _timestamp(definition.activated_at),
            )

        return max(candidates, key=rank)

    # ------------------------------------------------------------------
    # Step mutators
    async def _edit_steps(
        self,
        pipeline_id: str,
        updated_by: str,
        edit: Callable[[List[PipelineStep]], List[PipelineStep]],
    ) -> PipelineDefinition:
        current = await self.get_pipeline(pipeline_id)
        steps = renumber_steps(edit(sorted_steps(current.steps)))
        return await self.update_pipeline(
            pipeline_id, PipelineUpdate(steps=steps), updated_by
        )

    async def add_step(
        self,
        pipeline_id: str,
        step: PipelineStep | Dict[str, Any],
        updated_by: str,
        after_step_id: Optional[str] = None,
    ) -> PipelineDefinition:
        """Insert ``step`` after ``after_step_id`` (or at the end)."""
        new_step = _step_adapter.validate_python(step) if isinstance(step, dict) else step
        if not new_step.id:
            new_step = new_step.model_copy(update={"id": new_step_id()})

        def edit(steps: List[PipelineStep]) -> List[PipelineStep]:
            if after_step_id is None:
                return steps + [new_step]
            for index, existing in enumerate(steps):
                if existing.id == after_step_id:
                    return steps[: index + 1] + [new_step] + steps[index + 1 :]
            raise StepNotFoundError(
                f"Step {after_step_id} not found", pipeline_id=pipeline_id, step_id=after_step_id
            )

        return await self._edit_steps(pipeline_id, updated_by, _positional(edit))

    async def update_step(
        self,
        pipeline_id: str,
        step_id: str,
        changes: Dict[str, Any],
        updated_by: str,
    ) -> PipelineDefinition:
        """Apply field changes to one step; its id, type and order are kept."""

        def edit(steps: List[PipelineStep]) -> List[PipelineStep]:
            target = find_step(steps, step_id)
            if target is None:
                raise StepNotFoundError(
                    f"Step {step_id} not found", pipeline_id=pipeline_id, step_id=step_id
                )
            merged = {
                **target.model_dump(),
                **changes,
                "id": target.id,
                "type": target.type,
                "order": target.order,
            }
            replacement = _step_adapter.validate_python(merged)
            return [replacement if s.id == step_id else s for s in steps]

        return await self._edit_steps(pipeline_id, updated_by, edit)

    async def delete_step(
        self, pipeline_id: str, step_id: str, updated_by: str
    ) -> PipelineDefinition:
        def edit(steps: List[PipelineStep]) -> List[PipelineStep]:
            if find_step(steps, step_id) is None:
                raise StepNotFoundError(
                    f"Step {step_id} not found", pipeline_id=pipeline_id, step_id=step_id
                )
            return [s for s in steps if s.id != step_id]

        return await self._edit_steps(pipeline_id, updated_by, edit)

    async def reorder_steps(
        self, pipeline_id: str, order_map: Dict[str, int], updated_by: str
    ) -> PipelineDefinition:
        """Move steps to the positions given in ``order_map`` (step id -> order)."""

        def edit(steps: List[PipelineStep]) -> List[PipelineStep]:
            for step_id in order_map:
                if find_step(steps, step_id) is None:
                    raise StepNotFoundError(
                        f"Step {step_id} not found", pipeline_id=pipeline_id, step_id=step_id
                    )
            keyed = [
                (order_map.get(s.id, s.order or 0), position, s)
                for position, s in enumerate(steps)
            ]
            keyed.sort(key=lambda item: (item[0], item[1]))
            return _positional(lambda ordered: ordered)([s for _, _, s in keyed])

        return await self._edit_steps(pipeline_id, updated_by, edit)


def _positional(
    edit: Callable[[List[PipelineStep]], List[PipelineStep]]
) -> Callable[[List[PipelineStep]], List[PipelineStep]]:
    """Wrap ``edit`` so list position becomes the step order."""

    def wrapped(steps: List[PipelineStep]) -> List[PipelineStep]:
        return [
            s.model_copy(update={"order": position})
            for position, s in enumerate(edit(steps), start=1)
        ]

    return wrapped
