"""Event-driven pipeline orchestration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

from pydantic import ValidationError

from .config import OrchestratorConfig, StagelineConfig, load_config
from .constants import (
    APPROVAL_DECIDED_EVENT,
    APPROVAL_EXPIRED_EVENT,
    END_SENTINEL,
    MANUAL_ADVANCE_EVENT,
    STAGE_CHANGED_BY,
    WAIT_TIMEOUT_EVENT,
    get_notification,
    get_wait_event,
)
from .errors import (
    ChainLimitExceededError,
    ConcurrencyConflictError,
    InstanceNotFoundError,
    PipelineError,
    StateConflictError,
    StepNotFoundError,
    StoreError,
)
from .events import EventPublisher
from .lead_service import (
    ConditionEvaluator,
    EntitySummaryProvider,
    HttpLeadServiceClient,
    StageChangeRequest,
    StageUpdater,
    UnconfiguredLeadService,
)
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    EventData,
    InstanceStatus,
    NextStepInfo,
    PipelineDefinition,
    PipelineInstance,
    ProcessEventResult,
    StepOutcome,
)
from .persistence import DocumentStore, get_store
from .repositories import ApprovalRepository, InstanceRepository, PipelineRepository
from .steps import (
    AUTO_CHAIN_TYPES,
    ApprovalStep,
    DecisionStep,
    NotificationStep,
    PipelineStep,
    StageStep,
    WaitStep,
    resolve_step_reference,
)
from .transports import BaseTransport, get_transport
from .utils.clock import Clock, utcnow
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Transition:
    """Where an instance goes next. ``target=None`` completes the pipeline."""

    target: Optional[PipelineStep]
    outcome: StepOutcome = StepOutcome.COMPLETED
    metadata: Dict[str, Any] = field(default_factory=dict)
    failure: Optional[str] = None


StepResult = Tuple[PipelineInstance, Optional[Transition]]
StepHandler = Callable[
    [PipelineInstance, PipelineDefinition, PipelineStep, str], Awaitable[StepResult]
]


class PipelineOrchestrator:
    """Drives pipeline instances forward as domain events arrive.

    Every inbound event goes through :meth:`process_event`. Steps that never
    wait (decisions, notifications, terminal stages) are chained within the
    same call; waiting steps park the instance until a later event.
    """

    def __init__(
        self,
        pipelines: PipelineRepository,
        instances: InstanceRepository,
        approvals: ApprovalRepository,
        publisher: EventPublisher,
        stage_updater: StageUpdater,
        condition_evaluator: ConditionEvaluator,
        summary_provider: Optional[EntitySummaryProvider] = None,
        config: Optional[OrchestratorConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.pipelines = pipelines
        self.instances = instances
        self.approvals = approvals
        self.publisher = publisher
        self._stage_updater = stage_updater
        self._condition_evaluator = condition_evaluator
        self._summary_provider = summary_provider
        self._config = config or OrchestratorConfig()
        self._clock = clock
        self._handlers: Dict[str, StepHandler] = {
            "stage": self._execute_stage,
            "approval": self._execute_approval,
            "decision": self._execute_decision,
            "notification": self._execute_notification,
            "wait": self._execute_wait,
        }

    # ------------------------------------------------------------------
    # Entry point
    async def process_event(
        self, event_type: str, event_data: Union[EventData, Dict[str, Any], None]
    ) -> ProcessEventResult:
        """Apply one domain event; never raises except for storage failures."""
        try:
            data = (
                event_data
                if isinstance(event_data, EventData)
                else EventData.model_validate(event_data or {})
            )
        except ValidationError as exc:
            logger.warning(f"Event {event_type} has invalid data: {exc}")
            return ProcessEventResult(processed=False, error=f"Invalid event data: {exc}")

        if not data.entity_id:
            logger.info(f"Event {event_type} has no entity id - skipping")
            return ProcessEventResult(processed=False, error="No entity id in event")

        logger.info(f"Processing event {event_type} for entity {data.entity_id}")
        try:
            return await self._retrying(
                lambda: self._dispatch(event_type, data),
                f"{event_type} for entity {data.entity_id}",
            )
        except PipelineError as exc:
            logger.warning(
                f"Event {event_type} for entity {data.entity_id} not processed: {exc}"
            )
            return ProcessEventResult(
                processed=False, instance_id=exc.instance_id, error=str(exc)
            )

    async def _retrying(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Re-run ``operation`` from a fresh read when an etag check fails."""
        attempt = 0
        while True:
            try:
                return await operation()
            except ConcurrencyConflictError as exc:
                if attempt >= self._config.max_conflict_retries:
                    logger.warning(
                        f"Giving up on {description} after {attempt + 1} conflicting attempts"
                    )
                    raise
                logger.info(f"Conflict during {description} ({exc}); re-evaluating")
                await schedule_retry(attempt, base=self._config.conflict_backoff_base)
                attempt += 1

    async def _dispatch(self, event_type: str, data: EventData) -> ProcessEventResult:
        if event_type == self._config.entity_created_event:
            return await self._handle_entity_created(event_type, data)
        return await self._handle_event(event_type, data)

    # ------------------------------------------------------------------
    # Event handlers
    async def _handle_entity_created(
        self, event_type: str, data: EventData
    ) -> ProcessEventResult:
        entity_id = data.entity_id or ""
        if not data.line_of_business:
            logger.info(f"{event_type} for {entity_id} is missing line_of_business")
            return ProcessEventResult(processed=False, error="Missing line_of_business")

        existing = await self.instances.get_active_instance_for_entity(entity_id)
        if existing is not None:
            logger.info(f"Entity {entity_id} already has active instance {existing.instance_id}")
            return ProcessEventResult(
                processed=False,
                instance_id=existing.instance_id,
                error="Pipeline instance already exists",
            )

        definition = await self.pipelines.get_active_pipeline_for_scope(
            data.line_of_business, data.business_type, data.organization_id
        )
        if definition is None:
            logger.info(
                f"No active pipeline for {data.line_of_business}/{data.business_type}"
            )
            return ProcessEventResult(
                processed=False, error="No active pipeline for line of business"
            )

        triggered_by = data.triggered_by or event_type
        instance = await self.instances.create_instance(definition, entity_id, triggered_by)
        await self.publisher.publish_instance_created(instance)

        entry = definition.find_step(instance.current_step_id)
        if entry is not None:
            instance = await self._drive(instance, definition, entry, triggered_by)
        return ProcessEventResult(
            processed=True, instance_id=instance.instance_id, action="pipeline_started"
        )

    async def _handle_event(self, event_type: str, data: EventData) -> ProcessEventResult:
        entity_id = data.entity_id or ""
        instance = await self.instances.get_active_instance_for_entity(entity_id)
        if instance is None:
            logger.info(f"No active pipeline instance for entity {entity_id}")
            return ProcessEventResult(processed=False, error="No active pipeline instance")

        definition = await self.pipelines.get_pipeline_version(
            instance.pipeline_id, instance.pipeline_version
        )
        current = definition.find_step(instance.current_step_id)
        if current is None:
            raise StepNotFoundError(
                f"Current step {instance.current_step_id} not found in pipeline",
                pipeline_id=definition.pipeline_id,
                instance_id=instance.instance_id,
                step_id=instance.current_step_id,
            )

        if self._entered_without_parking(instance, current, event_type, data):
            # a conflict interrupted the chain between entering the step and parking
            logger.info(
                f"Resuming step {current.id} for instance {instance.instance_id} "
                f"on {event_type}"
            )
            instance = await self._drive(
                instance, definition, current, data.triggered_by or event_type
            )
            return ProcessEventResult(
                processed=True,
                instance_id=instance.instance_id,
                action=f"advanced_to_{current.id}",
            )

        transition = await self._advancement_for(instance, definition, current, event_type, data)
        if transition is None:
            logger.debug(
                f"Event {event_type} does not advance instance {instance.instance_id} "
                f"at step {current.id}"
            )
            return ProcessEventResult(
                processed=False, instance_id=instance.instance_id, action="no_advancement"
            )

        if transition.failure:
            await self._fail(instance, current.id, transition.failure)
            return ProcessEventResult(
                processed=True, instance_id=instance.instance_id, action="pipeline_failed"
            )

        triggered_by = data.triggered_by or event_type
        if transition.target is None:
            await self._complete(instance, transition.outcome)
            return ProcessEventResult(
                processed=True, instance_id=instance.instance_id, action="pipeline_completed"
            )

        await self.advance_to_step(
            instance,
            definition,
            transition.target,
            triggered_by,
            transition.outcome,
            transition.metadata,
        )
        return ProcessEventResult(
            processed=True,
            instance_id=instance.instance_id,
            action=f"advanced_to_{transition.target.id}",
        )

    @staticmethod
    def _entered_without_parking(
        instance: PipelineInstance,
        current: PipelineStep,
        event_type: str,
        data: EventData,
    ) -> bool:
        """True when ``current`` is an approval or wait step that never parked."""
        if instance.status != InstanceStatus.ACTIVE:
            return False
        if isinstance(current, WaitStep):
            return True
        if isinstance(current, ApprovalStep):
            # an explicit decision on the open approval is handled directly
            return not (
                event_type in (APPROVAL_DECIDED_EVENT, APPROVAL_EXPIRED_EVENT)
                and data.approval_id
            )
        return False

    async def _advancement_for(
        self,
        instance: PipelineInstance,
        definition: PipelineDefinition,
        current: PipelineStep,
        event_type: str,
        data: EventData,
    ) -> Optional[Transition]:
        """Decide whether ``event_type`` moves the instance off ``current``."""
        if isinstance(current, StageStep):
            nxt = definition.next_enabled_step(current.id)
            if nxt is None:
                return None
            if isinstance(nxt, StageStep) and event_type != nxt.resolve_trigger():
                return None
            return Transition(nxt)

        if isinstance(current, WaitStep):
            if instance.status != InstanceStatus.WAITING_EVENT:
                return None
            if event_type == current.event_type:
                return Transition(definition.next_enabled_step(current.id))
            if event_type == WAIT_TIMEOUT_EVENT:
                if instance.waiting_until is None or instance.waiting_until > self._clock():
                    return None
                target = (
                    resolve_step_reference(
                        definition.steps, current.on_timeout_step_id, current.id
                    )
                    if current.on_timeout_step_id
                    else definition.next_enabled_step(current.id)
                )
                return Transition(target, StepOutcome.TIMEOUT, {"timed_out_at": self._clock().isoformat()})
            return None

        if isinstance(current, ApprovalStep):
            if event_type not in (APPROVAL_DECIDED_EVENT, APPROVAL_EXPIRED_EVENT):
                return None
            approval = await self._approval_for_event(instance, data)
            if event_type == APPROVAL_EXPIRED_EVENT:
                return Transition(
                    None, failure=f"Approval {approval.approval_id} expired without a decision"
                )
            if approval.decision is None:
                raise StateConflictError(
                    f"Approval {approval.approval_id} has not been decided",
                    instance_id=instance.instance_id,
                    step_id=current.id,
                )
            metadata = {
                "approval_id": approval.approval_id,
                "decided_by": approval.decided_by,
                "comment": approval.comment,
            }
            if approval.decision == ApprovalDecision.REJECTED:
                target = (
                    resolve_step_reference(
                        definition.steps, current.rejection_step_id, current.id
                    )
                    if current.rejection_step_id
                    else definition.next_enabled_step(current.id)
                )
                return Transition(target, StepOutcome.REJECTED, metadata)
            return Transition(
                definition.next_enabled_step(current.id), StepOutcome.APPROVED, metadata
            )

        # decision and notification steps never wait for events
        return None

    async def _approval_for_event(
        self, instance: PipelineInstance, data: EventData
    ) -> ApprovalRequest:
        expected = instance.waiting_for_approval_id
        approval_id = data.approval_id or expected
        if not approval_id or (expected and approval_id != expected):
            raise StateConflictError(
                f"Instance {instance.instance_id} is not waiting for approval {approval_id}",
                instance_id=instance.instance_id,
                step_id=instance.current_step_id,
            )
        return await self.approvals.get_approval(approval_id)

    # ------------------------------------------------------------------
    # Step execution
    async def advance_to_step(
        self,
        instance: PipelineInstance,
        definition: PipelineDefinition,
        target: PipelineStep,
        triggered_by: str,
        outcome: StepOutcome = StepOutcome.COMPLETED,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PipelineInstance:
        """Move onto ``target`` and keep executing until the instance parks."""
        return await self._drive(
            instance, definition, target, triggered_by, outcome, metadata
        )

    async def _drive(
        self,
        instance: PipelineInstance,
        definition: PipelineDefinition,
        step: PipelineStep,
        triggered_by: str,
        outcome: Optional[StepOutcome] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PipelineInstance:
        """Enter ``step`` and run the chain of steps that follow it.

        ``outcome=None`` means ``step`` is already the current step (a freshly
        created instance). The loop is bounded by ``max_chain_steps``.
        """
        executed = 0
        while True:
            if outcome is not None:
                instance = await self.instances.move_to_step(
                    instance,
                    step,
                    triggered_by,
                    outcome,
                    next_step=definition.next_enabled_step(step.id),
                    metadata=metadata,
                )

            executed += 1
            if executed > self._config.max_chain_steps:
                message = (
                    f"More than {self._config.max_chain_steps} steps chained "
                    f"without waiting (last step {step.id})"
                )
                await self._fail(instance, step.id, message)
                raise ChainLimitExceededError(
                    message,
                    pipeline_id=definition.pipeline_id,
                    instance_id=instance.instance_id,
                    step_id=step.id,
                )

            handler = self._handlers[step.type]
            try:
                instance, transition = await handler(instance, definition, step, triggered_by)
            except (PipelineError, StoreError):
                raise
            except Exception as exc:
                await self._fail(instance, step.id, f"{type(exc).__name__}: {exc}")
                raise PipelineError(
                    f"Step {step.id} failed: {exc}",
                    pipeline_id=definition.pipeline_id,
                    instance_id=instance.instance_id,
                    step_id=step.id,
                ) from exc

            if transition is None:
                return instance
            if transition.target is None:
                return await self._complete(instance, transition.outcome)
            step = transition.target
            outcome = transition.outcome
            metadata = transition.metadata

    async def _execute_stage(
        self,
        instance: PipelineInstance,
        definition: PipelineDefinition,
        step: StageStep,
        triggered_by: str,
    ) -> StepResult:
        logger.info(f"Updating entity {instance.entity_id} to stage {step.stage_name}")
        request = StageChangeRequest(
            stage_id=step.stage_id,
            stage_name=step.stage_name,
            remark=f"Pipeline: {instance.pipeline_name}",
            changed_by=STAGE_CHANGED_BY,
        )
        try:
            updated = await self._stage_updater.update_stage(
                instance.entity_id, instance.line_of_business, request
            )
        except Exception as exc:
            logger.warning(f"Stage update for entity {instance.entity_id} raised: {exc}")
            updated = False
        if not updated:
            logger.warning(
                f"Failed to update stage {step.stage_id} for entity {instance.entity_id}"
            )

        history = instance.step_history
        previous = history[-2].step_id if len(history) > 1 else None
        await self.publisher.publish_step_changed(instance, previous)

        nxt = definition.next_enabled_step(step.id)
        if nxt is None:
            return instance, Transition(None)
        if nxt.type in AUTO_CHAIN_TYPES:
            return instance, Transition(nxt)
        if instance.next_step_id != nxt.id:
            instance = await self.instances.update_next_step_info(instance, nxt)
        return instance, None

    async def _execute_approval(
        self,
        instance: PipelineInstance,
        definition: PipelineDefinition,
        step: ApprovalStep,
        triggered_by: str,
    ) -> StepResult:
        approval = await self.approvals.get_pending_approval_for_instance(instance.instance_id)
        if approval is None or approval.step_id != step.id:
            summary = await self._entity_summary(instance)
            approval = await self.approvals.create_approval(
                instance.instance_id,
                definition.pipeline_id,
                instance.entity_id,
                step.id or "",
                step.approver_role,
                step_name=step.name or f"Approval: {step.approver_role}",
                escalation_role=step.escalation_role,
                timeout_hours=step.timeout_hours,
                entity_reference_id=summary.get("reference_id"),
                entity_summary=summary,
            )
        instance = await self.instances.set_waiting_for_approval(
            instance, approval.approval_id, approval.expires_at
        )
        await self.publisher.publish_approval_required(approval)
        return instance, None

    async def _execute_decision(
        self,
        instance: PipelineInstance,
        definition: PipelineDefinition,
        step: DecisionStep,
        triggered_by: str,
    ) -> StepResult:
        result = await self._condition_evaluator.evaluate_condition(
            instance.entity_id,
            instance.line_of_business,
            step.condition_type,
            step.condition_value,
        )
        reference = step.true_next_step_id if result else step.false_next_step_id
        logger.info(
            f"Decision {step.id} ({step.condition_type}) for entity {instance.entity_id} "
            f"is {result}, next: {reference}"
        )
        metadata = {"condition_type": step.condition_type, "result": bool(result)}
        if reference == END_SENTINEL:
            return instance, Transition(None, StepOutcome.BRANCHED, metadata)
        target = resolve_step_reference(definition.steps, reference, step.id)
        return instance, Transition(target, StepOutcome.BRANCHED, metadata)

    async def _execute_notification(
        self,
        instance: PipelineInstance,
        definition: PipelineDefinition,
        step: NotificationStep,
        triggered_by: str,
    ) -> StepResult:
        info = get_notification(step.notification_type)
        if info is None:
            logger.warning(f"Unknown notification type {step.notification_type}")
        summary = await self._entity_summary(instance)
        await self.publisher.publish_notification_required(
            instance,
            step.notification_type,
            channel=info.channel if info else None,
            recipient_type=info.recipient_type if info else None,
            template_id=info.template_id if info else None,
            custom_message=step.custom_message,
            entity_summary=summary,
        )
        return instance, Transition(definition.next_enabled_step(step.id))

    async def _execute_wait(
        self,
        instance: PipelineInstance,
        definition: PipelineDefinition,
        step: WaitStep,
        triggered_by: str,
    ) -> StepResult:
        hours = step.timeout_hours
        if hours is None:
            info = get_wait_event(step.wait_for_event)
            hours = info.default_timeout_hours if info else 0
        until = self._clock() + timedelta(hours=hours) if hours > 0 else None
        instance = await self.instances.set_waiting_for_event(instance, step.event_type, until)
        logger.info(
            f"Instance {instance.instance_id} waiting for {step.event_type}"
            + (f" until {until.isoformat()}" if until else "")
        )
        return instance, None

    async def _entity_summary(self, instance: PipelineInstance) -> Dict[str, Any]:
        if self._summary_provider is None:
            return {}
        try:
            summary = await self._summary_provider.get_lead_summary(
                instance.entity_id, instance.line_of_business
            )
        except Exception as exc:
            logger.warning(f"Could not load summary for entity {instance.entity_id}: {exc}")
            return {}
        return summary or {}

    async def _complete(
        self,
        instance: PipelineInstance,
        outcome: StepOutcome = StepOutcome.COMPLETED,
        status: InstanceStatus = InstanceStatus.COMPLETED,
    ) -> PipelineInstance:
        instance = await self.instances.complete_instance(instance, status, outcome)
        await self.publisher.publish_instance_completed(instance)
        return instance

    async def _fail(
        self, instance: PipelineInstance, step_id: Optional[str], message: str
    ) -> PipelineInstance:
        instance = await self.instances.record_error(instance, step_id, message)
        await self.publisher.publish_instance_completed(instance)
        return instance

    # ------------------------------------------------------------------
    # Approvals
    async def handle_approval_decision(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        decided_by: str,
        decided_by_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> ProcessEventResult:
        """Record a decision and feed it back through :meth:`process_event`.

        Deciding an approval that is not pending raises
        :class:`~stageline.errors.StateConflictError`.
        """
        approval = await self.approvals.submit_decision(
            approval_id, decision, decided_by, decided_by_name, comment
        )
        await self.publisher.publish_approval_decided(approval)
        return await self.process_event(
            APPROVAL_DECIDED_EVENT,
            EventData(
                entity_id=approval.entity_id,
                approval_id=approval.approval_id,
                decision=approval.decision.value if approval.decision else None,
                triggered_by=decided_by,
            ),
        )

    async def escalate_approval(
        self, approval_id: str, new_role: Optional[str] = None
    ) -> ApprovalRequest:
        """Reassign a pending approval, defaulting to its escalation role."""
        approval = await self.approvals.get_approval(approval_id)
        role = new_role or approval.escalation_role
        if not role:
            raise StateConflictError(
                f"Approval {approval_id} has no escalation role",
                instance_id=approval.instance_id,
                step_id=approval.step_id,
            )
        approval = await self.approvals.escalate_approval(approval_id, role)

        async def sync_deadline() -> None:
            instance = await self.instances.get_instance(approval.instance_id)
            if instance.waiting_for_approval_id == approval_id:
                await self.instances.update_waiting_deadline(instance, approval.expires_at)

        await self._retrying(sync_deadline, f"deadline sync for approval {approval_id}")
        await self.publisher.publish_approval_required(approval)
        return approval

    async def expire_approval(self, approval_id: str) -> ProcessEventResult:
        """Expire a pending approval and fail the instance gated by it."""
        approval = await self.approvals.expire_approval(approval_id)
        return await self.process_event(
            APPROVAL_EXPIRED_EVENT,
            EventData(
                entity_id=approval.entity_id,
                approval_id=approval_id,
                triggered_by="approval-expiry",
            ),
        )

    # ------------------------------------------------------------------
    # Definitions
    async def activate_pipeline(
        self, pipeline_id: str, activated_by: str, version: Optional[int] = None
    ) -> PipelineDefinition:
        definition = await self.pipelines.activate_pipeline(pipeline_id, activated_by, version)
        await self.publisher.publish_pipeline_activated(definition)
        return definition

    async def deactivate_pipeline(
        self, pipeline_id: str, deactivated_by: str
    ) -> PipelineDefinition:
        definition = await self.pipelines.deactivate_pipeline(pipeline_id, deactivated_by)
        await self.publisher.publish_pipeline_deactivated(definition)
        return definition

    # ------------------------------------------------------------------
    # Administrative operations
    async def cancel_instance(
        self,
        instance_id: str,
        cancelled_by: str,
        reason: Optional[str] = None,
        close_pending_approval: bool = False,
    ) -> PipelineInstance:
        """Force a non-terminal instance to ``cancelled``.

        A pending approval is left open unless ``close_pending_approval`` is
        set; approval records stand on their own.
        """

        async def cancel() -> PipelineInstance:
            instance = await self.instances.get_instance(instance_id)
            if instance.is_terminal:
                raise StateConflictError(
                    f"Instance {instance_id} is already {instance.status.value}",
                    instance_id=instance_id,
                )
            return await self.instances.complete_instance(
                instance,
                InstanceStatus.CANCELLED,
                StepOutcome.CANCELLED,
                cancelled_by=cancelled_by,
                cancellation_reason=reason,
            )

        instance = await self._retrying(cancel, f"cancel of instance {instance_id}")
        if close_pending_approval:
            approval = await self.approvals.get_pending_approval_for_instance(instance_id)
            if approval is not None:
                await self.approvals.cancel_approval(
                    approval.approval_id, cancelled_by, reason
                )
        await self.publisher.publish_instance_completed(instance)
        logger.info(f"Instance {instance_id} cancelled by {cancelled_by}")
        return instance

    async def manual_advance(
        self, instance_id: str, advanced_by: str, comment: Optional[str] = None
    ) -> ProcessEventResult:
        """Release an instance parked on a manual-advance wait step."""
        instance = await self.instances.get_instance(instance_id)
        if instance.status != InstanceStatus.WAITING_EVENT or instance.waiting_for_event not in (
            MANUAL_ADVANCE_EVENT,
            "manual_advance",
        ):
            raise StateConflictError(
                f"Instance {instance_id} is not waiting for manual advance "
                f"(status {instance.status.value}, waiting for {instance.waiting_for_event or 'nothing'})",
                instance_id=instance_id,
            )
        logger.info(f"Manually advancing instance {instance_id} by {advanced_by}")
        return await self.process_event(
            MANUAL_ADVANCE_EVENT,
            EventData(
                entity_id=instance.entity_id,
                line_of_business=instance.line_of_business,
                triggered_by=advanced_by,
                comment=comment,
            ),
        )

    async def manual_advance_entity(
        self, entity_id: str, advanced_by: str, comment: Optional[str] = None
    ) -> ProcessEventResult:
        instance = await self.instances.get_active_instance_for_entity(entity_id)
        if instance is None:
            raise InstanceNotFoundError(f"No active pipeline instance for entity {entity_id}")
        return await self.manual_advance(instance.instance_id, advanced_by, comment)

    async def get_next_step_info(self, entity_id: str) -> NextStepInfo:
        instance = await self.instances.get_active_instance_for_entity(entity_id)
        if instance is None:
            return NextStepInfo(has_active_pipeline=False)
        return NextStepInfo(
            has_active_pipeline=True,
            instance_id=instance.instance_id,
            pipeline_id=instance.pipeline_id,
            pipeline_name=instance.pipeline_name,
            status=instance.status,
            current_step_id=instance.current_step_id,
            current_step_type=instance.current_step_type,
            current_stage_name=instance.current_stage_name,
            next_step_id=instance.next_step_id,
            next_step_type=instance.next_step_type,
            next_stage_name=instance.next_stage_name,
            waiting_for_event=instance.waiting_for_event,
            waiting_for_approval_id=instance.waiting_for_approval_id,
            waiting_until=instance.waiting_until,
            progress_percent=instance.progress_percent,
        )


def build_orchestrator(
    config: Optional[StagelineConfig] = None,
    store: Optional[DocumentStore] = None,
    transport: Optional[BaseTransport] = None,
    lead_service: Any = None,
    clock: Clock = utcnow,
) -> PipelineOrchestrator:
    """Wire repositories, publisher and collaborators from configuration."""
    config = config or load_config()
    store = store or get_store(config.database_url)
    transport = transport or get_transport(config=config)
    if lead_service is None:
        lead_service = (
            HttpLeadServiceClient.from_config(config.lead_service)
            if config.lead_service.base_url
            else UnconfiguredLeadService()
        )
    return PipelineOrchestrator(
        pipelines=PipelineRepository(store, clock),
        instances=InstanceRepository(store, clock),
        approvals=ApprovalRepository(
            store,
            clock,
            role_timeouts=config.approver_timeouts,
            default_timeout_hours=config.default_approval_timeout_hours,
        ),
        publisher=EventPublisher(transport, clock),
        stage_updater=lead_service,
        condition_evaluator=lead_service,
        summary_provider=lead_service,
        config=config.orchestrator,
        clock=clock,
    )
