"""End-to-end behaviour of the orchestrator on the in-memory stack."""

import pytest

from stageline.constants import (
    INSTANCE_COMPLETED_EVENT,
    INSTANCE_CREATED_EVENT,
    NOTIFICATION_REQUIRED_EVENT,
    STEP_CHANGED_EVENT,
)
from stageline.errors import ConcurrencyConflictError, StateConflictError
from stageline.models import InstanceStatus, StepOutcome
from stageline.steps import ApprovalStep, DecisionStep, NotificationStep, StageStep, WaitStep


def stage(step_id, trigger=None, enabled=True):
    return StageStep(
        id=step_id,
        stage_id=f"custom-{step_id}",
        stage_name=step_id.title(),
        trigger_event=trigger or f"evt.{step_id}",
        enabled=enabled,
    )


@pytest.mark.asyncio
async def test_two_stage_pipeline_runs_to_completion(
    orchestrator, make_pipeline, start_instance, lead, transport
):
    await make_pipeline([stage("created"), stage("done")])

    instance = await start_instance("lead-1")
    assert instance.status == InstanceStatus.ACTIVE
    assert instance.current_step_id == "created"
    assert instance.next_step_id == "done"
    assert instance.progress_percent == 0
    assert lead.stage_updates == [("lead-1", "custom-created")]

    result = await orchestrator.process_event("evt.done", {"entityId": "lead-1"})
    assert result.processed
    assert result.action == "advanced_to_done"

    finished = await orchestrator.instances.get_instance(instance.instance_id)
    assert finished.status == InstanceStatus.COMPLETED
    assert finished.progress_percent == 100
    assert finished.completed_steps_count == 2
    assert [e.step_id for e in finished.step_history] == ["created", "done"]
    assert all(e.exited_at is not None for e in finished.step_history)
    assert finished.completed_at is not None

    assert len(transport.events_of_type(INSTANCE_CREATED_EVENT)) == 1
    assert len(transport.events_of_type(STEP_CHANGED_EVENT)) == 2
    completed = transport.events_of_type(INSTANCE_COMPLETED_EVENT)
    assert completed[0].data["final_status"] == "completed"


@pytest.mark.asyncio
async def test_event_for_a_later_stage_does_not_advance(
    orchestrator, make_pipeline, start_instance
):
    await make_pipeline([stage("created"), stage("middle"), stage("done")])
    instance = await start_instance("lead-1")

    result = await orchestrator.process_event("evt.done", {"entityId": "lead-1"})
    assert not result.processed
    assert result.action == "no_advancement"

    unchanged = await orchestrator.instances.get_instance(instance.instance_id)
    assert unchanged.current_step_id == "created"
    assert len(unchanged.step_history) == 1


@pytest.mark.asyncio
async def test_false_branch_skips_disabled_target(
    orchestrator, make_pipeline, start_instance, lead
):
    lead.conditions["is_hot_lead"] = False
    await make_pipeline(
        [
            stage("s1"),
            DecisionStep(
                id="d",
                condition_type="is_hot_lead",
                true_next_step_id="end",
                false_next_step_id="s2",
            ),
            stage("s2", enabled=False),
            stage("s3"),
            stage("s4"),
        ]
    )

    instance = await start_instance("lead-1")
    assert instance.current_step_id == "s3"
    assert instance.status == InstanceStatus.ACTIVE
    assert [e.step_id for e in instance.step_history] == ["s1", "d", "s3"]
    decision_entry = instance.step_history[1]
    assert decision_entry.outcome == StepOutcome.BRANCHED
    assert decision_entry.metadata["result"] is False
    assert ("lead-1", "custom-s2") not in lead.stage_updates
    assert instance.progress_percent == 50


@pytest.mark.asyncio
async def test_true_branch_to_end_completes(make_pipeline, start_instance, lead):
    lead.conditions["is_hot_lead"] = True
    await make_pipeline(
        [
            stage("s1"),
            DecisionStep(
                id="d",
                condition_type="is_hot_lead",
                true_next_step_id="end",
                false_next_step_id="next",
            ),
            stage("s2"),
        ]
    )

    instance = await start_instance("lead-1")
    assert instance.status == InstanceStatus.COMPLETED
    assert instance.step_history[-1].step_id == "d"
    assert instance.step_history[-1].outcome == StepOutcome.BRANCHED


@pytest.mark.asyncio
async def test_notification_is_published_and_chained(
    make_pipeline, start_instance, transport
):
    await make_pipeline(
        [
            stage("s1"),
            NotificationStep(id="n", notification_type="push_manager_alert"),
            stage("s2"),
        ]
    )

    instance = await start_instance("lead-1")
    assert instance.current_step_id == "s2"

    (event,) = transport.events_of_type(NOTIFICATION_REQUIRED_EVENT)
    assert event.data["notification_type"] == "push_manager_alert"
    assert event.data["channel"] == "push"
    assert event.data["recipient_type"] == "manager"
    assert event.data["template_id"] == "manager-alert-push"
    assert event.data["entity_reference_id"] == "REF-lead-1"


@pytest.mark.asyncio
async def test_wait_step_only_advances_on_its_event(
    orchestrator, make_pipeline, start_instance, clock
):
    await make_pipeline(
        [
            stage("s1"),
            WaitStep(id="w", wait_for_event="customer_response", timeout_hours=72),
            stage("s2"),
            stage("s3"),
        ]
    )
    instance = await start_instance("lead-1")

    # a wait step follows, so any event moves the instance onto it
    result = await orchestrator.process_event("quotation.sent", {"entityId": "lead-1"})
    assert result.action == "advanced_to_w"
    waiting = await orchestrator.instances.get_instance(instance.instance_id)
    assert waiting.status == InstanceStatus.WAITING_EVENT
    assert waiting.waiting_for_event == "customer.responded"
    assert (waiting.waiting_until - clock.now).total_seconds() == 72 * 3600

    result = await orchestrator.process_event("quotation.sent", {"entityId": "lead-1"})
    assert not result.processed
    still = await orchestrator.instances.get_instance(instance.instance_id)
    assert still.status == InstanceStatus.WAITING_EVENT
    assert still.current_step_id == "w"

    result = await orchestrator.process_event("customer.responded", {"entityId": "lead-1"})
    assert result.action == "advanced_to_s2"
    moved = await orchestrator.instances.get_instance(instance.instance_id)
    assert moved.status == InstanceStatus.ACTIVE
    assert moved.waiting_for_event is None
    assert moved.waiting_until is None


@pytest.mark.asyncio
async def test_manual_advance_releases_wait(orchestrator, make_pipeline, start_instance):
    await make_pipeline(
        [
            WaitStep(id="w", wait_for_event="manual_advance"),
            stage("s1"),
            stage("s2"),
        ]
    )
    instance = await start_instance("lead-1")
    assert instance.status == InstanceStatus.WAITING_EVENT
    assert instance.waiting_for_event == "pipeline.manual_advance"
    assert instance.waiting_until is None

    result = await orchestrator.manual_advance(instance.instance_id, "ops-user", "checked")
    assert result.processed
    assert result.action == "advanced_to_s1"

    with pytest.raises(StateConflictError):
        await orchestrator.manual_advance(instance.instance_id, "ops-user")


@pytest.mark.asyncio
async def test_entity_created_guards(orchestrator, make_pipeline, start_instance):
    result = await orchestrator.process_event("lead.created", {"entityId": "lead-1", "lineOfBusiness": "medical"})
    assert not result.processed
    assert result.error == "No active pipeline for line of business"

    await make_pipeline([stage("s1"), stage("s2")])

    result = await orchestrator.process_event("lead.created", {"entityId": "lead-1"})
    assert not result.processed
    assert result.error == "Missing line_of_business"

    result = await orchestrator.process_event("lead.created", {"lineOfBusiness": "medical"})
    assert not result.processed

    first = await start_instance("lead-1")
    result = await orchestrator.process_event(
        "lead.created", {"entityId": "lead-1", "lineOfBusiness": "medical"}
    )
    assert not result.processed
    assert result.error == "Pipeline instance already exists"
    assert result.instance_id == first.instance_id

    result = await orchestrator.process_event("evt.s2", {"entityId": "unknown-lead"})
    assert not result.processed
    assert result.error == "No active pipeline instance"


@pytest.mark.asyncio
async def test_entity_can_restart_after_terminal_instance(
    orchestrator, make_pipeline, start_instance
):
    await make_pipeline([stage("s1"), stage("s2")])
    first = await start_instance("lead-1")
    await orchestrator.cancel_instance(first.instance_id, "ops")

    second = await start_instance("lead-1")
    assert second.instance_id != first.instance_id
    active = await orchestrator.instances.get_active_instance_for_entity("lead-1")
    assert active.instance_id == second.instance_id
    history = await orchestrator.instances.list_instances_for_entity("lead-1")
    assert {i.instance_id for i in history} == {first.instance_id, second.instance_id}


@pytest.mark.asyncio
async def test_stage_update_failure_does_not_fail_instance(
    orchestrator, make_pipeline, start_instance, lead
):
    lead.fail_stage_updates = True
    await make_pipeline([stage("s1"), stage("s2"), stage("s3")])
    instance = await start_instance("lead-1")

    result = await orchestrator.process_event("evt.s2", {"entityId": "lead-1"})
    assert result.processed
    moved = await orchestrator.instances.get_instance(instance.instance_id)
    assert moved.status == InstanceStatus.ACTIVE
    assert moved.current_step_id == "s2"


@pytest.mark.asyncio
async def test_condition_error_fails_instance(
    orchestrator, make_pipeline, lead, transport
):
    lead.conditions["is_hot_lead"] = RuntimeError("lead service exploded")
    await make_pipeline(
        [
            stage("s1"),
            DecisionStep(
                id="d", condition_type="is_hot_lead", true_next_step_id="s2", false_next_step_id="s2"
            ),
            stage("s2"),
        ]
    )

    result = await orchestrator.process_event(
        "lead.created", {"entityId": "lead-1", "lineOfBusiness": "medical"}
    )
    assert not result.processed
    assert "lead service exploded" in result.error

    failed = await orchestrator.instances.get_instance(result.instance_id)
    assert failed.status == InstanceStatus.FAILED
    assert failed.last_error.step_id == "d"
    assert failed.step_history[-1].outcome == StepOutcome.FAILED
    completed = transport.events_of_type(INSTANCE_COMPLETED_EVENT)
    assert completed[-1].data["final_status"] == "failed"


@pytest.mark.asyncio
async def test_decision_loop_hits_chain_limit(orchestrator, make_pipeline, lead):
    lead.conditions["is_hot_lead"] = True
    await make_pipeline(
        [
            stage("s1"),
            DecisionStep(
                id="d1", condition_type="is_hot_lead", true_next_step_id="d2", false_next_step_id="s2"
            ),
            DecisionStep(
                id="d2", condition_type="is_hot_lead", true_next_step_id="d1", false_next_step_id="s2"
            ),
            stage("s2"),
        ]
    )

    result = await orchestrator.process_event(
        "lead.created", {"entityId": "lead-1", "lineOfBusiness": "medical"}
    )
    assert not result.processed
    assert "steps chained" in result.error

    failed = await orchestrator.instances.get_instance(result.instance_id)
    assert failed.status == InstanceStatus.FAILED
    assert len(lead.evaluations) <= 10


@pytest.mark.asyncio
async def test_progress_never_decreases(orchestrator, make_pipeline, start_instance, lead):
    await make_pipeline(
        [
            stage("s1"),
            DecisionStep(
                id="d",
                condition_type="customer_responded",
                true_next_step_id="s4",
                false_next_step_id="s2",
            ),
            stage("s2"),
            stage("s3"),
            stage("s4"),
        ]
    )
    instance = await start_instance("lead-1")
    seen = [instance.progress_percent]
    for event in ("evt.s3", "evt.s4"):
        await orchestrator.process_event(event, {"entityId": "lead-1"})
        current = await orchestrator.instances.get_instance(instance.instance_id)
        seen.append(current.progress_percent)
    assert seen == sorted(seen)
    assert seen[-1] == 100


@pytest.mark.asyncio
async def test_next_step_info(orchestrator, make_pipeline, start_instance):
    info = await orchestrator.get_next_step_info("lead-1")
    assert info.has_active_pipeline is False

    await make_pipeline([stage("s1"), stage("s2")], name="Medical")
    instance = await start_instance("lead-1")

    info = await orchestrator.get_next_step_info("lead-1")
    assert info.has_active_pipeline
    assert info.instance_id == instance.instance_id
    assert info.pipeline_name == "Medical"
    assert info.current_stage_name == "S1"
    assert info.next_step_id == "s2"
    assert info.next_stage_name == "S2"


class FlakyStore:
    """Wraps a store and fails the next N instance replaces with a conflict."""

    def __init__(self, inner, conflicts):
        self._inner = inner
        self.conflicts = conflicts

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def replace(self, collection, key, body, etag):
        if collection == "instances" and self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrencyConflictError(collection, key, etag)
        return await self._inner.replace(collection, key, body, etag)


@pytest.mark.asyncio
async def test_conflicts_are_retried_then_surface(
    orchestrator, make_pipeline, start_instance, store
):
    await make_pipeline([stage("s1"), stage("s2"), stage("s3")])
    instance = await start_instance("lead-1")

    flaky = FlakyStore(store, conflicts=1)
    orchestrator.instances._store = flaky
    result = await orchestrator.process_event("evt.s2", {"entityId": "lead-1"})
    assert result.processed
    moved = await orchestrator.instances.get_instance(instance.instance_id)
    assert moved.current_step_id == "s2"
    assert len(moved.step_history) == 2

    flaky.conflicts = 100
    with pytest.raises(ConcurrencyConflictError):
        await orchestrator.process_event("evt.s3", {"entityId": "lead-1"})


class ParkingConflictStore(FlakyStore):
    """Fails the next N instance replaces that park the instance in ``status``."""

    def __init__(self, inner, conflicts, status):
        super().__init__(inner, conflicts)
        self.status = status

    async def replace(self, collection, key, body, etag):
        if collection == "instances" and body.get("status") == self.status and self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrencyConflictError(collection, key, etag)
        return await self._inner.replace(collection, key, body, etag)


@pytest.mark.asyncio
async def test_conflict_while_parking_on_approval_still_parks(
    orchestrator, make_pipeline, start_instance, store
):
    await make_pipeline(
        [stage("s1"), ApprovalStep(id="a", approver_role="manager"), stage("s2")]
    )
    instance = await start_instance("lead-1")

    flaky = ParkingConflictStore(store, conflicts=1, status="waiting_approval")
    orchestrator.instances._store = flaky
    result = await orchestrator.process_event("lead.updated", {"entityId": "lead-1"})
    assert flaky.conflicts == 0
    assert result.processed
    assert result.action == "advanced_to_a"

    parked = await orchestrator.instances.get_instance(instance.instance_id)
    assert parked.current_step_id == "a"
    assert parked.status == InstanceStatus.WAITING_APPROVAL
    (approval,) = await orchestrator.approvals.list_approvals_for_instance(
        instance.instance_id
    )
    assert parked.waiting_for_approval_id == approval.approval_id
    assert parked.waiting_until == approval.expires_at

    decided = await orchestrator.handle_approval_decision(
        approval.approval_id, "approved", "mgr-1"
    )
    assert decided.action == "advanced_to_s2"


@pytest.mark.asyncio
async def test_conflict_while_parking_on_wait_still_parks(
    orchestrator, make_pipeline, start_instance, store, clock
):
    await make_pipeline(
        [
            stage("s1"),
            WaitStep(id="w", wait_for_event="customer_response", timeout_hours=72),
            stage("s2"),
        ]
    )
    instance = await start_instance("lead-1")

    flaky = ParkingConflictStore(store, conflicts=1, status="waiting_event")
    orchestrator.instances._store = flaky
    result = await orchestrator.process_event("lead.updated", {"entityId": "lead-1"})
    assert flaky.conflicts == 0
    assert result.action == "advanced_to_w"

    parked = await orchestrator.instances.get_instance(instance.instance_id)
    assert parked.current_step_id == "w"
    assert parked.status == InstanceStatus.WAITING_EVENT
    assert parked.waiting_until is not None

    result = await orchestrator.process_event(parked.waiting_for_event, {"entityId": "lead-1"})
    assert result.action == "advanced_to_s2"


@pytest.mark.asyncio
async def test_instance_left_unparked_on_wait_is_parked_by_next_event(
    orchestrator, make_pipeline, start_instance, store
):
    await make_pipeline(
        [
            stage("s1"),
            WaitStep(id="w", wait_for_event="customer_response", timeout_hours=72),
            stage("s2"),
        ]
    )
    instance = await start_instance("lead-1")

    # every parking attempt conflicts, so the event gives up with the step entered
    flaky = ParkingConflictStore(store, conflicts=100, status="waiting_event")
    orchestrator.instances._store = flaky
    with pytest.raises(ConcurrencyConflictError):
        await orchestrator.process_event("lead.updated", {"entityId": "lead-1"})
    stuck = await orchestrator.instances.get_instance(instance.instance_id)
    assert stuck.current_step_id == "w"
    assert stuck.status == InstanceStatus.ACTIVE

    flaky.conflicts = 0
    result = await orchestrator.process_event("lead.updated", {"entityId": "lead-1"})
    assert result.action == "advanced_to_w"
    parked = await orchestrator.instances.get_instance(instance.instance_id)
    assert parked.status == InstanceStatus.WAITING_EVENT
