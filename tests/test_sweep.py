"""Timeout sweeper behaviour."""

import pytest

from stageline.errors import ConcurrencyConflictError
from stageline.models import ApprovalStatus, InstanceStatus, StepOutcome
from stageline.steps import ApprovalStep, StageStep, WaitStep
from stageline.sweep import TimeoutSweeper


def stage(step_id):
    return StageStep(
        id=step_id,
        stage_id=f"custom-{step_id}",
        stage_name=step_id.title(),
        trigger_event=f"evt.{step_id}",
    )


@pytest.mark.asyncio
async def test_sweeper_escalates_before_expiring(
    orchestrator, make_pipeline, start_instance, clock
):
    await make_pipeline(
        [
            stage("s1"),
            ApprovalStep(id="a", approver_role="manager", escalation_role="senior-manager"),
            stage("s2"),
        ]
    )
    instance = await start_instance("lead-1")
    await orchestrator.process_event("evt.review", {"entityId": "lead-1"})
    sweeper = TimeoutSweeper(orchestrator, clock)

    report = await sweeper.run_once()
    assert report.total == 0

    clock.advance(hours=25)
    report = await sweeper.run_once()
    assert len(report.escalated) == 1
    approval = await orchestrator.approvals.get_approval(report.escalated[0])
    assert approval.approver_role == "senior-manager"
    assert approval.escalation_role is None
    assert approval.status == ApprovalStatus.PENDING

    # running again before the new deadline changes nothing
    report = await sweeper.run_once()
    assert report.total == 0

    clock.advance(hours=49)
    report = await sweeper.run_once()
    assert report.expired == [approval.approval_id]
    failed = await orchestrator.instances.get_instance(instance.instance_id)
    assert failed.status == InstanceStatus.FAILED

    report = await sweeper.run_once()
    assert report.total == 0


@pytest.mark.asyncio
async def test_wait_timeout_follows_on_timeout_step(
    orchestrator, make_pipeline, start_instance, clock
):
    await make_pipeline(
        [
            WaitStep(
                id="w",
                wait_for_event="customer_response",
                timeout_hours=72,
                on_timeout_step_id="lost",
            ),
            stage("s2"),
            stage("s3"),
            stage("lost"),
        ]
    )
    instance = await start_instance("lead-1")
    assert instance.status == InstanceStatus.WAITING_EVENT
    sweeper = TimeoutSweeper(orchestrator, clock)

    clock.advance(hours=71)
    assert (await sweeper.run_once()).total == 0

    clock.advance(hours=2)
    report = await sweeper.run_once()
    assert report.wait_timeouts == [instance.instance_id]

    timed_out = await orchestrator.instances.get_instance(instance.instance_id)
    assert timed_out.current_step_id == "lost"
    assert timed_out.status == InstanceStatus.COMPLETED
    assert timed_out.step_history[0].outcome == StepOutcome.TIMEOUT

    assert (await sweeper.run_once()).total == 0


@pytest.mark.asyncio
async def test_early_timeout_event_is_ignored(
    orchestrator, make_pipeline, start_instance, clock
):
    await make_pipeline(
        [WaitStep(id="w", wait_for_event="payment_received"), stage("s2"), stage("s3")]
    )
    instance = await start_instance("lead-1")
    # catalog default for payment_received is 48 hours
    assert (instance.waiting_until - clock.now).total_seconds() == 48 * 3600

    result = await orchestrator.process_event("pipeline.wait.timeout", {"entityId": "lead-1"})
    assert result.action == "no_advancement"

    clock.advance(hours=48)
    result = await orchestrator.process_event("pipeline.wait.timeout", {"entityId": "lead-1"})
    assert result.action == "advanced_to_s2"


class ConflictingApprovalStore:
    """Fails the next N approval replaces as if a decision landed first."""

    def __init__(self, inner, conflicts):
        self._inner = inner
        self.conflicts = conflicts

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def replace(self, collection, key, body, etag):
        if collection == "approvals" and self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrencyConflictError(collection, key, etag)
        return await self._inner.replace(collection, key, body, etag)


@pytest.mark.asyncio
async def test_conflicting_approval_does_not_stop_the_pass(
    orchestrator, make_pipeline, start_instance, store, clock
):
    await make_pipeline(
        [stage("s1"), ApprovalStep(id="a", approver_role="manager"), stage("s2")]
    )
    await make_pipeline(
        [
            WaitStep(id="w", wait_for_event="customer_response", timeout_hours=24),
            stage("s2"),
            stage("s3"),
        ],
        line_of_business="motor",
    )
    gated = await start_instance("lead-1")
    await orchestrator.process_event("lead.updated", {"entityId": "lead-1"})
    waiting = await start_instance("car-1", line_of_business="motor")
    assert waiting.status == InstanceStatus.WAITING_EVENT

    orchestrator.approvals._store = ConflictingApprovalStore(store, conflicts=1)
    sweeper = TimeoutSweeper(orchestrator, clock)
    clock.advance(hours=25)

    (approval,) = await orchestrator.approvals.list_approvals_for_instance(gated.instance_id)
    report = await sweeper.run_once()
    assert report.expired == []
    assert report.skipped == [approval.approval_id]
    assert report.wait_timeouts == [waiting.instance_id]
    moved = await orchestrator.instances.get_instance(waiting.instance_id)
    assert moved.current_step_id == "s2"
    assert moved.step_history[0].outcome == StepOutcome.TIMEOUT

    # the next pass picks the approval up again
    report = await sweeper.run_once()
    assert report.expired == [approval.approval_id]
    failed = await orchestrator.instances.get_instance(gated.instance_id)
    assert failed.status == InstanceStatus.FAILED
