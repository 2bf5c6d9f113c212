from datetime import timedelta

import pytest

from stageline.errors import (
    ApprovalNotFoundError,
    PipelineValidationError,
    StateConflictError,
)
from stageline.models import ApprovalDecision, ApprovalStatus
from stageline.repositories import ApprovalRepository


@pytest.fixture
def approvals(store, clock):
    return ApprovalRepository(store, clock, role_timeouts={"manager": 24, "auditor": 0})


async def _open(approvals, instance_id="inst-1", role="manager", **kwargs):
    return await approvals.create_approval(
        instance_id, "pipe-1", "lead-1", "a", role, **kwargs
    )


@pytest.mark.asyncio
async def test_deadline_from_role_table(approvals, clock):
    approval = await _open(approvals)
    assert approval.status == ApprovalStatus.PENDING
    assert approval.expires_at == clock.now + timedelta(hours=24)

    # unknown roles fall back to the default timeout
    other = await _open(approvals, instance_id="inst-2", role="director")
    assert other.expires_at == clock.now + timedelta(hours=24)

    never = await _open(approvals, instance_id="inst-3", role="auditor")
    assert never.expires_at is None

    custom = await _open(approvals, instance_id="inst-4", timeout_hours=2)
    assert custom.expires_at == clock.now + timedelta(hours=2)


@pytest.mark.asyncio
async def test_only_one_pending_per_instance(approvals):
    await _open(approvals)
    with pytest.raises(StateConflictError):
        await _open(approvals)


@pytest.mark.asyncio
async def test_decision_is_recorded_once(approvals, clock):
    approval = await _open(approvals)
    decided = await approvals.submit_decision(
        approval.approval_id, "rejected", "mgr-1", "Maria", "too risky"
    )
    assert decided.status == ApprovalStatus.REJECTED
    assert decided.decision == ApprovalDecision.REJECTED
    assert decided.decided_at == clock.now
    assert decided.decided_by_name == "Maria"

    with pytest.raises(StateConflictError):
        await approvals.submit_decision(approval.approval_id, "approved", "mgr-2")
    with pytest.raises(StateConflictError):
        await approvals.escalate_approval(approval.approval_id, "senior-manager")
    with pytest.raises(PipelineValidationError):
        await approvals.submit_decision(approval.approval_id, "perhaps", "mgr-2")
    with pytest.raises(ApprovalNotFoundError):
        await approvals.submit_decision("missing", "approved", "mgr-2")

    assert await approvals.get_pending_approval_for_instance("inst-1") is None


@pytest.mark.asyncio
async def test_expiry_queries_and_idempotent_expire(approvals, clock):
    approval = await _open(approvals)
    assert await approvals.get_expired_approvals() == []

    clock.advance(hours=24)
    expired = await approvals.get_expired_approvals()
    assert [a.approval_id for a in expired] == [approval.approval_id]

    first = await approvals.expire_approval(approval.approval_id)
    again = await approvals.expire_approval(approval.approval_id)
    assert first.status == again.status == ApprovalStatus.EXPIRED
    assert first.etag == again.etag
    assert await approvals.get_expired_approvals() == []
    assert len(await approvals.list_approvals_by_status("expired")) == 1


@pytest.mark.asyncio
async def test_listing_pending_by_role(approvals, clock):
    await _open(approvals, instance_id="inst-1", role="manager")
    clock.advance(minutes=1)
    newest = await _open(approvals, instance_id="inst-2", role="manager")
    await _open(approvals, instance_id="inst-3", role="finance")

    managers = await approvals.list_pending_approvals(approver_role="manager")
    assert [a.instance_id for a in managers] == ["inst-2", "inst-1"]
    assert managers[0].approval_id == newest.approval_id
    assert len(await approvals.list_pending_approvals()) == 3

    cancelled = await approvals.cancel_approval(newest.approval_id, "ops")
    assert cancelled.status == ApprovalStatus.EXPIRED
    assert cancelled.comment == "Pipeline instance cancelled"
    assert len(await approvals.list_approvals_for_instance("inst-2")) == 1
