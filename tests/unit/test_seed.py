import pytest

from stageline.models import PipelineStatus
from stageline.repositories import PipelineRepository
from stageline.seed import default_health_pipeline, find_default_pipeline, seed_default_pipeline
from stageline.steps import ApprovalStep, validate_steps


def test_default_pipeline_shape():
    request = default_health_pipeline()
    assert request.line_of_business == "medical"
    assert request.business_type == "individual"
    assert request.is_default
    assert len(request.steps) == 15
    assert validate_steps(request.steps) == []

    stage_ids = [s.stage_id for s in request.steps if s.type == "stage"]
    assert stage_ids[0] == "lead-created"
    assert "policy-issued" in stage_ids
    (approval,) = [s for s in request.steps if isinstance(s, ApprovalStep)]
    assert approval.approver_role == "underwriter"
    assert not approval.enabled


def test_step_ids_are_fresh_per_call():
    first = {s.id for s in default_health_pipeline().steps}
    second = {s.id for s in default_health_pipeline().steps}
    assert not first & second


@pytest.mark.asyncio
async def test_seed_is_idempotent(store, clock):
    pipelines = PipelineRepository(store, clock)

    definition, created = await seed_default_pipeline(pipelines)
    assert created
    assert definition.status == PipelineStatus.ACTIVE
    assert definition.created_by == "system-seeder"

    again, created_again = await seed_default_pipeline(pipelines, created_by="someone")
    assert not created_again
    assert again.pipeline_id == definition.pipeline_id
    assert len(await pipelines.list_pipelines()) == 1

    resolved = await pipelines.get_active_pipeline_for_scope("medical", "individual")
    assert resolved.pipeline_id == definition.pipeline_id
    assert (await find_default_pipeline(pipelines)).pipeline_id == definition.pipeline_id


@pytest.mark.asyncio
async def test_seed_without_activation(store, clock):
    pipelines = PipelineRepository(store, clock)
    definition, created = await seed_default_pipeline(pipelines, activate=False)
    assert created
    assert definition.status == PipelineStatus.DRAFT
    assert await pipelines.get_active_pipeline_for_scope("medical") is None
