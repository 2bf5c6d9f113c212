"""Shared fixtures: an in-memory engine with a controllable clock."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from stageline.config import OrchestratorConfig
from stageline.constants import APPROVER_ROLE_TIMEOUTS
from stageline.events import EventPublisher
from stageline.lead_service import StageChangeRequest
from stageline.models import PipelineCreate
from stageline.orchestrator import PipelineOrchestrator
from stageline.persistence import InMemoryDocumentStore
from stageline.repositories import ApprovalRepository, InstanceRepository, PipelineRepository
from stageline.transports.inmemory import InMemoryTransport


class FrozenClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLeadService:
    """Records stage updates and answers conditions from a dict."""

    def __init__(self) -> None:
        self.stage_updates: List[Tuple[str, str]] = []
        self.conditions: Dict[str, Any] = {}
        self.evaluations: List[str] = []
        self.summaries: Dict[str, Dict[str, Any]] = {}
        self.fail_stage_updates = False

    async def update_stage(
        self, entity_id: str, line_of_business: str, request: StageChangeRequest
    ) -> bool:
        self.stage_updates.append((entity_id, request.stage_id))
        return not self.fail_stage_updates

    async def evaluate_condition(
        self, entity_id, line_of_business, condition_type, condition_value=None
    ) -> bool:
        self.evaluations.append(condition_type)
        result = self.conditions.get(condition_type, False)
        if isinstance(result, Exception):
            raise result
        return bool(result)

    async def get_lead_summary(self, entity_id: str, line_of_business: str):
        return self.summaries.get(
            entity_id, {"reference_id": f"REF-{entity_id}", "customer_name": "Jane Doe"}
        )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def lead():
    return FakeLeadService()


@pytest.fixture
def orchestrator(store, transport, lead, clock):
    return PipelineOrchestrator(
        pipelines=PipelineRepository(store, clock),
        instances=InstanceRepository(store, clock),
        approvals=ApprovalRepository(store, clock, role_timeouts=APPROVER_ROLE_TIMEOUTS),
        publisher=EventPublisher(transport, clock),
        stage_updater=lead,
        condition_evaluator=lead,
        summary_provider=lead,
        config=OrchestratorConfig(max_chain_steps=10, conflict_backoff_base=0.0),
        clock=clock,
    )


@pytest.fixture
def make_pipeline(orchestrator):
    """Create (and by default activate) a pipeline from a list of steps."""

    async def _make(
        steps,
        line_of_business: str = "medical",
        business_type: Optional[str] = None,
        organization_id: Optional[str] = None,
        is_default: bool = True,
        name: str = "Test pipeline",
        activate: bool = True,
    ):
        definition = await orchestrator.pipelines.create_pipeline(
            PipelineCreate(
                name=name,
                line_of_business=line_of_business,
                business_type=business_type,
                organization_id=organization_id,
                is_default=is_default,
                steps=steps,
            ),
            "tester",
        )
        if activate:
            definition = await orchestrator.pipelines.activate_pipeline(
                definition.pipeline_id, "tester"
            )
        return definition

    return _make


@pytest.fixture
def start_instance(orchestrator):
    """Send the entity-created event and return the resulting instance."""

    async def _start(entity_id: str = "lead-1", line_of_business: str = "medical", **extra):
        result = await orchestrator.process_event(
            "lead.created",
            {"entityId": entity_id, "lineOfBusiness": line_of_business, **extra},
        )
        assert result.processed, result.error
        return await orchestrator.instances.get_instance(result.instance_id)

    return _start
