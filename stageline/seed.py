"""Default pipeline shipped with stageline."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .models import PipelineCreate, PipelineDefinition
from .repositories import PipelineRepository
from .steps import (
    ApprovalStep,
    DecisionStep,
    NotificationStep,
    PipelineStep,
    StageStep,
    WaitStep,
    new_step_id,
)

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_NAME = "Individual Health Insurance Pipeline"
DEFAULT_LINE_OF_BUSINESS = "medical"
DEFAULT_BUSINESS_TYPE = "individual"


def _stage(step_id: str, order: int, stage_id: str, name: str, description: str) -> StageStep:
    return StageStep(
        id=step_id,
        order=order,
        stage_id=stage_id,
        stage_name=name,
        name=name,
        description=description,
    )


def default_health_pipeline() -> PipelineCreate:
    """Individual health insurance: hot-lead alert, customer response wait and
    an underwriter approval that ships disabled."""
    ids = {
        key: new_step_id()
        for key in (
            "lead_created",
            "plans_fetching",
            "plans_available",
            "hot_lead_decision",
            "hot_lead_alert",
            "quotation_created",
            "quotation_sent",
            "wait_customer",
            "response_decision",
            "underwriter_approval",
            "approved",
            "policy_requested",
            "policy_issued",
            "lost",
            "rejected",
        )
    }
    steps: List[PipelineStep] = [
        _stage(ids["lead_created"], 1, "lead-created", "Lead Created",
               "Initial lead creation - pipeline starts here"),
        _stage(ids["plans_fetching"], 2, "plans-fetching", "Plans Fetching",
               "Fetching insurance plans from vendors"),
        _stage(ids["plans_available"], 3, "plans-available", "Plans Available",
               "Insurance plans have been fetched and are ready"),
        DecisionStep(
            id=ids["hot_lead_decision"],
            order=4,
            condition_type="is_hot_lead",
            true_next_step_id=ids["hot_lead_alert"],
            false_next_step_id=ids["quotation_created"],
            name="Is Hot Lead?",
            description="Check if this is a hot lead requiring priority handling",
        ),
        NotificationStep(
            id=ids["hot_lead_alert"],
            order=5,
            notification_type="push_manager_alert",
            name="Hot Lead Alert",
            description="Send notification to manager about hot lead",
        ),
        _stage(ids["quotation_created"], 6, "quotation-created", "Quotation Created",
               "Quotation has been created for the lead"),
        _stage(ids["quotation_sent"], 7, "quotation-sent", "Quotation Sent",
               "Quotation has been sent to the customer"),
        WaitStep(
            id=ids["wait_customer"],
            order=8,
            wait_for_event="customer_response",
            timeout_hours=72,
            name="Wait for Customer Response",
            description="Wait for customer to respond to the quotation",
        ),
        DecisionStep(
            id=ids["response_decision"],
            order=9,
            condition_type="quotation_approved",
            true_next_step_id=ids["underwriter_approval"],
            false_next_step_id=ids["lost"],
            name="Quotation Approved?",
            description="Check if customer approved the quotation",
        ),
        ApprovalStep(
            id=ids["underwriter_approval"],
            order=10,
            enabled=False,
            approver_role="underwriter",
            timeout_hours=48,
            escalation_role="senior-manager",
            name="Underwriter Approval",
            description="Requires underwriter approval (enable for high-value policies)",
        ),
        _stage(ids["approved"], 11, "approved", "Approved", "Quotation has been approved"),
        _stage(ids["policy_requested"], 12, "policy-requested", "Policy Requested",
               "Policy request has been submitted"),
        _stage(ids["policy_issued"], 13, "policy-issued", "Policy Issued",
               "Policy has been issued successfully - Pipeline Complete"),
        _stage(ids["lost"], 98, "lost", "Lost", "Lead has been lost - Pipeline Complete"),
        _stage(ids["rejected"], 99, "rejected", "Rejected",
               "Quotation was rejected - Pipeline Complete"),
    ]
    return PipelineCreate(
        name=DEFAULT_PIPELINE_NAME,
        description=(
            "Default pipeline for individual health/medical insurance leads. Includes "
            "hot lead detection, customer response tracking, and optional underwriter "
            "approval for high-value cases."
        ),
        line_of_business=DEFAULT_LINE_OF_BUSINESS,
        business_type=DEFAULT_BUSINESS_TYPE,
        is_default=True,
        steps=steps,
    )


async def find_default_pipeline(
    pipelines: PipelineRepository,
    line_of_business: str = DEFAULT_LINE_OF_BUSINESS,
    business_type: Optional[str] = DEFAULT_BUSINESS_TYPE,
) -> Optional[PipelineDefinition]:
    for definition in await pipelines.list_pipelines(line_of_business=line_of_business):
        if definition.is_default and definition.business_type == business_type:
            return definition
    return None


async def seed_default_pipeline(
    pipelines: PipelineRepository, created_by: str = "system-seeder", activate: bool = True
) -> Tuple[PipelineDefinition, bool]:
    """Create (and activate) the default pipeline unless one already exists.

    Returns the pipeline and whether it was created by this call.
    """
    existing = await find_default_pipeline(pipelines)
    if existing is not None:
        logger.info(
            f"Default pipeline already exists for {DEFAULT_LINE_OF_BUSINESS}/"
            f"{DEFAULT_BUSINESS_TYPE}: {existing.pipeline_id}"
        )
        return existing, False

    definition = await pipelines.create_pipeline(default_health_pipeline(), created_by)
    if activate:
        definition = await pipelines.activate_pipeline(definition.pipeline_id, created_by)
    logger.info(
        f"Seeded '{definition.name}' ({definition.pipeline_id}) with "
        f"{len(definition.steps)} steps"
    )
    return definition, True
