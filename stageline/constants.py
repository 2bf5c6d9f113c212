"""Predefined catalogs and event names shared across stageline."""

from __future__ import annotations

from typing import Dict, NamedTuple, Optional


class StageInfo(NamedTuple):
    id: str
    name: str
    trigger_event: str
    order: int


class NotificationInfo(NamedTuple):
    id: str
    name: str
    channel: str
    recipient_type: str
    template_id: str


class WaitEventInfo(NamedTuple):
    id: str
    name: str
    event_type: str
    default_timeout_hours: int


# ---------------------------------------------------------------------------
# Stages
PREDEFINED_STAGES: Dict[str, StageInfo] = {
    s.id: s
    for s in (
        StageInfo("lead-created", "Lead Created", "lead.created", 1),
        StageInfo("plans-fetching", "Fetching Plans", "plans.fetch_started", 2),
        StageInfo("plans-available", "Plans Available", "plans.fetch_completed", 3),
        StageInfo("quotation-created", "Quotation Created", "quotation.created", 4),
        StageInfo("quotation-sent", "Quotation Sent", "quotation.sent", 5),
        StageInfo("pending-review", "Pending Review", "quotation.pending_approval", 6),
        StageInfo("approved", "Approved", "quotation.approved", 7),
        StageInfo("rejected", "Rejected", "quotation.rejected", 8),
        StageInfo("policy-requested", "Policy Requested", "policy.requested", 9),
        StageInfo("policy-issued", "Policy Issued", "policy.issued", 10),
        StageInfo("lost", "Lost", "lead.lost", 98),
        StageInfo("cancelled", "Cancelled", "lead.cancelled", 99),
    )
}

EVENT_TO_STAGE: Dict[str, str] = {
    s.trigger_event: s.id for s in PREDEFINED_STAGES.values()
}


def get_stage(stage_id: str) -> Optional[StageInfo]:
    return PREDEFINED_STAGES.get(stage_id)


def get_stage_by_trigger(event_type: str) -> Optional[StageInfo]:
    stage_id = EVENT_TO_STAGE.get(event_type)
    return PREDEFINED_STAGES.get(stage_id) if stage_id else None


# ---------------------------------------------------------------------------
# Approver roles (default timeout in hours)
APPROVER_ROLE_TIMEOUTS: Dict[str, int] = {
    "manager": 24,
    "senior-manager": 48,
    "underwriter": 72,
    "compliance": 48,
    "finance": 24,
}
DEFAULT_APPROVAL_TIMEOUT_HOURS = 24


# ---------------------------------------------------------------------------
# Decision conditions
CONDITION_TYPES = (
    "is_hot_lead",
    "lob_is_medical",
    "lob_is_motor",
    "lob_is_general",
    "lob_is_marine",
    "business_type_is_individual",
    "business_type_is_group",
    "lead_value_above_threshold",
    "has_required_documents",
    "quotation_approved",
    "quotation_rejected",
    "customer_responded",
)


# ---------------------------------------------------------------------------
# Notifications
PREDEFINED_NOTIFICATIONS: Dict[str, NotificationInfo] = {
    n.id: n
    for n in (
        NotificationInfo(
            "email_customer_stage_update",
            "Email Customer - Stage Update",
            "email",
            "customer",
            "customer-stage-update",
        ),
        NotificationInfo(
            "email_customer_quotation",
            "Email Customer - Quotation",
            "email",
            "customer",
            "customer-quotation",
        ),
        NotificationInfo(
            "email_agent_assignment",
            "Email Agent - Lead Assigned",
            "email",
            "agent",
            "agent-lead-assigned",
        ),
        NotificationInfo(
            "email_agent_action_required",
            "Email Agent - Action Required",
            "email",
            "agent",
            "agent-action-required",
        ),
        NotificationInfo(
            "sms_customer_stage_update",
            "SMS Customer - Stage Update",
            "sms",
            "customer",
            "customer-stage-sms",
        ),
        NotificationInfo(
            "push_manager_alert",
            "Push Manager - Alert",
            "push",
            "manager",
            "manager-alert-push",
        ),
        NotificationInfo(
            "email_manager_escalation",
            "Email Manager - Escalation",
            "email",
            "manager",
            "manager-escalation",
        ),
    )
}


def get_notification(notification_type: str) -> Optional[NotificationInfo]:
    return PREDEFINED_NOTIFICATIONS.get(notification_type)


# ---------------------------------------------------------------------------
# Wait events
PREDEFINED_WAIT_EVENTS: Dict[str, WaitEventInfo] = {
    w.id: w
    for w in (
        WaitEventInfo("customer_response", "Customer Response", "customer.responded", 72),
        WaitEventInfo("document_uploaded", "Document Uploaded", "document.uploaded", 168),
        WaitEventInfo("payment_received", "Payment Received", "payment.received", 48),
        WaitEventInfo("manual_advance", "Manual Advance", "pipeline.manual_advance", 0),
    )
}


def get_wait_event(wait_id: str) -> Optional[WaitEventInfo]:
    return PREDEFINED_WAIT_EVENTS.get(wait_id)


def resolve_wait_event_type(wait_for_event: str) -> str:
    """Map a wait-event id to the event type it listens for.

    Unknown ids are treated as raw event types.
    """
    info = PREDEFINED_WAIT_EVENTS.get(wait_for_event)
    return info.event_type if info else wait_for_event


# ---------------------------------------------------------------------------
# Step reference sentinels
END_SENTINEL = "end"
NEXT_SENTINEL = "next"
RESERVED_STEP_IDS = frozenset({END_SENTINEL, NEXT_SENTINEL})


# ---------------------------------------------------------------------------
# Event types
ENTITY_CREATED_EVENT = "lead.created"
MANUAL_ADVANCE_EVENT = "pipeline.manual_advance"
WAIT_TIMEOUT_EVENT = "pipeline.wait.timeout"
APPROVAL_EXPIRED_EVENT = "pipeline.approval.expired"

INSTANCE_CREATED_EVENT = "pipeline.instance.created"
STEP_CHANGED_EVENT = "pipeline.instance.step_changed"
INSTANCE_COMPLETED_EVENT = "pipeline.instance.completed"
APPROVAL_REQUIRED_EVENT = "pipeline.approval.required"
APPROVAL_DECIDED_EVENT = "pipeline.approval.decided"
NOTIFICATION_REQUIRED_EVENT = "pipeline.notification.required"
PIPELINE_ACTIVATED_EVENT = "pipeline.definition.activated"
PIPELINE_DEACTIVATED_EVENT = "pipeline.definition.deactivated"

DEFAULT_INBOUND_TOPIC = "pipeline-events"
STAGE_CHANGED_BY = "pipeline-service"
