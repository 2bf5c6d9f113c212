"""Outbound pipeline events."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .constants import (
    APPROVAL_DECIDED_EVENT,
    APPROVAL_REQUIRED_EVENT,
    INSTANCE_COMPLETED_EVENT,
    INSTANCE_CREATED_EVENT,
    NOTIFICATION_REQUIRED_EVENT,
    PIPELINE_ACTIVATED_EVENT,
    PIPELINE_DEACTIVATED_EVENT,
    STEP_CHANGED_EVENT,
)
from .contracts import PipelineEvent
from .models import ApprovalRequest, PipelineDefinition, PipelineInstance
from .transports import BaseTransport
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publish pipeline events on the topic named after their event type.

    Publishing is best effort: failures are logged and never raised, so a
    broken bus cannot fail a pipeline transition that has already been
    persisted.
    """

    def __init__(self, transport: Optional[BaseTransport], clock: Clock = utcnow) -> None:
        self._transport = transport
        self._clock = clock

    async def publish(
        self, event_type: str, subject: str, data: Dict[str, Any]
    ) -> Optional[PipelineEvent]:
        if self._transport is None:
            logger.debug(f"No transport configured - skipping {event_type}")
            return None
        event = PipelineEvent(
            event_type=event_type,
            subject=subject,
            event_time=self._clock(),
            data=data,
        )
        try:
            await self._transport.publish(event_type, event)
        except Exception as e:
            logger.error(f"Failed to publish event {event_type} for {subject}: {e}")
            return None
        logger.debug(f"Event published: {event_type} ({subject})")
        return event

    def _stamp(self) -> str:
        return self._clock().isoformat()

    # ------------------------------------------------------------------
    # Instance events
    async def publish_instance_created(
        self, instance: PipelineInstance
    ) -> Optional[PipelineEvent]:
        return await self.publish(
            INSTANCE_CREATED_EVENT,
            f"pipeline-instance/{instance.instance_id}",
            {
                "instance_id": instance.instance_id,
                "pipeline_id": instance.pipeline_id,
                "pipeline_version": instance.pipeline_version,
                "entity_id": instance.entity_id,
                "line_of_business": instance.line_of_business,
                "created_at": self._stamp(),
            },
        )

    async def publish_step_changed(
        self, instance: PipelineInstance, previous_step_id: Optional[str]
    ) -> Optional[PipelineEvent]:
        return await self.publish(
            STEP_CHANGED_EVENT,
            f"pipeline-instance/{instance.instance_id}",
            {
                "instance_id": instance.instance_id,
                "entity_id": instance.entity_id,
                "previous_step_id": previous_step_id,
                "current_step_id": instance.current_step_id,
                "current_step_type": instance.current_step_type,
                "current_stage_name": instance.current_stage_name,
                "progress_percent": instance.progress_percent,
                "changed_at": self._stamp(),
            },
        )

    async def publish_instance_completed(
        self, instance: PipelineInstance
    ) -> Optional[PipelineEvent]:
        return await self.publish(
            INSTANCE_COMPLETED_EVENT,
            f"pipeline-instance/{instance.instance_id}",
            {
                "instance_id": instance.instance_id,
                "pipeline_id": instance.pipeline_id,
                "entity_id": instance.entity_id,
                "final_status": instance.status.value,
                "completed_at": self._stamp(),
            },
        )

    # ------------------------------------------------------------------
    # Approval events
    async def publish_approval_required(
        self, approval: ApprovalRequest
    ) -> Optional[PipelineEvent]:
        return await self.publish(
            APPROVAL_REQUIRED_EVENT,
            f"pipeline-approval/{approval.approval_id}",
            {
                "approval_id": approval.approval_id,
                "instance_id": approval.instance_id,
                "entity_id": approval.entity_id,
                "approver_role": approval.approver_role,
                "step_name": approval.step_name,
                "expires_at": approval.expires_at.isoformat() if approval.expires_at else None,
                "requested_at": self._stamp(),
            },
        )

    async def publish_approval_decided(
        self, approval: ApprovalRequest
    ) -> Optional[PipelineEvent]:
        return await self.publish(
            APPROVAL_DECIDED_EVENT,
            f"pipeline-approval/{approval.approval_id}",
            {
                "approval_id": approval.approval_id,
                "instance_id": approval.instance_id,
                "entity_id": approval.entity_id,
                "decision": approval.decision.value if approval.decision else None,
                "decided_by": approval.decided_by,
                "decided_at": self._stamp(),
            },
        )

    # ------------------------------------------------------------------
    # Notification events
    async def publish_notification_required(
        self,
        instance: PipelineInstance,
        notification_type: str,
        channel: Optional[str],
        recipient_type: Optional[str],
        template_id: Optional[str],
        custom_message: Optional[str] = None,
        entity_summary: Optional[Dict[str, Any]] = None,
    ) -> Optional[PipelineEvent]:
        summary = entity_summary or {}
        return await self.publish(
            NOTIFICATION_REQUIRED_EVENT,
            f"pipeline-instance/{instance.instance_id}",
            {
                "instance_id": instance.instance_id,
                "entity_id": instance.entity_id,
                "line_of_business": instance.line_of_business,
                "notification_type": notification_type,
                "channel": channel,
                "recipient_type": recipient_type,
                "template_id": template_id,
                "custom_message": custom_message,
                "entity_reference_id": summary.get("reference_id"),
                "customer_name": summary.get("customer_name"),
                "stage_name": instance.current_stage_name,
                "requested_at": self._stamp(),
            },
        )

    # ------------------------------------------------------------------
    # Definition events
    async def publish_pipeline_activated(
        self, definition: PipelineDefinition
    ) -> Optional[PipelineEvent]:
        return await self.publish(
            PIPELINE_ACTIVATED_EVENT,
            f"pipeline/{definition.pipeline_id}",
            {
                "pipeline_id": definition.pipeline_id,
                "version": definition.version,
                "line_of_business": definition.line_of_business,
                "activated_by": definition.activated_by,
                "activated_at": self._stamp(),
            },
        )

    async def publish_pipeline_deactivated(
        self, definition: PipelineDefinition
    ) -> Optional[PipelineEvent]:
        return await self.publish(
            PIPELINE_DEACTIVATED_EVENT,
            f"pipeline/{definition.pipeline_id}",
            {
                "pipeline_id": definition.pipeline_id,
                "line_of_business": definition.line_of_business,
                "deactivated_by": definition.updated_by,
                "deactivated_at": self._stamp(),
            },
        )
