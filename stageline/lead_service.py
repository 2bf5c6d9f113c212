"""Collaborators that talk to the lead and document services."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, Union

import httpx
from pydantic import BaseModel

from .config import LeadServiceConfig
from .constants import get_stage

logger = logging.getLogger(__name__)

ConditionValue = Optional[Union[str, float, int, bool]]


class StageChangeRequest(BaseModel):
    stage_id: str
    stage_name: str
    remark: Optional[str] = None
    changed_by: str


class StageUpdater(Protocol):
    async def update_stage(
        self, entity_id: str, line_of_business: str, request: StageChangeRequest
    ) -> bool:
        """Move the entity to a stage; ``False`` on failure."""


class ConditionEvaluator(Protocol):
    async def evaluate_condition(
        self,
        entity_id: str,
        line_of_business: str,
        condition_type: str,
        condition_value: ConditionValue = None,
    ) -> bool:
        """Evaluate a decision condition against the entity."""


class EntitySummaryProvider(Protocol):
    async def get_lead_summary(
        self, entity_id: str, line_of_business: str
    ) -> Optional[Dict[str, Any]]:
        """Short description of the entity for approvers and notifications."""


def summarize_lead(lead: Dict[str, Any]) -> Dict[str, Any]:
    customer_name = lead.get("customerName") or " ".join(
        part for part in (lead.get("firstName"), lead.get("lastName")) if part
    )
    return {
        "reference_id": lead.get("referenceId"),
        "customer_name": customer_name or None,
        "email": lead.get("email"),
        "line_of_business": lead.get("lineOfBusiness"),
        "business_type": lead.get("businessType"),
        "is_hot_lead": lead.get("isHotLead"),
        "current_stage": lead.get("currentStage"),
    }


def _stage_matches(lead: Dict[str, Any], status_field: str, expected: str) -> bool:
    if lead.get(status_field) == expected:
        return True
    return lead.get("currentStageId") == expected or lead.get("currentStage") == expected


def evaluate_lead_condition(
    lead: Dict[str, Any], condition_type: str, condition_value: ConditionValue = None
) -> bool:
    """Evaluate a condition that only needs the lead document.

    Unknown condition types are ``False``.
    """
    if condition_type == "is_hot_lead":
        return lead.get("isHotLead") is True
    if condition_type.startswith("lob_is_"):
        return lead.get("lineOfBusiness") == condition_type[len("lob_is_"):]
    if condition_type.startswith("business_type_is_"):
        return lead.get("businessType") == condition_type[len("business_type_is_"):]
    if condition_type == "lead_value_above_threshold":
        lob_data = lead.get("lobData") or {}
        try:
            value = float(lob_data.get("estimatedPremium") or 0)
            threshold = float(condition_value or 0)
        except (TypeError, ValueError):
            return False
        return value > threshold
    if condition_type == "quotation_approved":
        return _stage_matches(lead, "quotationStatus", "approved")
    if condition_type == "quotation_rejected":
        return _stage_matches(lead, "quotationStatus", "rejected")
    if condition_type == "customer_responded":
        return lead.get("customerResponded") is True
    logger.warning(f"Unknown condition type: {condition_type}")
    return False


class HttpLeadServiceClient:
    """HTTP client for the lead service (and the document service)."""

    def __init__(
        self,
        base_url: str,
        service_key: Optional[str] = None,
        document_service_url: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.document_service_url = (document_service_url or base_url).rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        if service_key:
            self._headers["x-service-key"] = service_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config: LeadServiceConfig) -> "HttpLeadServiceClient":
        if not config.base_url:
            raise ValueError("lead_service.base_url is not configured")
        return cls(
            base_url=config.base_url,
            service_key=config.service_key,
            document_service_url=config.document_service_url,
            timeout=config.timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    async def get_lead(
        self, entity_id: str, line_of_business: str
    ) -> Optional[Dict[str, Any]]:
        try:
            response = await self._client.get(
                f"{self.base_url}/api/leads/{entity_id}",
                params={"lineOfBusiness": line_of_business},
                headers=self._headers,
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Error getting lead {entity_id}: {e}")
            return None
        if not isinstance(result, dict):
            return None
        data = result.get("data") if isinstance(result.get("data"), dict) else {}
        return data.get("lead") or result.get("lead") or result

    async def update_stage(
        self, entity_id: str, line_of_business: str, request: StageChangeRequest
    ) -> bool:
        stage = get_stage(request.stage_id)
        payload = {
            "stageId": f"stage-{stage.order if stage else 1}",
            "stageName": request.stage_name,
            "remark": request.remark,
            "changedBy": request.changed_by,
        }
        try:
            response = await self._client.patch(
                f"{self.base_url}/api/leads/{entity_id}/stage",
                params={"lineOfBusiness": line_of_business},
                headers=self._headers,
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Error updating stage for lead {entity_id}: {e}")
            return False
        if response.is_error:
            logger.warning(
                f"Failed to update stage for lead {entity_id}: "
                f"{response.status_code} {response.text}"
            )
            return False
        return True

    async def get_lead_summary(
        self, entity_id: str, line_of_business: str
    ) -> Optional[Dict[str, Any]]:
        lead = await self.get_lead(entity_id, line_of_business)
        return summarize_lead(lead) if lead else None

    async def has_required_documents(self, entity_id: str, line_of_business: str) -> bool:
        try:
            response = await self._client.get(
                f"{self.document_service_url}/api/documents/lead/{entity_id}/check-required",
                params={"lineOfBusiness": line_of_business},
                headers=self._headers,
            )
            if response.is_error:
                logger.warning(
                    f"Document service returned {response.status_code} for lead {entity_id}"
                )
                return False
            return response.json().get("allRequiredUploaded") is True
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Error checking required documents for {entity_id}: {e}")
            return False

    async def evaluate_condition(
        self,
        entity_id: str,
        line_of_business: str,
        condition_type: str,
        condition_value: ConditionValue = None,
    ) -> bool:
        lead = await self.get_lead(entity_id, line_of_business)
        if not lead:
            logger.warning(f"Lead not found for condition evaluation: {entity_id}")
            return False
        if condition_type == "has_required_documents":
            return await self.has_required_documents(entity_id, line_of_business)
        return evaluate_lead_condition(lead, condition_type, condition_value)


class UnconfiguredLeadService:
    """Stand-in used when no lead service URL is configured.

    Stage updates report failure, conditions are ``False`` and no summary is
    available; the engine keeps running and logs what it skipped.
    """

    async def update_stage(
        self, entity_id: str, line_of_business: str, request: StageChangeRequest
    ) -> bool:
        logger.warning(
            f"Lead service not configured - stage {request.stage_id} not pushed for {entity_id}"
        )
        return False

    async def evaluate_condition(
        self,
        entity_id: str,
        line_of_business: str,
        condition_type: str,
        condition_value: ConditionValue = None,
    ) -> bool:
        logger.warning(
            f"Lead service not configured - condition {condition_type} is False for {entity_id}"
        )
        return False

    async def get_lead_summary(
        self, entity_id: str, line_of_business: str
    ) -> Optional[Dict[str, Any]]:
        return None

    async def aclose(self) -> None:
        pass
