import json

import httpx
import pytest

from stageline.config import LeadServiceConfig
from stageline.lead_service import (
    HttpLeadServiceClient,
    StageChangeRequest,
    UnconfiguredLeadService,
    evaluate_lead_condition,
    summarize_lead,
)


LEAD = {
    "referenceId": "MED-001",
    "firstName": "Jane",
    "lastName": "Doe",
    "lineOfBusiness": "medical",
    "businessType": "individual",
    "isHotLead": True,
    "lobData": {"estimatedPremium": "1500"},
}


def _client(handler, **kwargs):
    return HttpLeadServiceClient(
        "http://leads.test/",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_get_lead_unwraps_envelopes():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/wrapped"):
            return httpx.Response(200, json={"success": True, "data": {"lead": LEAD}})
        if request.url.path.endswith("/plain"):
            return httpx.Response(200, json=LEAD)
        return httpx.Response(404, json={"error": "not found"})

    client = _client(handler, service_key="k-123")

    assert (await client.get_lead("wrapped", "medical"))["referenceId"] == "MED-001"
    assert (await client.get_lead("plain", "medical"))["referenceId"] == "MED-001"
    assert await client.get_lead("missing", "medical") is None

    assert seen[0].headers["x-service-key"] == "k-123"
    assert seen[0].url.params["lineOfBusiness"] == "medical"
    assert str(seen[0].url).startswith("http://leads.test/api/leads/wrapped")
    await client.aclose()


@pytest.mark.asyncio
async def test_server_errors_are_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PATCH":
            return httpx.Response(500, text="boom")
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    assert await client.get_lead("lead-1", "medical") is None
    assert await client.get_lead_summary("lead-1", "medical") is None
    assert await client.evaluate_condition("lead-1", "medical", "is_hot_lead") is False
    request = StageChangeRequest(
        stage_id="approved", stage_name="Approved", changed_by="pipeline-service"
    )
    assert await client.update_stage("lead-1", "medical", request) is False


@pytest.mark.asyncio
async def test_update_stage_maps_catalog_order():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"success": True})

    client = _client(handler)
    ok = await client.update_stage(
        "lead-1",
        "medical",
        StageChangeRequest(
            stage_id="quotation-sent",
            stage_name="Quotation Sent",
            remark="Pipeline: Sent",
            changed_by="pipeline-service",
        ),
    )
    assert ok
    method, path, body = bodies[0]
    assert method == "PATCH"
    assert path == "/api/leads/lead-1/stage"
    assert body["stageId"] == "stage-5"
    assert body["changedBy"] == "pipeline-service"

    await client.update_stage(
        "lead-1",
        "medical",
        StageChangeRequest(stage_id="custom-x", stage_name="X", changed_by="svc"),
    )
    assert bodies[1][2]["stageId"] == "stage-1"


@pytest.mark.asyncio
async def test_required_documents_use_document_service():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "docs.test":
            return httpx.Response(200, json={"allRequiredUploaded": True})
        return httpx.Response(200, json={"data": {"lead": LEAD}})

    client = _client(handler, document_service_url="http://docs.test")
    assert await client.evaluate_condition("lead-1", "medical", "has_required_documents")
    assert await client.evaluate_condition("lead-1", "medical", "lob_is_medical")
    assert not await client.evaluate_condition("lead-1", "medical", "lob_is_motor")


@pytest.mark.parametrize(
    "condition,value,expected",
    [
        ("is_hot_lead", None, True),
        ("business_type_is_individual", None, True),
        ("business_type_is_group", None, False),
        ("lead_value_above_threshold", 1000, True),
        ("lead_value_above_threshold", "2000", False),
        ("lead_value_above_threshold", "lots", False),
        ("customer_responded", None, False),
        ("quotation_approved", None, False),
        ("no_such_condition", None, False),
    ],
)
def test_evaluate_lead_condition(condition, value, expected):
    assert evaluate_lead_condition(LEAD, condition, value) is expected


def test_quotation_status_conditions():
    assert evaluate_lead_condition({"quotationStatus": "approved"}, "quotation_approved")
    assert evaluate_lead_condition({"currentStageId": "rejected"}, "quotation_rejected")
    assert evaluate_lead_condition({"customerResponded": True}, "customer_responded")


def test_summarize_lead():
    summary = summarize_lead(LEAD)
    assert summary["reference_id"] == "MED-001"
    assert summary["customer_name"] == "Jane Doe"
    assert summarize_lead({"customerName": "Acme Ltd"})["customer_name"] == "Acme Ltd"


@pytest.mark.asyncio
async def test_unconfigured_service_is_inert():
    service = UnconfiguredLeadService()
    request = StageChangeRequest(stage_id="approved", stage_name="Approved", changed_by="svc")
    assert await service.update_stage("lead-1", "medical", request) is False
    assert await service.evaluate_condition("lead-1", "medical", "is_hot_lead") is False
    assert await service.get_lead_summary("lead-1", "medical") is None


def test_from_config_requires_base_url():
    with pytest.raises(ValueError):
        HttpLeadServiceClient.from_config(LeadServiceConfig())
