import pytest

from stageline.constants import INSTANCE_CREATED_EVENT, NOTIFICATION_REQUIRED_EVENT
from stageline.events import EventPublisher
from stageline.models import PipelineInstance


class ExplodingTransport:
    async def publish(self, topic, event):
        raise ConnectionError("bus down")


def _instance():
    return PipelineInstance(
        instance_id="inst-1",
        pipeline_id="pipe-1",
        pipeline_version=2,
        pipeline_name="P",
        entity_id="lead-1",
        line_of_business="medical",
        current_stage_name="Quotation Sent",
    )


@pytest.mark.asyncio
async def test_events_are_published_on_their_type_topic(transport, clock):
    publisher = EventPublisher(transport, clock)
    event = await publisher.publish_instance_created(_instance())

    assert event.event_type == INSTANCE_CREATED_EVENT
    assert event.subject == "pipeline-instance/inst-1"
    assert event.event_time == clock.now
    assert event.data["pipeline_version"] == 2
    assert transport.pending(INSTANCE_CREATED_EVENT) == 1


@pytest.mark.asyncio
async def test_notification_carries_entity_summary(transport, clock):
    publisher = EventPublisher(transport, clock)
    await publisher.publish_notification_required(
        _instance(),
        "email_customer_quotation",
        "email",
        "customer",
        "customer-quotation",
        entity_summary={"reference_id": "MED-1", "customer_name": "Jane"},
    )
    (event,) = transport.events_of_type(NOTIFICATION_REQUIRED_EVENT)
    assert event.data["entity_reference_id"] == "MED-1"
    assert event.data["stage_name"] == "Quotation Sent"
    assert event.data["template_id"] == "customer-quotation"


@pytest.mark.asyncio
async def test_publish_failures_are_swallowed(clock):
    publisher = EventPublisher(ExplodingTransport(), clock)
    assert await publisher.publish_instance_completed(_instance()) is None

    silent = EventPublisher(None, clock)
    assert await silent.publish_instance_created(_instance()) is None
