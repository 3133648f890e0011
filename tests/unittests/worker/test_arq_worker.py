import pytest

from feedrelay.delivery.payloads import DeliveryMetadata, OutboundRequest
from feedrelay.main.exceptions import DeliveryError
from feedrelay.main.log_context import get_log_context
from feedrelay.worker.arq import deliver_request
from tests.unittests.fakes import RecordingClient


def outbound_request() -> dict:
    request = OutboundRequest(
        target_url="https://discord.com/api/v10/channels/c1/messages",
        body={"content": "hello"},
        metadata=DeliveryMetadata(
            item_id="a1",
            source_url="https://example.com/feed.xml",
            destination_channel="c1",
            subscription_id="s1",
            guild_id="100",
        ),
    )
    return request.model_dump(mode="json")


@pytest.mark.asyncio
class TestDeliverRequest:
    async def test_sends_request(self, storage):
        client = RecordingClient()
        ctx = {"client": client, "storage": storage, "job_id": "job-1"}

        assert await deliver_request(ctx, outbound_request()) is True

        assert client.requests[0].channel_id == "c1"
        assert storage.delivery_records.items == []
        assert get_log_context() == {}

    async def test_failure_is_recorded_and_reported(self, storage):
        client = RecordingClient(error=DeliveryError("Invalid Form Body", code=50035, status=400))
        ctx = {"client": client, "storage": storage}

        assert await deliver_request(ctx, outbound_request()) is False

        [record] = storage.delivery_records.items
        assert record.item_id == "a1"
        assert record.destination_channel == "c1"
        assert [channel for channel, _ in client.texts] == ["c1"]
