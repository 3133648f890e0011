import asyncio

import pytest

from feedrelay.delivery.delivery_queue import DeliveryQueues
from feedrelay.delivery.payloads import DeliveryMetadata, OutboundRequest
from feedrelay.delivery.rate_limiter import ChannelRateLimiter
from feedrelay.main.exceptions import DeliveryError, RateLimitedError


def request(channel_id: str, item_id: str) -> OutboundRequest:
    return OutboundRequest(
        target_url=f"https://api/channels/{channel_id}/messages",
        body={"content": item_id},
        metadata=DeliveryMetadata(
            item_id=item_id,
            source_url="https://example.com/feed.xml",
            destination_channel=channel_id,
            subscription_id="s1",
            guild_id="100",
        ),
    )


@pytest.fixture
def tight_limiter():
    # One send per 50ms keeps the queue tests quick
    return ChannelRateLimiter(
        redis=None, default_limit=1, supporter_limit=1, window_seconds=0.05
    )


@pytest.mark.asyncio
async def test_rate_limited_requests_keep_submission_order(tight_limiter):
    sent: list[str] = []

    async def sender(outbound: OutboundRequest) -> None:
        sent.append(outbound.metadata.item_id)

    queues = DeliveryQueues(tight_limiter, sender)

    immediate = [await queues.submit(request("c1", f"item-{i}")) for i in range(4)]

    assert immediate == [True, False, False, False]
    assert queues.pending_count("c1") == 3

    await asyncio.wait_for(queues.join(), timeout=5)

    assert sent == ["item-0", "item-1", "item-2", "item-3"]
    assert queues.pending_count("c1") == 0


@pytest.mark.asyncio
async def test_new_request_waits_behind_queue_even_with_budget(tight_limiter):
    sent: list[str] = []

    async def sender(outbound: OutboundRequest) -> None:
        sent.append(outbound.metadata.item_id)

    queues = DeliveryQueues(tight_limiter, sender)
    await queues.submit(request("c1", "first"))
    await queues.submit(request("c1", "second"))

    # Another channel's budget is untouched and goes straight out
    assert await queues.submit(request("c2", "other")) is True
    assert await queues.submit(request("c1", "third")) is False

    await asyncio.wait_for(queues.join(), timeout=5)
    assert [item for item in sent if item != "other"] == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_no_defer_raises_instead_of_queueing(tight_limiter):
    async def sender(outbound: OutboundRequest) -> None:
        pass

    queues = DeliveryQueues(tight_limiter, sender)
    await queues.submit(request("c1", "first"), defer=False)

    with pytest.raises(RateLimitedError):
        await queues.submit(request("c1", "second"), defer=False)
    assert queues.pending_count("c1") == 0


@pytest.mark.asyncio
async def test_deferred_failures_go_to_failure_handler(tight_limiter):
    failures: list[tuple[str, Exception]] = []

    async def sender(outbound: OutboundRequest) -> None:
        if outbound.metadata.item_id == "bad":
            raise DeliveryError("Invalid Form Body", code=50035, status=400)

    async def on_failure(outbound: OutboundRequest, exc: Exception) -> None:
        failures.append((outbound.metadata.item_id, exc))

    queues = DeliveryQueues(tight_limiter, sender, on_failure)
    await queues.submit(request("c1", "ok"))
    await queues.submit(request("c1", "bad"))
    await queues.submit(request("c1", "after"))

    await asyncio.wait_for(queues.join(), timeout=5)

    assert [item for item, _ in failures] == ["bad"]
    assert queues.pending_count("c1") == 0


@pytest.mark.asyncio
async def test_close_drops_pending(tight_limiter):
    async def sender(outbound: OutboundRequest) -> None:
        pass

    queues = DeliveryQueues(tight_limiter, sender)
    for i in range(3):
        await queues.submit(request("c1", f"item-{i}"))

    await queues.close()

    assert queues.pending_count("c1") == 0


@pytest.mark.asyncio
async def test_close_with_drain_timeout_sends_pending_first(tight_limiter):
    sent: list[str] = []

    async def sender(outbound: OutboundRequest) -> None:
        sent.append(outbound.metadata.item_id)

    queues = DeliveryQueues(tight_limiter, sender)
    for i in range(3):
        await queues.submit(request("c1", f"item-{i}"))

    await queues.close(drain_timeout=5)

    assert sent == ["item-0", "item-1", "item-2"]


class SlowLimiter:
    """Limiter whose check yields like a Redis round trip; denies its first call."""

    def __init__(self):
        self.calls = 0

    def limit_for(self, guild_id):
        return 1

    async def assert_within_limits(self, channel_id, guild_id=None):
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.calls == 1:
            raise RateLimitedError(channel_id, 0.01, 1)


@pytest.mark.asyncio
async def test_order_kept_when_limiter_check_yields():
    sent: list[str] = []

    async def sender(outbound: OutboundRequest) -> None:
        sent.append(outbound.metadata.item_id)

    queues = DeliveryQueues(SlowLimiter(), sender)

    first = asyncio.create_task(queues.submit(request("c1", "A")))
    await asyncio.sleep(0)
    assert await queues.submit(request("c1", "B")) is False
    assert await first is False

    await asyncio.wait_for(queues.join(), timeout=5)

    assert sent == ["A", "B"]


@pytest.mark.asyncio
async def test_chunks_of_one_unit_are_not_interleaved():
    sent: list[str] = []

    async def sender(outbound: OutboundRequest) -> None:
        await asyncio.sleep(0.01)
        sent.append(outbound.metadata.item_id)

    limiter = ChannelRateLimiter(redis=None, default_limit=100, supporter_limit=100, window_seconds=60)
    queues = DeliveryQueues(limiter, sender)

    await asyncio.gather(
        queues.submit_many([request("c1", "X:1"), request("c1", "X:2")]),
        queues.submit_many([request("c1", "Y:1")]),
    )
    await asyncio.wait_for(queues.join(), timeout=5)

    assert sent == ["X:1", "X:2", "Y:1"]


@pytest.mark.asyncio
async def test_no_defer_queues_rest_once_first_chunk_is_out():
    sent: list[str] = []

    async def sender(outbound: OutboundRequest) -> None:
        sent.append(outbound.metadata.item_id)

    limiter = ChannelRateLimiter(redis=None, default_limit=1, supporter_limit=1, window_seconds=60)
    queues = DeliveryQueues(limiter, sender)

    immediate = await queues.submit_many(
        [request("c1", "part-1"), request("c1", "part-2"), request("c1", "part-3")],
        defer=False,
    )

    assert immediate is False
    assert sent == ["part-1"]
    assert queues.pending_count("c1") == 2
    await queues.close()


@pytest.mark.asyncio
async def test_failed_chunk_drops_rest_of_its_unit(tight_limiter):
    failures: list[str] = []
    sent: list[str] = []

    async def sender(outbound: OutboundRequest) -> None:
        if outbound.metadata.item_id == "bad:1":
            raise DeliveryError("Invalid Form Body", code=50035, status=400)
        sent.append(outbound.metadata.item_id)

    async def on_failure(outbound: OutboundRequest, exc: Exception) -> None:
        failures.append(outbound.metadata.item_id)

    queues = DeliveryQueues(tight_limiter, sender, on_failure)
    await queues.submit(request("c1", "ok"))
    await queues.submit_many([request("c1", "bad:1"), request("c1", "bad:2")])
    await queues.submit(request("c1", "after"))

    await asyncio.wait_for(queues.join(), timeout=5)

    assert failures == ["bad:1"]
    assert sent == ["ok", "after"]
