"""Getting rendered payloads to the chat platform.

Two transports share one contract: ``deliver(requests)`` hands ordered
requests for one destination over to the per-destination queues. What the
queue's sender does differs: the in-process transport performs the HTTP
call, the brokered transport enqueues a job for the broker workers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from feedrelay.delivery.delivery_queue import DeliveryQueues
from feedrelay.delivery.payloads import OutboundRequest
from feedrelay.delivery.rate_limiter import ChannelRateLimiter
from feedrelay.failures.fail_record import FailRecord
from feedrelay.failures.fail_tracker import OutageAlerter
from feedrelay.jobs.job_manager import JobManager
from feedrelay.jobs.task_models import Task
from feedrelay.main.exceptions import (
    MISSING_PERMISSIONS_CODE,
    DeliveryError,
    MissingPermissionsError,
)
from feedrelay.main.logging import get_logger
from feedrelay.subscriptions.subscription import Subscription

logger = get_logger(__name__)


def owns_guild(guild_id: str, shard_id: int, shard_count: int) -> bool:
    """Discord's shard formula: ``(guild_id >> 22) % shard_count``."""
    if shard_count <= 1:
        return True
    return (int(guild_id) >> 22) % shard_count == shard_id


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, DeliveryError) and exc.is_retryable


class DiscordRestClient:
    def __init__(
        self,
        session: Callable[[], aiohttp.ClientSession],
        api_url: str,
        bot_token: Optional[str],
        max_attempts: int = 4,
    ):
        self.session = session
        self.api_url = api_url.rstrip("/")
        self.bot_token = bot_token
        self.max_attempts = max_attempts

    def channel_messages_url(self, channel_id: str) -> str:
        return f"{self.api_url}/channels/{channel_id}/messages"

    async def _raise_for_response(self, response: aiohttp.ClientResponse) -> None:
        if response.status < 400:
            return

        code = None
        message = f"Platform responded with status {response.status}"
        try:
            data = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            data = None
        if isinstance(data, dict):
            code = data.get("code")
            message = data.get("message") or message

        if code == MISSING_PERMISSIONS_CODE:
            raise MissingPermissionsError(message, status=response.status)
        raise DeliveryError(message, code=code, status=response.status)

    async def _send_once(self, request: OutboundRequest) -> None:
        headers = {}
        if request.use_bot_auth:
            if not self.bot_token:
                raise DeliveryError("No bot token configured for channel delivery")
            headers["Authorization"] = f"Bot {self.bot_token}"

        try:
            async with self.session().request(
                request.method, request.target_url, json=request.body, headers=headers
            ) as response:
                await self._raise_for_response(response)
        except aiohttp.ClientError as e:
            raise DeliveryError(f"Connection failed ({e.__class__.__name__})") from e

    async def execute(self, request: OutboundRequest) -> None:
        """Perform ``request``, retrying transient failures.

        Missing permissions and invalid payloads fail on the first attempt.
        """
        async for attempt in AsyncRetrying(
            wait=wait_random_exponential(multiplier=0.5, max=10),
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                await self._send_once(request)

    async def send_text(self, channel_id: str, text: str) -> None:
        """Single best-effort text message, used for alerts and notices."""
        async with self.session().post(
            self.channel_messages_url(channel_id),
            json={"content": text},
            headers={"Authorization": f"Bot {self.bot_token}"} if self.bot_token else {},
        ) as response:
            await self._raise_for_response(response)


class Transport(ABC):
    queues: DeliveryQueues

    @abstractmethod
    async def send(self, request: OutboundRequest) -> None:
        """What the destination queue calls once a request may go out."""

    @abstractmethod
    async def deliver(self, requests: list[OutboundRequest], defer: bool = True) -> bool:
        """Hand ``requests`` (chunks of one article, in order) to the platform.

        Returns False when this process does not own the destination.
        """

    async def close(self, drain_timeout: float = 0) -> None:
        await self.queues.close(drain_timeout)


class InProcessTransport(Transport):
    def __init__(
        self,
        client: DiscordRestClient,
        limiter: ChannelRateLimiter,
        shard_id: int = 0,
        shard_count: int = 1,
    ):
        self.client = client
        self.queues = DeliveryQueues(limiter, self.send)
        self.shard_id = shard_id
        self.shard_count = shard_count

    async def send(self, request: OutboundRequest) -> None:
        await self.client.execute(request)

    async def deliver(self, requests: list[OutboundRequest], defer: bool = True) -> bool:
        if not requests:
            return True
        if not owns_guild(requests[0].guild_id, self.shard_id, self.shard_count):
            logger.debug(
                "Destination owned by another shard, skipping",
                extra={"channel_id": requests[0].channel_id, "shard_id": self.shard_id},
            )
            return False

        await self.queues.submit_many(requests, defer=defer)
        return True


class BrokeredTransport(Transport):
    """Queue sender enqueues one broker job per request; the broker does the HTTP."""

    def __init__(self, job_manager: JobManager, limiter: ChannelRateLimiter):
        self.job_manager = job_manager
        self.queues = DeliveryQueues(limiter, self.send)

    async def send(self, request: OutboundRequest) -> None:
        await self.job_manager.enqueue(Task.DELIVER_REQUEST, request)
        logger.debug("Delivery enqueued on broker", extra=request.metadata.model_dump())

    async def deliver(self, requests: list[OutboundRequest], defer: bool = True) -> bool:
        await self.queues.submit_many(requests, defer=defer)
        return True


class ChannelOutageAlerter(OutageAlerter):
    def __init__(self, client: DiscordRestClient, shard_id: int = 0, shard_count: int = 1):
        self.client = client
        self.shard_id = shard_id
        self.shard_count = shard_count

    async def alert(self, subscription: Subscription, record: FailRecord) -> None:
        if not owns_guild(subscription.guild_id, self.shard_id, self.shard_count):
            return
        await self.client.send_text(
            subscription.channel_id,
            f"**ATTENTION!** Feed <{record.url}> has been failing since "
            f"{record.failed_at:%Y-%m-%d %H:%M} UTC and will no longer be retrieved "
            f"until it recovers or is reset. Reason: {record.reason or 'unknown'}",
        )
