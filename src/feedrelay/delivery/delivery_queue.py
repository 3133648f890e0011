"""Ordered, rate-limited delivery per destination channel."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Optional, Sequence

from feedrelay.delivery.payloads import OutboundRequest
from feedrelay.delivery.rate_limiter import ChannelRateLimiter
from feedrelay.main.exceptions import RateLimitedError
from feedrelay.main.logging import get_logger

logger = get_logger(__name__)

Sender = Callable[[OutboundRequest], Awaitable[None]]
FailureHandler = Callable[[OutboundRequest, Exception], Awaitable[None]]


@dataclass
class _Destination:
    # Each entry is one unit: the chunks of one article, sent back to back
    pending: Deque[Deque[OutboundRequest]] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    drainer: Optional[asyncio.Task] = None


class DeliveryQueues:
    """FIFO queue per destination, gated by the channel rate limiter.

    A submission takes its place in the destination queue before anything is
    awaited, so the order seen by the sender is the order of ``submit`` calls
    even when the limiter check itself yields. A unit goes out immediately
    only when it is at the head of an idle queue and budget is available;
    otherwise the drainer sends it once earlier units are gone. The requests
    of one unit are sent back to back under the destination lock, so no other
    article lands between them.

    Failures of deferred sends have no caller to raise to and go to
    ``on_failure`` instead. A failed request drops the rest of its unit.
    """

    def __init__(
        self,
        limiter: ChannelRateLimiter,
        sender: Sender,
        on_failure: Optional[FailureHandler] = None,
    ):
        self.limiter = limiter
        self.sender = sender
        self.on_failure = on_failure
        self._destinations: dict[str, _Destination] = {}

    def _destination(self, channel_id: str) -> _Destination:
        destination = self._destinations.get(channel_id)
        if destination is None:
            destination = _Destination()
            self._destinations[channel_id] = destination
        return destination

    def pending_count(self, channel_id: str) -> int:
        destination = self._destinations.get(channel_id)
        if destination is None:
            return 0
        return sum(len(unit) for unit in destination.pending)

    async def submit(self, request: OutboundRequest, defer: bool = True) -> bool:
        return await self.submit_many([request], defer=defer)

    async def submit_many(self, requests: Sequence[OutboundRequest], defer: bool = True) -> bool:
        """Send ``requests`` (one destination) now or queue them as one unit.

        Returns True when the whole unit went out immediately.

        With ``defer=False`` the unit raises ``RateLimitedError`` instead of
        being queued, for callers that handle retries themselves. It only
        raises before the first request is sent; once part of the unit is out
        the remainder is queued, so a retry never repeats a sent request.
        """
        if not requests:
            return True
        channel_id = requests[0].channel_id
        destination = self._destination(channel_id)

        if not defer and (destination.pending or destination.lock.locked()):
            raise RateLimitedError(channel_id, 0.0, self.limiter.limit_for(requests[0].guild_id))

        unit: Deque[OutboundRequest] = deque(requests)
        destination.pending.append(unit)

        if destination.lock.locked() or destination.pending[0] is not unit:
            self._queued(channel_id, destination)
            return False

        async with destination.lock:
            await self._send_head(destination, channel_id, report_failures=False, raise_if_unsent=not defer)

        if unit:
            self._queued(channel_id, destination)
            return False
        return True

    def _queued(self, channel_id: str, destination: _Destination) -> None:
        logger.debug(
            "Delivery queued behind rate limit",
            extra={"channel_id": channel_id, "queue_length": self.pending_count(channel_id)},
        )
        if destination.drainer is None or destination.drainer.done():
            destination.drainer = asyncio.create_task(self._drain(channel_id))

    async def _send_head(
        self,
        destination: _Destination,
        channel_id: str,
        report_failures: bool,
        raise_if_unsent: bool = False,
    ) -> float:
        """Send the head unit while budget lasts; returns the wait when rate limited.

        Must be called with the destination lock held.
        """
        unit = destination.pending[0]
        sent_any = False
        try:
            while unit:
                request = unit[0]
                try:
                    await self.limiter.assert_within_limits(channel_id, request.guild_id)
                except RateLimitedError as e:
                    if raise_if_unsent and not sent_any:
                        unit.clear()
                        raise
                    return e.retry_after

                unit.popleft()
                sent_any = True
                try:
                    await self.sender(request)
                except Exception as exc:
                    # The rest of the article would arrive without its start
                    unit.clear()
                    if not report_failures:
                        raise
                    await self._handle_failure(request, exc)
            return 0.0
        finally:
            if not unit and destination.pending and destination.pending[0] is unit:
                destination.pending.popleft()

    async def _drain(self, channel_id: str) -> None:
        destination = self._destinations[channel_id]
        while destination.pending:
            async with destination.lock:
                if not destination.pending:
                    break
                wait = await self._send_head(destination, channel_id, report_failures=True)

            if wait:
                await asyncio.sleep(wait)
            else:
                # Let submitters and other destinations run between units
                await asyncio.sleep(0)

    async def _handle_failure(self, request: OutboundRequest, exc: Exception) -> None:
        if self.on_failure is None:
            logger.error(
                "Queued delivery failed",
                extra={"channel_id": request.channel_id, "error": str(exc)},
            )
            return
        try:
            await self.on_failure(request, exc)
        except Exception:
            logger.exception(
                "Delivery failure handler raised",
                extra={"channel_id": request.channel_id},
            )

    async def join(self) -> None:
        """Wait until every destination queue is empty."""
        while True:
            drainers = [
                destination.drainer
                for destination in self._destinations.values()
                if destination.drainer is not None and not destination.drainer.done()
            ]
            if not drainers:
                return
            await asyncio.gather(*drainers)

    async def close(self, drain_timeout: float = 0) -> None:
        if drain_timeout > 0:
            try:
                await asyncio.wait_for(self.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Delivery queues did not drain in time", extra={"timeout": drain_timeout})
        drainers = [
            destination.drainer
            for destination in self._destinations.values()
            if destination.drainer is not None and not destination.drainer.done()
        ]
        for drainer in drainers:
            drainer.cancel()
        await asyncio.gather(*drainers, return_exceptions=True)
        dropped = sum(self.pending_count(channel_id) for channel_id in self._destinations)
        if dropped:
            logger.warning("Delivery queues closed with pending requests", extra={"dropped": dropped})
        self._destinations.clear()
