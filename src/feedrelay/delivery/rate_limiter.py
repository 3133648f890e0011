"""Per-destination rolling-window delivery budgets."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict

import redis.asyncio as aioredis

from feedrelay.main.exceptions import RateLimitedError
from feedrelay.main.logging import get_logger
from feedrelay.redis.lua_scripts import LuaScripts

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    retry_after: float = 0.0


@dataclass(slots=True)
class ChannelRateLimiter:
    """Sliding-window budget per channel, shared across processes through Redis.

    Channels in supporter guilds get ``supporter_limit`` slots per window. If
    Redis errors, the limiter opens a circuit for ``circuit_break_seconds``
    and enforces the same windows from process-local state meanwhile.
    ``redis=None`` runs local-only, which is correct for a single process.
    """

    redis: aioredis.Redis | None
    default_limit: int
    supporter_limit: int
    window_seconds: float
    supporter_guild_ids: set[str] = field(default_factory=set)
    circuit_break_seconds: int = 30
    clock: Callable[[], float] = time.time
    _circuit_open_until: float = field(init=False, default=0.0, repr=False)
    _local_windows: Dict[str, Deque[float]] = field(
        init=False, default_factory=dict, repr=False
    )
    _lock: asyncio.Lock = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._lock = asyncio.Lock()
        if self.circuit_break_seconds <= 0:
            self.circuit_break_seconds = 30

    def _key(self, channel_id: str) -> str:
        return f"ratelimit:channel:{channel_id}"

    def limit_for(self, guild_id: str | None) -> int:
        if guild_id is not None and guild_id in self.supporter_guild_ids:
            return self.supporter_limit
        return self.default_limit

    def set_supporter_guilds(self, guild_ids: set[str]) -> None:
        self.supporter_guild_ids = set(guild_ids)

    def _is_circuit_open(self, now: float) -> bool:
        return bool(self._circuit_open_until and now < self._circuit_open_until)

    async def _local_check(self, channel_id: str, limit: int, now: float) -> RateLimitResult:
        async with self._lock:
            window = self._local_windows.setdefault(channel_id, deque())
            while window and window[0] <= now - self.window_seconds:
                window.popleft()

            if len(window) < limit:
                window.append(now)
                return RateLimitResult(allowed=True, limit=limit)

            retry_after = max(window[0] + self.window_seconds - now, 0.001)
            return RateLimitResult(allowed=False, limit=limit, retry_after=retry_after)

    async def check(self, channel_id: str, guild_id: str | None = None) -> RateLimitResult:
        """Consume one slot if available."""
        limit = self.limit_for(guild_id)
        now = self.clock()

        if self.redis is None or self._is_circuit_open(now):
            return await self._local_check(channel_id, limit, now)

        try:
            allowed, retry_after_ms = await LuaScripts.consume_window_slot(
                self.redis,
                self._key(channel_id),
                limit,
                int(self.window_seconds * 1000),
                int(now * 1000),
                uuid.uuid4().hex,
            )
            self._circuit_open_until = 0.0
        except Exception as exc:
            logger.error(
                "Rate limiter Redis call failed, using local windows",
                extra={
                    "channel_id": channel_id,
                    "error": str(exc),
                    "circuit_break_seconds": self.circuit_break_seconds,
                },
            )
            self._circuit_open_until = now + self.circuit_break_seconds
            return await self._local_check(channel_id, limit, now)

        return RateLimitResult(allowed=allowed, limit=limit, retry_after=retry_after_ms / 1000)

    async def assert_within_limits(self, channel_id: str, guild_id: str | None = None) -> None:
        result = await self.check(channel_id, guild_id)
        if not result.allowed:
            raise RateLimitedError(channel_id, result.retry_after, result.limit)
