"""Lua scripts for atomic Redis operations.

Scripts run server side so concurrent processes sharing a destination never
observe a half-updated window.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from redis.asyncio import Redis


class LuaScripts:
    """Container for Redis Lua scripts.

    Usage:
        allowed, retry_after_ms = await LuaScripts.consume_window_slot(
            redis, key, limit, window_ms, now_ms, member
        )
    """

    # ─────────────────────────────────────────────────────────────────────────
    # SLIDING WINDOW: Per-destination delivery budget
    # ─────────────────────────────────────────────────────────────────────────

    CONSUME_WINDOW_SLOT: str = (
        # Take one slot from a sliding-window budget if one is free.
        #
        # KEYS[1]: ratelimit:channel:{channel_id}
        # ARGV[1]: limit (slots per window)
        # ARGV[2]: window (milliseconds)
        # ARGV[3]: now (milliseconds since epoch)
        # ARGV[4]: member (unique id for this slot)
        #
        # Returns: {1, 0} when a slot was taken,
        #          {0, retry_after_ms} when the window is full.
        #
        # INVARIANT: ZCARD never exceeds limit, so the budget never goes negative.
        "local key = KEYS[1]\n"
        "local limit = tonumber(ARGV[1])\n"
        "local window = tonumber(ARGV[2])\n"
        "local now = tonumber(ARGV[3])\n"
        "redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)\n"
        "local used = redis.call('ZCARD', key)\n"
        "if used < limit then\n"
        "  redis.call('ZADD', key, now, ARGV[4])\n"
        "  redis.call('PEXPIRE', key, window)\n"
        "  return {1, 0}\n"
        "end\n"
        "local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')\n"
        "local retry_after = tonumber(oldest[2]) + window - now\n"
        "if retry_after < 1 then\n"
        "  retry_after = 1\n"
        "end\n"
        "return {0, retry_after}\n"
    )

    @staticmethod
    async def consume_window_slot(
        redis: "Redis",
        key: str,
        limit: int,
        window_ms: int,
        now_ms: int,
        member: str,
    ) -> tuple[bool, int]:
        # NOTE: Redis EVAL runs a Lua script server side, not Python's eval()
        result = await redis.eval(
            LuaScripts.CONSUME_WINDOW_SLOT,
            1,
            key,
            str(limit),
            str(window_ms),
            str(now_ms),
            member,
        )
        allowed, retry_after_ms = (int(value) for value in result)
        return bool(allowed), retry_after_ms
