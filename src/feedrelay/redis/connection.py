"""Redis connections for the two Redis users: the arq delivery broker and the
shared channel rate limiter."""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
from arq.connections import RedisSettings

from feedrelay.main.config import Settings, get_settings
from feedrelay.main.logging import get_logger

logger = get_logger(__name__)


def _database(settings: Settings) -> int:
    return settings.redis_db if settings.redis_db is not None else 0


def build_arq_redis_settings(settings: Settings | None = None) -> RedisSettings:
    """Connection settings for the broker pool and the arq consumer."""
    settings = settings or get_settings()
    return RedisSettings(
        host=settings.redis_host,
        port=settings.redis_port,
        database=_database(settings),
        conn_timeout=settings.redis_conn_timeout,
        conn_retries=settings.redis_conn_retries,
        conn_retry_delay=settings.redis_conn_retry_delay,
        retry_on_timeout=settings.redis_retry_on_timeout,
        max_connections=settings.redis_max_connections,
    )


def build_redis_pool_kwargs(settings: Settings | None = None, *, decode_responses: bool) -> dict[str, Any]:
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {
        "db": _database(settings),
        "decode_responses": decode_responses,
        # The limiter falls back to local windows on errors, so fail fast
        "socket_connect_timeout": settings.redis_conn_timeout,
        "socket_timeout": settings.redis_conn_timeout,
        "retry_on_timeout": settings.redis_retry_on_timeout,
        "socket_keepalive": settings.redis_socket_keepalive,
        "health_check_interval": settings.redis_health_check_interval,
    }
    if settings.redis_max_connections is not None:
        kwargs["max_connections"] = settings.redis_max_connections
    return kwargs


_redis_client: aioredis.Redis | None = None


def get_redis(settings: Settings | None = None) -> aioredis.Redis:
    """Shared client used by the rate limiter; created on first use."""
    global _redis_client
    if _redis_client is None:
        settings = settings or get_settings()
        pool = aioredis.ConnectionPool(
            host=settings.redis_host,
            port=settings.redis_port,
            **build_redis_pool_kwargs(settings, decode_responses=False),
        )
        _redis_client = aioredis.Redis(connection_pool=pool)
        logger.debug(
            "Redis client created",
            extra={"host": settings.redis_host, "port": settings.redis_port},
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    await _redis_client.aclose()
    _redis_client = None
