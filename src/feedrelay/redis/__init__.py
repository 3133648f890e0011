"""Redis helpers shared by the rate limiter and the outbound broker.

- LuaScripts: atomic Lua scripts
- get_redis / close_redis: shared client for the rate limiter
- build_arq_redis_settings / build_redis_pool_kwargs: connection settings
"""

from feedrelay.redis.connection import (
    build_arq_redis_settings,
    build_redis_pool_kwargs,
    close_redis,
    get_redis,
)
from feedrelay.redis.lua_scripts import LuaScripts

__all__ = [
    "LuaScripts",
    "build_arq_redis_settings",
    "build_redis_pool_kwargs",
    "close_redis",
    "get_redis",
]
