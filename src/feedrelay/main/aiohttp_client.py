import time

import aiohttp

from feedrelay.main.exceptions import NotReadyException
from feedrelay.main.logging import get_logger

logger = get_logger(__name__)


class AioHttpClient:
    """Process-wide aiohttp session.

    The schedule manager and the delivery REST client share one session;
    each worker process starts its own.
    """

    session: aiohttp.ClientSession = None

    def __init__(self, total_timeout: float = 30.0, limit_per_host: int = 30):
        self.total_timeout = total_timeout
        self.limit_per_host = limit_per_host

    def _create_trace_config(self) -> aiohttp.TraceConfig:
        trace = aiohttp.TraceConfig()

        async def on_dns_start(session, trace_config_ctx, params):
            trace_config_ctx._dns_start_time = time.perf_counter()

        async def on_dns_end(session, trace_config_ctx, params):
            if hasattr(trace_config_ctx, "_dns_start_time"):
                dns_duration_ms = (time.perf_counter() - trace_config_ctx._dns_start_time) * 1000

                # Slow DNS shows up as feed timeouts, surface it separately
                if dns_duration_ms > 2000:
                    logger.warning(
                        f"SLOW DNS resolution detected for {params.host}",
                        extra={
                            "event": "dns_slow",
                            "host": params.host,
                            "duration_ms": int(dns_duration_ms),
                        },
                    )

        trace.on_dns_resolvehost_start.append(on_dns_start)
        trace.on_dns_resolvehost_end.append(on_dns_end)

        return trace

    def start(self):
        timeout = aiohttp.ClientTimeout(total=self.total_timeout, connect=10.0)

        connector = aiohttp.TCPConnector(
            limit=100,
            limit_per_host=self.limit_per_host,
            enable_cleanup_closed=True,
            use_dns_cache=True,
            ttl_dns_cache=300,
        )

        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            trace_configs=[self._create_trace_config()],
        )

    async def stop(self):
        if self.session is not None:
            await self.session.close()
        self.session = None

    def __call__(self) -> aiohttp.ClientSession:
        if self.session is None:
            raise NotReadyException("aiohttp session not started")
        return self.session


aiohttp_client = AioHttpClient()
