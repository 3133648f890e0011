"""Broker consumer: performs outbound requests enqueued by ``BrokeredTransport``.

Run with ``arq feedrelay.worker.arq.WorkerSettings``.
"""

from arq import func

from feedrelay.delivery.payloads import OutboundRequest
from feedrelay.delivery.pipeline import record_delivery_failure
from feedrelay.delivery.transports import DiscordRestClient
from feedrelay.jobs.task_models import Task
from feedrelay.main.aiohttp_client import AioHttpClient
from feedrelay.main.config import get_settings
from feedrelay.main.log_context import clear_log_context, set_log_context
from feedrelay.main.logging import get_logger
from feedrelay.redis.connection import build_arq_redis_settings
from feedrelay.storage.storage import build_storage

logger = get_logger(__name__)


async def startup(ctx):
    settings = get_settings()

    http = AioHttpClient(total_timeout=settings.worker_request_timeout_seconds)
    http.start()

    ctx["http"] = http
    ctx["storage"] = await build_storage(settings)
    ctx["client"] = DiscordRestClient(
        session=http,
        api_url=settings.discord_api_url,
        bot_token=settings.discord_bot_token,
        max_attempts=settings.delivery_max_attempts,
    )
    logger.info("Delivery worker started")


async def shutdown(ctx):
    if "storage" in ctx:
        await ctx["storage"].close()
    if "http" in ctx:
        await ctx["http"].stop()
    logger.info("Delivery worker stopped")


async def deliver_request(ctx, request: dict) -> bool:
    """Perform one outbound request.

    Failures are recorded and reported, never re-raised, so arq does not
    retry a request the client has already retried.
    """
    outbound = OutboundRequest.model_validate(request)
    client: DiscordRestClient = ctx["client"]

    set_log_context(
        job_id=ctx.get("job_id"),
        channel_id=outbound.channel_id,
        item_id=outbound.metadata.item_id,
    )
    try:
        await client.execute(outbound)
        logger.debug("Brokered delivery sent")
        return True
    except Exception as exc:
        logger.warning("Brokered delivery failed", extra={"error": str(exc)})
        await record_delivery_failure(
            ctx["storage"].delivery_records,
            outbound.metadata,
            exc,
            client.send_text,
        )
        return False
    finally:
        clear_log_context()


class WorkerSettings:
    functions = [func(deliver_request, name=Task.DELIVER_REQUEST.value)]
    redis_settings = build_arq_redis_settings()
    on_startup = startup
    on_shutdown = shutdown
    retry_jobs = False
    max_jobs = get_settings().worker_max_concurrent_requests
    job_timeout = 120
    # Delivery jobs are fire-and-forget; results are not read back
    keep_result = 0
    health_check_interval = 60
