"""Run every configured schedule until interrupted.

Usage:
    python -m feedrelay.cli.run_schedules
"""

import asyncio

from feedrelay.delivery.pipeline import DeliveryPipeline
from feedrelay.delivery.rate_limiter import ChannelRateLimiter
from feedrelay.delivery.transports import (
    BrokeredTransport,
    ChannelOutageAlerter,
    DiscordRestClient,
    InProcessTransport,
    Transport,
)
from feedrelay.failures.fail_tracker import FailureTracker
from feedrelay.jobs.job_manager import job_manager
from feedrelay.main.aiohttp_client import aiohttp_client
from feedrelay.main.config import Settings, get_settings
from feedrelay.main.logging import get_logger
from feedrelay.redis.connection import close_redis, get_redis
from feedrelay.storage.storage import build_storage
from feedrelay.worker.pool import ProcessWorkerFactory
from feedrelay.worker.schedule_manager import ScheduleManager

logger = get_logger(__name__)


def build_limiter(settings: Settings) -> ChannelRateLimiter:
    # A single in-process shard has nobody to share budgets with
    shared = settings.delivery_mode == "brokered" or settings.shard_count > 1
    return ChannelRateLimiter(
        redis=get_redis(settings) if shared else None,
        default_limit=settings.channel_rate_limit_count,
        supporter_limit=settings.supporter_channel_rate_limit_count,
        window_seconds=settings.channel_rate_limit_window_seconds,
        circuit_break_seconds=settings.rate_limiter_circuit_break_seconds,
    )


async def build_transport(
    settings: Settings, client: DiscordRestClient, limiter: ChannelRateLimiter
) -> Transport:
    if settings.delivery_mode == "brokered":
        await job_manager.init(settings)
        return BrokeredTransport(job_manager, limiter)
    return InProcessTransport(client, limiter, settings.shard_id, settings.shard_count)


async def run_schedules():
    settings = get_settings()
    logger.info(
        "Starting feedrelay",
        extra={
            "delivery_mode": settings.delivery_mode,
            "storage_backend": settings.storage_backend,
            "shard_id": settings.shard_id,
            "shard_count": settings.shard_count,
        },
    )

    aiohttp_client.start()
    storage = await build_storage(settings)
    client = DiscordRestClient(
        session=aiohttp_client,
        api_url=settings.discord_api_url,
        bot_token=settings.discord_bot_token,
        max_attempts=settings.delivery_max_attempts,
    )
    limiter = build_limiter(settings)
    transport = await build_transport(settings, client, limiter)

    pipeline = DeliveryPipeline(
        transport=transport,
        delivery_records=storage.delivery_records,
        api_url=settings.discord_api_url,
        max_payload_length=settings.max_payload_length,
        notice_sender=client.send_text,
        debug_subscription_ids=settings.debug_ids,
    )
    fail_tracker = FailureTracker(
        fail_records=storage.fail_records,
        subscriptions=storage.subscriptions,
        alerter=ChannelOutageAlerter(client, settings.shard_id, settings.shard_count),
        hours_until_fail=settings.hours_until_fail,
    )
    manager = ScheduleManager(
        settings=settings,
        storage=storage,
        fail_tracker=fail_tracker,
        pipeline=pipeline,
        worker_factory=ProcessWorkerFactory(),
        limiter=limiter,
    )

    try:
        await manager.run_forever()
    finally:
        await pipeline.close(drain_timeout=5)
        await job_manager.close()
        await close_redis()
        await storage.close()
        await aiohttp_client.stop()


def main():
    try:
        asyncio.run(run_schedules())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
