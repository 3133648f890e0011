"""One cycle of one schedule: collect, batch, dispatch, track, record stats."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Sequence

from feedrelay.articles.article_memory import MemoryEntry, collection_id
from feedrelay.delivery.pipeline import DeliveryPipeline
from feedrelay.failures.fail_tracker import FailureTracker
from feedrelay.main.config import Settings
from feedrelay.main.log_context import set_log_context
from feedrelay.main.logging import get_logger
from feedrelay.schedules.schedule import Schedule
from feedrelay.schedules.schedule_resolver import resolve
from feedrelay.stats.cycle_stats import update_stats
from feedrelay.storage.storage import Storage
from feedrelay.subscriptions.subscription import Subscription
from feedrelay.worker.batching import (
    Batch,
    BatchGroup,
    create_batch_groups,
    create_batches,
    group_by_url,
)
from feedrelay.worker.hang_tracker import HangTracker
from feedrelay.worker.messages import (
    CachedHeadersModel,
    LinkCompletion,
    LinkStatus,
    WorkerConfig,
    WorkerDispatch,
)
from feedrelay.worker.pool import WorkerFactory, WorkerHandle

logger = get_logger(__name__)

OVERRUN_REASON = "Failed to respond in a timely manner"
BATCH_TIMEOUT_REASON = "Worker stopped responding before finishing its batch"


class RunState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    BATCHING = "batching"
    DISPATCHING = "dispatching"
    RUNNING = "running"
    COMPLETING = "completing"


@dataclass
class CycleSummary:
    schedule_name: str
    run_number: int
    subscription_count: int = 0
    # URLs whose worker replied; forced failures are only in fail_count
    url_count: int = 0
    fail_count: int = 0
    duration_seconds: float = 0.0
    hung_urls: list[str] = field(default_factory=list)


class _BatchCountdown:
    """Released once every URL of a batch has closed out."""

    def __init__(self, size: int):
        self.remaining = size
        self.event = asyncio.Event()
        if size == 0:
            self.event.set()

    def done_one(self) -> None:
        self.remaining -= 1
        if self.remaining <= 0:
            self.event.set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self.event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


class ScheduleRun:
    def __init__(
        self,
        schedule: Schedule,
        schedules: Sequence[Schedule],
        run_number: int,
        settings: Settings,
        storage: Storage,
        fail_tracker: FailureTracker,
        pipeline: DeliveryPipeline,
        worker_factory: WorkerFactory,
        cached_headers: Optional[dict[str, CachedHeadersModel]] = None,
    ):
        self.schedule = schedule
        self.schedules = schedules
        self.run_number = run_number
        self.settings = settings
        self.storage = storage
        self.fail_tracker = fail_tracker
        self.pipeline = pipeline
        self.worker_factory = worker_factory
        # Shared with the owning schedule so it survives across runs
        self.cached_headers = cached_headers if cached_headers is not None else {}

        self.state = RunState.IDLE
        self.hang_tracker = HangTracker()
        self.summary = CycleSummary(schedule_name=schedule.name, run_number=run_number)
        self.debug_urls: set[str] = set()
        self._subscriptions_by_url: Batch = {}
        self._workers: set[WorkerHandle] = set()

    @property
    def in_progress(self) -> bool:
        return self.state != RunState.IDLE

    def _is_debug(self, url: str) -> bool:
        return url in self.debug_urls

    async def collect(self) -> Batch:
        """Subscriptions of this schedule that are eligible to be fetched, by URL."""
        self.state = RunState.COLLECTING
        subscriptions = await self.storage.subscriptions.get_all()
        fail_records = await self.fail_tracker.get_map()
        fast_tier_guild_ids = await self.storage.supporters.get_guild_ids()

        debug_ids = self.settings.debug_ids
        excluded_ids = self.settings.fast_tier_excluded_ids
        eligible: list[Subscription] = []
        for subscription in subscriptions:
            if resolve(subscription, self.schedules, fast_tier_guild_ids, excluded_ids) != self.schedule.name:
                continue
            if subscription.id in debug_ids:
                self.debug_urls.add(subscription.url)

            if subscription.is_disabled:
                if subscription.id in debug_ids:
                    logger.info("Debug subscription skipped: disabled", extra={"subscription_id": subscription.id})
                continue
            if self.fail_tracker.is_excluded(fail_records.get(subscription.url)):
                if subscription.id in debug_ids:
                    logger.info(
                        "Debug subscription skipped: source URL failed",
                        extra={"subscription_id": subscription.id, "url": subscription.url},
                    )
                continue
            eligible.append(subscription)

        self.summary.subscription_count = len(eligible)
        self._subscriptions_by_url = group_by_url(eligible)
        return self._subscriptions_by_url

    def plan(self, grouped: Batch) -> list[BatchGroup]:
        self.state = RunState.BATCHING
        batches = create_batches(grouped, self.settings.batch_size)
        groups = create_batch_groups(batches, self.settings.parallel_batches)
        for url in self.debug_urls & grouped.keys():
            logger.info("Debug URL batched", extra={"url": url})
        return groups

    async def run(self) -> CycleSummary:
        set_log_context(schedule_name=self.schedule.name, run_number=self.run_number)
        started = time.monotonic()

        grouped = await self.collect()
        groups = self.plan(grouped)

        logger.info(
            "Cycle started",
            extra={
                "url_count": len(grouped),
                "subscription_count": self.summary.subscription_count,
                "batch_group_count": len(groups),
            },
        )

        self.state = RunState.DISPATCHING
        try:
            await asyncio.gather(
                *(self._run_group(index, group) for index, group in enumerate(groups))
            )
        finally:
            self.kill_workers()

        self.state = RunState.COMPLETING
        self.summary.duration_seconds = time.monotonic() - started
        self.summary.hung_urls = self.hang_tracker.hung_urls()
        await self._save_stats()

        logger.info(
            "Cycle finished",
            extra={
                "url_count": self.summary.url_count,
                "fail_count": self.summary.fail_count,
                "duration_seconds": round(self.summary.duration_seconds, 2),
            },
        )
        self.state = RunState.IDLE
        return self.summary

    async def _run_group(self, group_index: int, group: BatchGroup) -> None:
        self.state = RunState.RUNNING
        for batch_index, batch in enumerate(group):
            await self._run_batch(group_index, batch_index, batch)

    async def _run_batch(self, group_index: int, batch_index: int, batch: Batch) -> None:
        self.hang_tracker.start_batch(group_index, batch_index, list(batch))
        countdown = _BatchCountdown(len(batch))
        dispatch = await self._build_dispatch(batch)

        async def on_message(completion: LinkCompletion) -> None:
            await self.handle_completion(group_index, batch_index, completion, countdown)

        handle = self.worker_factory.spawn(dispatch, on_message)
        self._workers.add(handle)
        try:
            timeout = self.settings.worker_batch_timeout_seconds or None
            finished = await countdown.wait(timeout)
            if not finished:
                outstanding = self.hang_tracker.outstanding(group_index, batch_index)
                logger.warning(
                    "Batch timed out, recording outstanding URLs as failed",
                    extra={"group": group_index, "batch": batch_index, "outstanding": len(outstanding)},
                )
                for url in outstanding:
                    await self._fail_url(group_index, batch_index, url, BATCH_TIMEOUT_REASON)
        finally:
            handle.kill()
            self._workers.discard(handle)

    async def _build_dispatch(self, batch: Batch) -> WorkerDispatch:
        collections = {
            url: collection_id(url, self.schedule.name, self.settings.shard_id) for url in batch
        }
        stored = await self.storage.article_memory.get_many(collections.values())
        memory = {url: stored.get(collection, []) for url, collection in collections.items()}

        return WorkerDispatch(
            config=WorkerConfig.from_settings(self.settings),
            batch=batch,
            debug_subscription_ids=sorted(self.settings.debug_ids),
            debug_urls=sorted(self.debug_urls & batch.keys()),
            cached_headers={url: self.cached_headers[url] for url in batch if url in self.cached_headers},
            memory=memory,
            run_number=self.run_number,
            schedule_name=self.schedule.name,
        )

    async def handle_completion(
        self,
        group_index: int,
        batch_index: int,
        completion: LinkCompletion,
        countdown: _BatchCountdown,
    ) -> None:
        url = completion.url

        if completion.status == LinkStatus.HEADERS:
            self.cached_headers[url] = CachedHeadersModel(
                etag=completion.etag, last_modified=completion.last_modified
            )
            return

        if completion.status == LinkStatus.PENDING_ARTICLE:
            await self._deliver(url, completion)
            return

        if not self.hang_tracker.complete(group_index, batch_index, url):
            logger.warning("Duplicate completion ignored", extra={"url": url, "status": completion.status.value})
            return
        self.summary.url_count += 1

        if completion.status == LinkStatus.FAILED:
            self.summary.fail_count += 1
            await self.fail_tracker.record(url, completion.failure_reason or "Unknown error")
        else:
            await self.fail_tracker.reset(url)
            if completion.memory_snapshot:
                await self._remember(url, completion.memory_snapshot)

        if self._is_debug(url):
            logger.info("Debug URL completed", extra={"url": url, "status": completion.status.value})
        if self.hang_tracker.is_batch_done(group_index, batch_index):
            logger.debug(
                "Batch finished",
                extra={
                    "group": group_index,
                    "batch": batch_index,
                    "url_count": self.hang_tracker.batch_size(group_index, batch_index),
                },
            )
        countdown.done_one()

    async def _deliver(self, url: str, completion: LinkCompletion) -> None:
        if completion.pending_article is None or completion.subscription_id is None:
            return
        subscription = self._find_subscription(url, completion.subscription_id)
        if subscription is None:
            logger.warning(
                "Pending article for unknown subscription",
                extra={"url": url, "subscription_id": completion.subscription_id},
            )
            return
        await self.pipeline.deliver_one(completion.pending_article, subscription)

    def _find_subscription(self, url: str, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions_by_url.get(url, {}).get(subscription_id)

    async def _remember(self, url: str, entries: list[MemoryEntry]) -> None:
        collection = collection_id(url, self.schedule.name, self.settings.shard_id)
        try:
            await self.storage.article_memory.add_entries(collection, entries)
        except Exception:
            logger.error("Failed to persist article memory", exc_info=True, extra={"url": url})

    async def _fail_url(self, group_index: int, batch_index: int, url: str, reason: str) -> None:
        if self.hang_tracker.complete(group_index, batch_index, url):
            self.summary.fail_count += 1
            await self.fail_tracker.record(url, reason)

    async def _save_stats(self) -> None:
        try:
            previous = await self.storage.cycle_stats.get(self.schedule.name)
            stats = update_stats(
                previous,
                schedule_name=self.schedule.name,
                subscription_count=self.summary.subscription_count,
                cycle_time_seconds=self.summary.duration_seconds,
                cycle_fail_count=self.summary.fail_count,
                cycle_url_count=self.summary.url_count,
                now=datetime.now(timezone.utc),
            )
            await self.storage.cycle_stats.upsert(stats)
        except Exception:
            logger.error("Failed to persist cycle stats", exc_info=True)

    def kill_workers(self) -> None:
        for handle in list(self._workers):
            handle.kill()
        self._workers.clear()

    async def terminate(self, reason: str = OVERRUN_REASON) -> list[str]:
        """Give up on this run: fail every outstanding URL and kill the workers."""
        hung = self.hang_tracker.hung_by_batch()
        for (group_index, batch_index), urls in hung.items():
            for url in urls:
                await self._fail_url(group_index, batch_index, url, reason)
        self.kill_workers()
        self.state = RunState.IDLE
        return sorted(url for urls in hung.values() for url in urls)
