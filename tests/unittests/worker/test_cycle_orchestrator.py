import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from feedrelay.articles.article_memory import MemoryEntry, collection_id
from feedrelay.articles.fetcher import FetchResult
from feedrelay.delivery.pipeline import DeliveryPipeline
from feedrelay.delivery.transports import InProcessTransport
from feedrelay.failures.fail_record import FailRecord
from feedrelay.main.exceptions import FeedFetchError
from feedrelay.schedules.schedule_resolver import build_schedules
from feedrelay.worker.cycle_orchestrator import (
    BATCH_TIMEOUT_REASON,
    OVERRUN_REASON,
    RunState,
    ScheduleRun,
)
from tests.unittests.fakes import FakeFetcher, InlineWorkerFactory, make_article, make_subscription

URL = "https://example.com/feed.xml"


def build_run(settings, storage, fail_tracker, client, limiter, fetcher, run_number=1, schedule_index=0):
    schedules = build_schedules(settings, [])
    pipeline = DeliveryPipeline(
        transport=InProcessTransport(client, limiter),
        delivery_records=storage.delivery_records,
        api_url=settings.discord_api_url,
    )
    factory = InlineWorkerFactory(fetcher)
    run = ScheduleRun(
        schedule=schedules[schedule_index],
        schedules=schedules,
        run_number=run_number,
        settings=settings,
        storage=storage,
        fail_tracker=fail_tracker,
        pipeline=pipeline,
        worker_factory=factory,
    )
    return run, factory


async def wait_for_calls(fetcher: FakeFetcher, count: int = 1) -> None:
    async def poll():
        while len(fetcher.calls) < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=2)


@pytest.mark.asyncio
class TestScheduleRun:
    async def test_one_fetch_serves_every_subscription(
        self, test_settings, storage, fail_tracker, client, limiter
    ):
        for index in range(3):
            await storage.subscriptions.upsert(make_subscription(f"s{index}", url=URL))
        collection = collection_id(URL, "default", test_settings.shard_id)
        await storage.article_memory.add_entries(collection, [MemoryEntry(id="old-guid")])

        published = datetime.now(timezone.utc)
        articles = [
            make_article("Second", guid="new-2", published=published),
            make_article("First", guid="new-1", published=published - timedelta(minutes=5)),
        ]
        fetcher = FakeFetcher({URL: FetchResult(articles=articles, etag='"abc"')})
        run, _ = build_run(test_settings, storage, fail_tracker, client, limiter, fetcher)

        summary = await run.run()

        assert fetcher.calls == [URL]
        assert len(client.requests) == 6
        assert {r.channel_id for r in client.requests} == {f"channel-s{i}" for i in range(3)}
        channel_s0 = [r.body["content"] for r in client.requests if r.channel_id == "channel-s0"]
        assert [content.split("\n")[0] for content in channel_s0] == ["First", "Second"]
        memory_ids = [e.id for e in await storage.article_memory.get_entries(collection)]
        assert memory_ids == ["old-guid", "new-1", "new-2"]
        assert run.cached_headers[URL].etag == '"abc"'

        assert summary.url_count == 1
        assert summary.subscription_count == 3
        assert summary.fail_count == 0
        assert run.state == RunState.IDLE
        stats = await storage.cycle_stats.get("default")
        assert stats.subscription_count == 3
        assert stats.cycle_url_count == 1

    async def test_first_sight_remembers_without_sending(
        self, test_settings, storage, fail_tracker, client, limiter
    ):
        await storage.subscriptions.upsert(make_subscription("s1", url=URL))
        article = make_article("Old news", guid="g1", published=datetime.now(timezone.utc))
        fetcher = FakeFetcher({URL: FetchResult(articles=[article])})
        run, _ = build_run(test_settings, storage, fail_tracker, client, limiter, fetcher)

        await run.run()

        assert client.requests == []
        collection = collection_id(URL, "default", test_settings.shard_id)
        assert [e.id for e in await storage.article_memory.get_entries(collection)] == ["g1"]

    async def test_batches_are_split_across_workers(
        self, test_settings, storage, fail_tracker, client, limiter
    ):
        settings = test_settings.model_copy(update={"batch_size": 1, "parallel_batches": 2})
        for index in range(3):
            await storage.subscriptions.upsert(make_subscription(f"s{index}", url=f"https://{index}/feed"))
        run, factory = build_run(settings, storage, fail_tracker, client, limiter, FakeFetcher())

        groups = run.plan(await run.collect())
        assert [len(group) for group in groups] == [2, 1]

        summary = await run.run()

        assert len(factory.dispatches) == 3
        assert all(len(dispatch.batch) == 1 for dispatch in factory.dispatches)
        assert summary.url_count == 3

    async def test_excluded_subscriptions_stay_off_the_fast_tier(
        self, test_settings, storage, fail_tracker, client, limiter
    ):
        settings = test_settings.model_copy(
            update={
                "supporter_refresh_rate_minutes": 2,
                "fast_tier_excluded_subscription_ids": "s2",
            }
        )
        storage.supporters.guild_ids.add("100")
        await storage.subscriptions.upsert(make_subscription("s1", url="https://1/feed", guild_id="100"))
        await storage.subscriptions.upsert(make_subscription("s2", url="https://2/feed", guild_id="100"))
        await storage.subscriptions.upsert(make_subscription("s3", url="https://3/feed", guild_id="200"))

        default_run, _ = build_run(settings, storage, fail_tracker, client, limiter, FakeFetcher())
        supporter_run, _ = build_run(
            settings, storage, fail_tracker, client, limiter, FakeFetcher(), schedule_index=1
        )

        assert sorted(await default_run.collect()) == ["https://2/feed", "https://3/feed"]
        assert list(await supporter_run.collect()) == ["https://1/feed"]

    async def test_failures_are_recorded(self, test_settings, storage, fail_tracker, client, limiter):
        await storage.subscriptions.upsert(make_subscription("s1", url=URL))
        fetcher = FakeFetcher({URL: FeedFetchError(URL, "Bad status code (500)", 500)})
        run, _ = build_run(test_settings, storage, fail_tracker, client, limiter, fetcher)

        summary = await run.run()

        assert summary.fail_count == 1
        assert summary.url_count == 1
        record = await storage.fail_records.get(URL)
        assert record.reason == "Bad status code (500)"

    async def test_success_resets_fail_record(
        self, test_settings, storage, fail_tracker, client, limiter, an_hour_ago
    ):
        await storage.subscriptions.upsert(make_subscription("s1", url=URL))
        await storage.fail_records.upsert(FailRecord(url=URL, reason="timeout", failed_at=an_hour_ago))
        run, _ = build_run(test_settings, storage, fail_tracker, client, limiter, FakeFetcher())

        await run.run()

        assert await storage.fail_records.get(URL) is None

    async def test_excluded_urls_are_not_fetched(
        self, test_settings, storage, fail_tracker, client, limiter, now
    ):
        await storage.subscriptions.upsert(make_subscription("s1", url=URL))
        await storage.subscriptions.upsert(make_subscription("s2", url="https://ok/feed"))
        await storage.fail_records.upsert(
            FailRecord(url=URL, reason="timeout", failed_at=now - timedelta(hours=25), alerted=True)
        )
        fetcher = FakeFetcher()
        run, _ = build_run(test_settings, storage, fail_tracker, client, limiter, fetcher)

        summary = await run.run()

        assert fetcher.calls == ["https://ok/feed"]
        assert summary.subscription_count == 1

    async def test_disabled_subscriptions_are_not_fetched(
        self, test_settings, storage, fail_tracker, client, limiter
    ):
        await storage.subscriptions.upsert(make_subscription("s1", url=URL, disabled="Missing permissions"))
        fetcher = FakeFetcher()
        run, factory = build_run(test_settings, storage, fail_tracker, client, limiter, fetcher)

        summary = await run.run()

        assert fetcher.calls == []
        assert factory.dispatches == []
        assert summary.url_count == 0

    async def test_terminate_fails_outstanding_urls(
        self, test_settings, storage, fail_tracker, client, limiter
    ):
        await storage.subscriptions.upsert(make_subscription("s1", url=URL))
        await storage.subscriptions.upsert(make_subscription("s2", url="https://ok/feed"))
        fetcher = FakeFetcher()
        fetcher.hang.add(URL)
        run, factory = build_run(test_settings, storage, fail_tracker, client, limiter, fetcher)

        task = asyncio.create_task(run.run())
        await wait_for_calls(fetcher, 2)
        await asyncio.sleep(0.05)

        hung = await run.terminate()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert hung == [URL]
        assert (await storage.fail_records.get(URL)).reason == OVERRUN_REASON
        assert await storage.fail_records.get("https://ok/feed") is None
        assert run.summary.url_count == 1
        assert all(handle.killed for handle in factory.handles)
        assert not run.in_progress

    async def test_batch_timeout_fails_outstanding_urls(
        self, test_settings, storage, fail_tracker, client, limiter
    ):
        settings = test_settings.model_copy(update={"worker_batch_timeout_seconds": 1})
        await storage.subscriptions.upsert(make_subscription("s1", url=URL))
        fetcher = FakeFetcher()
        fetcher.hang.add(URL)
        run, factory = build_run(settings, storage, fail_tracker, client, limiter, fetcher)

        summary = await run.run()

        assert summary.fail_count == 1
        assert summary.url_count == 0
        assert (await storage.fail_records.get(URL)).reason == BATCH_TIMEOUT_REASON
        assert factory.handles[0].killed
