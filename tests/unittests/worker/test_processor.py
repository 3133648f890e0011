from datetime import datetime, timedelta, timezone

import pytest

from feedrelay.articles.article_memory import MemoryEntry
from feedrelay.articles.fetcher import FetchResult
from feedrelay.main.exceptions import FeedFetchError
from feedrelay.worker.messages import CachedHeadersModel, LinkStatus, WorkerConfig, WorkerDispatch
from feedrelay.worker.processor import BatchProcessor
from tests.unittests.fakes import FakeFetcher, make_article, make_subscription

URL = "https://example.com/feed.xml"


def dispatch(test_settings, memory=None, cached_headers=None, urls=(URL,)) -> WorkerDispatch:
    return WorkerDispatch(
        config=WorkerConfig.from_settings(test_settings),
        batch={url: {"s1": make_subscription("s1", url=url)} for url in urls},
        cached_headers=cached_headers or {},
        memory=memory or {},
        run_number=1,
        schedule_name="default",
    )


async def run(dispatch_, fetcher):
    emitted = []
    await BatchProcessor(dispatch_, fetcher, emitted.append).run()
    return emitted


@pytest.mark.asyncio
class TestBatchProcessor:
    async def test_not_modified_closes_with_success(self, test_settings):
        fetcher = FakeFetcher({URL: FetchResult(not_modified=True)})
        headers = {URL: CachedHeadersModel(etag='"v1"')}

        emitted = await run(dispatch(test_settings, cached_headers=headers), fetcher)

        assert [c.status for c in emitted] == [LinkStatus.SUCCESS]
        assert fetcher.cached[URL].etag == '"v1"'

    async def test_new_article_is_emitted_before_success(self, test_settings):
        article = make_article(
            "Fresh", guid="new", published=datetime.now(timezone.utc) - timedelta(minutes=1)
        )
        fetcher = FakeFetcher({URL: FetchResult(articles=[article], etag='"v2"')})
        memory = {URL: [MemoryEntry(id="old")]}

        emitted = await run(dispatch(test_settings, memory=memory), fetcher)

        assert [c.status for c in emitted] == [
            LinkStatus.HEADERS,
            LinkStatus.PENDING_ARTICLE,
            LinkStatus.SUCCESS,
        ]
        assert emitted[0].etag == '"v2"'
        assert emitted[1].pending_article.id == "new"
        assert emitted[1].subscription_id == "s1"
        assert [entry.id for entry in emitted[2].memory_snapshot] == ["new"]

    async def test_fetch_errors_close_with_failed(self, test_settings):
        fetcher = FakeFetcher({URL: FeedFetchError(URL, "Bad status code (404)", 404)})

        emitted = await run(dispatch(test_settings), fetcher)

        assert len(emitted) == 1
        assert emitted[0].status == LinkStatus.FAILED
        assert emitted[0].failure_reason == "Bad status code (404)"

    async def test_unexpected_errors_close_with_failed(self, test_settings):
        fetcher = FakeFetcher({URL: RuntimeError("boom")})

        emitted = await run(dispatch(test_settings), fetcher)

        assert emitted[0].failure_reason == "Internal error (RuntimeError)"

    async def test_every_url_closes_exactly_once(self, test_settings):
        urls = [f"https://{i}/feed" for i in range(5)]
        fetcher = FakeFetcher({urls[1]: FeedFetchError(urls[1], "Connection timed out")})

        emitted = await run(dispatch(test_settings, urls=urls), fetcher)

        closing = [c.url for c in emitted if c.closes_url]
        assert sorted(closing) == sorted(urls)
