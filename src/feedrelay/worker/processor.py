"""Per-URL work done inside a worker process."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Callable

from feedrelay.articles.article_memory import ArticleMemory
from feedrelay.articles.fetcher import CachedHeaders, FeedFetcher
from feedrelay.articles.identity_resolver import resolve_ids
from feedrelay.articles.novelty import NoveltyChecker, NoveltyOptions
from feedrelay.main.exceptions import FeedFetchError
from feedrelay.main.logging import get_logger
from feedrelay.subscriptions.subscription import Subscription
from feedrelay.worker.messages import LinkCompletion, LinkStatus, WorkerDispatch

logger = get_logger(__name__)

Emit = Callable[[LinkCompletion], None]


class BatchProcessor:
    """Fetch every URL of a batch and emit one completion stream per URL.

    Each URL ends with exactly one ``success`` or ``failed`` message, whatever
    goes wrong while handling it.
    """

    def __init__(self, dispatch: WorkerDispatch, fetcher: FeedFetcher, emit: Emit):
        self.dispatch = dispatch
        self.fetcher = fetcher
        self.emit = emit
        config = dispatch.config
        self.novelty = NoveltyChecker(
            NoveltyOptions(
                check_titles=config.check_titles,
                check_dates=config.check_dates,
                max_age=timedelta(days=config.cycle_max_age_days),
                send_old_on_first_cycle=config.send_old_on_first_cycle,
            )
        )
        self._semaphore = asyncio.Semaphore(max(config.max_concurrent_requests, 1))

    async def run(self) -> None:
        await asyncio.gather(
            *(
                self._guarded(url, subscriptions)
                for url, subscriptions in self.dispatch.batch.items()
            )
        )

    async def _guarded(self, url: str, subscriptions: dict[str, Subscription]) -> None:
        async with self._semaphore:
            try:
                await self.process_url(url, list(subscriptions.values()))
            except FeedFetchError as e:
                self._debug(url, "Fetch failed", reason=e.reason)
                self.emit(LinkCompletion(url=url, status=LinkStatus.FAILED, failure_reason=e.reason))
            except Exception as e:
                logger.exception("Unexpected error processing feed", extra={"url": url})
                self.emit(
                    LinkCompletion(
                        url=url,
                        status=LinkStatus.FAILED,
                        failure_reason=f"Internal error ({e.__class__.__name__})",
                    )
                )

    def _debug(self, url: str, message: str, **extra) -> None:
        if url in self.dispatch.debug_urls:
            logger.info(message, extra={"url": url, **extra})

    async def process_url(self, url: str, subscriptions: list[Subscription]) -> None:
        cached = self.dispatch.cached_headers.get(url)
        cached_headers = (
            CachedHeaders(etag=cached.etag, last_modified=cached.last_modified) if cached else None
        )

        result = await self.fetcher.fetch(url, cached_headers)
        if result.not_modified:
            self._debug(url, "Feed not modified")
            self.emit(LinkCompletion(url=url, status=LinkStatus.SUCCESS))
            return

        if result.etag or result.last_modified:
            self.emit(
                LinkCompletion(
                    url=url,
                    status=LinkStatus.HEADERS,
                    etag=result.etag,
                    last_modified=result.last_modified,
                )
            )

        _, articles = resolve_ids(result.articles)
        memory = ArticleMemory.from_entries(self.dispatch.memory.get(url, []))
        novelty = self.novelty.check(
            articles, memory, subscriptions, self.dispatch.run_number
        )

        for article, subscription in novelty.deliveries:
            self.emit(
                LinkCompletion(
                    url=url,
                    status=LinkStatus.PENDING_ARTICLE,
                    pending_article=article,
                    subscription_id=subscription.id,
                )
            )

        self._debug(
            url,
            "Feed processed",
            article_count=len(articles),
            delivery_count=len(novelty.deliveries),
        )
        self.emit(
            LinkCompletion(
                url=url,
                status=LinkStatus.SUCCESS,
                memory_snapshot=novelty.new_entries or None,
            )
        )
