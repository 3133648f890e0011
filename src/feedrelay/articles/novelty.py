"""Decide which fetched articles are new for which subscriptions."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

from feedrelay.articles.article import Article
from feedrelay.articles.article_memory import ArticleMemory, MemoryEntry
from feedrelay.subscriptions.subscription import Subscription

# Names handled by the built-in checks; never treated as custom comparisons
RESERVED_COMPARISONS = {"title", "guid", "pubdate"}


@dataclass
class NoveltyOptions:
    check_titles: bool = False
    check_dates: bool = True
    max_age: timedelta = timedelta(days=1)
    send_old_on_first_cycle: bool = True


@dataclass
class NoveltyResult:
    deliveries: list[tuple[Article, Subscription]] = field(default_factory=list)
    new_entries: list[MemoryEntry] = field(default_factory=list)


def custom_comparisons(subscriptions: Iterable[Subscription]) -> list[str]:
    names: list[str] = []
    for subscription in subscriptions:
        for name in subscription.comparisons:
            if name not in RESERVED_COMPARISONS and name not in names:
                names.append(name)
    return names


def _entry_for(article: Article, comparison_names: Sequence[str]) -> MemoryEntry:
    return MemoryEntry(
        id=article.id,
        title=article.title,
        comparisons={
            name: value
            for name in comparison_names
            if (value := article.get(name)) is not None
        },
    )


def _oldest_first(articles: Sequence[Article]) -> list[Article]:
    # Undated articles keep their feed position relative to each other
    indexed = list(enumerate(articles))
    if all(article.published is not None for article in articles):
        indexed.sort(key=lambda pair: pair[1].published)
        return [article for _, article in indexed]
    # Feeds list newest first
    return [article for _, article in reversed(indexed)]


class NoveltyChecker:
    def __init__(self, options: NoveltyOptions, now: Optional[datetime] = None):
        self.options = options
        self.now = now or datetime.now(timezone.utc)

    def _date_is_old(self, article: Article) -> bool:
        if article.published is None:
            return True
        return article.published < self.now - self.options.max_age

    def _is_seen(
        self,
        article: Article,
        subscription: Subscription,
        memory: ArticleMemory,
        sent_titles: set[str],
    ) -> bool:
        if article.id in memory.ids:
            return True

        check_titles = (
            subscription.check_titles
            if subscription.check_titles is not None
            else self.options.check_titles
        )
        if check_titles and article.title and (
            article.title in memory.titles or article.title in sent_titles
        ):
            return True

        check_dates = (
            subscription.check_dates
            if subscription.check_dates is not None
            else self.options.check_dates
        )
        return check_dates and self._date_is_old(article)

    def _has_new_comparison(
        self, article: Article, subscription: Subscription, memory: ArticleMemory
    ) -> bool:
        for name in subscription.comparisons:
            if name in RESERVED_COMPARISONS:
                continue
            value = article.get(name)
            if value is not None and not memory.has_comparison(name, value):
                return True
        return False

    def check(
        self,
        articles: Sequence[Article],
        memory: ArticleMemory,
        subscriptions: Sequence[Subscription],
        run_number: int,
    ) -> NoveltyResult:
        """Articles must already carry resolved ids."""
        result = NoveltyResult()
        comparison_names = custom_comparisons(subscriptions)

        if memory.is_empty:
            # First sight of this collection: remember everything, send nothing
            result.new_entries = [_entry_for(article, comparison_names) for article in articles]
            return result

        suppress_sends = run_number == 0 and not self.options.send_old_on_first_cycle
        sent_titles: dict[str, set[str]] = {}

        for article in _oldest_first(articles):
            for subscription in subscriptions:
                titles = sent_titles.setdefault(subscription.id, set())
                seen = self._is_seen(article, subscription, memory, titles)
                if seen and not self._has_new_comparison(article, subscription, memory):
                    continue
                if suppress_sends:
                    continue
                result.deliveries.append((article, subscription))
                if article.title:
                    titles.add(article.title)

            entry = _entry_for(article, comparison_names)
            if article.id not in memory.ids or any(
                not memory.has_comparison(name, value)
                for name, value in entry.comparisons.items()
            ):
                result.new_entries.append(entry)

        for entry in result.new_entries:
            memory.remember(entry)

        return result
