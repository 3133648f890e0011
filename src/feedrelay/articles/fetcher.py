"""Feed retrieval and parsing.

Parsing rules are feedparser's; this module only flattens entries into
``Article`` objects and maps failures onto ``FeedFetchError``/``FeedParseError``.
"""

import asyncio
import calendar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import aiohttp
import feedparser

from feedrelay.articles.article import Article
from feedrelay.main.exceptions import FeedFetchError, FeedParseError
from feedrelay.main.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "feedrelay/1.0 (+RSS delivery)"

# Entry keys we already map explicitly or that are feedparser internals
_SKIPPED_KEYS = {"id", "links", "tags", "title_detail", "summary_detail", "content", "authors"}


@dataclass
class CachedHeaders:
    etag: Optional[str] = None
    last_modified: Optional[str] = None


@dataclass
class FetchResult:
    articles: list[Article] = field(default_factory=list)
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False


class FeedFetcher(Protocol):
    async def fetch(self, url: str, cached: Optional[CachedHeaders] = None) -> FetchResult: ...


def _parse_date(entry: dict) -> Optional[datetime]:
    for name in ("published_parsed", "updated_parsed", "created_parsed"):
        parsed = entry.get(name)
        if not parsed:
            continue
        try:
            return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            continue
    return None


def entry_to_article(entry: dict[str, Any]) -> Article:
    fields: dict[str, str] = {}

    for key, value in entry.items():
        if key in _SKIPPED_KEYS or key.endswith("_parsed"):
            continue
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            fields[key] = str(value).strip()

    if entry.get("id"):
        fields["guid"] = str(entry["id"]).strip()
    if "description" not in fields and entry.get("summary"):
        fields["description"] = str(entry["summary"]).strip()
    if entry.get("content"):
        fields["content"] = "\n".join(
            part.get("value", "") for part in entry["content"] if part.get("value")
        )
    if entry.get("tags"):
        fields["tags"] = ", ".join(tag.get("term", "") for tag in entry["tags"] if tag.get("term"))

    published = _parse_date(entry)
    if published is not None:
        fields["date"] = published.isoformat()

    return Article(fields=fields, published=published)


def parse_feed(url: str, body: bytes) -> list[Article]:
    parsed = feedparser.parse(body)
    if parsed.bozo and not parsed.entries:
        raise FeedParseError(url, f"Invalid feed ({parsed.get('bozo_exception')})")
    if not parsed.entries and not parsed.get("feed"):
        raise FeedParseError(url, "Not a valid feed")
    return [entry_to_article(entry) for entry in parsed.entries]


class HttpFeedFetcher:
    def __init__(self, session: aiohttp.ClientSession, timeout_seconds: float = 15):
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def fetch(self, url: str, cached: Optional[CachedHeaders] = None) -> FetchResult:
        headers = {"User-Agent": USER_AGENT}
        if cached is not None:
            if cached.etag:
                headers["If-None-Match"] = cached.etag
            if cached.last_modified:
                headers["If-Modified-Since"] = cached.last_modified

        try:
            async with self.session.get(url, headers=headers, timeout=self.timeout) as response:
                if response.status == 304:
                    return FetchResult(
                        not_modified=True,
                        etag=cached.etag if cached else None,
                        last_modified=cached.last_modified if cached else None,
                    )
                if response.status >= 400:
                    raise FeedFetchError(url, f"Bad status code ({response.status})", response.status)

                body = await response.read()
                etag = response.headers.get("ETag")
                last_modified = response.headers.get("Last-Modified")
        except asyncio.TimeoutError as e:
            raise FeedFetchError(url, "Connection timed out") from e
        except aiohttp.ClientError as e:
            raise FeedFetchError(url, f"Connection failed ({e.__class__.__name__})") from e

        articles = parse_feed(url, body)
        logger.debug("Fetched feed", extra={"url": url, "article_count": len(articles)})
        return FetchResult(articles=articles, etag=etag, last_modified=last_modified)
