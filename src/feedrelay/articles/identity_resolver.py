"""Stable dedup keys for the items of one fetch.

Every item of a fetch uses the same scheme: the first candidate that is
present and unique across the whole list, tried in a fixed order. The
content hash is the fallback when nothing else is unique.
"""

import hashlib
from typing import Callable, Optional, Sequence

import orjson

from feedrelay.articles.article import Article

GUID = "guid"
LINK = "link"
TITLE_DATE = "title_date"
CONTENT_HASH = "content_hash"


def content_hash(article: Article) -> str:
    canonical = orjson.dumps(article.fields, option=orjson.OPT_SORT_KEYS)
    return hashlib.sha256(canonical).hexdigest()


def _title_date(article: Article) -> Optional[str]:
    title = article.title
    date = article.get("date")
    if title and date:
        return f"{title}|{date}"
    return None


CANDIDATES: list[tuple[str, Callable[[Article], Optional[str]]]] = [
    (GUID, lambda article: article.guid),
    (LINK, lambda article: article.link),
    (TITLE_DATE, _title_date),
    (CONTENT_HASH, content_hash),
]


def choose_scheme(articles: Sequence[Article]) -> str:
    for name, extract in CANDIDATES:
        values = [extract(article) for article in articles]
        if all(values) and len(set(values)) == len(values):
            return name
    return CONTENT_HASH


def resolve_ids(articles: Sequence[Article]) -> tuple[str, list[Article]]:
    """Return the chosen scheme and copies of ``articles`` with ``id`` set.

    Deterministic: the same input always yields the same scheme and ids.
    """
    scheme = choose_scheme(articles)
    extract = dict(CANDIDATES)[scheme]
    return scheme, [article.model_copy(update={"id": extract(article)}) for article in articles]
