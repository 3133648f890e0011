"""Per-subscription pass/block filters.

Word lists per article field: plain terms match whole words, ``~term``
matches anywhere, ``!`` negates either form. A field may instead carry a
regex. Every filtered field must exist on the article and pass.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache

from feedrelay.articles.article import Article
from feedrelay.main.logging import get_logger
from feedrelay.subscriptions.subscription import Subscription

logger = get_logger(__name__)


@dataclass
class FilterResult:
    passed: bool
    matches: dict[str, list[str]] = field(default_factory=dict)
    blocked_by: dict[str, list[str]] = field(default_factory=dict)


@lru_cache(maxsize=4096)
def _word_pattern(term: str) -> re.Pattern:
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE)


class TermFilter:
    def __init__(self, raw: str):
        term = raw
        self.negated = term.startswith("!")
        if self.negated:
            term = term[1:]
        self.broad = term.startswith("~")
        if self.broad:
            term = term[1:]
        self.term = term.strip()
        self.raw = raw

    def matches(self, reference: str) -> bool:
        if not self.term:
            return False
        if self.broad:
            return self.term.lower() in reference.lower()
        return _word_pattern(self.term).search(reference) is not None


def _reference(article: Article, category: str) -> str | None:
    return article.get(category.removeprefix("other:"))


def _evaluate_terms(terms: list[str], reference: str) -> tuple[bool, list[str]]:
    parsed = [TermFilter(term) for term in terms]
    negated = [term for term in parsed if term.negated]
    regular = [term for term in parsed if not term.negated]

    blocked = [term.raw for term in negated if term.matches(reference)]
    if blocked:
        return False, blocked
    if not regular:
        return True, []

    matched = [term.raw for term in regular if term.matches(reference)]
    return bool(matched), matched


def _evaluate_regex(pattern: str, reference: str) -> bool:
    try:
        return re.search(pattern, reference, re.IGNORECASE) is not None
    except re.error:
        logger.warning("Invalid regex filter", extra={"pattern": pattern})
        return False


def evaluate_filters(article: Article, subscription: Subscription) -> FilterResult:
    if not subscription.has_filters:
        return FilterResult(passed=True)

    categories = list(subscription.filters) + list(subscription.regex_filters)
    if not all(_reference(article, category) for category in categories):
        return FilterResult(passed=False)

    result = FilterResult(passed=True)
    for category, terms in subscription.filters.items():
        passed, matched = _evaluate_terms(terms, _reference(article, category))
        target = result.matches if passed else result.blocked_by
        if matched:
            target[category] = matched
        result.passed = result.passed and passed

    for category, pattern in subscription.regex_filters.items():
        passed = _evaluate_regex(pattern, _reference(article, category))
        (result.matches if passed else result.blocked_by)[category] = [pattern]
        result.passed = result.passed and passed

    return result
