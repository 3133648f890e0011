import re
from dataclasses import dataclass
from typing import Any

from feedrelay.articles.article import Article
from feedrelay.articles.filters import FilterResult, evaluate_filters
from feedrelay.subscriptions.subscription import DEFAULT_TEXT_TEMPLATE, Subscription

_PLACEHOLDER = re.compile(r"\{([a-z_:]+)\}")


@dataclass
class RenderedArticle:
    text: str
    payload: dict[str, Any]
    passed: bool
    filter_result: FilterResult


class ArticleRenderer:
    """Fill a subscription's text template and run its filters.

    Unknown placeholders resolve against the article's raw fields (``{other:x}``
    or ``{x}``); anything still missing renders as an empty string.
    """

    def render_text(self, article: Article, template: str | None) -> str:
        def substitute(match: re.Match) -> str:
            name = match.group(1).removeprefix("other:")
            return article.get(name) or ""

        text = _PLACEHOLDER.sub(substitute, template or DEFAULT_TEXT_TEMPLATE)
        # Collapse blank lines left by empty placeholders
        return re.sub(r"\n{3,}", "\n\n", text).strip()

    def render(self, article: Article, subscription: Subscription) -> RenderedArticle:
        text = self.render_text(article, subscription.text)
        payload: dict[str, Any] = {"content": text}
        if subscription.webhook is not None:
            if subscription.webhook.name:
                payload["username"] = subscription.webhook.name
            if subscription.webhook.avatar_url:
                payload["avatar_url"] = subscription.webhook.avatar_url

        filter_result = evaluate_filters(article, subscription)
        return RenderedArticle(
            text=text,
            payload=payload,
            passed=filter_result.passed,
            filter_result=filter_result,
        )
