"""Subscription model: one destination bound to one source URL."""

from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_TEXT_TEMPLATE = "{title}\n{link}"


class Webhook(BaseModel):
    id: str
    url: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class Subscription(BaseModel):
    """A destination's binding to a source URL plus its filters and formatting.

    Instances are sent to worker processes as part of a batch, so the model
    stays plain data (no repository or client references).
    """

    id: str
    url: str
    channel_id: str
    guild_id: str
    webhook: Optional[Webhook] = None
    text: str = DEFAULT_TEXT_TEMPLATE
    filters: dict[str, list[str]] = Field(default_factory=dict)
    regex_filters: dict[str, str] = Field(default_factory=dict)
    comparisons: list[str] = Field(default_factory=list)
    disabled: Optional[str] = None
    check_titles: Optional[bool] = None
    check_dates: Optional[bool] = None

    @property
    def is_disabled(self) -> bool:
        return self.disabled is not None

    @property
    def has_filters(self) -> bool:
        return bool(self.filters) or bool(self.regex_filters)


# What a worker receives per subscription. Kept as an alias so the batch
# structure reads the same on both sides of the process boundary.
SubscriptionSnapshot = Subscription
