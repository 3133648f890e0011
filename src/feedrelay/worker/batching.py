"""Group subscriptions by source URL and split the URLs into worker batches."""

from math import ceil
from typing import Iterable

from feedrelay.subscriptions.subscription import Subscription

# url -> subscription id -> subscription
Batch = dict[str, dict[str, Subscription]]
BatchGroup = list[Batch]


def group_by_url(subscriptions: Iterable[Subscription]) -> Batch:
    """One entry per unique URL so a single fetch serves every subscriber."""
    grouped: Batch = {}
    for subscription in subscriptions:
        grouped.setdefault(subscription.url, {})[subscription.id] = subscription
    return grouped


def create_batches(grouped: Batch, batch_size: int) -> list[Batch]:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    batches: list[Batch] = []
    current: Batch = {}
    for url, subscriptions in grouped.items():
        current[url] = subscriptions
        if len(current) >= batch_size:
            batches.append(current)
            current = {}
    if current:
        batches.append(current)
    return batches


def create_batch_groups(batches: list[Batch], group_count: int) -> list[BatchGroup]:
    """Split ``batches`` into at most ``group_count`` consecutive groups.

    Each group holds ``ceil(len(batches) / group_count)`` batches except the
    last, so five batches over two groups become sizes 3 and 2.
    """
    if group_count <= 0:
        raise ValueError("group_count must be positive")
    if not batches:
        return []

    per_group = ceil(len(batches) / group_count)
    return [batches[start : start + per_group] for start in range(0, len(batches), per_group)]
