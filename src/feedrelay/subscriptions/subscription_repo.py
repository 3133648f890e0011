from abc import ABC, abstractmethod

from feedrelay.subscriptions.subscription import Subscription


class SubscriptionRepository(ABC):
    @abstractmethod
    async def get_all(self) -> list[Subscription]:
        pass

    @abstractmethod
    async def get_by_url(self, url: str) -> list[Subscription]:
        """All subscriptions currently pointing at ``url``."""
        pass

    @abstractmethod
    async def upsert(self, subscription: Subscription) -> Subscription:
        pass

    @abstractmethod
    async def delete(self, subscription_id: str) -> None:
        pass
