from abc import ABC, abstractmethod


class SupporterRepository(ABC):
    """Guilds entitled to the fast-tier schedule and larger delivery budgets."""

    @abstractmethod
    async def get_guild_ids(self) -> set[str]:
        pass

    @abstractmethod
    async def add(self, guild_id: str) -> None:
        pass

    @abstractmethod
    async def remove(self, guild_id: str) -> None:
        pass
