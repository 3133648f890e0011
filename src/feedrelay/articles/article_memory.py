"""Seen-sets ("article memory") keyed by (url, schedule, shard)."""

import hashlib
from abc import ABC, abstractmethod
from typing import Iterable

from pydantic import BaseModel, Field


def collection_id(url: str, schedule_name: str, shard_id: int) -> str:
    return hashlib.md5(f"{url}{shard_id}{schedule_name}".encode("utf-8")).hexdigest()


class MemoryEntry(BaseModel):
    id: str
    title: str | None = None
    comparisons: dict[str, str] = Field(default_factory=dict)


class ArticleMemory(BaseModel):
    """Read side of a seen-set, built from stored entries."""

    ids: set[str] = Field(default_factory=set)
    titles: set[str] = Field(default_factory=set)
    comparisons: dict[str, set[str]] = Field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: list[MemoryEntry]) -> "ArticleMemory":
        memory = cls()
        for entry in entries:
            memory.remember(entry)
        return memory

    @property
    def is_empty(self) -> bool:
        return not self.ids

    def remember(self, entry: MemoryEntry) -> None:
        self.ids.add(entry.id)
        if entry.title:
            self.titles.add(entry.title)
        for name, value in entry.comparisons.items():
            self.comparisons.setdefault(name, set()).add(value)

    def has_comparison(self, name: str, value: str) -> bool:
        return value in self.comparisons.get(name, ())


DEFAULT_MAX_ENTRIES = 1000


def merge_entries(
    existing: Iterable[MemoryEntry], new: Iterable[MemoryEntry], max_entries: int
) -> list[MemoryEntry]:
    """Append ``new`` to ``existing`` and keep the newest ``max_entries``.

    An id that is already stored is merged into one entry (latest title,
    comparison values updated) and moves to the end. ``max_entries`` of 0
    keeps everything.
    """
    merged: dict[str, MemoryEntry] = {}
    for entry in existing:
        merged[entry.id] = entry
    for entry in new:
        previous = merged.pop(entry.id, None)
        if previous is not None:
            entry = MemoryEntry(
                id=entry.id,
                title=entry.title or previous.title,
                comparisons={**previous.comparisons, **entry.comparisons},
            )
        merged[entry.id] = entry

    entries = list(merged.values())
    if max_entries > 0:
        return entries[-max_entries:]
    return entries


class ArticleMemoryRepository(ABC):
    @abstractmethod
    async def get_entries(self, collection: str) -> list[MemoryEntry]:
        pass

    async def get_many(self, collections: Iterable[str]) -> dict[str, list[MemoryEntry]]:
        return {collection: await self.get_entries(collection) for collection in collections}

    @abstractmethod
    async def add_entries(self, collection: str, entries: list[MemoryEntry]) -> None:
        """Merge ``entries`` into the collection, see :func:`merge_entries`."""
