"""Repositories backed by :class:`JsonFileStore` for single-host deployments."""

from datetime import datetime
from typing import Optional

from feedrelay.articles.article_memory import (
    DEFAULT_MAX_ENTRIES,
    ArticleMemoryRepository,
    MemoryEntry,
    merge_entries,
)
from feedrelay.delivery.delivery_record import DeliveryRecord, DeliveryRecordRepository
from feedrelay.failures.fail_record import FailRecord
from feedrelay.failures.fail_record_repo import FailRecordRepository
from feedrelay.schedules.schedule import Schedule
from feedrelay.schedules.schedule_repo import ScheduleRepository
from feedrelay.stats.cycle_stats import CycleStats
from feedrelay.stats.cycle_stats_repo import CycleStatsRepository
from feedrelay.storage.file_store import JsonFileStore
from feedrelay.subscriptions.subscription import Subscription
from feedrelay.subscriptions.subscription_repo import SubscriptionRepository
from feedrelay.subscriptions.supporter_repo import SupporterRepository

SUBSCRIPTIONS = "subscriptions"
SUPPORTERS = "supporters"
SCHEDULES = "schedules"
FAIL_RECORDS = "fail_records"
DELIVERY_RECORDS = "delivery_records"
SCHEDULE_STATS = "schedule_stats"
ARTICLE_MEMORY = "article_memory"


class FileSubscriptionRepository(SubscriptionRepository):
    def __init__(self, store: JsonFileStore):
        self.store = store

    async def get_all(self) -> list[Subscription]:
        data = await self.store.read(SUBSCRIPTIONS, {})
        return [Subscription.model_validate(item) for item in data.values()]

    async def get_by_url(self, url: str) -> list[Subscription]:
        return [sub for sub in await self.get_all() if sub.url == url]

    async def upsert(self, subscription: Subscription) -> Subscription:
        def mutate(data: dict):
            data[subscription.id] = subscription.model_dump(mode="json")
            return data, subscription

        return await self.store.update(SUBSCRIPTIONS, {}, mutate)

    async def delete(self, subscription_id: str) -> None:
        def mutate(data: dict):
            data.pop(subscription_id, None)
            return data, None

        await self.store.update(SUBSCRIPTIONS, {}, mutate)


class FileSupporterRepository(SupporterRepository):
    def __init__(self, store: JsonFileStore):
        self.store = store

    async def get_guild_ids(self) -> set[str]:
        return set(await self.store.read(SUPPORTERS, []))

    async def add(self, guild_id: str) -> None:
        def mutate(data: list):
            if guild_id not in data:
                data.append(guild_id)
            return data, None

        await self.store.update(SUPPORTERS, [], mutate)

    async def remove(self, guild_id: str) -> None:
        def mutate(data: list):
            return [item for item in data if item != guild_id], None

        await self.store.update(SUPPORTERS, [], mutate)


class FileScheduleRepository(ScheduleRepository):
    def __init__(self, store: JsonFileStore):
        self.store = store

    async def get_all(self) -> list[Schedule]:
        data = await self.store.read(SCHEDULES, [])
        return [Schedule(**item) for item in data]

    async def upsert(self, schedule: Schedule) -> Schedule:
        item = {
            "name": schedule.name,
            "refresh_rate_minutes": schedule.refresh_rate_minutes,
            "subscription_ids": schedule.subscription_ids,
            "keywords": schedule.keywords,
        }

        def mutate(data: list):
            for index, existing in enumerate(data):
                if existing["name"] == schedule.name:
                    data[index] = item
                    break
            else:
                data.append(item)
            return data, schedule

        return await self.store.update(SCHEDULES, [], mutate)


def _fail_record_to_dict(record: FailRecord) -> dict:
    return {
        "url": record.url,
        "reason": record.reason,
        "failed_at": record.failed_at.isoformat(),
        "alerted": record.alerted,
    }


def _fail_record_from_dict(data: dict) -> FailRecord:
    return FailRecord(
        url=data["url"],
        reason=data.get("reason"),
        failed_at=datetime.fromisoformat(data["failed_at"]),
        alerted=data.get("alerted", False),
    )


class FileFailRecordRepository(FailRecordRepository):
    def __init__(self, store: JsonFileStore):
        self.store = store

    async def get(self, url: str) -> Optional[FailRecord]:
        data = await self.store.read(FAIL_RECORDS, {})
        return _fail_record_from_dict(data[url]) if url in data else None

    async def get_all(self) -> list[FailRecord]:
        data = await self.store.read(FAIL_RECORDS, {})
        records = [_fail_record_from_dict(item) for item in data.values()]
        return sorted(records, key=lambda record: record.failed_at)

    async def upsert(self, record: FailRecord) -> FailRecord:
        def mutate(data: dict):
            data[record.url] = _fail_record_to_dict(record)
            return data, record

        return await self.store.update(FAIL_RECORDS, {}, mutate)

    async def delete(self, url: str) -> bool:
        def mutate(data: dict):
            existed = data.pop(url, None) is not None
            return data, existed

        return await self.store.update(FAIL_RECORDS, {}, mutate)

    async def delete_all(self) -> int:
        return await self.store.update(FAIL_RECORDS, {}, lambda data: ({}, len(data)))


class FileDeliveryRecordRepository(DeliveryRecordRepository):
    def __init__(self, store: JsonFileStore):
        self.store = store

    async def add(self, record: DeliveryRecord) -> None:
        item = {
            "item_id": record.item_id,
            "source_url": record.source_url,
            "destination_channel": record.destination_channel,
            "subscription_id": record.subscription_id,
            "delivered": record.delivered,
            "comment": record.comment,
            "created_at": record.created_at.isoformat(),
        }

        def mutate(data: dict):
            data.setdefault(record.destination_channel, []).append(item)
            return data, None

        await self.store.update(DELIVERY_RECORDS, {}, mutate)

    async def get_by_channel(self, channel_id: str, limit: int = 100) -> list[DeliveryRecord]:
        data = await self.store.read(DELIVERY_RECORDS, {})
        items = list(reversed(data.get(channel_id, [])))[:limit]
        return [
            DeliveryRecord(
                item_id=item["item_id"],
                source_url=item["source_url"],
                destination_channel=item["destination_channel"],
                comment=item["comment"],
                delivered=item["delivered"],
                subscription_id=item.get("subscription_id"),
                created_at=datetime.fromisoformat(item["created_at"]),
            )
            for item in items
        ]


class FileCycleStatsRepository(CycleStatsRepository):
    def __init__(self, store: JsonFileStore):
        self.store = store

    @staticmethod
    def _from_dict(item: dict) -> CycleStats:
        return CycleStats(
            schedule_name=item["schedule_name"],
            subscription_count=item["subscription_count"],
            cycle_time_seconds=item["cycle_time_seconds"],
            cycle_fail_count=item["cycle_fail_count"],
            cycle_url_count=item["cycle_url_count"],
            last_updated=datetime.fromisoformat(item["last_updated"]),
        )

    async def get(self, schedule_name: str) -> Optional[CycleStats]:
        data = await self.store.read(SCHEDULE_STATS, {})
        return self._from_dict(data[schedule_name]) if schedule_name in data else None

    async def get_all(self) -> list[CycleStats]:
        data = await self.store.read(SCHEDULE_STATS, {})
        return [self._from_dict(item) for item in data.values()]

    async def upsert(self, stats: CycleStats) -> CycleStats:
        def mutate(data: dict):
            data[stats.schedule_name] = {
                "schedule_name": stats.schedule_name,
                "subscription_count": stats.subscription_count,
                "cycle_time_seconds": stats.cycle_time_seconds,
                "cycle_fail_count": stats.cycle_fail_count,
                "cycle_url_count": stats.cycle_url_count,
                "last_updated": stats.last_updated.isoformat(),
            }
            return data, stats

        return await self.store.update(SCHEDULE_STATS, {}, mutate)


class FileArticleMemoryRepository(ArticleMemoryRepository):
    """One document per collection, so a cycle only touches the URLs it fetched."""

    def __init__(self, store: JsonFileStore, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.store = store
        self.max_entries = max_entries

    @staticmethod
    def _name(collection: str) -> str:
        return f"{ARTICLE_MEMORY}.{collection}"

    async def get_entries(self, collection: str) -> list[MemoryEntry]:
        data = await self.store.read(self._name(collection), [])
        return [MemoryEntry.model_validate(item) for item in data]

    async def add_entries(self, collection: str, entries: list[MemoryEntry]) -> None:
        if not entries:
            return

        def mutate(data: list):
            existing = [MemoryEntry.model_validate(item) for item in data]
            merged = merge_entries(existing, entries, self.max_entries)
            return [entry.model_dump() for entry in merged], None

        await self.store.update(self._name(collection), [], mutate)
