"""SQLAlchemy implementations of the repositories.

Every repository is long-lived and opens its own short transaction per call,
so the schedule manager can share them across concurrent runs.
"""

from typing import Iterable, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert

from feedrelay.articles.article_memory import (
    DEFAULT_MAX_ENTRIES,
    ArticleMemoryRepository,
    MemoryEntry,
    merge_entries,
)
from feedrelay.database.database import DatabaseSessionManager
from feedrelay.database.tables.article_memory_table import ArticleMemory as ArticleMemoryTable
from feedrelay.database.tables.delivery_record_table import DeliveryRecords
from feedrelay.database.tables.fail_record_table import FailRecords
from feedrelay.database.tables.schedule_stats_table import ScheduleStats
from feedrelay.database.tables.schedule_table import Schedules, Supporters
from feedrelay.database.tables.subscription_table import Subscriptions
from feedrelay.delivery.delivery_record import DeliveryRecord, DeliveryRecordRepository
from feedrelay.failures.fail_record import FailRecord
from feedrelay.failures.fail_record_repo import FailRecordRepository
from feedrelay.main.logging import get_logger
from feedrelay.schedules.schedule import Schedule
from feedrelay.schedules.schedule_repo import ScheduleRepository
from feedrelay.stats.cycle_stats import CycleStats
from feedrelay.stats.cycle_stats_repo import CycleStatsRepository
from feedrelay.subscriptions.subscription import Subscription, Webhook
from feedrelay.subscriptions.subscription_repo import SubscriptionRepository
from feedrelay.subscriptions.supporter_repo import SupporterRepository

logger = get_logger(__name__)


class SubscriptionRepositoryImpl(SubscriptionRepository):
    def __init__(self, sessionmanager: DatabaseSessionManager):
        self.sessionmanager = sessionmanager

    def _to_domain(self, table: Subscriptions) -> Subscription:
        return Subscription(
            id=table.id,
            url=table.url,
            channel_id=table.channel_id,
            guild_id=table.guild_id,
            webhook=Webhook.model_validate(table.webhook) if table.webhook else None,
            text=table.text,
            filters=table.filters or {},
            regex_filters=table.regex_filters or {},
            comparisons=table.comparisons or [],
            disabled=table.disabled,
            check_titles=table.check_titles,
            check_dates=table.check_dates,
        )

    async def get_all(self) -> list[Subscription]:
        async with self.sessionmanager.transaction() as session:
            rows = await session.scalars(sa.select(Subscriptions))
            return [self._to_domain(row) for row in rows]

    async def get_by_url(self, url: str) -> list[Subscription]:
        async with self.sessionmanager.transaction() as session:
            rows = await session.scalars(sa.select(Subscriptions).where(Subscriptions.url == url))
            return [self._to_domain(row) for row in rows]

    async def upsert(self, subscription: Subscription) -> Subscription:
        values = subscription.model_dump(mode="json")
        stmt = insert(Subscriptions).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscriptions.id],
            set_={key: stmt.excluded[key] for key in values if key != "id"},
        ).returning(Subscriptions)

        async with self.sessionmanager.transaction() as session:
            row = await session.scalar(stmt)
            return self._to_domain(row)

    async def delete(self, subscription_id: str) -> None:
        async with self.sessionmanager.transaction() as session:
            await session.execute(sa.delete(Subscriptions).where(Subscriptions.id == subscription_id))


class SupporterRepositoryImpl(SupporterRepository):
    def __init__(self, sessionmanager: DatabaseSessionManager):
        self.sessionmanager = sessionmanager

    async def get_guild_ids(self) -> set[str]:
        async with self.sessionmanager.transaction() as session:
            rows = await session.scalars(sa.select(Supporters.guild_id))
            return set(rows)

    async def add(self, guild_id: str) -> None:
        stmt = insert(Supporters).values(guild_id=guild_id).on_conflict_do_nothing()
        async with self.sessionmanager.transaction() as session:
            await session.execute(stmt)

    async def remove(self, guild_id: str) -> None:
        async with self.sessionmanager.transaction() as session:
            await session.execute(sa.delete(Supporters).where(Supporters.guild_id == guild_id))


class ScheduleRepositoryImpl(ScheduleRepository):
    def __init__(self, sessionmanager: DatabaseSessionManager):
        self.sessionmanager = sessionmanager

    def _to_domain(self, table: Schedules) -> Schedule:
        return Schedule(
            name=table.name,
            refresh_rate_minutes=table.refresh_rate_minutes,
            subscription_ids=list(table.subscription_ids or []),
            keywords=list(table.keywords or []),
        )

    async def get_all(self) -> list[Schedule]:
        query = sa.select(Schedules).order_by(Schedules.position, Schedules.created_at)
        async with self.sessionmanager.transaction() as session:
            rows = await session.scalars(query)
            return [self._to_domain(row) for row in rows]

    async def upsert(self, schedule: Schedule) -> Schedule:
        async with self.sessionmanager.transaction() as session:
            position = await session.scalar(
                sa.select(sa.func.coalesce(sa.func.max(Schedules.position) + 1, 0))
            )
            stmt = insert(Schedules).values(
                name=schedule.name,
                refresh_rate_minutes=schedule.refresh_rate_minutes,
                subscription_ids=schedule.subscription_ids,
                keywords=schedule.keywords,
                position=position,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Schedules.name],
                set_={
                    "refresh_rate_minutes": stmt.excluded.refresh_rate_minutes,
                    "subscription_ids": stmt.excluded.subscription_ids,
                    "keywords": stmt.excluded.keywords,
                },
            ).returning(Schedules)
            row = await session.scalar(stmt)
            return self._to_domain(row)


class FailRecordRepositoryImpl(FailRecordRepository):
    def __init__(self, sessionmanager: DatabaseSessionManager):
        self.sessionmanager = sessionmanager

    def _to_domain(self, table: FailRecords) -> FailRecord:
        return FailRecord(
            url=table.url,
            reason=table.reason,
            failed_at=table.failed_at,
            alerted=table.alerted,
        )

    async def get(self, url: str) -> Optional[FailRecord]:
        async with self.sessionmanager.transaction() as session:
            row = await session.scalar(sa.select(FailRecords).where(FailRecords.url == url))
            return self._to_domain(row) if row else None

    async def get_all(self) -> list[FailRecord]:
        async with self.sessionmanager.transaction() as session:
            rows = await session.scalars(sa.select(FailRecords).order_by(FailRecords.failed_at))
            return [self._to_domain(row) for row in rows]

    async def upsert(self, record: FailRecord) -> FailRecord:
        stmt = insert(FailRecords).values(
            url=record.url,
            reason=record.reason,
            failed_at=record.failed_at,
            alerted=record.alerted,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FailRecords.url],
            set_={
                "reason": stmt.excluded.reason,
                "failed_at": stmt.excluded.failed_at,
                "alerted": stmt.excluded.alerted,
            },
        ).returning(FailRecords)

        async with self.sessionmanager.transaction() as session:
            row = await session.scalar(stmt)
            return self._to_domain(row)

    async def delete(self, url: str) -> bool:
        async with self.sessionmanager.transaction() as session:
            result = await session.execute(sa.delete(FailRecords).where(FailRecords.url == url))
            return result.rowcount > 0

    async def delete_all(self) -> int:
        async with self.sessionmanager.transaction() as session:
            result = await session.execute(sa.delete(FailRecords))
            return result.rowcount


class DeliveryRecordRepositoryImpl(DeliveryRecordRepository):
    def __init__(self, sessionmanager: DatabaseSessionManager):
        self.sessionmanager = sessionmanager

    def _to_domain(self, table: DeliveryRecords) -> DeliveryRecord:
        return DeliveryRecord(
            item_id=table.item_id,
            source_url=table.source_url,
            destination_channel=table.destination_channel,
            comment=table.comment,
            delivered=table.delivered,
            subscription_id=table.subscription_id,
            created_at=table.created_at,
        )

    async def add(self, record: DeliveryRecord) -> None:
        async with self.sessionmanager.transaction() as session:
            await session.execute(
                sa.insert(DeliveryRecords).values(
                    item_id=record.item_id,
                    source_url=record.source_url,
                    destination_channel=record.destination_channel,
                    subscription_id=record.subscription_id,
                    delivered=record.delivered,
                    comment=record.comment,
                    created_at=record.created_at,
                )
            )

    async def get_by_channel(self, channel_id: str, limit: int = 100) -> list[DeliveryRecord]:
        query = (
            sa.select(DeliveryRecords)
            .where(DeliveryRecords.destination_channel == channel_id)
            .order_by(DeliveryRecords.created_at.desc())
            .limit(limit)
        )
        async with self.sessionmanager.transaction() as session:
            rows = await session.scalars(query)
            return [self._to_domain(row) for row in rows]


class CycleStatsRepositoryImpl(CycleStatsRepository):
    def __init__(self, sessionmanager: DatabaseSessionManager):
        self.sessionmanager = sessionmanager

    def _to_domain(self, table: ScheduleStats) -> CycleStats:
        return CycleStats(
            schedule_name=table.schedule_name,
            subscription_count=table.subscription_count,
            cycle_time_seconds=table.cycle_time_seconds,
            cycle_fail_count=table.cycle_fail_count,
            cycle_url_count=table.cycle_url_count,
            last_updated=table.last_updated,
        )

    async def get(self, schedule_name: str) -> Optional[CycleStats]:
        query = sa.select(ScheduleStats).where(ScheduleStats.schedule_name == schedule_name)
        async with self.sessionmanager.transaction() as session:
            row = await session.scalar(query)
            return self._to_domain(row) if row else None

    async def get_all(self) -> list[CycleStats]:
        async with self.sessionmanager.transaction() as session:
            rows = await session.scalars(sa.select(ScheduleStats))
            return [self._to_domain(row) for row in rows]

    async def upsert(self, stats: CycleStats) -> CycleStats:
        stmt = insert(ScheduleStats).values(
            schedule_name=stats.schedule_name,
            subscription_count=stats.subscription_count,
            cycle_time_seconds=stats.cycle_time_seconds,
            cycle_fail_count=stats.cycle_fail_count,
            cycle_url_count=stats.cycle_url_count,
            last_updated=stats.last_updated,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ScheduleStats.schedule_name],
            set_={
                "subscription_count": stmt.excluded.subscription_count,
                "cycle_time_seconds": stmt.excluded.cycle_time_seconds,
                "cycle_fail_count": stmt.excluded.cycle_fail_count,
                "cycle_url_count": stmt.excluded.cycle_url_count,
                "last_updated": stmt.excluded.last_updated,
            },
        ).returning(ScheduleStats)

        async with self.sessionmanager.transaction() as session:
            row = await session.scalar(stmt)
            return self._to_domain(row)


class ArticleMemoryRepositoryImpl(ArticleMemoryRepository):
    def __init__(self, sessionmanager: DatabaseSessionManager, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.sessionmanager = sessionmanager
        self.max_entries = max_entries

    def _to_domain(self, table: ArticleMemoryTable) -> MemoryEntry:
        return MemoryEntry(id=table.article_id, title=table.title, comparisons=table.comparisons or {})

    async def get_entries(self, collection: str) -> list[MemoryEntry]:
        return (await self.get_many([collection]))[collection]

    async def get_many(self, collections: Iterable[str]) -> dict[str, list[MemoryEntry]]:
        collections = list(collections)
        result: dict[str, list[MemoryEntry]] = {collection: [] for collection in collections}
        if not collections:
            return result

        query = (
            sa.select(ArticleMemoryTable)
            .where(ArticleMemoryTable.collection.in_(collections))
            .order_by(ArticleMemoryTable.id)
        )
        async with self.sessionmanager.transaction() as session:
            for row in await session.scalars(query):
                result[row.collection].append(self._to_domain(row))
        return result

    async def add_entries(self, collection: str, entries: list[MemoryEntry]) -> None:
        if not entries:
            return

        query = (
            sa.select(ArticleMemoryTable)
            .where(ArticleMemoryTable.collection == collection)
            .order_by(ArticleMemoryTable.id)
        )
        async with self.sessionmanager.transaction() as session:
            rows = list(await session.scalars(query))
            merged = merge_entries([self._to_domain(row) for row in rows], entries, self.max_entries)

            new_ids = {entry.id for entry in entries}
            kept_ids = {entry.id for entry in merged}
            # Re-seen ids are rewritten as one merged row at the end
            stale = [row.id for row in rows if row.article_id in new_ids or row.article_id not in kept_ids]
            if stale:
                await session.execute(sa.delete(ArticleMemoryTable).where(ArticleMemoryTable.id.in_(stale)))

            inserts = [entry for entry in merged if entry.id in new_ids]
            if inserts:
                await session.execute(
                    sa.insert(ArticleMemoryTable),
                    [
                        {
                            "collection": collection,
                            "article_id": entry.id,
                            "title": entry.title,
                            "comparisons": entry.comparisons,
                        }
                        for entry in inserts
                    ],
                )
        logger.debug(
            "Stored article memory",
            extra={"collection": collection, "count": len(inserts), "dropped": len(stale)},
        )
