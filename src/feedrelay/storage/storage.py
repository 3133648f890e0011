from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from feedrelay.articles.article_memory import ArticleMemoryRepository
from feedrelay.delivery.delivery_record import DeliveryRecordRepository
from feedrelay.failures.fail_record_repo import FailRecordRepository
from feedrelay.main.config import Settings
from feedrelay.main.logging import get_logger
from feedrelay.schedules.schedule_repo import ScheduleRepository
from feedrelay.stats.cycle_stats_repo import CycleStatsRepository
from feedrelay.subscriptions.subscription_repo import SubscriptionRepository
from feedrelay.subscriptions.supporter_repo import SupporterRepository

logger = get_logger(__name__)


@dataclass
class Storage:
    """Every repository the scheduler needs, built for one backend."""

    subscriptions: SubscriptionRepository
    schedules: ScheduleRepository
    supporters: SupporterRepository
    fail_records: FailRecordRepository
    delivery_records: DeliveryRecordRepository
    cycle_stats: CycleStatsRepository
    article_memory: ArticleMemoryRepository
    on_close: Optional[Callable[[], Awaitable[None]]] = None

    async def close(self) -> None:
        if self.on_close is not None:
            await self.on_close()


def _build_file_storage(settings: Settings) -> Storage:
    from feedrelay.storage import file_repos
    from feedrelay.storage.file_store import JsonFileStore

    store = JsonFileStore(settings.file_storage_path)
    return Storage(
        subscriptions=file_repos.FileSubscriptionRepository(store),
        schedules=file_repos.FileScheduleRepository(store),
        supporters=file_repos.FileSupporterRepository(store),
        fail_records=file_repos.FileFailRecordRepository(store),
        delivery_records=file_repos.FileDeliveryRecordRepository(store),
        cycle_stats=file_repos.FileCycleStatsRepository(store),
        article_memory=file_repos.FileArticleMemoryRepository(
            store, settings.article_memory_max_entries
        ),
    )


async def _build_database_storage(settings: Settings) -> Storage:
    from feedrelay.database.database import create_tables, sessionmanager
    from feedrelay.storage import sql_repos

    sessionmanager.init(settings.database_url)
    await create_tables(sessionmanager)

    return Storage(
        subscriptions=sql_repos.SubscriptionRepositoryImpl(sessionmanager),
        schedules=sql_repos.ScheduleRepositoryImpl(sessionmanager),
        supporters=sql_repos.SupporterRepositoryImpl(sessionmanager),
        fail_records=sql_repos.FailRecordRepositoryImpl(sessionmanager),
        delivery_records=sql_repos.DeliveryRecordRepositoryImpl(sessionmanager),
        cycle_stats=sql_repos.CycleStatsRepositoryImpl(sessionmanager),
        article_memory=sql_repos.ArticleMemoryRepositoryImpl(
            sessionmanager, settings.article_memory_max_entries
        ),
        on_close=sessionmanager.close,
    )


async def build_storage(settings: Settings) -> Storage:
    match settings.storage_backend:
        case "database":
            storage = await _build_database_storage(settings)
        case "file":
            storage = _build_file_storage(settings)
        case _:
            raise ValueError(f"Unknown storage backend: {settings.storage_backend}")

    logger.info("Storage ready", extra={"backend": settings.storage_backend})
    return storage
