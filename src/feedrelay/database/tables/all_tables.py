from feedrelay.database.tables.article_memory_table import ArticleMemory
from feedrelay.database.tables.delivery_record_table import DeliveryRecords
from feedrelay.database.tables.fail_record_table import FailRecords
from feedrelay.database.tables.schedule_stats_table import ScheduleStats
from feedrelay.database.tables.schedule_table import Schedules, Supporters
from feedrelay.database.tables.subscription_table import Subscriptions

__all__ = [
    "ArticleMemory",
    "DeliveryRecords",
    "FailRecords",
    "ScheduleStats",
    "Schedules",
    "Subscriptions",
    "Supporters",
]
