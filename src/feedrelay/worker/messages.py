"""Messages exchanged between the cycle orchestrator and worker processes."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from feedrelay.articles.article import Article
from feedrelay.articles.article_memory import MemoryEntry
from feedrelay.main.config import Settings
from feedrelay.subscriptions.subscription import SubscriptionSnapshot


class LinkStatus(str, Enum):
    HEADERS = "headers"
    PENDING_ARTICLE = "pendingArticle"
    SUCCESS = "success"
    FAILED = "failed"


class CachedHeadersModel(BaseModel):
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class WorkerConfig(BaseModel):
    """The part of the settings a worker process needs."""

    check_titles: bool
    check_dates: bool
    cycle_max_age_days: int
    send_old_on_first_cycle: bool
    request_timeout_seconds: int
    max_concurrent_requests: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerConfig":
        return cls(
            check_titles=settings.check_titles,
            check_dates=settings.check_dates,
            cycle_max_age_days=settings.cycle_max_age_days,
            send_old_on_first_cycle=settings.send_old_on_first_cycle,
            request_timeout_seconds=settings.worker_request_timeout_seconds,
            max_concurrent_requests=settings.worker_max_concurrent_requests,
        )


class WorkerDispatch(BaseModel):
    config: WorkerConfig
    batch: dict[str, dict[str, SubscriptionSnapshot]]
    debug_subscription_ids: list[str] = Field(default_factory=list)
    debug_urls: list[str] = Field(default_factory=list)
    cached_headers: dict[str, CachedHeadersModel] = Field(default_factory=dict)
    memory: dict[str, list[MemoryEntry]] = Field(default_factory=dict)
    run_number: int
    schedule_name: str


class LinkCompletion(BaseModel):
    """One reply from a worker.

    ``success``/``failed`` are sent exactly once per URL and close it out;
    ``headers`` and ``pendingArticle`` may precede them.
    """

    url: str
    status: LinkStatus
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    memory_snapshot: Optional[list[MemoryEntry]] = None
    pending_article: Optional[Article] = None
    subscription_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def closes_url(self) -> bool:
        return self.status in (LinkStatus.SUCCESS, LinkStatus.FAILED)
