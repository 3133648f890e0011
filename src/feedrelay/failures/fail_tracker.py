"""Per-URL failure backoff and outage alerting."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

from feedrelay.failures.fail_record import FailRecord
from feedrelay.failures.fail_record_repo import FailRecordRepository
from feedrelay.main.logging import get_logger
from feedrelay.subscriptions.subscription import Subscription
from feedrelay.subscriptions.subscription_repo import SubscriptionRepository

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutageAlerter(ABC):
    @abstractmethod
    async def alert(self, subscription: Subscription, record: FailRecord) -> None:
        """Tell one destination that its source URL has stopped working."""
        pass


class FailureTracker:
    """Record and reset per-URL failures, alerting subscribers once per outage.

    ``record`` and ``reset`` never raise on storage errors; a broken store
    only costs us bookkeeping, never a cycle.
    """

    def __init__(
        self,
        fail_records: FailRecordRepository,
        subscriptions: SubscriptionRepository,
        alerter: Optional[OutageAlerter],
        hours_until_fail: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.fail_records = fail_records
        self.subscriptions = subscriptions
        self.alerter = alerter
        self.hours_until_fail = hours_until_fail
        self.clock = clock

    async def record(self, url: str, reason: str) -> Optional[FailRecord]:
        try:
            record = await self.fail_records.get(url)
            if record is None:
                record = FailRecord(url=url, reason=reason, failed_at=self.clock())
            else:
                record.reason = reason

            if not record.alerted and record.past_cutoff(self.hours_until_fail, self.clock()):
                await self._alert(record)
                record.alerted = True

            return await self.fail_records.upsert(record)
        except Exception:
            logger.exception(
                "Failed to persist fail record",
                extra={"url": url, "reason": reason},
            )
            return None

    async def reset(self, url: str) -> bool:
        try:
            if await self.fail_records.delete(url):
                logger.info("Fail record reset", extra={"url": url})
                return True
        except Exception:
            logger.exception("Failed to reset fail record", extra={"url": url})
        return False

    async def get_map(self) -> dict[str, FailRecord]:
        return {record.url: record for record in await self.fail_records.get_all()}

    def is_excluded(self, record: Optional[FailRecord]) -> bool:
        if record is None:
            return False
        return record.excludes_fetch(self.hours_until_fail, self.clock())

    async def list_failed(self) -> list[FailRecord]:
        """Records whose outage has crossed the cutoff."""
        now = self.clock()
        return [
            record
            for record in await self.fail_records.get_all()
            if record.past_cutoff(self.hours_until_fail, now)
        ]

    async def reset_all(self) -> int:
        count = await self.fail_records.delete_all()
        logger.info("All fail records reset", extra={"count": count})
        return count

    async def _alert(self, record: FailRecord) -> None:
        subscriptions = await self.subscriptions.get_by_url(record.url)
        logger.warning(
            "Source URL past failure cutoff, alerting subscribers",
            extra={
                "url": record.url,
                "reason": record.reason,
                "subscriber_count": len(subscriptions),
            },
        )
        if self.alerter is None:
            return
        for subscription in subscriptions:
            if subscription.is_disabled:
                continue
            try:
                await self.alerter.alert(subscription, record)
            except Exception:
                # One unreachable channel must not stop the others being told
                logger.warning(
                    "Unable to send failure alert",
                    exc_info=True,
                    extra={"url": record.url, "channel_id": subscription.channel_id},
                )
