from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


@dataclass
class FailRecord:
    """Failure bookkeeping for one source URL, shared by all its subscriptions."""

    url: str
    reason: Optional[str]
    failed_at: datetime
    alerted: bool = False

    def past_cutoff(self, hours_until_fail: int, now: Optional[datetime] = None) -> bool:
        """Whether the outage has lasted at least ``hours_until_fail`` hours.

        A cutoff of 0 disables the mechanism entirely.
        """
        if hours_until_fail == 0:
            return False
        now = now or datetime.now(timezone.utc)
        return now - self.failed_at >= timedelta(hours=hours_until_fail)

    def excludes_fetch(self, hours_until_fail: int, now: Optional[datetime] = None) -> bool:
        """Broken for longer than the cutoff and the subscribers were already told."""
        return self.alerted and self.past_cutoff(hours_until_fail, now)
