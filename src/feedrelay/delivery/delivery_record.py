from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

BLOCKED_BY_FILTERS = "blocked by filters"


@dataclass
class DeliveryRecord:
    """Audit row for a delivery that did not happen.

    Successful deliveries are never recorded; their absence is the success signal.
    """

    item_id: str
    source_url: str
    destination_channel: str
    comment: str
    delivered: bool = False
    subscription_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.delivered:
            raise ValueError("Only failed or blocked deliveries are recorded")


class DeliveryRecordRepository(ABC):
    @abstractmethod
    async def add(self, record: DeliveryRecord) -> None:
        pass

    @abstractmethod
    async def get_by_channel(self, channel_id: str, limit: int = 100) -> list[DeliveryRecord]:
        pass
