from abc import ABC, abstractmethod
from typing import Optional

from feedrelay.stats.cycle_stats import CycleStats


class CycleStatsRepository(ABC):
    @abstractmethod
    async def get(self, schedule_name: str) -> Optional[CycleStats]:
        pass

    @abstractmethod
    async def get_all(self) -> list[CycleStats]:
        pass

    @abstractmethod
    async def upsert(self, stats: CycleStats) -> CycleStats:
        pass
