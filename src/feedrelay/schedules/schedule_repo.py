from abc import ABC, abstractmethod

from feedrelay.schedules.schedule import Schedule


class ScheduleRepository(ABC):
    @abstractmethod
    async def get_all(self) -> list[Schedule]:
        """Custom schedules in declared order.

        The default and fast-tier schedules come from settings and are not stored.
        """
        pass

    @abstractmethod
    async def upsert(self, schedule: Schedule) -> Schedule:
        pass
