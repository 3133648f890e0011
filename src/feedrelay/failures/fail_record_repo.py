from abc import ABC, abstractmethod
from typing import Optional

from feedrelay.failures.fail_record import FailRecord


class FailRecordRepository(ABC):
    @abstractmethod
    async def get(self, url: str) -> Optional[FailRecord]:
        pass

    @abstractmethod
    async def get_all(self) -> list[FailRecord]:
        pass

    @abstractmethod
    async def upsert(self, record: FailRecord) -> FailRecord:
        pass

    @abstractmethod
    async def delete(self, url: str) -> bool:
        """Delete the record for ``url``. Returns whether one existed."""
        pass

    @abstractmethod
    async def delete_all(self) -> int:
        pass
