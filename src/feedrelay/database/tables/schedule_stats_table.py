from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from feedrelay.database.tables.base_class import Base


class ScheduleStats(Base):
    __tablename__ = "schedule_stats"

    schedule_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_count: Mapped[int] = mapped_column()
    cycle_time_seconds: Mapped[int] = mapped_column()
    cycle_fail_count: Mapped[int] = mapped_column()
    cycle_url_count: Mapped[int] = mapped_column()
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True))
