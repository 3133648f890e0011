from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from feedrelay.database.tables.base_class import Base, TimestampMixin


class FailRecords(Base, TimestampMixin):
    __tablename__ = "fail_records"

    url: Mapped[str] = mapped_column(Text, primary_key=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    alerted: Mapped[bool] = mapped_column(server_default="False")
