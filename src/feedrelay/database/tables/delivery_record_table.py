from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from feedrelay.database.tables.base_class import Base


class DeliveryRecords(Base):
    """Append-only audit of deliveries that were blocked or failed."""

    __tablename__ = "delivery_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(Text)
    source_url: Mapped[str] = mapped_column(Text)
    destination_channel: Mapped[str] = mapped_column(String(32))
    subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delivered: Mapped[bool] = mapped_column(server_default="False")
    comment: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("idx_delivery_records_channel", "destination_channel", "created_at"),)
