from typing import Optional

from sqlalchemy import Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from feedrelay.database.tables.base_class import Base, TimestampMixin


class Subscriptions(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    url: Mapped[str] = mapped_column(Text)
    channel_id: Mapped[str] = mapped_column(String(32))
    guild_id: Mapped[str] = mapped_column(String(32))
    webhook: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    text: Mapped[str] = mapped_column(Text)
    filters: Mapped[dict] = mapped_column(JSONB, server_default="{}")
    regex_filters: Mapped[dict] = mapped_column(JSONB, server_default="{}")
    comparisons: Mapped[list] = mapped_column(JSONB, server_default="[]")
    disabled: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    check_titles: Mapped[Optional[bool]] = mapped_column(nullable=True)
    check_dates: Mapped[Optional[bool]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("idx_subscriptions_url", "url"),
        Index("idx_subscriptions_guild", "guild_id"),
    )
