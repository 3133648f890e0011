from sqlalchemy import Float, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from feedrelay.database.tables.base_class import Base, TimestampMixin


class Schedules(Base, TimestampMixin):
    __tablename__ = "schedules"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    refresh_rate_minutes: Mapped[float] = mapped_column(Float)
    subscription_ids: Mapped[list] = mapped_column(JSONB, server_default="[]")
    keywords: Mapped[list] = mapped_column(JSONB, server_default="[]")
    # Declared order decides which custom schedule wins
    position: Mapped[int] = mapped_column(server_default="0")


class Supporters(Base, TimestampMixin):
    __tablename__ = "supporters"

    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
