from typing import Optional

from sqlalchemy import Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from feedrelay.database.tables.base_class import Base, TimestampMixin


class ArticleMemory(Base, TimestampMixin):
    __tablename__ = "article_memory"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String(32))
    article_id: Mapped[str] = mapped_column(Text)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    comparisons: Mapped[dict] = mapped_column(JSONB, server_default="{}")

    __table_args__ = (Index("idx_article_memory_collection", "collection"),)
