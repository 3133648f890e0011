from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Article(BaseModel):
    """One fetched feed item, flattened to string fields.

    ``id`` is empty until the identity resolver has run over the whole fetch.
    """

    id: str = ""
    fields: dict[str, str] = Field(default_factory=dict)
    published: Optional[datetime] = None

    def get(self, name: str) -> Optional[str]:
        value = self.fields.get(name)
        return value if value else None

    @property
    def title(self) -> Optional[str]:
        return self.get("title")

    @property
    def link(self) -> Optional[str]:
        return self.get("link")

    @property
    def guid(self) -> Optional[str]:
        return self.get("guid")
