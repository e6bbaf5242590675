"""SQLModel database models for Curator."""

from datetime import datetime, timezone
from typing import Optional
from sqlmodel import Field, SQLModel


class GameBase(SQLModel):
    title: str
    steam_app_id: Optional[int] = Field(default=None, index=True)
    cover_url: Optional[str] = None  # Canonical cover reference, e.g. /covers/42.jpg


class Game(GameBase, table=True):
    __tablename__ = "games"
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
