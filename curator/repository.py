"""Data Access Layer for Curator.

Holds the canonical cover reference of each game. Everything else about a
game (metadata, sync state) lives outside this package.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Protocol

from sqlmodel import Session, col, select

from .database import get_engine
from .logging_config import get_logger
from .models import Game

logger = get_logger(__name__)


class Repository:
    """Data access layer over a caller-owned session."""

    def __init__(self, session: Session):
        self.session = session

    def commit(self) -> None:
        """Commit the current transaction. Callers control when to commit."""
        self.session.commit()

    def get_game(self, game_id: int) -> Optional[Game]:
        return self.session.get(Game, game_id)

    def get_games(self, game_ids: List[int]) -> List[Game]:
        if not game_ids:
            return []
        statement = select(Game).where(col(Game.id).in_(game_ids))
        return list(self.session.exec(statement).all())

    def get_all_games(self) -> List[Game]:
        return list(self.session.exec(select(Game)).all())

    def add_game(
        self,
        game_id: int,
        title: str,
        steam_app_id: Optional[int] = None,
        cover_url: Optional[str] = None,
    ) -> Game:
        """Insert or update a game row."""
        game = self.get_game(game_id)
        if game is None:
            game = Game(id=game_id, title=title, steam_app_id=steam_app_id, cover_url=cover_url)
        else:
            game.title = title
            if steam_app_id is not None:
                game.steam_app_id = steam_app_id
            if cover_url is not None:
                game.cover_url = cover_url
            game.updated_at = datetime.now(timezone.utc)
        self.session.add(game)
        self.session.flush()
        self.session.refresh(game)
        return game

    def update_cover(self, game_id: int, cover_url: str, title: Optional[str] = None) -> Game:
        """Point a game's canonical cover at cover_url, creating the row if needed."""
        game = self.get_game(game_id)
        if game is None:
            game = Game(id=game_id, title=title or str(game_id))
        game.cover_url = cover_url
        game.updated_at = datetime.now(timezone.utc)
        self.session.add(game)
        self.session.flush()
        return game


class CoverReferenceStore(Protocol):
    """Where the remediation engine records a game's new cover reference."""

    def update_cover(self, game_id: int, cover_url: str, title: Optional[str] = None) -> None:
        ...


class GameCatalog:
    """Session-per-call wrapper around Repository for long-running workflows."""

    def __init__(self, engine=None):
        self._engine = engine

    @property
    def engine(self):
        return self._engine or get_engine()

    def get_game(self, game_id: int) -> Optional[Game]:
        with Session(self.engine) as session:
            return Repository(session).get_game(game_id)

    def get_games(self, game_ids: List[int]) -> List[Game]:
        with Session(self.engine) as session:
            return Repository(session).get_games(game_ids)

    def update_cover(self, game_id: int, cover_url: str, title: Optional[str] = None) -> None:
        with Session(self.engine) as session:
            repo = Repository(session)
            repo.update_cover(game_id, cover_url, title=title)
            repo.commit()
        logger.debug(f"Updated cover reference for game {game_id}: {cover_url}")
