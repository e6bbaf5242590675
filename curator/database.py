"""Database connection and session management using SQLModel.

The engine starts on `DATA_DIR/library.db`; commands re-point it at the
loaded config's `database_path` with `use_database`.
"""

from __future__ import annotations

from pathlib import Path

from sqlmodel import SQLModel, create_engine

from .config import DATA_DIR
from .logging_config import get_logger

logger = get_logger(__name__)

DB_PATH = DATA_DIR / "library.db"


def _make_engine(db_path: Path):
    # check_same_thread=False is needed for SQLite when sessions cross threads
    return create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})


engine = _make_engine(DB_PATH)


def use_database(db_path: Path) -> None:
    """Point the module engine at db_path (no-op if it already does)."""
    global engine, DB_PATH

    if Path(db_path) == DB_PATH:
        return
    engine.dispose()
    DB_PATH = Path(db_path)
    engine = _make_engine(DB_PATH)
    logger.debug(f"Using database {DB_PATH}")


def init_db() -> None:
    """Create database tables."""
    # Import models to ensure they are registered with SQLModel.metadata
    from . import models  # noqa: F401

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA journal_mode=WAL;")

    SQLModel.metadata.create_all(engine)


def get_engine():
    """Return the global engine instance."""
    return engine
