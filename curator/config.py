"""Config management for Curator.

Reads `config.ini` from DATA_DIR (beside the executable / main.py unless the
DATA_DIR environment variable points elsewhere).
"""

from __future__ import annotations

import configparser
import dataclasses
import os
import pathlib
import sys
from typing import Optional

from .logging_config import get_logger

logger = get_logger(__name__)


def _get_project_root() -> pathlib.Path:
    if getattr(sys, "frozen", False):
        return pathlib.Path(sys.executable).resolve().parent
    return pathlib.Path(__file__).resolve().parents[1]


PROJECT_ROOT = _get_project_root()

# DATA_DIR holds all persistent state (config.ini, library.db, audit/history JSON).
DATA_DIR = pathlib.Path(os.environ.get("DATA_DIR", str(PROJECT_ROOT)))
DEFAULT_CONFIG_PATH = DATA_DIR / "config.ini"

STEAMGRIDDB_API_BASE = "https://www.steamgriddb.com/api/v2"


@dataclasses.dataclass
class LibraryConfig:
    covers_dir: pathlib.Path
    name: str = "My Game Library"


@dataclasses.dataclass
class AuditConfig:
    batch_size: int = 50
    max_workers: int = 0
    task_timeout: float = 0.0
    bad_cover_threshold: int = 40

    @property
    def worker_count(self) -> int:
        """Configured worker count, or one less than the CPU count when unset."""
        if self.max_workers > 0:
            return self.max_workers
        return max(1, (os.cpu_count() or 2) - 1)


@dataclasses.dataclass
class SteamGridDBConfig:
    """Credentials and pacing for SteamGridDB. The env var wins over an empty key."""

    api_key: str = ""
    base_url: str = STEAMGRIDDB_API_BASE
    request_delay: float = 0.25
    timeout: int = 30

    @property
    def resolved_api_key(self) -> str:
        return self.api_key.strip() or os.environ.get("STEAMGRIDDB_API_KEY", "").strip()


@dataclasses.dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclasses.dataclass
class CuratorConfig:
    library: LibraryConfig
    audit: AuditConfig
    steamgriddb: SteamGridDBConfig
    logging: LoggingConfig = dataclasses.field(default_factory=LoggingConfig)
    data_dir: pathlib.Path = DATA_DIR

    @property
    def covers_dir(self) -> pathlib.Path:
        return self.library.covers_dir

    @property
    def database_path(self) -> pathlib.Path:
        return self.data_dir / "library.db"

    @property
    def audit_results_path(self) -> pathlib.Path:
        return self.data_dir / "cover-audit-results.json"

    @property
    def fix_history_path(self) -> pathlib.Path:
        return self.data_dir / "cover-fix-history.json"


def load_config(config_path: Optional[pathlib.Path] = None) -> CuratorConfig:
    """Load configuration from config.ini.

    Defaults to `config.ini` in DATA_DIR.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(path)

    covers_dir = pathlib.Path(
        parser.get("library", "covers_dir", fallback=str(DATA_DIR / "covers"))
    ).expanduser()
    name = parser.get("library", "name", fallback="My Game Library")

    audit = AuditConfig(
        batch_size=max(1, parser.getint("audit", "batch_size", fallback=50)),
        max_workers=parser.getint("audit", "max_workers", fallback=0),
        task_timeout=parser.getfloat("audit", "task_timeout", fallback=0.0),
        bad_cover_threshold=parser.getint("audit", "bad_cover_threshold", fallback=40),
    )

    steamgriddb = SteamGridDBConfig(
        api_key=parser.get("steamgriddb", "api_key", fallback="").strip(),
        base_url=parser.get("steamgriddb", "base_url", fallback=STEAMGRIDDB_API_BASE),
        request_delay=parser.getfloat("steamgriddb", "request_delay", fallback=0.25),
        timeout=parser.getint("steamgriddb", "timeout", fallback=30),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO").strip().upper() or "INFO",
    )

    return CuratorConfig(
        library=LibraryConfig(covers_dir=covers_dir, name=name),
        audit=audit,
        steamgriddb=steamgriddb,
        logging=logging_config,
        data_dir=path.parent,
    )


def write_default_config(config_path: pathlib.Path, covers_dir: pathlib.Path, name: str) -> None:
    """Write a config.ini with default settings for the given cover directory."""
    parser = configparser.ConfigParser()

    parser["library"] = {
        "covers_dir": str(covers_dir.expanduser()),
        "name": name,
    }
    parser["audit"] = {
        "batch_size": "50",
        "max_workers": "0",
        "task_timeout": "0",
        "bad_cover_threshold": "40",
    }
    parser["steamgriddb"] = {
        "api_key": "",
        "base_url": STEAMGRIDDB_API_BASE,
        "request_delay": "0.25",
        "timeout": "30",
    }
    parser["logging"] = {
        "level": "INFO",
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w") as handle:
        parser.write(handle)
    logger.debug(f"Wrote default config to {config_path}")
