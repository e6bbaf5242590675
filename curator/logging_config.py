"""Logging configuration for Curator.

Provides centralized logging setup with:
- File handler with rotation (10MB, 5 backups) in the library's data dir
- Rich console handler with colored output, level from `[logging] level`
  or the CLI `--verbose` flag
- Consistent formatting across all modules

Audit workers run in separate processes and log through their own module
loggers; only the main process installs handlers.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme


LOG_FILE_NAME = "curator.log"

# Third-party loggers that flood DEBUG output during audits and downloads
QUIET_LOGGERS = ("urllib3", "PIL", "sqlalchemy.engine")

_logging_initialized = False


def _file_handler(log_dir: Path) -> RotatingFileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)  # Capture everything to file
    # processName tells pool workers apart from the main process
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(levelname)-8s - %(name)s - %(processName)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    return handler


def setup_logging(log_dir: Optional[Path] = None, log_level: str = "INFO") -> None:
    """Initialize logging with file and console handlers.

    Args:
        log_dir: Directory for curator.log (the config's data dir). No file
            handler is installed when omitted.
        log_level: Console level (DEBUG, INFO, WARNING, ERROR)
    """
    global _logging_initialized

    if _logging_initialized:
        return

    # Unknown names fall back to INFO
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture everything, handlers filter

    if log_dir is not None:
        root_logger.addHandler(_file_handler(log_dir))

    # Console handler with Rich; cyan INFO to match the CLI's progress lines
    console = Console(theme=Theme({"logging.level.info": "bold cyan"}))
    console_handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        show_time=False,  # Rich adds its own timestamp
        show_path=False,  # Don't show full file paths in console
    )
    console_handler.setLevel(numeric_level)
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _logging_initialized = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the specified module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance for the module
    """
    return logging.getLogger(name)
