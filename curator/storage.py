"""JSON file persistence with atomic replace.

Documents are written to a temporary file in the target directory and then
moved over the target with `os.replace`, so readers see either the previous
document or the new one, never a partial write.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from .logging_config import get_logger

logger = get_logger(__name__)


class JsonFileStore:
    """A single JSON document on disk with single-writer discipline.

    `lock` is reentrant so callers can hold it across a read-modify-write
    cycle while still calling `read`/`write`.
    """

    def __init__(self, path: Path):
        self.path = path
        self.lock = threading.RLock()

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Any:
        """Return the decoded document, or None if the file does not exist.

        Raises ValueError (json.JSONDecodeError) for a malformed document.
        """
        with self.lock:
            if not self.path.exists():
                return None
            with self.path.open("r", encoding="utf-8") as handle:
                return json.load(handle)

    def write(self, data: Any) -> None:
        with self.lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, indent=2)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def delete(self) -> bool:
        with self.lock:
            if self.path.exists():
                self.path.unlink()
                return True
            return False
