"""Local cover cache for Curator.

Downloads cover images into the cover directory as `{gameId}.{ext}`, the same
layout the audit enumerates.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import NamedTuple, Optional, Protocol
from urllib.parse import urlparse

import requests

from .logging_config import get_logger

logger = get_logger(__name__)


COVER_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")
CHUNK_SIZE = 64 * 1024


class DownloadResult(NamedTuple):
    success: bool
    local_path: Optional[Path] = None
    error: Optional[str] = None


class AssetCache(Protocol):
    def download(self, game_id: int, url: str) -> DownloadResult:
        ...


def _extension_for(content_type: str, url: str) -> str:
    """Pick a file extension from the response content type, then the URL."""
    content_type = content_type.lower()
    if "png" in content_type:
        return ".png"
    if "webp" in content_type:
        return ".webp"
    if "jpeg" in content_type or "jpg" in content_type:
        return ".jpg"
    suffix = Path(urlparse(url).path).suffix.lower()
    return suffix if suffix in COVER_EXTENSIONS else ".jpg"


class CoverCache:
    """Streams remote cover images to disk, replacing any previous cover."""

    def __init__(self, covers_dir: Path, timeout: int = 30):
        self.covers_dir = covers_dir
        self.timeout = timeout

    def find_local_cover(self, game_id: int) -> Optional[Path]:
        for ext in COVER_EXTENSIONS:
            path = self.covers_dir / f"{game_id}{ext}"
            if path.exists():
                return path
        return None

    def download(self, game_id: int, url: str) -> DownloadResult:
        self.covers_dir.mkdir(parents=True, exist_ok=True)

        try:
            with requests.get(
                url,
                stream=True,
                timeout=self.timeout,
                headers={"User-Agent": "Curator/0.1"},
            ) as response:
                if not response.ok:
                    return DownloadResult(False, error=f"HTTP {response.status_code}: {response.reason}")

                local_path = self.covers_dir / f"{game_id}{_extension_for(response.headers.get('content-type', ''), url)}"
                self._stream_to(response, local_path)
        except (requests.RequestException, OSError) as exc:
            logger.error(f"Download failed for game {game_id} from {url}: {exc}")
            return DownloadResult(False, error=str(exc))

        for ext in COVER_EXTENSIONS:
            stale = self.covers_dir / f"{game_id}{ext}"
            if stale != local_path and stale.exists():
                stale.unlink()

        return DownloadResult(True, local_path=local_path)

    def _stream_to(self, response: requests.Response, local_path: Path) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{local_path.name}.", dir=self.covers_dir)
        try:
            written = 0
            with os.fdopen(fd, "wb") as handle:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    handle.write(chunk)
                    written += len(chunk)
            if written == 0:
                raise OSError("Empty response body")
            os.replace(tmp_name, local_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
