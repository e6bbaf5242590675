"""Asset sources for Curator.

The remediation engine talks to any object implementing `AssetSource`.
`SteamGridDBSource` is the production implementation over the SteamGridDB
v2 HTTP API (thread-local `requests` session, bearer token auth).

HTTP failures are logged and reported as "no result"; a 404 is a plain miss.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Protocol, Union
from urllib.parse import quote

import requests

from .config import SteamGridDBConfig
from .errors import SourceConfigError
from .logging_config import get_logger

logger = get_logger(__name__)


class AssetClass(str, Enum):
    GRID = "grid"
    HERO = "hero"
    LOGO = "logo"


# Query parameters per asset class. Grids are restricted to portrait covers.
_ASSET_ENDPOINTS = {
    AssetClass.GRID: ("grids/game/{id}", {"dimensions": "600x900"}),
    AssetClass.HERO: ("heroes/game/{id}", None),
    AssetClass.LOGO: ("logos/game/{id}", None),
}


@dataclass(frozen=True)
class GameIdentity:
    """A game as resolved in the source catalog."""

    id: Union[int, str]
    name: str


@dataclass(frozen=True)
class Candidate:
    """One image option offered by the source for an asset class."""

    id: Union[int, str]
    score: float
    url: str
    thumbnail_url: str = ""
    is_adult: bool = False
    is_humor: bool = False
    width: int = 0
    height: int = 0
    style: str = ""


class AssetSource(Protocol):
    def find_by_steam_app_id(self, steam_app_id: int) -> Optional[GameIdentity]:
        ...

    def search_by_title(self, title: str) -> Optional[GameIdentity]:
        ...

    def list_candidates(self, identity: GameIdentity, asset_class: AssetClass) -> List[Candidate]:
        ...


def normalize_title(title: str) -> str:
    """Lowercase a title and strip marks and punctuation for comparison."""
    norm = title.lower()
    norm = re.sub(r"[‘’]", "'", norm)
    norm = re.sub(r"[®™©]", "", norm)
    norm = re.sub(r"[_:\-–—]", " ", norm)
    norm = re.sub(r"\s+", " ", norm)
    norm = re.sub(r"[^a-z0-9\s']", "", norm)
    return norm.strip()


def titles_match(title1: str, title2: str) -> bool:
    """Return True if two game titles plausibly name the same game.

    Numbers must agree when both titles have any ("Madden NFL 24" is not
    "Madden NFL 26"); containment counts only when the shorter title is at
    least 40% of the longer; otherwise word overlap must reach 60%.
    """
    norm1 = normalize_title(title1)
    norm2 = normalize_title(title2)

    if norm1 == norm2:
        return True

    numbers1 = set(re.findall(r"\d+", norm1))
    numbers2 = set(re.findall(r"\d+", norm2))
    if numbers1 and numbers2 and not numbers1 & numbers2:
        return False

    if norm1 in norm2 or norm2 in norm1:
        shorter, longer = sorted((norm1, norm2), key=len)
        if longer and len(shorter) / len(longer) >= 0.4:
            return True

    def _words(text: str) -> set:
        return {w for w in text.split(" ") if len(w) > 2 or w.isdigit()}

    words1 = _words(norm1)
    words2 = _words(norm2)
    if not words1 or not words2:
        return False

    similarity = len(words1 & words2) / max(len(words1), len(words2))
    return similarity >= 0.6


def _to_candidate(item: dict) -> Optional[Candidate]:
    url = (item.get("url") or "").strip()
    if not url or item.get("id") is None:
        return None
    return Candidate(
        id=item["id"],
        score=float(item.get("score") or 0),
        url=url,
        thumbnail_url=item.get("thumb") or "",
        is_adult=bool(item.get("nsfw")),
        is_humor=bool(item.get("humor")),
        width=int(item.get("width") or 0),
        height=int(item.get("height") or 0),
        style=item.get("style") or "",
    )


class SteamGridDBSource:
    """SteamGridDB v2 API client."""

    def __init__(self, config: SteamGridDBConfig):
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout
        self._api_key = config.resolved_api_key
        self._local = threading.local()

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            if not self._api_key:
                raise SourceConfigError(
                    "SteamGridDB API key not set (config [steamgriddb] api_key or STEAMGRIDDB_API_KEY)"
                )
            session = requests.Session()
            session.headers.update({
                "Authorization": f"Bearer {self._api_key}",
                "Accept": "application/json",
                "User-Agent": "Curator/0.1",
            })
            self._local.session = session
        return session

    def _get(self, path: str, params: Optional[dict] = None) -> Optional[Any]:
        """GET an API path and return its `data` payload, or None on any failure."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self._session().get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning(f"[SteamGridDB] Request failed for {path}: {exc}")
            return None

        if response.status_code == 404:
            return None
        if not response.ok:
            logger.warning(f"[SteamGridDB] {path} returned HTTP {response.status_code}")
            return None

        try:
            payload = response.json()
        except ValueError as exc:
            logger.warning(f"[SteamGridDB] Invalid JSON from {path}: {exc}")
            return None

        if not payload.get("success") or not payload.get("data"):
            return None
        return payload["data"]

    def find_by_steam_app_id(self, steam_app_id: int) -> Optional[GameIdentity]:
        data = self._get(f"games/steam/{steam_app_id}")
        if not isinstance(data, dict) or data.get("id") is None:
            return None
        return GameIdentity(id=data["id"], name=data.get("name") or "")

    def search_by_title(self, title: str) -> Optional[GameIdentity]:
        term = quote(title, safe="")
        data = self._get(f"search/autocomplete/{term}")
        if not isinstance(data, list):
            return None

        for game in data:
            if titles_match(title, game.get("name") or ""):
                return GameIdentity(id=game["id"], name=game.get("name") or "")
        return None

    def list_candidates(self, identity: GameIdentity, asset_class: AssetClass) -> List[Candidate]:
        path, params = _ASSET_ENDPOINTS[asset_class]
        data = self._get(path.format(id=identity.id), params)
        if not isinstance(data, list):
            return []
        return [c for c in (_to_candidate(item) for item in data) if c is not None]
