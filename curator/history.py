"""Cover fix history for Curator.

Append-only ledger of the replacement covers already tried per game, stored as
JSON keyed by game id:

    {"42": {"triedCandidateIds": [101], "triedUrls": ["https://..."],
            "lastAttemptTime": 1700000000000}}

Candidate ids are the dedup key against the source catalog; urls are the
dedup key against fetching the same bytes again when a source re-points an id.

Older files are upgraded on first read:
- v1: bare list of candidate ids per game
- v2: {"gridIds": [...], "triedUrls": [...], "lastTryTime": ...}
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Set, Tuple, Union

from pydantic import Field, ValidationError

from .logging_config import get_logger
from .schemas import CamelModel
from .storage import JsonFileStore
from .utils import epoch_ms

logger = get_logger(__name__)


CandidateId = Union[int, str]


class FixHistoryEntry(CamelModel):
    tried_candidate_ids: List[CandidateId] = Field(default_factory=list)
    tried_urls: List[str] = Field(default_factory=list)
    last_attempt_time: int = Field(default_factory=epoch_ms)


class TriedCandidates(NamedTuple):
    ids: Set[CandidateId]
    urls: Set[str]


def decode_entry(raw: Any) -> Tuple[FixHistoryEntry, bool]:
    """Decode one stored entry into the current shape.

    Returns (entry, upgraded) where upgraded is True when the stored form was
    an older schema. Raises ValueError for shapes that are not recognised.
    """
    if isinstance(raw, list):
        return FixHistoryEntry(tried_candidate_ids=raw), True

    if not isinstance(raw, dict):
        raise ValueError(f"Unrecognised fix history entry: {raw!r}")

    if "triedCandidateIds" in raw:
        upgraded = "triedUrls" not in raw or "lastAttemptTime" not in raw
        return FixHistoryEntry.model_validate(raw), upgraded

    if "gridIds" in raw:
        entry = FixHistoryEntry(
            tried_candidate_ids=raw.get("gridIds") or [],
            tried_urls=raw.get("triedUrls") or [],
            last_attempt_time=raw.get("lastTryTime") or epoch_ms(),
        )
        return entry, True

    raise ValueError(f"Unrecognised fix history entry: {raw!r}")


def decode_history(raw: Dict[str, Any]) -> Tuple[Dict[str, FixHistoryEntry], bool]:
    """Decode a full history document. Unrecognised entries are dropped."""
    history: Dict[str, FixHistoryEntry] = {}
    upgraded = False
    for game_id, value in raw.items():
        try:
            entry, entry_upgraded = decode_entry(value)
        except (ValueError, ValidationError) as exc:
            logger.warning(f"Dropping fix history for game {game_id}: {exc}")
            upgraded = True
            continue
        history[str(game_id)] = entry
        upgraded = upgraded or entry_upgraded
    return history, upgraded


class FixHistoryStore:
    """Owner of the fix history file.

    Every read-modify-write runs under the file's lock and is written with an
    atomic replace, so concurrent fixes in one process cannot lose appends.
    """

    def __init__(self, path: Path):
        self._file = JsonFileStore(path)

    @property
    def path(self) -> Path:
        return self._file.path

    def _backup_unreadable(self) -> None:
        backup = self.path.with_suffix(self.path.suffix + ".bak")
        shutil.copy2(self.path, backup)
        logger.error(f"Fix history {self.path} is unreadable; saved a copy to {backup}")

    def _load(self) -> Dict[str, FixHistoryEntry]:
        try:
            raw = self._file.read()
        except ValueError:
            self._backup_unreadable()
            return {}

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            self._backup_unreadable()
            return {}

        history, upgraded = decode_history(raw)
        if upgraded:
            self._save(history)
            logger.info(f"Upgraded fix history to the current format ({len(history)} games)")
        return history

    def _save(self, history: Dict[str, FixHistoryEntry]) -> None:
        self._file.write({game_id: entry.to_json_dict() for game_id, entry in history.items()})

    def get_history(self) -> Dict[str, FixHistoryEntry]:
        with self._file.lock:
            return self._load()

    def get_tried(self, game_id: int) -> TriedCandidates:
        with self._file.lock:
            entry = self._load().get(str(game_id))
        if entry is None:
            return TriedCandidates(set(), set())
        return TriedCandidates(set(entry.tried_candidate_ids), set(entry.tried_urls))

    def add_tried(self, game_id: int, candidate_id: CandidateId, url: str) -> FixHistoryEntry:
        """Record a committed candidate for a game and bump its attempt time."""
        with self._file.lock:
            history = self._load()
            entry = history.setdefault(str(game_id), FixHistoryEntry())
            if candidate_id not in entry.tried_candidate_ids:
                entry.tried_candidate_ids.append(candidate_id)
            if url not in entry.tried_urls:
                entry.tried_urls.append(url)
            entry.last_attempt_time = epoch_ms()
            self._save(history)
            return entry.model_copy(deep=True)

    def clear(self, game_id: int) -> bool:
        """Forget everything tried for one game. Returns False if nothing was recorded."""
        with self._file.lock:
            history = self._load()
            removed = history.pop(str(game_id), None)
            if removed is None:
                return False
            self._save(history)
        logger.info(f"Cleared fix history for game {game_id}")
        return True

    def clear_all(self) -> None:
        with self._file.lock:
            self._save({})
        logger.info("Cleared all fix history")
