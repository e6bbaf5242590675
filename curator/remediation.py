"""Cover remediation for Curator.

Replaces bad covers with art from an asset source, never offering a candidate
that was already committed for the same game.

Per game, a fix walks:

    Unresolved -> Resolved -> CandidatesFetched -> Selected -> Downloaded -> Committed

and stops early at SourceNotFound, NoCandidatesAvailable, CandidatesExhausted
or DownloadFailed. Only Committed writes to the fix history, so a failed
download is retried next time instead of being excluded forever.

Source calls are strictly sequential with a delay between requests; batch
fixes wait twice as long between games.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, Iterable, List, NamedTuple, Optional, Union

from .cache import AssetCache
from .errors import FixBatchInProgressError
from .history import FixHistoryStore, TriedCandidates
from .logging_config import get_logger
from .repository import CoverReferenceStore
from .schemas import CamelModel
from .sources import AssetClass, AssetSource, Candidate, GameIdentity

logger = get_logger(__name__)


DEFAULT_REQUEST_DELAY = 0.25
BATCH_DELAY_FACTOR = 2

# Fixes write the canonical /covers/<id> image, so only portrait grids qualify
COVER_ASSET_CLASS = AssetClass.GRID


class FixOutcome(str, Enum):
    COMMITTED = "committed"
    SOURCE_NOT_FOUND = "source_not_found"
    NO_CANDIDATES = "no_candidates_available"
    CANDIDATES_EXHAUSTED = "candidates_exhausted"
    DOWNLOAD_FAILED = "download_failed"
    ERROR = "error"


OUTCOME_GUIDANCE = {
    FixOutcome.COMMITTED: "Cover replaced.",
    FixOutcome.SOURCE_NOT_FOUND: "This game isn't in the catalog. Try a different search term.",
    FixOutcome.NO_CANDIDATES: "The catalog has no covers of this type for this game.",
    FixOutcome.CANDIDATES_EXHAUSTED: "Every available cover has been tried. Clear history to retry.",
    FixOutcome.DOWNLOAD_FAILED: "The cover could not be downloaded. It was not marked as tried.",
    FixOutcome.ERROR: "Unexpected error while fixing this cover.",
}


class FixResult(CamelModel):
    success: bool
    game_id: int
    outcome: FixOutcome
    resolved_url: Optional[str] = None
    cover_url: Optional[str] = None
    candidate_id: Optional[Union[int, str]] = None
    source_game_id: Optional[Union[int, str]] = None
    source_game_name: Optional[str] = None
    error: Optional[str] = None


class BatchFixResult(CamelModel):
    total: int
    success: int
    failed: int
    results: List[FixResult]


class FixProgress(CamelModel):
    total: int = 0
    completed: int = 0
    success: int = 0
    failed: int = 0
    current: str = ""


class FixRequest(NamedTuple):
    game_id: int
    title: str
    steam_app_id: Optional[int] = None


ProgressCallback = Callable[[FixProgress], None]


def select_candidate(candidates: List[Candidate], tried: TriedCandidates) -> Optional[Candidate]:
    """Best untried candidate by source score, preferring non adult/humor art."""
    available = [c for c in candidates if c.id not in tried.ids and c.url not in tried.urls]
    ranked = sorted(available, key=lambda c: c.score, reverse=True)
    safe = [c for c in ranked if not c.is_adult and not c.is_humor]
    if safe:
        return safe[0]
    return ranked[0] if ranked else None


class FixSession:
    """State of one batch fix: construct, record each result, finish."""

    def __init__(self, total: int):
        self.total = total
        self.results: List[FixResult] = []
        self._progress = FixProgress(total=total)

    @property
    def progress(self) -> FixProgress:
        return self._progress.model_copy()

    def start_item(self, title: str) -> FixProgress:
        self._progress = self._progress.model_copy(update={"current": title})
        return self.progress

    def record(self, result: FixResult) -> FixProgress:
        self.results.append(result)
        progress = self._progress.model_copy()
        progress.completed += 1
        if result.success:
            progress.success += 1
        else:
            progress.failed += 1
        self._progress = progress
        return self.progress

    def finish(self) -> BatchFixResult:
        self._progress = self._progress.model_copy(update={"current": "Done"})
        success = sum(1 for r in self.results if r.success)
        return BatchFixResult(
            total=self.total,
            success=success,
            failed=len(self.results) - success,
            results=list(self.results),
        )


class CoverFixer:
    """Single and batch cover fixes against an asset source."""

    def __init__(
        self,
        source: AssetSource,
        cache: AssetCache,
        history: FixHistoryStore,
        covers: CoverReferenceStore,
        *,
        request_delay: float = DEFAULT_REQUEST_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.source = source
        self.cache = cache
        self.history = history
        self.covers = covers
        self.request_delay = request_delay
        self._sleep = sleep

        self._lock = threading.Lock()
        self._session: Optional[FixSession] = None
        self._last_progress: Optional[FixProgress] = None

    @property
    def in_progress(self) -> bool:
        return self._session is not None

    @property
    def progress(self) -> Optional[FixProgress]:
        session = self._session
        if session is not None:
            return session.progress
        if self._last_progress is not None:
            return self._last_progress.model_copy()
        return None

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def _notify(self, on_progress: Optional[ProgressCallback], progress: FixProgress) -> None:
        if on_progress is None:
            return
        try:
            on_progress(progress)
        except Exception as exc:
            logger.warning(f"[Fix] Progress callback failed: {exc}")

    def _resolve(self, title: str, steam_app_id: Optional[int], search_term: Optional[str]) -> Optional[GameIdentity]:
        """Find the game in the source, by Steam app id first, then by title."""
        if steam_app_id:
            identity = self.source.find_by_steam_app_id(steam_app_id)
            if identity is not None:
                return identity
            logger.info(f"[Fix] No source match for Steam app {steam_app_id}, falling back to title search")
            self._pause(self.request_delay)

        return self.source.search_by_title(search_term or title)

    def fix_cover(
        self,
        game_id: int,
        title: str,
        steam_app_id: Optional[int] = None,
        search_term: Optional[str] = None,
    ) -> FixResult:
        """Replace one game's cover with the best candidate not tried before."""
        query = search_term or title
        tried = self.history.get_tried(game_id)
        if tried.ids:
            logger.info(
                f"[Fix] Game {game_id}: {len(tried.ids)} covers already tried ({len(tried.urls)} unique URLs)"
            )

        identity = self._resolve(title, steam_app_id, search_term)
        if identity is None:
            logger.info(f"[Fix] ✗ Not found in source: \"{query}\" (game {game_id})")
            return FixResult(
                success=False,
                game_id=game_id,
                outcome=FixOutcome.SOURCE_NOT_FOUND,
                error=f"Game not found in source: \"{query}\"",
            )

        logger.info(f"[Fix] Game {game_id} resolved to \"{identity.name}\" (source id {identity.id})")
        found = dict(source_game_id=identity.id, source_game_name=identity.name)

        self._pause(self.request_delay)
        candidates = self.source.list_candidates(identity, COVER_ASSET_CLASS)
        if not candidates:
            logger.info(f"[Fix] ✗ No {COVER_ASSET_CLASS.value} candidates for \"{identity.name}\"")
            return FixResult(
                success=False,
                game_id=game_id,
                outcome=FixOutcome.NO_CANDIDATES,
                error=f"No {COVER_ASSET_CLASS.value} covers found for \"{identity.name}\"",
                **found,
            )

        candidate = select_candidate(candidates, tried)
        if candidate is None:
            logger.info(
                f"[Fix] ✗ All {len(candidates)} candidates already tried for game {game_id}"
            )
            return FixResult(
                success=False,
                game_id=game_id,
                outcome=FixOutcome.CANDIDATES_EXHAUSTED,
                error=f"All {len(candidates)} available covers have been tried. Clear history to retry.",
                **found,
            )

        logger.info(f"[Fix] Selected candidate {candidate.id} (score {candidate.score}): {candidate.url}")
        download = self.cache.download(game_id, candidate.url)
        if not download.success or download.local_path is None:
            logger.warning(f"[Fix] ✗ Download failed for game {game_id}: {download.error}")
            return FixResult(
                success=False,
                game_id=game_id,
                outcome=FixOutcome.DOWNLOAD_FAILED,
                resolved_url=candidate.url,
                candidate_id=candidate.id,
                error=f"Download failed: {download.error}",
                **found,
            )

        self.history.add_tried(game_id, candidate.id, candidate.url)
        cover_url = f"/covers/{game_id}{download.local_path.suffix or '.jpg'}"
        self.covers.update_cover(game_id, cover_url, title=title)
        logger.info(f"[Fix] ✓ Game {game_id} now uses {cover_url} (candidate {candidate.id})")

        return FixResult(
            success=True,
            game_id=game_id,
            outcome=FixOutcome.COMMITTED,
            resolved_url=candidate.url,
            cover_url=cover_url,
            candidate_id=candidate.id,
            **found,
        )

    def fix_covers(
        self,
        games: Iterable[FixRequest],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchFixResult:
        """Fix several covers one after another.

        Returns one result per requested game in input order. A failure or
        exception for one game is recorded and the batch moves on. Raises
        FixBatchInProgressError immediately if a batch is already running.
        """
        pending = [FixRequest(*game) for game in games]
        with self._lock:
            if self._session is not None:
                raise FixBatchInProgressError()
            session = FixSession(total=len(pending))
            self._session = session

        logger.info(f"[Fix] Starting batch fix of {len(pending)} covers")
        try:
            for index, request in enumerate(pending):
                progress = session.start_item(request.title)
                self._notify(on_progress, progress)

                if index > 0:
                    self._pause(self.request_delay * BATCH_DELAY_FACTOR)

                try:
                    result = self.fix_cover(request.game_id, request.title, request.steam_app_id)
                except Exception as exc:
                    logger.error(f"[Fix] ✗ Error fixing cover for game {request.game_id}: {exc}")
                    result = FixResult(
                        success=False,
                        game_id=request.game_id,
                        outcome=FixOutcome.ERROR,
                        error=str(exc) or exc.__class__.__name__,
                    )
                session.record(result)

            batch = session.finish()
            self._notify(on_progress, session.progress)
            logger.info(f"[Fix] Batch complete: {batch.success} fixed, {batch.failed} failed")
            return batch
        finally:
            with self._lock:
                self._last_progress = session.progress
                self._session = None
