"""Cover audit orchestration for Curator.

Scores every cover in the cover directory with a bounded worker pool.

Implements:
- cover file enumeration (`<gameId>.<jpg|jpeg|png|webp>`)
- strictly sequential batches, each waited to full settlement
- per-batch aggregation of counters, progress and ETA
- single-flight runs and a persisted, fully replaced result snapshot
"""

from __future__ import annotations

import re
import threading
import time
from concurrent.futures import Executor, Future, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Tuple

from pydantic import ValidationError

from .analysis import SCORE_FLAGGED, SCORE_PASSED, CoverAnalysis, analyze_cover
from .config import CuratorConfig
from .errors import AuditInProgressError
from .logging_config import get_logger
from .schemas import CamelModel
from .storage import JsonFileStore
from .utils import short_path

logger = get_logger(__name__)


COVER_FILE_PATTERN = re.compile(r"^(\d+)\.(jpg|jpeg|png|webp)$", re.IGNORECASE)
DEFAULT_BATCH_SIZE = 50
INITIAL_SECONDS_PER_COVER = 0.02

ExecutorFactory = Callable[[int], Executor]
AnalyzeFn = Callable[[int, Path], CoverAnalysis]
ProgressCallback = Callable[["AuditProgress"], None]


class CoverFile(NamedTuple):
    game_id: int
    path: Path


class AuditPhase(str, Enum):
    PHASE1 = "phase1"
    COMPLETE = "complete"


class AuditProgress(CamelModel):
    total: int = 0
    completed: int = 0
    passed: int = 0
    flagged: int = 0
    failed: int = 0
    errors: int = 0
    phase: AuditPhase = AuditPhase.PHASE1
    estimated_seconds_remaining: float = 0.0


class AuditResult(CamelModel):
    total: int
    passed: int
    flagged: int
    failed: int
    errors: int
    duration_ms: int
    completed_at: datetime
    results: List[CoverAnalysis]


def find_cover_files(covers_dir: Path) -> List[CoverFile]:
    """Return cover files named `<gameId>.<ext>` in covers_dir, ordered by game id."""
    if not covers_dir.is_dir():
        return []

    covers = []
    for entry in covers_dir.iterdir():
        match = COVER_FILE_PATTERN.match(entry.name)
        if match and entry.is_file():
            covers.append(CoverFile(int(match.group(1)), entry))

    covers.sort(key=lambda c: (c.game_id, c.path.name))
    return covers


def default_executor_factory(max_workers: int) -> Executor:
    return ProcessPoolExecutor(max_workers=max_workers)


def _retire_executor(executor: Executor) -> None:
    """Abandon a pool without waiting on its running tasks.

    Process pool workers are terminated; thread pool threads cannot be
    stopped and finish in the background.
    """
    logger.warning("[Audit] Worker pool is hung or broken, starting a fresh pool")
    processes = list((getattr(executor, "_processes", None) or {}).values())
    executor.shutdown(wait=False, cancel_futures=True)
    for process in processes:
        if process.is_alive():
            process.terminate()


def _notify(on_progress: Optional[ProgressCallback], progress: AuditProgress) -> None:
    if on_progress is None:
        return
    try:
        on_progress(progress)
    except Exception as exc:
        logger.warning(f"[Audit] Progress callback failed: {exc}")


class AuditResultStore:
    """Persisted audit snapshot. Each save fully replaces the previous one."""

    def __init__(self, path: Path):
        self._file = JsonFileStore(path)

    @property
    def path(self) -> Path:
        return self._file.path

    def save(self, result: AuditResult) -> None:
        self._file.write(result.to_json_dict())

    def load(self) -> Optional[AuditResult]:
        try:
            data = self._file.read()
        except ValueError as exc:
            logger.warning(f"Unreadable audit snapshot {self.path}: {exc}")
            return None
        if data is None:
            return None
        try:
            return AuditResult.model_validate(data)
        except ValidationError as exc:
            logger.warning(f"Invalid audit snapshot {self.path}: {exc}")
            return None

    def delete(self) -> bool:
        return self._file.delete()


class AuditSession:
    """State of one audit run: construct, commit settled batches, finish.

    Only the orchestrating thread calls `commit_batch` and `finish`; other
    threads read `progress`, which is always a complete per-batch snapshot.
    """

    def __init__(self, total: int):
        self.total = total
        self.started_at = datetime.now(timezone.utc)
        self._start = time.monotonic()
        self._results: List[CoverAnalysis] = []
        self._progress = AuditProgress(
            total=total,
            phase=AuditPhase.COMPLETE if total == 0 else AuditPhase.PHASE1,
            estimated_seconds_remaining=total * INITIAL_SECONDS_PER_COVER,
        )

    @property
    def progress(self) -> AuditProgress:
        return self._progress.model_copy()

    def commit_batch(self, analyses: List[CoverAnalysis]) -> AuditProgress:
        """Fold one fully settled batch into the counters and publish progress."""
        counts = self._progress.model_copy()
        for analysis in analyses:
            self._results.append(analysis)
            if analysis.is_corrupt:
                counts.errors += 1
            elif analysis.score >= SCORE_PASSED:
                counts.passed += 1
            elif analysis.score >= SCORE_FLAGGED:
                counts.flagged += 1
            else:
                counts.failed += 1

        counts.completed = min(counts.completed + len(analyses), self.total)
        elapsed = time.monotonic() - self._start
        rate = counts.completed / elapsed if elapsed > 0 else 0.0
        remaining = self.total - counts.completed
        counts.estimated_seconds_remaining = remaining / rate if rate > 0 else 0.0
        counts.phase = AuditPhase.COMPLETE if counts.completed >= self.total else AuditPhase.PHASE1

        self._progress = counts
        return counts.model_copy()

    def finish(self) -> AuditResult:
        """Build the final snapshot, worst covers first."""
        results = sorted(self._results, key=lambda a: a.score)
        progress = self._progress.model_copy(
            update={"phase": AuditPhase.COMPLETE, "estimated_seconds_remaining": 0.0}
        )
        self._progress = progress
        return AuditResult(
            total=self.total,
            passed=progress.passed,
            flagged=progress.flagged,
            failed=progress.failed,
            errors=progress.errors,
            duration_ms=int((time.monotonic() - self._start) * 1000),
            completed_at=datetime.now(timezone.utc),
            results=results,
        )


class CoverAuditor:
    """Runs cover audits and serves their progress and results."""

    def __init__(
        self,
        covers_dir: Path,
        result_store: AuditResultStore,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_workers: int = 1,
        task_timeout: Optional[float] = None,
        executor_factory: ExecutorFactory = default_executor_factory,
        analyze: AnalyzeFn = analyze_cover,
    ):
        self.covers_dir = covers_dir
        self.result_store = result_store
        self.batch_size = max(1, batch_size)
        self.max_workers = max(1, max_workers)
        self.task_timeout = task_timeout if task_timeout and task_timeout > 0 else None
        self._executor_factory = executor_factory
        self._analyze = analyze

        self._lock = threading.Lock()
        self._session: Optional[AuditSession] = None
        self._last_progress: Optional[AuditProgress] = None
        self._cached_result: Optional[AuditResult] = None

    @classmethod
    def from_config(cls, config: CuratorConfig, **kwargs) -> "CoverAuditor":
        return cls(
            config.covers_dir,
            AuditResultStore(config.audit_results_path),
            batch_size=config.audit.batch_size,
            max_workers=config.audit.worker_count,
            task_timeout=config.audit.task_timeout,
            **kwargs,
        )

    @property
    def in_progress(self) -> bool:
        return self._session is not None

    @property
    def progress(self) -> Optional[AuditProgress]:
        """Latest progress snapshot: the running audit's, else the last run's."""
        session = self._session
        if session is not None:
            return session.progress
        if self._last_progress is not None:
            return self._last_progress.model_copy()
        return None

    def _start_session(self) -> Tuple[AuditSession, List[CoverFile]]:
        with self._lock:
            if self._session is not None:
                raise AuditInProgressError()
            covers = find_cover_files(self.covers_dir)
            session = AuditSession(total=len(covers))
            self._session = session
        return session, covers

    def run(self, on_progress: Optional[ProgressCallback] = None) -> AuditResult:
        """Audit every cover file and persist the result snapshot.

        Raises AuditInProgressError immediately if another audit is running.
        Individual unreadable files or failed workers never abort the run.
        """
        session, covers = self._start_session()
        logger.info(
            f"[Audit] Starting audit of {len(covers)} covers "
            f"({self.max_workers} workers, batches of {self.batch_size})"
        )

        try:
            executor: Optional[Executor] = None
            try:
                for start in range(0, len(covers), self.batch_size):
                    if executor is None:
                        executor = self._executor_factory(self.max_workers)

                    batch = covers[start:start + self.batch_size]
                    analyses, pool_unusable = self._run_batch(executor, batch)
                    progress = session.commit_batch(analyses)

                    logger.debug(
                        f"[Audit] {progress.completed}/{progress.total} "
                        f"(passed {progress.passed}, flagged {progress.flagged}, "
                        f"failed {progress.failed}, errors {progress.errors})"
                    )
                    _notify(on_progress, progress)

                    if pool_unusable:
                        # Hung or dead workers keep their slots; later batches get a fresh pool
                        _retire_executor(executor)
                        executor = None
            finally:
                if executor is not None:
                    executor.shutdown(wait=True, cancel_futures=True)

            result = session.finish()
            self.result_store.save(result)
            self._cached_result = result
            logger.info(
                f"[Audit] Complete in {result.duration_ms / 1000:.1f}s: "
                f"{result.passed} passed, {result.flagged} flagged, "
                f"{result.failed} failed, {result.errors} errors"
            )
            return result
        finally:
            with self._lock:
                self._last_progress = session.progress
                self._session = None

    def _run_batch(
        self, executor: Executor, batch: List[CoverFile]
    ) -> Tuple[List[CoverAnalysis], bool]:
        """Run one batch to full settlement.

        Returns (analyses in input order, pool_unusable). The pool is unusable
        when it broke or when a worker is still running past the timeout.
        """
        submitted: List[Tuple[CoverFile, Optional[Future]]] = []
        pool_unusable = False

        for cover in batch:
            try:
                submitted.append((cover, executor.submit(self._analyze, cover.game_id, cover.path)))
            except BrokenProcessPool as exc:
                logger.error(f"[Audit] Could not submit game {cover.game_id}: {exc}")
                submitted.append((cover, None))
                pool_unusable = True

        futures = [future for _, future in submitted if future is not None]
        _, not_done = wait(futures, timeout=self.task_timeout)

        analyses = []
        for cover, future in submitted:
            if future is None:
                analyses.append(CoverAnalysis.corrupt(cover.game_id, cover.path))
                continue

            if future in not_done:
                if not future.cancel():
                    pool_unusable = True
                logger.error(
                    f"[Audit] Worker timed out for game {cover.game_id} ({short_path(cover.path)})"
                )
                analyses.append(CoverAnalysis.corrupt(cover.game_id, cover.path))
                continue

            exc = future.exception()
            if exc is not None:
                if isinstance(exc, BrokenProcessPool):
                    pool_unusable = True
                logger.error(
                    f"[Audit] Worker failed for game {cover.game_id} ({short_path(cover.path)}): {exc}"
                )
                analyses.append(CoverAnalysis.corrupt(cover.game_id, cover.path))
                continue

            analyses.append(future.result())

        return analyses, pool_unusable

    def get_cached_result(self) -> Optional[AuditResult]:
        """Return the last completed audit, from memory or the snapshot file."""
        if self._cached_result is None:
            self._cached_result = self.result_store.load()
        return self._cached_result

    def get_bad_covers(self, threshold: int = SCORE_FLAGGED) -> List[CoverAnalysis]:
        """Covers from the last audit scoring below threshold, worst first."""
        result = self.get_cached_result()
        if result is None:
            return []
        return [analysis for analysis in result.results if analysis.score < threshold]

    def clear_cache(self) -> None:
        """Forget the cached result and progress and delete the snapshot file."""
        with self._lock:
            self._cached_result = None
            self._last_progress = None
        self.result_store.delete()
