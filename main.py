"""Curator CLI entry point."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from sqlmodel import Session

from curator.audit import AuditProgress, AuditResultStore, CoverAuditor
from curator.cache import CoverCache
from curator.config import DEFAULT_CONFIG_PATH, CuratorConfig, load_config, write_default_config
from curator.database import get_engine, init_db, use_database
from curator.errors import CuratorError
from curator.history import FixHistoryStore
from curator.logging_config import setup_logging
from curator.remediation import OUTCOME_GUIDANCE, CoverFixer, FixRequest
from curator.repository import GameCatalog, Repository
from curator.sources import SteamGridDBSource


__version__ = "0.1.0"

app = typer.Typer(add_completion=False, help="Curator game cover audit CLI")
logger = logging.getLogger("curator")


def _ensure_config() -> CuratorConfig:
    try:
        config = load_config()
    except FileNotFoundError:
        typer.echo("[ERROR] config.ini not found. Run: curator init --covers /path/to/covers")
        raise typer.Exit(code=1)
    use_database(config.database_path)
    return config


def _setup_logging(config: CuratorConfig, verbose: bool) -> None:
    setup_logging(config.data_dir, "DEBUG" if verbose else config.logging.level)


def _build_fixer(config: CuratorConfig) -> CoverFixer:
    init_db()
    return CoverFixer(
        SteamGridDBSource(config.steamgriddb),
        CoverCache(config.covers_dir, timeout=config.steamgriddb.timeout),
        FixHistoryStore(config.fix_history_path),
        GameCatalog(),
        request_delay=config.steamgriddb.request_delay,
    )


def _print_progress(progress: AuditProgress) -> None:
    typer.echo(
        f"  {progress.completed}/{progress.total} "
        f"(passed {progress.passed}, flagged {progress.flagged}, failed {progress.failed}, "
        f"errors {progress.errors}) ~{progress.estimated_seconds_remaining:.0f}s left"
    )


@app.command()
def init(
    covers: Path = typer.Option(..., "--covers", help="Path to your cover image folder"),
    name: str = typer.Option("My Game Library", "--name", help="Library name"),
) -> None:
    """Initialize config.ini with default settings."""
    write_default_config(DEFAULT_CONFIG_PATH, covers, name)
    typer.echo(f"[OK] Config created at {DEFAULT_CONFIG_PATH}")


@app.command()
def audit(
    workers: Optional[int] = typer.Option(None, "--workers", help="Worker processes"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Covers per batch"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Score every cover and save the audit report."""
    config = _ensure_config()
    _setup_logging(config, verbose)
    if workers:
        config.audit.max_workers = workers
    if batch_size:
        config.audit.batch_size = batch_size

    auditor = CoverAuditor.from_config(config)
    result = auditor.run(on_progress=_print_progress)

    typer.echo(
        "✓ Audit completed: "
        f"{result.total} covers, {result.passed} passed, {result.flagged} flagged, "
        f"{result.failed} failed, {result.errors} errors "
        f"({result.duration_ms / 1000:.1f}s)."
    )


@app.command()
def report(
    threshold: Optional[int] = typer.Option(None, "--threshold", help="Show covers scoring below this"),
    limit: int = typer.Option(25, "--limit", help="Maximum rows"),
) -> None:
    """Show the worst covers from the last audit."""
    config = _ensure_config()
    store = AuditResultStore(config.audit_results_path)
    result = store.load()
    if result is None:
        typer.echo("[INFO] No audit results yet. Run: curator audit")
        raise typer.Exit(code=0)

    if threshold is None:
        threshold = config.audit.bad_cover_threshold
    bad = [a for a in result.results if a.score < threshold]
    typer.echo(f"Last audit: {result.completed_at:%Y-%m-%d %H:%M} ({result.total} covers)")
    typer.echo(f"{len(bad)} covers below {threshold}:")
    for analysis in bad[:limit]:
        issues = ", ".join(issue.value for issue in analysis.issues) or "-"
        typer.echo(f"  game {analysis.game_id:>8}  score {analysis.score:>3}  {issues}")


@app.command()
def fix(
    game_id: int = typer.Argument(..., help="Game id (cover file stem)"),
    title: Optional[str] = typer.Option(None, "--title", help="Game title"),
    steam_app_id: Optional[int] = typer.Option(None, "--steam-app-id", help="Steam app id"),
    search: Optional[str] = typer.Option(None, "--search", help="Override the search term"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Replace one game's cover with the best untried candidate."""
    config = _ensure_config()
    _setup_logging(config, verbose)
    fixer = _build_fixer(config)

    game = GameCatalog().get_game(game_id)
    title = title or (game.title if game else None)
    steam_app_id = steam_app_id or (game.steam_app_id if game else None)
    if not title and not search:
        typer.echo(f"[ERROR] Unknown game {game_id}. Pass --title.")
        raise typer.Exit(code=1)

    try:
        result = fixer.fix_cover(game_id, title or search, steam_app_id=steam_app_id, search_term=search)
    except CuratorError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=1)

    if result.success:
        typer.echo(f"✓ Game {game_id}: cover replaced ({result.cover_url})")
    else:
        typer.echo(f"✗ Game {game_id}: {result.error}")
        typer.echo(f"  {OUTCOME_GUIDANCE[result.outcome]}")
        raise typer.Exit(code=1)


@app.command("fix-batch")
def fix_batch(
    threshold: Optional[int] = typer.Option(None, "--threshold", help="Fix covers scoring below this"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum covers to fix"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Fix every bad cover from the last audit, one at a time."""
    config = _ensure_config()
    _setup_logging(config, verbose)
    if threshold is None:
        threshold = config.audit.bad_cover_threshold
    auditor = CoverAuditor.from_config(config)
    if auditor.get_cached_result() is None:
        typer.echo("[INFO] No audit results yet. Run: curator audit")
        raise typer.Exit(code=0)

    bad = auditor.get_bad_covers(threshold)
    if limit is not None:
        bad = bad[:limit]

    fixer = _build_fixer(config)
    games = {g.id: g for g in GameCatalog().get_games([a.game_id for a in bad])}
    pending = []
    for analysis in bad:
        game = games.get(analysis.game_id)
        if game is None:
            logger.warning(f"Skipping game {analysis.game_id}: not in the game database")
            continue
        pending.append(FixRequest(game.id, game.title, game.steam_app_id))

    batch = fixer.fix_covers(pending)
    typer.echo(f"✓ Batch fix completed: {batch.success} fixed, {batch.failed} failed of {batch.total}.")
    for item in batch.results:
        if not item.success:
            typer.echo(f"  ✗ game {item.game_id}: {item.error}")


@app.command()
def history(
    game_id: Optional[int] = typer.Argument(None, help="Only show this game"),
) -> None:
    """Show covers already tried per game."""
    config = _ensure_config()
    entries = FixHistoryStore(config.fix_history_path).get_history()
    if game_id is not None:
        entries = {k: v for k, v in entries.items() if k == str(game_id)}

    if not entries:
        typer.echo("[INFO] No fix history.")
        return

    for key, entry in sorted(entries.items(), key=lambda kv: int(kv[0]) if kv[0].isdigit() else 0):
        ids = ", ".join(str(i) for i in entry.tried_candidate_ids)
        typer.echo(f"  game {key:>8}: {len(entry.tried_candidate_ids)} tried [{ids}]")


@app.command("clear-history")
def clear_history(
    game_id: Optional[int] = typer.Argument(None, help="Game to clear (omit with --all)"),
    all_games: bool = typer.Option(False, "--all", help="Clear history for every game"),
) -> None:
    """Forget tried covers so they can be offered again."""
    config = _ensure_config()
    store = FixHistoryStore(config.fix_history_path)

    if all_games:
        store.clear_all()
        typer.echo("[OK] Cleared all fix history")
    elif game_id is not None:
        if store.clear(game_id):
            typer.echo(f"[OK] Cleared fix history for game {game_id}")
        else:
            typer.echo(f"[INFO] No fix history for game {game_id}")
    else:
        typer.echo("[ERROR] Pass a game id or --all.")
        raise typer.Exit(code=1)


@app.command("add-game")
def add_game(
    game_id: int = typer.Argument(..., help="Game id (cover file stem)"),
    title: str = typer.Option(..., "--title", help="Game title"),
    steam_app_id: Optional[int] = typer.Option(None, "--steam-app-id", help="Steam app id"),
) -> None:
    """Register a game so batch fixes know its title and Steam app id."""
    _ensure_config()
    init_db()

    with Session(get_engine()) as session:
        repo = Repository(session)
        repo.add_game(game_id, title, steam_app_id=steam_app_id)
        repo.commit()
    typer.echo(f"[OK] Game {game_id} saved")


@app.command()
def stats() -> None:
    """Show statistics from the last audit."""
    config = _ensure_config()
    result = AuditResultStore(config.audit_results_path).load()
    if result is None:
        typer.echo("[INFO] No audit results yet. Run: curator audit")
        return

    percent = (result.passed / result.total * 100) if result.total else 0
    typer.echo("Cover Audit Statistics:")
    typer.echo(f"  Total covers: {result.total}")
    typer.echo(f"  Passed: {result.passed} ({percent:.0f}%)")
    typer.echo(f"  Flagged: {result.flagged}")
    typer.echo(f"  Failed: {result.failed}")
    typer.echo(f"  Errors: {result.errors}")
    typer.echo(f"  Duration: {result.duration_ms / 1000:.1f}s")


if __name__ == "__main__":
    app()
