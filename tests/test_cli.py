import pytest
from typer.testing import CliRunner

import main
from curator import database
from curator.analysis import CoverAnalysis
from curator.audit import AuditResultStore, AuditSession
from curator.history import FixHistoryStore
from curator.repository import GameCatalog


runner = CliRunner()


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    path = tmp_path / "config.ini"
    monkeypatch.setattr("curator.config.DEFAULT_CONFIG_PATH", path, raising=True)
    monkeypatch.setattr("main.DEFAULT_CONFIG_PATH", path, raising=True)
    # Commands re-point the database engine; restore it afterwards
    monkeypatch.setattr("curator.database.engine", database.engine, raising=True)
    monkeypatch.setattr("curator.database.DB_PATH", database.DB_PATH, raising=True)
    return path


def _init(tmp_path):
    return runner.invoke(main.app, ["init", "--covers", str(tmp_path / "covers")])


def test_commands_require_config(config_path):
    result = runner.invoke(main.app, ["stats"])
    assert result.exit_code == 1
    assert "config.ini not found" in result.output


def test_init_writes_config(tmp_path, config_path):
    result = _init(tmp_path)
    assert result.exit_code == 0
    assert config_path.exists()
    assert "covers_dir" in config_path.read_text()


def test_stats_and_report_from_snapshot(tmp_path, config_path):
    _init(tmp_path)
    session = AuditSession(total=2)
    session.commit_batch([
        CoverAnalysis.corrupt(3, tmp_path / "covers" / "3.jpg"),
        CoverAnalysis(game_id=4, file_path="4.jpg", score=90, flagged_for_review=False),
    ])
    AuditResultStore(tmp_path / "cover-audit-results.json").save(session.finish())

    stats = runner.invoke(main.app, ["stats"])
    assert stats.exit_code == 0
    assert "Total covers: 2" in stats.output
    assert "Errors: 1" in stats.output

    report = runner.invoke(main.app, ["report"])
    assert report.exit_code == 0
    assert "1 covers below 40" in report.output
    assert "corrupt" in report.output


def test_history_and_clear_history(tmp_path, config_path):
    _init(tmp_path)
    FixHistoryStore(tmp_path / "cover-fix-history.json").add_tried(42, 101, "https://cdn.test/101.png")

    shown = runner.invoke(main.app, ["history"])
    assert "42: 1 tried [101]" in shown.output

    cleared = runner.invoke(main.app, ["clear-history", "42"])
    assert cleared.exit_code == 0
    assert "Cleared fix history for game 42" in cleared.output

    empty = runner.invoke(main.app, ["history", "42"])
    assert "No fix history" in empty.output

    assert runner.invoke(main.app, ["clear-history"]).exit_code == 1
    assert runner.invoke(main.app, ["clear-history", "--all"]).exit_code == 0


def test_add_game_uses_config_database(tmp_path, config_path):
    _init(tmp_path)

    result = runner.invoke(main.app, ["add-game", "42", "--title", "Halo", "--steam-app-id", "976730"])

    assert result.exit_code == 0
    assert (tmp_path / "library.db").exists()
    game = GameCatalog().get_game(42)
    assert (game.title, game.steam_app_id) == ("Halo", 976730)
