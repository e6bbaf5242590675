import threading
from pathlib import Path

import pytest

from curator.cache import DownloadResult
from curator.errors import FixBatchInProgressError
from curator.history import FixHistoryStore, TriedCandidates
from curator.remediation import CoverFixer, FixOutcome, FixRequest, select_candidate
from curator.sources import AssetClass, Candidate, GameIdentity


class FakeSource:
    def __init__(self, by_steam=None, by_title=None, candidates=None):
        self.by_steam = by_steam or {}
        self.by_title = by_title or {}
        self.candidates = candidates or {}
        self.calls = []

    def find_by_steam_app_id(self, steam_app_id):
        self.calls.append(("steam", steam_app_id))
        return self.by_steam.get(steam_app_id)

    def search_by_title(self, title):
        self.calls.append(("title", title))
        result = self.by_title.get(title)
        if isinstance(result, Exception):
            raise result
        return result

    def list_candidates(self, identity, asset_class):
        self.calls.append(("candidates", identity.id, asset_class))
        return list(self.candidates.get(identity.id, []))


class FakeCache:
    def __init__(self, covers_dir: Path, failing_urls=()):
        self.covers_dir = covers_dir
        self.failing_urls = set(failing_urls)
        self.downloads = []

    def download(self, game_id, url):
        self.downloads.append((game_id, url))
        if url in self.failing_urls:
            return DownloadResult(False, error="HTTP 503: Service Unavailable")
        return DownloadResult(True, local_path=self.covers_dir / f"{game_id}.png")


class FakeCovers:
    def __init__(self):
        self.updates = {}

    def update_cover(self, game_id, cover_url, title=None):
        self.updates[game_id] = cover_url


def _candidate(cid, score, **kwargs):
    return Candidate(id=cid, score=score, url=f"https://cdn.example/grid/{cid}.png", **kwargs)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def history(tmp_path):
    return FixHistoryStore(tmp_path / "cover-fix-history.json")


def _fixer(tmp_path, source, history, sleeps, cache=None, covers=None):
    return CoverFixer(
        source,
        cache or FakeCache(tmp_path / "covers"),
        history,
        covers or FakeCovers(),
        request_delay=0.25,
        sleep=sleeps.append,
    )


HALO = GameIdentity(id=900, name="Halo")


def test_never_reoffers_a_tried_candidate(tmp_path, history, sleeps):
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: [_candidate(1, 10), _candidate(2, 5)]})
    covers = FakeCovers()
    fixer = _fixer(tmp_path, source, history, sleeps, covers=covers)

    first = fixer.fix_cover(42, "Halo")
    second = fixer.fix_cover(42, "Halo")
    third = fixer.fix_cover(42, "Halo")

    assert (first.success, first.candidate_id) == (True, 1)
    assert (second.success, second.candidate_id) == (True, 2)
    assert third.success is False
    assert third.outcome is FixOutcome.CANDIDATES_EXHAUSTED
    assert "Clear history" in third.error
    assert history.get_tried(42).ids == {1, 2}
    assert covers.updates[42] == "/covers/42.png"


def test_three_candidates_are_offered_best_first_then_exhausted(tmp_path, history, sleeps):
    candidates = [_candidate("C", 70), _candidate("A", 90), _candidate("B", 80)]
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: candidates})
    fixer = _fixer(tmp_path, source, history, sleeps)

    outcomes = [fixer.fix_cover(42, "Halo") for _ in range(4)]

    assert [(r.candidate_id, r.outcome) for r in outcomes] == [
        ("A", FixOutcome.COMMITTED),
        ("B", FixOutcome.COMMITTED),
        ("C", FixOutcome.COMMITTED),
        (None, FixOutcome.CANDIDATES_EXHAUSTED),
    ]
    assert history.get_tried(42).ids == {"A", "B", "C"}


def test_seeded_history_exhausts_candidates(tmp_path, history, sleeps):
    candidates = [_candidate(1, 90), _candidate(2, 80), _candidate(3, 70)]
    for candidate in candidates:
        history.add_tried(42, candidate.id, candidate.url)
    cache = FakeCache(tmp_path / "covers")
    covers = FakeCovers()
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: candidates})

    result = _fixer(tmp_path, source, history, sleeps, cache=cache, covers=covers).fix_cover(42, "Halo")

    assert result.outcome is FixOutcome.CANDIDATES_EXHAUSTED
    assert cache.downloads == []
    assert covers.updates == {}
    assert history.get_tried(42).ids == {1, 2, 3}


def test_fixes_always_request_grid_art(tmp_path, history, sleeps):
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: [_candidate(1, 10)]})
    fixer = _fixer(tmp_path, source, history, sleeps)

    fixer.fix_cover(42, "Halo")

    assert ("candidates", 900, AssetClass.GRID) in source.calls
    with pytest.raises(TypeError):
        CoverFixer(source, FakeCache(tmp_path), history, FakeCovers(), asset_class=AssetClass.HERO)


def test_committed_result_fields(tmp_path, history, sleeps):
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: [_candidate(7, 3)]})
    result = _fixer(tmp_path, source, history, sleeps).fix_cover(42, "Halo")

    assert result.outcome is FixOutcome.COMMITTED
    assert result.resolved_url == "https://cdn.example/grid/7.png"
    assert result.cover_url == "/covers/42.png"
    assert result.source_game_id == 900
    assert result.source_game_name == "Halo"
    assert result.to_json_dict()["resolvedUrl"] == "https://cdn.example/grid/7.png"


def test_failure_outcomes_are_distinct(tmp_path, history, sleeps):
    source = FakeSource(
        by_title={"Halo": HALO, "Empty": GameIdentity(id=901, name="Empty")},
        candidates={900: [_candidate(1, 10)]},
    )
    fixer = _fixer(tmp_path, source, history, sleeps)

    missing = fixer.fix_cover(1, "Unknown Game")
    empty = fixer.fix_cover(2, "Empty")
    fixer.fix_cover(3, "Halo")
    exhausted = fixer.fix_cover(3, "Halo")

    assert missing.outcome is FixOutcome.SOURCE_NOT_FOUND
    assert empty.outcome is FixOutcome.NO_CANDIDATES
    assert exhausted.outcome is FixOutcome.CANDIDATES_EXHAUSTED
    assert len({missing.error, empty.error, exhausted.error}) == 3
    assert empty.source_game_id == 901


def test_failed_download_is_not_recorded(tmp_path, history, sleeps):
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: [_candidate(1, 10)]})
    covers = FakeCovers()
    flaky = FakeCache(tmp_path / "covers", failing_urls={"https://cdn.example/grid/1.png"})

    result = _fixer(tmp_path, source, history, sleeps, cache=flaky, covers=covers).fix_cover(42, "Halo")

    assert result.outcome is FixOutcome.DOWNLOAD_FAILED
    assert "503" in result.error
    assert history.get_tried(42).ids == set()
    assert covers.updates == {}

    # The same candidate is offered again once downloads work
    retry = _fixer(tmp_path, source, history, sleeps).fix_cover(42, "Halo")
    assert retry.success is True
    assert retry.candidate_id == 1


def test_steam_app_id_is_preferred(tmp_path, history, sleeps):
    source = FakeSource(
        by_steam={620: GameIdentity(id=5, name="Portal 2")},
        candidates={5: [_candidate(1, 10)]},
    )
    result = _fixer(tmp_path, source, history, sleeps).fix_cover(42, "Portal 2", steam_app_id=620)

    assert result.success is True
    assert ("title", "Portal 2") not in source.calls
    assert source.calls[0] == ("steam", 620)
    assert source.calls[1] == ("candidates", 5, AssetClass.GRID)


def test_steam_miss_falls_back_to_title(tmp_path, history, sleeps):
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: [_candidate(1, 10)]})
    result = _fixer(tmp_path, source, history, sleeps).fix_cover(42, "Halo", steam_app_id=999)

    assert result.success is True
    assert [c[0] for c in source.calls] == ["steam", "title", "candidates"]
    assert sleeps == [0.25, 0.25]


def test_search_term_overrides_title(tmp_path, history, sleeps):
    source = FakeSource(by_title={"Halo CE": HALO}, candidates={900: [_candidate(1, 10)]})
    result = _fixer(tmp_path, source, history, sleeps).fix_cover(42, "Halo: Combat Evolved", search_term="Halo CE")
    assert result.success is True
    assert ("title", "Halo CE") in source.calls


def test_tried_url_excludes_candidate_with_new_id(tmp_path, history, sleeps):
    history.add_tried(42, 1, "https://cdn.example/grid/1.png")
    repointed = Candidate(id=99, score=50, url="https://cdn.example/grid/1.png")
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: [repointed, _candidate(2, 5)]})

    result = _fixer(tmp_path, source, history, sleeps).fix_cover(42, "Halo")

    assert result.candidate_id == 2


def test_select_candidate_prefers_safe_art():
    adult = _candidate(1, 100, is_adult=True)
    humor = _candidate(2, 90, is_humor=True)
    safe = _candidate(3, 10)
    empty = TriedCandidates(set(), set())

    assert select_candidate([adult, humor, safe], empty) == safe
    assert select_candidate([adult, humor], empty) == adult
    assert select_candidate([], empty) is None
    assert select_candidate([safe], TriedCandidates({3}, set())) is None


def test_select_candidate_ranks_by_score():
    candidates = [_candidate(1, 2), _candidate(2, 9), _candidate(3, 5)]
    assert select_candidate(candidates, TriedCandidates(set(), set())).id == 2
    assert select_candidate(candidates, TriedCandidates({2}, set())).id == 3


def test_batch_isolates_failures(tmp_path, history, sleeps):
    by_title = {f"Game {i}": GameIdentity(id=i, name=f"Game {i}") for i in range(1, 11)}
    by_title["Game 5"] = RuntimeError("catalog exploded")
    candidates = {i: [_candidate(100 + i, 1)] for i in range(1, 11)}
    fixer = _fixer(tmp_path, FakeSource(by_title=by_title, candidates=candidates), history, sleeps)

    batch = fixer.fix_covers([FixRequest(i, f"Game {i}") for i in range(1, 11)])

    assert batch.total == 10
    assert len(batch.results) == 10
    assert [r.game_id for r in batch.results] == list(range(1, 11))
    assert batch.success == 9
    assert batch.failed == 1
    assert batch.results[4].outcome is FixOutcome.ERROR
    assert "catalog exploded" in batch.results[4].error
    assert history.get_tried(6).ids == {106}


def test_batch_waits_double_delay_between_games(tmp_path, history, sleeps):
    by_title = {f"Game {i}": GameIdentity(id=i, name=f"Game {i}") for i in range(1, 4)}
    candidates = {i: [_candidate(i, 1)] for i in range(1, 4)}
    fixer = _fixer(tmp_path, FakeSource(by_title=by_title, candidates=candidates), history, sleeps)

    fixer.fix_covers([(i, f"Game {i}") for i in range(1, 4)])

    assert sleeps == [0.25, 0.5, 0.25, 0.5, 0.25]


def test_batch_reports_progress(tmp_path, history, sleeps):
    source = FakeSource(by_title={"Halo": HALO}, candidates={900: [_candidate(1, 10)]})
    fixer = _fixer(tmp_path, source, history, sleeps)

    updates = []
    fixer.fix_covers([FixRequest(1, "Halo"), FixRequest(2, "Nope")], on_progress=updates.append)

    assert updates[0].current == "Halo"
    assert updates[-1].current == "Done"
    assert (updates[-1].completed, updates[-1].success, updates[-1].failed) == (2, 1, 1)
    assert fixer.in_progress is False
    assert fixer.progress.completed == 2


def test_failing_progress_callback_does_not_abort_batch(tmp_path, history, sleeps):
    by_title = {f"Game {i}": GameIdentity(id=i, name=f"Game {i}") for i in range(1, 4)}
    candidates = {i: [_candidate(i, 1)] for i in range(1, 4)}
    fixer = _fixer(tmp_path, FakeSource(by_title=by_title, candidates=candidates), history, sleeps)

    def on_progress(progress):
        raise RuntimeError("display went away")

    batch = fixer.fix_covers([FixRequest(i, f"Game {i}") for i in range(1, 4)], on_progress=on_progress)

    assert batch.success == 3
    assert len(batch.results) == 3
    assert fixer.in_progress is False


def test_second_batch_is_rejected_while_running(tmp_path, history, sleeps):
    started = threading.Event()
    release = threading.Event()

    class BlockingSource(FakeSource):
        def search_by_title(self, title):
            started.set()
            release.wait(5.0)
            return None

    fixer = _fixer(tmp_path, BlockingSource(), history, sleeps)
    runner = threading.Thread(target=fixer.fix_covers, args=([FixRequest(1, "Halo")],))
    runner.start()
    try:
        assert started.wait(5.0)
        with pytest.raises(FixBatchInProgressError):
            fixer.fix_covers([FixRequest(2, "Halo")])
        assert fixer.progress.total == 1
    finally:
        release.set()
        runner.join(5.0)

    assert fixer.in_progress is False
