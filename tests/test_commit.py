import asyncio

from a10_runner.commit import CommitEngine
from a10_runner.diagnostics import DiagnosticsBuffer
from a10_runner.errors import StoreUnavailable
from a10_runner.models import CommitKind, FileChange, Severity, StoreTarget
from a10_runner.store import MemoryStore

from conftest import ConflictingStore


TARGET = StoreTarget(owner="acme", repo="site", branch="main")


def _engine(store, diagnostics: DiagnosticsBuffer, delays: list[float] | None = None) -> CommitEngine:
    async def fake_sleep(seconds: float) -> None:
        if delays is not None:
            delays.append(seconds)

    return CommitEngine(
        store,
        diagnostics=diagnostics,
        tries=3,
        backoff_seconds=0.5,
        settle_seconds=0.1,
        sleep=fake_sleep,
    )


def test_commit_one_reports_created_then_updated(diagnostics: DiagnosticsBuffer) -> None:
    store = MemoryStore()
    engine = _engine(store, diagnostics)
    file = FileChange(path="index.html", content="<html></html>", message="add index")

    first = asyncio.run(engine.commit_one(file, TARGET))
    second = asyncio.run(engine.commit_one(file.model_copy(update={"content": "<html>v2</html>"}), TARGET))

    assert first.ok and first.committed_as == CommitKind.CREATED
    assert second.ok and second.committed_as == CommitKind.UPDATED
    assert asyncio.run(store.get_text_or_null("acme", "site", "index.html", "main")) == "<html>v2</html>"


def test_recommitting_identical_content_is_still_a_write(diagnostics: DiagnosticsBuffer) -> None:
    store = MemoryStore()
    engine = _engine(store, diagnostics)
    file = FileChange(path="style.css", content="body {}", message="css")

    asyncio.run(engine.commit_one(file, TARGET))
    outcome = asyncio.run(engine.commit_one(file, TARGET))

    assert outcome.committed_as == CommitKind.UPDATED
    assert len(store.commits) == 2


def test_conflict_retries_with_linear_backoff_then_succeeds(diagnostics: DiagnosticsBuffer) -> None:
    store = ConflictingStore({"style.css": 2})
    delays: list[float] = []
    engine = _engine(store, diagnostics, delays)

    outcome = asyncio.run(engine.commit_one(FileChange(path="style.css", content="a {}"), TARGET))

    assert outcome.ok is True
    assert outcome.attempts == 3
    assert delays == [0.5, 1.0]


def test_conflict_exhaustion_returns_failed_outcome(diagnostics: DiagnosticsBuffer) -> None:
    store = ConflictingStore({"script.js": 3})
    engine = _engine(store, diagnostics)

    outcome = asyncio.run(engine.commit_one(FileChange(path="script.js", content="go()"), TARGET))

    assert outcome.ok is False
    assert outcome.committed_as is None
    assert "ConflictError" in (outcome.error or "")
    assert any(event.severity == Severity.ERROR for event in diagnostics.recent())


def test_commit_many_isolates_partial_failures(diagnostics: DiagnosticsBuffer) -> None:
    store = ConflictingStore({"style.css": 2, "script.js": 3})
    engine = _engine(store, diagnostics)
    files = [
        FileChange(path="index.html", content="<html></html>"),
        FileChange(path="style.css", content="a {}"),
        FileChange(path="script.js", content="go()"),
    ]

    batch = asyncio.run(engine.commit_many(files, TARGET))
    by_path = {outcome.path: outcome for outcome in batch.outcomes}

    assert batch.ok is False
    assert batch.failed_paths == ["script.js"]
    assert by_path["index.html"].ok and by_path["index.html"].attempts == 1
    assert by_path["style.css"].ok
    assert not by_path["script.js"].ok


def test_commit_many_is_sequential(diagnostics: DiagnosticsBuffer) -> None:
    store = ConflictingStore({"a.txt": 1})
    engine = _engine(store, diagnostics)
    files = [FileChange(path=name, content=name) for name in ("a.txt", "b.txt", "c.txt")]

    asyncio.run(engine.commit_many(files, TARGET))

    # a.txt finishes (including its retry) before b.txt is attempted.
    assert store.write_attempts == ["a.txt", "a.txt", "b.txt", "c.txt"]


def test_store_outage_is_retried_then_reported(diagnostics: DiagnosticsBuffer) -> None:
    class DownStore(MemoryStore):
        async def get_sha_or_null(self, owner, repo, path, ref):  # noqa: ANN001,ANN201
            raise StoreUnavailable("HTTP 503")

    engine = _engine(DownStore(), diagnostics)
    outcome = asyncio.run(engine.commit_one(FileChange(path="index.html", content="x"), TARGET))

    assert outcome.ok is False
    assert outcome.attempts == 3
    assert "StoreUnavailable" in (outcome.error or "")


def test_empty_batch_is_ok(diagnostics: DiagnosticsBuffer) -> None:
    batch = asyncio.run(_engine(MemoryStore(), diagnostics).commit_many([], TARGET))
    assert batch.ok is True
    assert batch.outcomes == ()


def test_delete_many_ignores_absent_files(diagnostics: DiagnosticsBuffer) -> None:
    store = MemoryStore()
    store.seed("acme", "site", "main", "old.html", "legacy")
    engine = _engine(store, diagnostics)

    removed = asyncio.run(engine.delete_many(["old.html", "never.html"], TARGET))

    assert removed == {"old.html": True, "never.html": False}
    assert asyncio.run(store.get_sha_or_null("acme", "site", "old.html", "main")) is None
