from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from .diagnostics import DiagnosticsBuffer
from .errors import ConflictError, StoreUnavailable
from .models import CommitBatch, CommitKind, CommitOutcome, FileChange, Severity, StoreTarget
from .store import FileStore

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class CommitEngine:
    """Commits change sets to a file store with bounded retry on optimistic-concurrency conflicts.

    Files in one batch are written strictly one after another: file N+1 is not
    attempted until file N has either committed or exhausted its retries.
    """

    def __init__(
        self,
        store: FileStore,
        *,
        diagnostics: DiagnosticsBuffer,
        tries: int = 3,
        backoff_seconds: float = 0.5,
        settle_seconds: float = 0.25,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if tries < 1:
            raise ValueError(f"tries must be >= 1, got: {tries}")
        self.store = store
        self.diagnostics = diagnostics
        self.tries = tries
        self.backoff_seconds = backoff_seconds
        self.settle_seconds = settle_seconds
        self._sleep = sleep

    async def commit_one(self, file: FileChange, target: StoreTarget, tries: int | None = None) -> CommitOutcome:
        """Commit one file; returns a failed outcome instead of raising once retries run out."""
        allowed = tries if tries is not None else self.tries
        message = file.message or f"Update {file.path}"
        content = file.content.encode("utf-8")
        last_error = ""
        for attempt in range(1, allowed + 1):
            try:
                current_sha = await self.store.get_sha_or_null(target.owner, target.repo, file.path, target.branch)
                await self.store.create_or_update(
                    target.owner,
                    target.repo,
                    file.path,
                    message,
                    content,
                    target.branch,
                    expected_sha=current_sha,
                )
            except (ConflictError, StoreUnavailable) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Commit attempt %d/%d for %s failed: %s", attempt, allowed, file.path, last_error)
                if attempt < allowed:
                    await self._sleep(self.backoff_seconds * attempt)
                continue
            committed_as = CommitKind.CREATED if current_sha is None else CommitKind.UPDATED
            return CommitOutcome(path=file.path, ok=True, committed_as=committed_as, attempts=attempt)

        self.diagnostics.record(
            "coder",
            Severity.ERROR,
            f"commit of {file.path} gave up after {allowed} attempts",
            {"path": file.path, "branch": target.branch, "error": last_error},
        )
        return CommitOutcome(path=file.path, ok=False, attempts=allowed, error=last_error)

    async def commit_many(self, files: Sequence[FileChange], target: StoreTarget) -> CommitBatch:
        outcomes: list[CommitOutcome] = []
        for file in files:
            outcomes.append(await self.commit_one(file, target))
            # Let the store settle so a read-after-write by the validators sees this commit.
            await self._sleep(self.settle_seconds)
        batch = CommitBatch(outcomes=tuple(outcomes))
        self.diagnostics.record(
            "coder",
            Severity.INFO if batch.ok else Severity.WARNING,
            f"committed {len(outcomes) - len(batch.failed_paths)}/{len(outcomes)} files",
            {"repo": f"{target.owner}/{target.repo}", "branch": target.branch, "failed": batch.failed_paths},
        )
        return batch

    async def delete_many(self, paths: Sequence[str], target: StoreTarget) -> dict[str, bool]:
        """Delete files one by one; a failure is recorded and does not stop the rest."""
        removed: dict[str, bool] = {}
        for path in paths:
            try:
                removed[path] = await self.store.delete_if_exists(
                    target.owner, target.repo, path, target.branch, f"Remove {path}"
                )
            except (ConflictError, StoreUnavailable) as exc:
                self.diagnostics.record(
                    "coder", Severity.WARNING, f"delete of {path} failed", {"path": path, "error": str(exc)}
                )
                removed[path] = False
                continue
            await self._sleep(self.settle_seconds)
        return removed
