from __future__ import annotations

from typing import Any

import pytest

from a10_runner.diagnostics import DiagnosticsBuffer
from a10_runner.errors import ConflictError
from a10_runner.generator import HeuristicGenerator
from a10_runner.models import ArchitectPlan, FileChange, GenerationResult, Stage
from a10_runner.pipeline import Pipeline
from a10_runner.settings import RunnerSettings
from a10_runner.store import MemoryStore


class ConflictingStore(MemoryStore):
    """Memory store that rejects the first N writes per path with a conflict."""

    def __init__(self, conflicts: dict[str, int] | None = None) -> None:
        super().__init__()
        self.remaining = dict(conflicts or {})
        self.write_attempts: list[str] = []

    async def create_or_update(self, owner, repo, path, message, content, branch, expected_sha=None):  # noqa: ANN001,ANN201
        self.write_attempts.append(path)
        if self.remaining.get(path, 0) > 0:
            self.remaining[path] -= 1
            raise ConflictError(path, expected_sha, f"{path} moved underneath us")
        return await super().create_or_update(owner, repo, path, message, content, branch, expected_sha)


class ScriptedGenerator:
    """Architect answers from a fixed plan; coder answers with one scripted file set per call."""

    def __init__(self, plan: ArchitectPlan, attempts: list[list[FileChange]]) -> None:
        self.plan = plan
        self.attempts = attempts
        self.coder_inputs: list[dict[str, Any]] = []

    async def generate(self, role: Stage, instruction: str, input: dict[str, Any]) -> GenerationResult:
        if Stage(role) == Stage.ARCHITECT:
            return GenerationResult(plan=self.plan)
        self.coder_inputs.append(input)
        index = min(len(self.coder_inputs), len(self.attempts)) - 1
        return GenerationResult(files=self.attempts[index])


@pytest.fixture
def settings() -> RunnerSettings:
    return RunnerSettings(
        store_backend="memory",
        generator_backend="heuristic",
        commit_backoff_seconds=0.0,
        commit_settle_seconds=0.0,
    ).normalized()


@pytest.fixture
def diagnostics() -> DiagnosticsBuffer:
    return DiagnosticsBuffer(capacity=200)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def heuristic_pipeline(settings: RunnerSettings, store: MemoryStore, diagnostics: DiagnosticsBuffer) -> Pipeline:
    return Pipeline(settings=settings, store=store, generator=HeuristicGenerator(), diagnostics=diagnostics)
