from importlib.metadata import version

from .commit import CommitEngine
from .diagnostics import DiagnosticsBuffer
from .errors import ConflictError, ForwardFailure, GenerationFailure, ReasonCode, RunnerError, StoreUnavailable
from .forwarder import StageForwarder, normalize_envelope
from .gate import GateGraph
from .generator import FallbackGenerator, Generator, HeuristicGenerator, LLMGenerator, build_generator
from .models import (
    ArchitectPlan,
    CommitBatch,
    CommitKind,
    CommitOutcome,
    DiagnosticEvent,
    FileChange,
    GateStatus,
    GenerationResult,
    OrchestrationContext,
    QualityReport,
    QualityRule,
    RunStatus,
    Severity,
    Stage,
    StageEnvelope,
    StageResult,
    StoreTarget,
    TesterCheck,
    TesterReport,
)
from .pipeline import Pipeline
from .settings import RunnerSettings
from .store import FileStore, GitHubStore, MemoryStore, build_store
from .validator import Validator


def get_version() -> str:
    try:
        return version("a10-runner")
    except Exception:
        return "0.0.0"


__all__ = [
    "ArchitectPlan",
    "CommitBatch",
    "CommitEngine",
    "CommitKind",
    "CommitOutcome",
    "ConflictError",
    "DiagnosticEvent",
    "DiagnosticsBuffer",
    "FallbackGenerator",
    "FileChange",
    "FileStore",
    "ForwardFailure",
    "GateGraph",
    "GateStatus",
    "GenerationFailure",
    "GenerationResult",
    "Generator",
    "GitHubStore",
    "HeuristicGenerator",
    "LLMGenerator",
    "MemoryStore",
    "OrchestrationContext",
    "Pipeline",
    "QualityReport",
    "QualityRule",
    "ReasonCode",
    "RunStatus",
    "RunnerError",
    "RunnerSettings",
    "Severity",
    "Stage",
    "StageEnvelope",
    "StageForwarder",
    "StageResult",
    "StoreTarget",
    "StoreUnavailable",
    "TesterCheck",
    "TesterReport",
    "Validator",
    "build_generator",
    "build_store",
    "normalize_envelope",
]
