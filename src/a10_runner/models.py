from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class Stage(str, Enum):
    ARCHITECT = "architect"
    CODER = "coder"
    TESTER = "tester"
    QUALITY = "quality"
    GATE = "gate"
    INTEGRATOR = "integrator"
    SUPERVISOR = "supervisor"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class GateStatus(str, Enum):
    EVALUATING = "evaluating"
    LOOPING = "looping"
    PROCEEDING = "proceeding"
    EXHAUSTED = "exhausted"


class RunStatus(str, Enum):
    PROCEEDED = "proceeded"
    GAVE_UP = "gave_up"
    FORWARD_FAILED = "forward_failed"
    COMPLETED = "completed"


class CommitKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"


class CheckKind(str, Enum):
    CONTAINS = "contains"
    MATCHES = "matches"
    ABSENT = "absent"
    EXISTS = "exists"


class RuleKind(str, Enum):
    FORBID = "forbid"
    REQUIRE = "require"


class WireModel(BaseModel):
    """Base for JSON payloads: camelCase on the wire, snake_case in Python, either accepted inbound."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=False)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StoreTarget(WireModel):
    owner: str
    repo: str
    branch: str = "main"

    model_config = ConfigDict(frozen=True)


class FileChange(WireModel):
    path: str
    content: str
    message: str = ""

    @field_validator("path")
    @classmethod
    def _strip_path(cls, value: str) -> str:
        cleaned = value.strip().lstrip("/")
        if not cleaned:
            raise ValueError("path must be non-empty")
        return cleaned


class CommitOutcome(WireModel):
    path: str
    ok: bool
    committed_as: CommitKind | None = None
    attempts: int = 0
    error: str | None = None

    model_config = ConfigDict(frozen=True)


class CommitBatch(WireModel):
    outcomes: tuple[CommitOutcome, ...] = ()

    model_config = ConfigDict(frozen=True)

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes)

    @property
    def failed_paths(self) -> list[str]:
        return [outcome.path for outcome in self.outcomes if not outcome.ok]


class TesterCheck(WireModel):
    name: str
    path: str
    kind: CheckKind = CheckKind.CONTAINS
    pattern: str = ""
    required: bool = True

    @model_validator(mode="after")
    def _pattern_required(self) -> "TesterCheck":
        if self.kind != CheckKind.EXISTS and not self.pattern:
            raise ValueError(f"check {self.name!r} of kind {self.kind.value} requires a pattern")
        return self


class QualityRule(WireModel):
    name: str
    pattern: str
    path: str = "*"
    kind: RuleKind = RuleKind.FORBID


class CheckResult(WireModel):
    name: str
    path: str
    passed: bool
    required: bool = True
    detail: str = ""


class TesterReport(WireModel):
    ok: bool
    checks: list[CheckResult] = Field(default_factory=list)
    advice: str | None = None
    digest: str = ""


class QualityReport(WireModel):
    ok: bool
    findings: list[str] = Field(default_factory=list)
    tolerance: int = 0
    digest: str = ""


class OrchestrationContext(WireModel):
    """Run-scoped state threaded through every stage; copied at each stage boundary."""

    run_id: str
    owner: str
    repo: str
    branch: str = "main"
    prd: str = ""
    coder_plan: list[str] = Field(default_factory=list)
    tester_plan: list[TesterCheck] = Field(default_factory=list)
    quality_rules: list[QualityRule] = Field(default_factory=list)
    retries: int = 0
    max_retries: int = 2
    feedback: list[str] = Field(default_factory=list)
    committed_paths: list[str] = Field(default_factory=list)
    commit_outcomes: list[CommitOutcome] = Field(default_factory=list)
    tester_result: TesterReport | None = None
    quality_result: QualityReport | None = None

    @model_validator(mode="after")
    def _retry_bounds(self) -> "OrchestrationContext":
        if self.retries < 0:
            raise ValueError(f"retries must be >= 0, got: {self.retries}")
        if self.max_retries < 0:
            raise ValueError(f"maxRetries must be >= 0, got: {self.max_retries}")
        if self.retries > self.max_retries:
            raise ValueError(f"retries ({self.retries}) exceeds maxRetries ({self.max_retries})")
        return self

    @property
    def target(self) -> StoreTarget:
        return StoreTarget(owner=self.owner, repo=self.repo, branch=self.branch)

    @property
    def feedback_text(self) -> str:
        return "\n\n".join(self.feedback)

    def fork(self) -> "OrchestrationContext":
        """Return an independent copy, as handed across a stage boundary."""
        return OrchestrationContext.model_validate(self.model_dump(mode="json"))


class StageEnvelope(WireModel):
    payload: OrchestrationContext


class StageResult(WireModel):
    ok: bool
    stage: str
    status: str = RunStatus.COMPLETED.value
    reason: str | None = None
    error: str | None = None
    context: OrchestrationContext | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    downstream: StageResult | None = None

    def terminal(self) -> "StageResult":
        """Follow the downstream chain to the last stage that answered."""
        node = self
        while node.downstream is not None:
            node = node.downstream
        return node

    def to_wire(self) -> dict[str, Any]:
        """Dump the chain iteratively; only the head and the terminal node carry a context."""
        wire = self.model_dump(mode="json", by_alias=True, exclude={"downstream"})
        cursor, node = wire, self.downstream
        while node is not None:
            exclude = {"downstream"} if node.downstream is None else {"downstream", "context"}
            entry = node.model_dump(mode="json", by_alias=True, exclude=exclude)
            cursor["downstream"] = entry
            cursor, node = entry, node.downstream
        cursor["downstream"] = None
        return wire


class DiagnosticEvent(WireModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    stage: str
    severity: Severity = Severity.INFO
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class GenerationResult(WireModel):
    files: list[FileChange] = Field(default_factory=list)
    deletions: list[str] = Field(default_factory=list)
    plan: "ArchitectPlan | None" = None
    message: str | None = None


class ArchitectPlan(WireModel):
    coder_plan: list[str] = Field(default_factory=list)
    tester_plan: list[TesterCheck] = Field(default_factory=list)
    quality_rules: list[QualityRule] = Field(default_factory=list)


StageResult.model_rebuild()
GenerationResult.model_rebuild()
