from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from .commit import CommitEngine
from .diagnostics import DiagnosticsBuffer
from .errors import ReasonCode
from .forwarder import StageForwarder, StageHandler, normalize_envelope
from .gate import GateGraph
from .generator import Generator, HeuristicGenerator, build_generator, fill_empty_files
from .models import (
    OrchestrationContext,
    QualityReport,
    RunStatus,
    Severity,
    Stage,
    StageResult,
    TesterReport,
)
from .settings import RunnerSettings
from .store import FileStore, build_store
from .validator import Validator

logger = logging.getLogger(__name__)

DEFAULT_PRD = "No PRD provided"

ARCHITECT_INSTRUCTION = (
    "You are the Architect Agent. Generate a high-level architecture and file structure plan based on the PRD. "
    "Return ordered coder steps, tester checks (contains/matches/absent/exists over file paths) and "
    "quality rules (forbid/require regex patterns over path globs)."
)
CODER_INSTRUCTION = (
    "You are the Coder Agent. Generate the complete contents of every file the plan needs, with a commit "
    "message per file. Satisfy every tester check. If feedback from earlier attempts is present, fix each "
    "point it raises."
)


def _chained(stage: Stage, context: OrchestrationContext, downstream: StageResult, data: dict[str, Any]) -> StageResult:
    """Result for a stage that forwarded: its own data plus the downstream terminal verdict."""
    return StageResult(
        ok=downstream.ok,
        stage=stage.value,
        status=downstream.status,
        reason=downstream.reason,
        error=downstream.error,
        context=context,
        data=data,
        downstream=downstream,
    )


class Pipeline:
    """The seven-stage chain: architect -> coder -> tester || quality -> gate -> integrator -> supervisor."""

    def __init__(
        self,
        *,
        settings: RunnerSettings,
        store: FileStore,
        generator: Generator,
        diagnostics: DiagnosticsBuffer | None = None,
        forwarder: StageForwarder | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.generator = generator
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticsBuffer(settings.diagnostics_capacity)
        self.forwarder = forwarder if forwarder is not None else StageForwarder(
            diagnostics=self.diagnostics,
            base_url=settings.stage_base_url,
            timeout=settings.forward_timeout_seconds,
        )
        self.commit_engine = CommitEngine(
            store,
            diagnostics=self.diagnostics,
            tries=settings.commit_tries,
            backoff_seconds=settings.commit_backoff_seconds,
            settle_seconds=settings.commit_settle_seconds,
        )
        self.validator = Validator(store, diagnostics=self.diagnostics)
        self.gate = GateGraph(forwarder=self.forwarder, diagnostics=self.diagnostics)
        self.handlers: dict[str, StageHandler] = {
            Stage.ARCHITECT.value: self.architect,
            Stage.CODER.value: self.coder,
            Stage.TESTER.value: self.tester,
            Stage.QUALITY.value: self.quality,
            Stage.GATE.value: self.gate_stage,
            Stage.INTEGRATOR.value: self.integrator,
            Stage.SUPERVISOR.value: self.supervisor,
        }
        for stage, handler in self.handlers.items():
            self.forwarder.register(stage, handler)

    @classmethod
    def from_settings(cls, settings: RunnerSettings | None = None) -> "Pipeline":
        settings = settings if settings is not None else RunnerSettings.from_env()
        diagnostics = DiagnosticsBuffer(settings.diagnostics_capacity)
        return cls(
            settings=settings,
            store=build_store(settings),
            generator=build_generator(settings, diagnostics=diagnostics),
            diagnostics=diagnostics,
        )

    async def aclose(self) -> None:
        await self.forwarder.aclose()
        close = getattr(self.store, "aclose", None)
        if close is not None:
            await close()

    async def run_stage(self, stage: Stage | str, raw: Any) -> StageResult:
        """Entry point for one inbound stage call.

        Raises:
            ValueError: If ``stage`` is unknown or the payload cannot be normalized.
        """
        stage = Stage(stage)
        envelope = normalize_envelope(
            raw,
            default_branch=self.settings.default_branch,
            default_max_retries=self.settings.max_retries,
            create_run_id=stage == Stage.ARCHITECT,
            retry_ceiling=self.settings.retry_ceiling,
        )
        return await self.handlers[stage.value](envelope.payload)

    async def run(self, raw: Any) -> StageResult:
        """Start a full run at the architect stage."""
        return await self.run_stage(Stage.ARCHITECT, raw)

    async def architect(self, context: OrchestrationContext) -> StageResult:
        context = context.fork()
        prd = context.prd.strip() or DEFAULT_PRD
        context.prd = prd
        self.diagnostics.record(Stage.ARCHITECT.value, Severity.INFO, "run started", {"runId": context.run_id})

        generated = await self.generator.generate(Stage.ARCHITECT, ARCHITECT_INSTRUCTION, {"prd": prd})
        plan = generated.plan if generated.plan is not None else HeuristicGenerator.plan(prd)
        # Plans supplied by the caller take precedence over generated ones.
        context.coder_plan = context.coder_plan or plan.coder_plan
        context.tester_plan = context.tester_plan or plan.tester_plan
        context.quality_rules = context.quality_rules or plan.quality_rules

        downstream = await self.forwarder.forward(Stage.CODER, context)
        return _chained(
            Stage.ARCHITECT,
            context,
            downstream,
            {
                "runId": context.run_id,
                "coderPlan": context.coder_plan,
                "testerChecks": len(context.tester_plan),
                "qualityRules": len(context.quality_rules),
            },
        )

    async def coder(self, context: OrchestrationContext) -> StageResult:
        context = context.fork()
        generated = await self.generator.generate(
            Stage.CODER,
            CODER_INSTRUCTION,
            {
                "prd": context.prd,
                "coder_plan": context.coder_plan,
                "tester_plan": [check.model_dump(mode="json") for check in context.tester_plan],
                "quality_rules": [rule.model_dump(mode="json") for rule in context.quality_rules],
                "feedback": context.feedback_text,
                "retries": context.retries,
            },
        )
        files = fill_empty_files(generated.files)
        if not files:
            self.diagnostics.record(Stage.CODER.value, Severity.WARNING, "generator returned no files, using scaffold")
            files = HeuristicGenerator.scaffold({"prd": context.prd, "tester_plan": context.tester_plan})

        batch = await self.commit_engine.commit_many(files, context.target)
        deleted = await self.commit_engine.delete_many(generated.deletions, context.target) if generated.deletions else {}
        context.committed_paths = [file.path for file in files]
        context.commit_outcomes = list(batch.outcomes)

        tester_result, quality_result = await asyncio.gather(
            self.forwarder.forward(Stage.TESTER, context),
            self.forwarder.forward(Stage.QUALITY, context),
        )
        context.tester_result = self._report(tester_result, TesterReport)
        context.quality_result = self._report(quality_result, QualityReport)

        downstream = await self.forwarder.forward(Stage.GATE, context)
        return _chained(
            Stage.CODER,
            context,
            downstream,
            {
                "attempt": context.retries + 1,
                "commitOk": batch.ok,
                "commits": [outcome.to_wire() for outcome in batch.outcomes],
                "deleted": deleted,
            },
        )

    @staticmethod
    def _report(result: StageResult, schema: type[TesterReport] | type[QualityReport]) -> TesterReport | QualityReport:
        """Read a validator report from a stage result; an unusable result becomes a failing report."""
        raw = result.data.get("report")
        if raw is not None:
            try:
                return schema.model_validate(raw)
            except ValidationError:
                logger.warning("Malformed %s report from %s", schema.__name__, result.stage)
        reason = f"{result.stage} stage unavailable: {result.error or 'no report returned'}"
        if schema is TesterReport:
            return TesterReport(ok=False, advice=reason)
        return QualityReport(ok=False, findings=[reason])

    async def tester(self, context: OrchestrationContext) -> StageResult:
        context = context.fork()
        report = await self.validator.run_tester_checks(
            context.owner,
            context.repo,
            context.branch,
            context.tester_plan,
        )
        context.tester_result = report
        return StageResult(
            ok=report.ok,
            stage=Stage.TESTER.value,
            reason=None if report.ok else ReasonCode.VALIDATION_FAILED.value,
            context=context,
            data={"report": report.to_wire()},
        )

    async def quality(self, context: OrchestrationContext) -> StageResult:
        context = context.fork()
        report = await self.validator.run_quality_checks(
            context.owner,
            context.repo,
            context.branch,
            context.quality_rules,
            paths=context.committed_paths,
            tolerance=self.settings.quality_tolerance,
        )
        context.quality_result = report
        return StageResult(
            ok=report.ok,
            stage=Stage.QUALITY.value,
            reason=None if report.ok else ReasonCode.VALIDATION_FAILED.value,
            context=context,
            data={"report": report.to_wire()},
        )

    async def gate_stage(self, context: OrchestrationContext) -> StageResult:
        return await self.gate.run(context)

    async def integrator(self, context: OrchestrationContext) -> StageResult:
        return StageResult(
            ok=True,
            stage=Stage.INTEGRATOR.value,
            context=context,
            data={
                "action": "integrate",
                "repo": f"{context.owner}/{context.repo}",
                "branch": context.branch,
                "committedPaths": context.committed_paths,
                "message": "Integration successful",
            },
        )

    async def supervisor(self, context: OrchestrationContext) -> StageResult:
        return StageResult(
            ok=True,
            stage=Stage.SUPERVISOR.value,
            status=RunStatus.COMPLETED.value,
            context=context,
            data={
                "summary": (
                    f"Run {context.run_id} completed after {context.retries} retries. "
                    "All agents reported pass status."
                ),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )
