from __future__ import annotations

import logging
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .diagnostics import DiagnosticsBuffer
from .errors import ReasonCode
from .forwarder import StageForwarder
from .models import GateStatus, OrchestrationContext, RunStatus, Severity, Stage, StageResult

logger = logging.getLogger(__name__)


class GateState(TypedDict, total=False):
    context: OrchestrationContext
    status: GateStatus
    result: StageResult


def build_feedback_segment(context: OrchestrationContext, attempt: int) -> str:
    """Render one iteration's validator findings as a feedback segment for the coder."""
    lines = [f"Attempt {attempt} feedback:"]
    tester = context.tester_result
    if tester is None:
        lines.append("Tester: no result was reported.")
    elif not tester.ok:
        lines.append("Tester:")
        lines.extend(f"- {line}" for line in (tester.advice or "required checks failed").splitlines())
    quality = context.quality_result
    if quality is None:
        lines.append("Quality: no result was reported.")
    elif not quality.ok:
        lines.append(f"Quality ({len(quality.findings)} findings, tolerance {quality.tolerance}):")
        lines.extend(f"- {finding}" for finding in quality.findings)
    return "\n".join(lines)


class GateGraph:
    """Gate state machine: evaluate -> loop | proceed | exhausted.

    ``loop`` is only reachable while ``retries < max_retries``; every loop
    increments ``retries`` before forwarding, so a run reaches ``exhausted``
    after at most ``max_retries`` coder re-invocations.
    """

    def __init__(self, *, forwarder: StageForwarder, diagnostics: DiagnosticsBuffer) -> None:
        self.forwarder = forwarder
        self.diagnostics = diagnostics
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(GateState)
        graph.add_node("evaluate", self._evaluate)
        graph.add_node("loop", self._loop)
        graph.add_node("proceed", self._proceed)
        graph.add_node("exhausted", self._exhausted)

        graph.add_edge(START, "evaluate")
        graph.add_edge("loop", END)
        graph.add_edge("proceed", END)
        graph.add_edge("exhausted", END)
        return graph

    @staticmethod
    def _passed(context: OrchestrationContext) -> bool:
        tester_ok = context.tester_result is not None and context.tester_result.ok
        quality_ok = context.quality_result is not None and context.quality_result.ok
        return tester_ok and quality_ok

    async def _evaluate(self, state: GateState) -> Command[str]:
        context = state["context"]
        if self._passed(context):
            return Command(goto="proceed", update={"status": GateStatus.PROCEEDING})
        if context.retries < context.max_retries:
            return Command(goto="loop", update={"status": GateStatus.LOOPING})
        return Command(goto="exhausted", update={"status": GateStatus.EXHAUSTED})

    async def _loop(self, state: GateState) -> dict[str, Any]:
        context = state["context"].fork()
        context.retries += 1
        context.feedback.append(build_feedback_segment(context, context.retries))
        self.diagnostics.record(
            Stage.GATE.value,
            Severity.WARNING,
            f"validation failed, looping to coder (retry {context.retries}/{context.max_retries})",
            {"runId": context.run_id},
        )
        downstream = await self.forwarder.forward(Stage.CODER, context)
        result = StageResult(
            ok=downstream.ok,
            stage=Stage.GATE.value,
            status=downstream.status,
            reason=downstream.reason,
            error=downstream.error,
            context=context,
            data={"decision": GateStatus.LOOPING.value, "retries": context.retries},
            downstream=downstream,
        )
        return {"context": context, "result": result}

    async def _proceed(self, state: GateState) -> dict[str, Any]:
        context = state["context"]
        self.diagnostics.record(Stage.GATE.value, Severity.INFO, "validation passed, proceeding", {"runId": context.run_id})
        # Completion stages are best-effort: their outcome never fails the run.
        integrator = await self.forwarder.forward(Stage.INTEGRATOR, context)
        supervisor = await self.forwarder.forward(Stage.SUPERVISOR, context)
        result = StageResult(
            ok=True,
            stage=Stage.GATE.value,
            status=RunStatus.PROCEEDED.value,
            context=context,
            data={
                "decision": GateStatus.PROCEEDING.value,
                "integrator": integrator.model_dump(mode="json", by_alias=True, exclude={"context"}),
                "supervisor": supervisor.model_dump(mode="json", by_alias=True, exclude={"context"}),
            },
        )
        return {"result": result}

    async def _exhausted(self, state: GateState) -> dict[str, Any]:
        context = state["context"]
        self.diagnostics.record(
            Stage.GATE.value,
            Severity.ERROR,
            f"retries exhausted after {context.retries} loops",
            {"runId": context.run_id, "maxRetries": context.max_retries},
        )
        result = StageResult(
            ok=False,
            stage=Stage.GATE.value,
            status=RunStatus.GAVE_UP.value,
            reason=ReasonCode.RETRIES_EXHAUSTED.value,
            context=context,
            data={
                "decision": GateStatus.EXHAUSTED.value,
                "retries": context.retries,
                "maxRetries": context.max_retries,
                "feedback": context.feedback,
            },
        )
        return {"result": result}

    async def run(self, context: OrchestrationContext) -> StageResult:
        state = await self.graph.ainvoke({"context": context.fork(), "status": GateStatus.EVALUATING})
        return state["result"]
