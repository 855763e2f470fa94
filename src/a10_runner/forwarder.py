from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from .diagnostics import DiagnosticsBuffer
from .errors import ForwardFailure, ReasonCode
from .models import OrchestrationContext, RunStatus, Severity, Stage, StageEnvelope, StageResult

logger = logging.getLogger(__name__)

StageHandler = Callable[[OrchestrationContext], Awaitable[StageResult]]


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def normalize_envelope(
    raw: Any,
    *,
    default_branch: str = "main",
    default_max_retries: int | None = None,
    create_run_id: bool = False,
    retry_ceiling: int | None = None,
) -> StageEnvelope:
    """Turn any accepted inbound shape into one canonical envelope holding a fresh context.

    Accepted shapes: a bare context (dict or model), or ``{"payload": <context>}``
    (dict or StageEnvelope). The returned context never aliases the input.

    Raises:
        ValueError: If the payload is not an object, fails context validation, or
            asks for more than ``retry_ceiling`` retries.
    """
    if isinstance(raw, StageEnvelope):
        raw = raw.payload
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json", by_alias=True)
    if not isinstance(raw, dict):
        raise ValueError(f"stage payload must be a JSON object, got {type(raw).__name__}")

    inner = raw.get("payload")
    if isinstance(inner, BaseModel):
        inner = inner.model_dump(mode="json", by_alias=True)
    body = dict(inner) if isinstance(inner, dict) else dict(raw)

    if not str(body.get("branch") or "").strip():
        body["branch"] = default_branch
    if default_max_retries is not None and body.get("maxRetries", body.get("max_retries")) is None:
        body["maxRetries"] = default_max_retries
    if create_run_id and not str(body.get("runId") or body.get("run_id") or "").strip():
        body["runId"] = new_run_id()

    context = OrchestrationContext.model_validate(body)
    if retry_ceiling is not None and context.max_retries > retry_ceiling:
        raise ValueError(f"maxRetries ({context.max_retries}) exceeds the allowed ceiling ({retry_ceiling})")
    return StageEnvelope(payload=context)


def forward_failure(stage: str, error: str, context: OrchestrationContext | None = None) -> StageResult:
    return StageResult(
        ok=False,
        stage=stage,
        status=RunStatus.FORWARD_FAILED.value,
        reason=ReasonCode.FORWARD_FAILURE.value,
        error=error,
        context=context,
    )


class StageForwarder:
    """Invokes the next stage in-process, or over HTTP when ``base_url`` is set.

    ``forward`` never raises: an unreachable or broken stage comes back as a
    ``StageResult`` with ``ok=False`` so the calling stage can still answer.
    """

    def __init__(
        self,
        *,
        diagnostics: DiagnosticsBuffer,
        base_url: str = "",
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.diagnostics = diagnostics
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._handlers: dict[str, StageHandler] = {}

    def register(self, stage: Stage | str, handler: StageHandler) -> None:
        self._handlers[Stage(stage).value] = handler

    @property
    def remote(self) -> bool:
        return bool(self.base_url)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def forward(self, stage: Stage | str, context: OrchestrationContext) -> StageResult:
        stage_name = stage.value if isinstance(stage, Stage) else str(stage)
        self.diagnostics.record(
            stage_name,
            Severity.INFO,
            f"forward -> {stage_name}",
            {"runId": context.run_id, "retries": context.retries, "remote": self.remote},
        )
        try:
            envelope = normalize_envelope(context, default_branch=context.branch)
            if self.remote:
                result = await self._forward_remote(stage_name, envelope)
            else:
                result = await self._forward_local(stage_name, envelope)
        except ForwardFailure as exc:
            result = forward_failure(stage_name, str(exc), context)

        self.diagnostics.record(
            stage_name,
            Severity.INFO if result.ok else Severity.WARNING,
            f"response <- {stage_name}: ok={result.ok} status={result.status}",
            {"runId": context.run_id, "reason": result.reason, "error": result.error},
        )
        return result

    async def _forward_local(self, stage_name: str, envelope: StageEnvelope) -> StageResult:
        handler = self._handlers.get(stage_name)
        if handler is None:
            raise ForwardFailure(f"no handler registered for stage {stage_name!r}")
        try:
            return await handler(envelope.payload)
        except Exception as exc:  # noqa: BLE001 - a broken stage must not crash its caller.
            logger.exception("Stage %s raised", stage_name)
            self.diagnostics.record(stage_name, Severity.ERROR, "stage raised an exception", {"error": repr(exc)})
            raise ForwardFailure(f"stage {stage_name} raised {type(exc).__name__}: {exc}") from exc

    async def _forward_remote(self, stage_name: str, envelope: StageEnvelope) -> StageResult:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        url = f"{self.base_url}/run/{stage_name}"
        try:
            response = await self._client.post(url, json={"payload": envelope.payload.to_wire()})
        except httpx.HTTPError as exc:
            raise ForwardFailure(f"POST {url} failed: {exc}") from exc
        try:
            return StageResult.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            if not response.is_success:
                raise ForwardFailure(f"HTTP {response.status_code} from {url}") from exc
            raise ForwardFailure(f"malformed reply from {url}: {exc}") from exc
