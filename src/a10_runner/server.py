"""HTTP surface: one POST endpoint per stage plus health and diagnostics reads."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .errors import ReasonCode
from .models import STAGE_ORDER, Severity
from .pipeline import Pipeline
from .settings import RunnerSettings

logger = logging.getLogger(__name__)

_STAGE_NAMES = frozenset(stage.value for stage in STAGE_ORDER)


def _error(status_code: int, reason: ReasonCode, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "reason": reason.value, "error": error, **extra})


def create_app(settings: RunnerSettings | None = None, pipeline: Pipeline | None = None) -> FastAPI:
    settings = settings if settings is not None else RunnerSettings.from_env()
    pipeline = pipeline if pipeline is not None else Pipeline.from_settings(settings)
    diagnostics = pipeline.diagnostics

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("A10 runner ready (store=%s, stages=%s)", settings.store_backend, "remote" if settings.stage_base_url else "local")
        yield
        await pipeline.aclose()

    app = FastAPI(title="A10 Runner", lifespan=lifespan)
    app.state.pipeline = pipeline

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        diagnostics.record("server", Severity.ERROR, "unhandled exception", {"path": request.url.path, "error": repr(exc)})
        return _error(500, ReasonCode.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}

    @app.get("/diagnostics")
    async def read_diagnostics(limit: int = Query(default=50, ge=1, le=10_000)) -> dict[str, Any]:
        events = diagnostics.recent(limit)
        return {
            "ok": True,
            "capacity": diagnostics.capacity,
            "count": len(events),
            "events": [event.to_wire() for event in events],
        }

    @app.post("/run/{stage}")
    async def run_stage(stage: str, request: Request) -> JSONResponse:
        if stage not in _STAGE_NAMES:
            return _error(404, ReasonCode.UNKNOWN_STAGE, f"unknown stage {stage!r}", stages=sorted(_STAGE_NAMES))
        try:
            body = await request.json()
        except ValueError:
            return _error(422, ReasonCode.INVALID_PAYLOAD, "request body must be JSON")
        try:
            result = await pipeline.run_stage(stage, body)
        except ValueError as exc:
            diagnostics.record(stage, Severity.WARNING, "rejected invalid payload", {"error": str(exc)[:500]})
            return _error(422, ReasonCode.INVALID_PAYLOAD, str(exc))
        return JSONResponse(content=result.to_wire())

    return app
