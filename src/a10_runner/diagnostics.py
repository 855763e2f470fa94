from __future__ import annotations

import logging
from collections import deque
from typing import Any

from .models import DiagnosticEvent, Severity

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class DiagnosticsBuffer:
    """Bounded, append-only ring buffer of pipeline events.

    One instance is created per service and handed to every component that
    records events. Oldest events are evicted first once ``capacity`` is
    reached. Appends are single ``deque.append`` calls, so interleaved asyncio
    tasks never observe a partially written buffer.
    """

    def __init__(self, capacity: int = 500) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got: {capacity}")
        self.capacity = capacity
        self._events: deque[DiagnosticEvent] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._events)

    def record(
        self,
        stage: str,
        severity: Severity | str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> DiagnosticEvent | None:
        """Append one event and mirror it to the log. Never raises."""
        try:
            event = DiagnosticEvent(
                stage=str(stage),
                severity=Severity(severity),
                message=str(message),
                context=dict(context or {}),
            )
        except Exception as exc:  # noqa: BLE001 - recording must not break the pipeline.
            logger.warning("Dropped malformed diagnostic event from %s: %s", stage, exc)
            return None
        self._events.append(event)
        logger.log(_LOG_LEVELS[event.severity], "[%s] %s %s", event.stage, event.message, event.context or "")
        return event

    def recent(self, limit: int | None = None) -> list[DiagnosticEvent]:
        """Return the newest ``limit`` events, oldest first."""
        events = list(self._events)
        if limit is None:
            return events
        if limit <= 0:
            return []
        return events[-limit:]

    def clear(self) -> None:
        self._events.clear()
