from __future__ import annotations

from enum import Enum


class RunnerError(Exception):
    """Base class for pipeline errors."""


class StoreUnavailable(RunnerError):
    """Transport, auth or server failure talking to the file store."""


class ConflictError(RunnerError):
    """The expected content hash no longer matches the store's current hash."""

    def __init__(self, path: str, expected_sha: str | None, message: str = "") -> None:
        self.path = path
        self.expected_sha = expected_sha
        super().__init__(message or f"Stale sha for {path}: expected {expected_sha!r}")


class GenerationFailure(RunnerError):
    """The external generator returned unparsable or empty output."""


class ForwardFailure(RunnerError):
    """A downstream stage was unreachable, errored or replied with garbage."""


class ReasonCode(str, Enum):
    RETRIES_EXHAUSTED = "retries_exhausted"
    FORWARD_FAILURE = "forward_failure"
    VALIDATION_FAILED = "validation_failed"
    INVALID_PAYLOAD = "invalid_payload"
    UNKNOWN_STAGE = "unknown_stage"
    INTERNAL_ERROR = "internal_error"
