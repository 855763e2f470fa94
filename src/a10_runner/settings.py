from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv


STORE_BACKENDS = frozenset({"github", "memory"})
GENERATOR_BACKENDS = frozenset({"auto", "llm", "heuristic"})


@dataclass(frozen=True)
class RunnerSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    port: int = 10_000
    default_branch: str = "main"
    max_retries: int = 2
    retry_ceiling: int = 10
    commit_tries: int = 3
    commit_backoff_seconds: float = 0.5
    commit_settle_seconds: float = 0.25
    quality_tolerance: int = 0
    diagnostics_capacity: int = 500
    store_backend: str = "github"
    github_api_url: str = "https://api.github.com"
    store_timeout_seconds: float = 30.0
    stage_base_url: str = ""
    forward_timeout_seconds: float = 1800.0
    generator_backend: str = "auto"
    model: str = "gpt-4o-mini"

    @classmethod
    def from_env(cls) -> "RunnerSettings":
        return cls(
            port=_get_env_int("PORT", default=10_000, minimum=1, maximum=65_535),
            default_branch=os.getenv("RUNNER_DEFAULT_BRANCH", "main"),
            max_retries=_get_env_int("RUNNER_MAX_RETRIES", default=2, minimum=0, maximum=50),
            retry_ceiling=_get_env_int("RUNNER_RETRY_CEILING", default=10, minimum=0, maximum=50),
            commit_tries=_get_env_int("RUNNER_COMMIT_TRIES", default=3, minimum=1, maximum=20),
            commit_backoff_seconds=_get_env_float("RUNNER_COMMIT_BACKOFF_SECONDS", default=0.5),
            commit_settle_seconds=_get_env_float("RUNNER_COMMIT_SETTLE_SECONDS", default=0.25),
            quality_tolerance=_get_env_int("RUNNER_QUALITY_TOLERANCE", default=0, minimum=0),
            diagnostics_capacity=_get_env_int("RUNNER_DIAGNOSTICS_CAPACITY", default=500, minimum=1),
            store_backend=os.getenv("RUNNER_STORE_BACKEND", "github"),
            github_api_url=os.getenv("RUNNER_GITHUB_API_URL", "https://api.github.com"),
            store_timeout_seconds=_get_env_float("RUNNER_STORE_TIMEOUT_SECONDS", default=30.0),
            stage_base_url=os.getenv("RUNNER_STAGE_BASE_URL", ""),
            forward_timeout_seconds=_get_env_float("RUNNER_FORWARD_TIMEOUT_SECONDS", default=1800.0),
            generator_backend=os.getenv("RUNNER_GENERATOR_BACKEND", "auto"),
            model=os.getenv("RUNNER_MODEL", "gpt-4o-mini"),
        ).normalized()

    def normalized(self) -> "RunnerSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        default_branch = self.default_branch.strip()
        if not default_branch:
            raise ValueError("RUNNER_DEFAULT_BRANCH must be non-empty")
        model = self.model.strip()
        if not model:
            raise ValueError("RUNNER_MODEL must be non-empty")

        store_backend = self.store_backend.strip().lower()
        if store_backend not in STORE_BACKENDS:
            raise ValueError("RUNNER_STORE_BACKEND must be one of: github, memory")
        generator_backend = self.generator_backend.strip().lower()
        if generator_backend not in GENERATOR_BACKENDS:
            raise ValueError("RUNNER_GENERATOR_BACKEND must be one of: auto, llm, heuristic")

        github_api_url = self.github_api_url.strip().rstrip("/")
        if not github_api_url.startswith(("http://", "https://")):
            raise ValueError(f"RUNNER_GITHUB_API_URL must be an http(s) URL, got: {self.github_api_url!r}")
        stage_base_url = self.stage_base_url.strip().rstrip("/")
        if stage_base_url and not stage_base_url.startswith(("http://", "https://")):
            raise ValueError(f"RUNNER_STAGE_BASE_URL must be an http(s) URL, got: {self.stage_base_url!r}")

        if self.commit_tries < 1:
            raise ValueError(f"RUNNER_COMMIT_TRIES must be >= 1, got: {self.commit_tries}")
        if self.max_retries < 0:
            raise ValueError(f"RUNNER_MAX_RETRIES must be >= 0, got: {self.max_retries}")
        if self.max_retries > self.retry_ceiling:
            raise ValueError(
                f"RUNNER_MAX_RETRIES ({self.max_retries}) must not exceed RUNNER_RETRY_CEILING ({self.retry_ceiling})"
            )
        if self.quality_tolerance < 0:
            raise ValueError(f"RUNNER_QUALITY_TOLERANCE must be >= 0, got: {self.quality_tolerance}")
        if self.diagnostics_capacity < 1:
            raise ValueError(f"RUNNER_DIAGNOSTICS_CAPACITY must be >= 1, got: {self.diagnostics_capacity}")

        return replace(
            self,
            default_branch=default_branch,
            model=model,
            store_backend=store_backend,
            generator_backend=generator_backend,
            github_api_url=github_api_url,
            stage_base_url=stage_base_url,
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float = 0.0, maximum: float = 3_600.0) -> float:
    """Parse a non-negative float (seconds) from an environment variable with bounds checking."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def load_secret(name: str, purpose: str, env_dir: Path | None = None) -> str:
    """Return a credential from the environment, reading ``.env`` in ``env_dir`` (cwd by default) first.

    Raises:
        RuntimeError: If the variable is unset or blank.
    """
    env_path = (env_dir if env_dir is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    value = os.getenv(name, "").strip()
    if not value:
        raise RuntimeError(f"{name} is required for the {purpose}")
    return value
