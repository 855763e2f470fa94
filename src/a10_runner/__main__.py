"""Entry point for `python -m a10_runner` and the `a10-runner` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path

import uvicorn

from a10_runner.models import RunStatus
from a10_runner.pipeline import Pipeline
from a10_runner.server import create_app
from a10_runner.settings import RunnerSettings

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="A10 runner: multi-agent build pipeline")
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVELS, help="Logging verbosity")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Serve the stage endpoints over HTTP")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve.add_argument("--port", type=int, default=None, help="Port (default: PORT or 10000)")

    run = commands.add_parser("run", help="Run one pipeline in-process and print the result")
    run.add_argument("--owner", required=True, help="Repository owner")
    run.add_argument("--repo", required=True, help="Repository name")
    run.add_argument("--branch", default=None, help="Target branch (default: RUNNER_DEFAULT_BRANCH)")
    run.add_argument("--prd-file", type=Path, default=None, help="Path to a markdown PRD")
    run.add_argument("--prd-text", default=None, help="Inline PRD text (mutually exclusive with --prd-file)")
    run.add_argument("--max-retries", type=int, default=None, help="Gate retry ceiling for this run")
    run.add_argument("--store", choices=["github", "memory"], default=None, help="Override RUNNER_STORE_BACKEND")
    return parser.parse_args(argv)


def load_prd(*, prd_file: Path | None, prd_text: str | None) -> str:
    if prd_text is not None and prd_file is not None:
        raise ValueError("prd_text cannot be combined with prd_file")
    if prd_text is not None:
        trimmed = prd_text.strip()
        if not trimmed:
            raise ValueError("prd_text must be non-empty")
        return trimmed
    if prd_file is not None:
        if not prd_file.is_file():
            raise FileNotFoundError(f"PRD file does not exist: {prd_file}")
        return prd_file.read_text(encoding="utf-8")
    return ""


async def _run_once(settings: RunnerSettings, payload: dict[str, object]) -> dict[str, object]:
    pipeline = Pipeline.from_settings(settings)
    try:
        result = await pipeline.run(payload)
    finally:
        await pipeline.aclose()
    return result.to_wire()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RunnerSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.command == "serve":
        uvicorn.run(create_app(settings), host=args.host, port=args.port or settings.port, log_level=args.log_level.lower())
        return 0

    if args.store is not None:
        settings = replace(settings, store_backend=args.store)
    try:
        prd = load_prd(prd_file=args.prd_file, prd_text=args.prd_text)
    except (OSError, ValueError) as exc:
        logging.error("Unable to load PRD input: %s", exc)
        return 1

    payload: dict[str, object] = {"owner": args.owner, "repo": args.repo, "prd": prd}
    if args.branch:
        payload["branch"] = args.branch
    if args.max_retries is not None:
        payload["maxRetries"] = args.max_retries

    try:
        result = asyncio.run(_run_once(settings, payload))
    except Exception as exc:  # noqa: BLE001
        logging.exception("Pipeline execution failed: %s", exc)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("status") == RunStatus.PROCEEDED.value else 1


if __name__ == "__main__":
    raise SystemExit(main())
