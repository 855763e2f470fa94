from __future__ import annotations

import html
import json
import logging
from pathlib import PurePosixPath
from typing import Any, Protocol

from pydantic import Field

from .diagnostics import DiagnosticsBuffer
from .errors import GenerationFailure
from .llm import StructuredOutputAdapter, get_structured_chat_model, openai_api_key_available
from .models import (
    ArchitectPlan,
    CheckKind,
    FileChange,
    GenerationResult,
    QualityRule,
    RuleKind,
    Severity,
    Stage,
    TesterCheck,
    WireModel,
)
from .settings import RunnerSettings

logger = logging.getLogger(__name__)

BUILD_MARKER = "<!-- a10:build -->"
EMPTY_CONTENT_PLACEHOLDER = "// no code generated"

_COMMENT_STYLES = {
    ".html": ("<!-- ", " -->"),
    ".htm": ("<!-- ", " -->"),
    ".css": ("/* ", " */"),
    ".js": ("// ", ""),
    ".ts": ("// ", ""),
    ".py": ("# ", ""),
    ".md": ("<!-- ", " -->"),
}


class Generator(Protocol):
    """Capability producing plans or file sets for one pipeline role."""

    async def generate(self, role: Stage, instruction: str, input: dict[str, Any]) -> GenerationResult: ...


class CoderReply(WireModel):
    files: list[FileChange] = Field(default_factory=list)
    deletions: list[str] = Field(default_factory=list)
    message: str = ""


def fill_empty_files(files: list[FileChange]) -> list[FileChange]:
    """Replace blank generated content with a visible placeholder rather than committing an empty file."""
    return [
        file if file.content.strip() else file.model_copy(update={"content": EMPTY_CONTENT_PLACEHOLDER})
        for file in files
    ]


def _title_from_prd(prd: str) -> str:
    for line in prd.splitlines():
        cleaned = line.strip().lstrip("#").strip()
        if cleaned:
            return cleaned[:80]
    return "A10 Build"


def _marker_line(path: str, marker: str) -> str:
    # Markers that are already comments (the build marker) are embedded verbatim.
    if marker.startswith(("<!--", "/*", "//", "#")):
        return marker
    prefix, suffix = _COMMENT_STYLES.get(PurePosixPath(path).suffix.lower(), ("", ""))
    return f"{prefix}{marker}{suffix}"


class HeuristicGenerator:
    """Deterministic scaffolding: the same input always yields the same plan or files."""

    async def generate(self, role: Stage, instruction: str, input: dict[str, Any]) -> GenerationResult:
        role = Stage(role)
        if role == Stage.ARCHITECT:
            return GenerationResult(plan=self.plan(str(input.get("prd", ""))), message="heuristic architecture plan")
        if role == Stage.CODER:
            return GenerationResult(files=self.scaffold(input), message="heuristic scaffold")
        raise ValueError(f"HeuristicGenerator has no output for role {role.value!r}")

    @staticmethod
    def plan(prd: str) -> ArchitectPlan:
        title = _title_from_prd(prd)
        return ArchitectPlan(
            coder_plan=[
                f"Create index.html for '{title}' with the build marker and a <title>",
                "Create style.css with base layout rules",
                "Create script.js that wires the page without debugger statements or eval",
            ],
            tester_plan=[
                TesterCheck(name="build-marker", path="index.html", kind=CheckKind.CONTAINS, pattern=BUILD_MARKER),
                TesterCheck(name="stylesheet-present", path="style.css", kind=CheckKind.EXISTS),
                TesterCheck(name="script-present", path="script.js", kind=CheckKind.EXISTS),
                TesterCheck(
                    name="page-title",
                    path="index.html",
                    kind=CheckKind.MATCHES,
                    pattern=r"<title>[^<]+</title>",
                    required=False,
                ),
            ],
            quality_rules=[
                QualityRule(name="no-debugger", path="*.js", kind=RuleKind.FORBID, pattern=r"\bdebugger\b"),
                QualityRule(name="no-eval", path="*.js", kind=RuleKind.FORBID, pattern=r"\beval\s*\("),
                QualityRule(name="stylesheet-linked", path="index.html", kind=RuleKind.REQUIRE, pattern=r"style\.css"),
            ],
        )

    @staticmethod
    def scaffold(input: dict[str, Any]) -> list[FileChange]:
        title = html.escape(_title_from_prd(str(input.get("prd", ""))))
        contents: dict[str, list[str]] = {
            "index.html": [
                "<!DOCTYPE html>",
                "<html lang=\"en\">",
                "<head>",
                "  <meta charset=\"utf-8\">",
                f"  <title>{title}</title>",
                "  <link rel=\"stylesheet\" href=\"style.css\">",
                "</head>",
                "<body>",
                f"  <main id=\"app\"><h1>{title}</h1></main>",
                "  <script src=\"script.js\"></script>",
                "</body>",
                "</html>",
                BUILD_MARKER,
            ],
            "style.css": [
                "body { margin: 0; font-family: system-ui, sans-serif; }",
                "#app { max-width: 960px; margin: 0 auto; padding: 2rem; }",
            ],
            "script.js": [
                "document.addEventListener(\"DOMContentLoaded\", () => {",
                "  document.getElementById(\"app\").dataset.ready = \"true\";",
                "});",
            ],
        }
        for raw_check in input.get("tester_plan") or []:
            check = TesterCheck.model_validate(raw_check)
            lines = contents.setdefault(check.path.strip().lstrip("/"), [])
            if check.kind == CheckKind.CONTAINS and not any(check.pattern in line for line in lines):
                lines.append(_marker_line(check.path, check.pattern))
        return [
            FileChange(path=path, content="\n".join(lines) + "\n", message=f"a10 coder: write {path}")
            for path, lines in sorted(contents.items())
        ]


class LLMGenerator:
    """Generator backed by an OpenAI chat model with structured output."""

    def __init__(
        self,
        *,
        architect: StructuredOutputAdapter[ArchitectPlan],
        coder: StructuredOutputAdapter[CoderReply],
    ) -> None:
        self._architect = architect
        self._coder = coder

    @classmethod
    def from_settings(cls, settings: RunnerSettings) -> "LLMGenerator":
        return cls(
            architect=get_structured_chat_model(model_name=settings.model, schema=ArchitectPlan),
            coder=get_structured_chat_model(model_name=settings.model, schema=CoderReply),
        )

    async def generate(self, role: Stage, instruction: str, input: dict[str, Any]) -> GenerationResult:
        role = Stage(role)
        prompt = f"{instruction}\n\nInput JSON:\n{json.dumps(input, indent=2, default=str)}"
        try:
            if role == Stage.ARCHITECT:
                plan = await self._architect.ainvoke(prompt)
            elif role == Stage.CODER:
                reply = await self._coder.ainvoke(prompt)
            else:
                raise GenerationFailure(f"no model prompt for role {role.value!r}")
        except GenerationFailure:
            raise
        except Exception as exc:  # noqa: BLE001 - any model/transport failure falls back.
            raise GenerationFailure(f"{role.value} generation failed: {exc}") from exc

        if role == Stage.ARCHITECT:
            if not plan.coder_plan or not plan.tester_plan:
                raise GenerationFailure("architect reply has an empty coder or tester plan")
            return GenerationResult(plan=plan, message="model architecture plan")
        if not reply.files:
            raise GenerationFailure("coder reply contains no files")
        return GenerationResult(files=reply.files, deletions=reply.deletions, message=reply.message or None)


class FallbackGenerator:
    """Tries ``primary`` and answers from ``fallback`` whenever it raises GenerationFailure."""

    def __init__(self, primary: Generator, fallback: Generator, *, diagnostics: DiagnosticsBuffer) -> None:
        self.primary = primary
        self.fallback = fallback
        self.diagnostics = diagnostics

    async def generate(self, role: Stage, instruction: str, input: dict[str, Any]) -> GenerationResult:
        try:
            return await self.primary.generate(role, instruction, input)
        except GenerationFailure as exc:
            self.diagnostics.record(
                Stage(role).value,
                Severity.WARNING,
                "generator fell back to heuristic output",
                {"error": str(exc)},
            )
            return await self.fallback.generate(role, instruction, input)


def build_generator(settings: RunnerSettings, *, diagnostics: DiagnosticsBuffer) -> Generator:
    """Select the generator variant from configuration and credential availability."""
    backend = settings.generator_backend
    if backend == "auto":
        backend = "llm" if openai_api_key_available() else "heuristic"
    if backend == "heuristic":
        logger.info("Using heuristic generator")
        return HeuristicGenerator()
    logger.info("Using %s with heuristic fallback", settings.model)
    return FallbackGenerator(LLMGenerator.from_settings(settings), HeuristicGenerator(), diagnostics=diagnostics)
