from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
from collections.abc import Iterable, Sequence

from .canonical import verdict_digest
from .diagnostics import DiagnosticsBuffer
from .errors import StoreUnavailable
from .models import CheckKind, CheckResult, QualityReport, QualityRule, RuleKind, Severity, TesterCheck, TesterReport
from .store import FileStore

logger = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")


def _ordered_unique(values: Iterable[str]) -> list[str]:
    ordered: list[str] = []
    seen: set[str] = set()
    for value in values:
        cleaned = value.strip().lstrip("/")
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            ordered.append(cleaned)
    return ordered


def _is_glob(path: str) -> bool:
    return any(char in _GLOB_CHARS for char in path)


class Validator:
    """Static predicate checks over committed file contents (tester and quality stages)."""

    def __init__(self, store: FileStore, *, diagnostics: DiagnosticsBuffer) -> None:
        self.store = store
        self.diagnostics = diagnostics

    async def _fetch_all(
        self, owner: str, repo: str, branch: str, paths: Sequence[str]
    ) -> tuple[dict[str, str | None], dict[str, str]]:
        """Fetch each path once, concurrently.

        Returns the contents by path (None when absent or unreadable) and the
        read errors by path for files the store could not serve.
        """
        errors: dict[str, str] = {}

        async def fetch(path: str) -> str | None:
            try:
                return await self.store.get_text_or_null(owner, repo, path, branch)
            except StoreUnavailable as exc:
                errors[path] = str(exc)
                self.diagnostics.record("validator", Severity.WARNING, f"could not read {path}", {"error": str(exc)})
                return None

        contents = await asyncio.gather(*(fetch(path) for path in paths))
        return dict(zip(paths, contents)), errors

    @staticmethod
    def _evaluate_check(check: TesterCheck, content: str | None, read_error: str | None = None) -> CheckResult:
        def result(passed: bool, detail: str = "") -> CheckResult:
            return CheckResult(name=check.name, path=check.path, passed=passed, required=check.required, detail=detail)

        if read_error is not None:
            return result(False, f"store unavailable: {read_error}")
        if content is None:
            return result(False, "file not found")
        if check.kind == CheckKind.EXISTS:
            return result(True)
        if check.kind == CheckKind.CONTAINS:
            return result(True) if check.pattern in content else result(False, f"missing marker {check.pattern!r}")
        if check.kind == CheckKind.ABSENT:
            return result(False, f"unexpected {check.pattern!r}") if check.pattern in content else result(True)
        try:
            matched = re.search(check.pattern, content, re.MULTILINE) is not None
        except re.error as exc:
            return result(False, f"invalid pattern {check.pattern!r}: {exc}")
        return result(True) if matched else result(False, f"no match for {check.pattern!r}")

    async def run_tester_checks(
        self,
        owner: str,
        repo: str,
        branch: str,
        checks: Sequence[TesterCheck],
    ) -> TesterReport:
        paths = _ordered_unique(check.path for check in checks)
        contents, errors = await self._fetch_all(owner, repo, branch, paths)
        results: list[CheckResult] = []
        for check in checks:
            path = check.path.strip().lstrip("/")
            results.append(self._evaluate_check(check, contents.get(path), errors.get(path)))

        ok = all(item.passed for item in results if item.required)
        failed = [item for item in results if not item.passed]
        advice = "\n".join(
            f"{item.path}: {item.detail}" + ("" if item.required else " (optional)") for item in failed
        ) or None
        report = TesterReport(
            ok=ok,
            checks=results,
            advice=advice,
            digest=verdict_digest({"ok": ok, "checks": results}),
        )
        self.diagnostics.record(
            "tester",
            Severity.INFO if ok else Severity.WARNING,
            f"tester {'passed' if ok else 'failed'}: {len(results) - len(failed)}/{len(results)} checks",
            {"failed": [item.name for item in failed]},
        )
        return report

    async def run_quality_checks(
        self,
        owner: str,
        repo: str,
        branch: str,
        rules: Sequence[QualityRule],
        paths: Sequence[str] = (),
        tolerance: int = 0,
    ) -> QualityReport:
        """Evaluate quality rules; the verdict fails only when findings exceed ``tolerance``."""
        explicit = [rule.path for rule in rules if not _is_glob(rule.path)]
        candidates = _ordered_unique(list(paths) + explicit)
        contents, errors = await self._fetch_all(owner, repo, branch, candidates)

        findings: list[str] = []
        for rule in rules:
            if _is_glob(rule.path):
                targets = [path for path in candidates if fnmatch.fnmatch(path, rule.path)]
            else:
                targets = [rule.path.strip().lstrip("/")]
            try:
                pattern = re.compile(rule.pattern, re.MULTILINE)
            except re.error as exc:
                findings.append(f"{rule.name}: invalid pattern {rule.pattern!r}: {exc}")
                continue
            for path in targets:
                if path in errors:
                    findings.append(f"{path}: {rule.name}: store unavailable: {errors[path]}")
                    continue
                content = contents.get(path)
                if content is None:
                    if not _is_glob(rule.path):
                        findings.append(f"{path}: {rule.name}: file not found")
                    continue
                found = pattern.search(content) is not None
                if rule.kind == RuleKind.FORBID and found:
                    findings.append(f"{path}: {rule.name}: disallowed pattern {rule.pattern!r}")
                elif rule.kind == RuleKind.REQUIRE and not found:
                    findings.append(f"{path}: {rule.name}: required pattern {rule.pattern!r} missing")

        ok = len(findings) <= tolerance
        report = QualityReport(
            ok=ok,
            findings=findings,
            tolerance=tolerance,
            digest=verdict_digest({"ok": ok, "findings": findings, "tolerance": tolerance}),
        )
        self.diagnostics.record(
            "quality",
            Severity.INFO if ok else Severity.WARNING,
            f"quality {'passed' if ok else 'failed'} with {len(findings)} findings (tolerance {tolerance})",
            {"findings": findings[:10]},
        )
        return report
