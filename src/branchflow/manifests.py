"""Build/test collaborator: manifest detection table and test-output parsing."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from branchflow.schemas import SuiteResult, TestOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ManifestRule:
    """Maps one manifest file to its install and test invocations.

    Rules are grouped by ``ecosystem``; within an ecosystem the first rule
    whose manifest exists wins, so a lockfile-specific rule must precede the
    generic one.
    """

    manifest: str
    ecosystem: str
    install: tuple[str, ...] | None = None
    test: tuple[str, ...] | None = None


DEFAULT_RULES: tuple[ManifestRule, ...] = (
    # JavaScript / TypeScript
    ManifestRule("pnpm-lock.yaml", "node", ("pnpm", "install", "--frozen-lockfile"), ("pnpm", "test")),
    ManifestRule("yarn.lock", "node", ("yarn", "install", "--frozen-lockfile"), ("yarn", "test")),
    ManifestRule("package-lock.json", "node", ("npm", "ci"), ("npm", "test")),
    ManifestRule("package.json", "node", ("npm", "install"), ("npm", "test")),
    # Python
    ManifestRule("uv.lock", "python", ("uv", "sync"), ("uv", "run", "pytest")),
    ManifestRule("poetry.lock", "python", ("poetry", "install"), ("poetry", "run", "pytest")),
    ManifestRule("pyproject.toml", "python", ("python", "-m", "pip", "install", "-e", "."), ("python", "-m", "pytest")),
    ManifestRule("setup.py", "python", ("python", "-m", "pip", "install", "-e", "."), ("python", "-m", "pytest")),
    ManifestRule(
        "requirements.txt",
        "python",
        ("python", "-m", "pip", "install", "-r", "requirements.txt"),
        ("python", "-m", "pytest"),
    ),
    # Others
    ManifestRule("Cargo.toml", "rust", ("cargo", "fetch"), ("cargo", "test")),
    ManifestRule("go.mod", "go", ("go", "mod", "download"), ("go", "test", "./...")),
    ManifestRule("Gemfile", "ruby", ("bundle", "install"), ("bundle", "exec", "rake", "test")),
    ManifestRule("composer.json", "php", ("composer", "install"), ("vendor/bin/phpunit",)),
    ManifestRule("mix.exs", "elixir", ("mix", "deps.get"), ("mix", "test")),
    ManifestRule("pom.xml", "java", ("mvn", "-B", "-q", "dependency:resolve"), ("mvn", "-B", "test")),
    ManifestRule("build.gradle", "java", ("gradle", "dependencies"), ("gradle", "test")),
    ManifestRule("build.gradle.kts", "java", ("gradle", "dependencies"), ("gradle", "test")),
)


def detect_manifests(
    repo: str | Path,
    rules: Iterable[ManifestRule] = DEFAULT_RULES,
) -> list[ManifestRule]:
    """Return the rules that apply to *repo*, at most one per ecosystem."""
    root = Path(repo)
    matched: list[ManifestRule] = []
    seen_ecosystems: set[str] = set()
    for rule in rules:
        if rule.ecosystem in seen_ecosystems:
            continue
        if (root / rule.manifest).is_file():
            matched.append(rule)
            seen_ecosystems.add(rule.ecosystem)
    if matched:
        logger.info("Detected manifests: %s", ", ".join(r.manifest for r in matched))
    return matched


def collect_setup_commands(rules: Sequence[ManifestRule]) -> list[list[str]]:
    return [list(rule.install) for rule in rules if rule.install]


def collect_test_commands(rules: Sequence[ManifestRule]) -> list[list[str]]:
    return [list(rule.test) for rule in rules if rule.test]


# ---------------------------------------------------------------------------
# Test output
# ---------------------------------------------------------------------------

# pytest: "3 failed, 10 passed in 0.12s"; cargo: "test result: ok. 4 passed; 0 failed"
_PASSED_RE = re.compile(r"\b(\d+) passed\b")
_FAILED_RE = re.compile(r"\b(\d+) failed\b")
# jest/vitest summary lines, so "Test Suites:" totals are not double counted
_JEST_TESTS_LINE_RE = re.compile(r"^\s*Tests:\s+(.*)$", re.MULTILINE)
_GO_PACKAGE_RE = re.compile(r"^(ok|FAIL)\s+\S+", re.MULTILINE)
_PYTEST_NO_TESTS_COLLECTED = 5


def parse_test_counts(output: str) -> tuple[int | None, int | None]:
    """Best-effort ``(passed, failed)`` counts from common runner summaries."""
    text = str(output or "")
    jest_lines = _JEST_TESTS_LINE_RE.findall(text)
    scope = "\n".join(jest_lines) if jest_lines else text

    passed = [int(m) for m in _PASSED_RE.findall(scope)]
    failed = [int(m) for m in _FAILED_RE.findall(scope)]
    if passed or failed:
        return sum(passed), sum(failed)

    go_packages = _GO_PACKAGE_RE.findall(text)
    if go_packages:
        return go_packages.count("ok"), go_packages.count("FAIL")
    return None, None


def summarise_output(text: str, max_lines: int = 30) -> str:
    """Truncate tool output to a manageable summary."""
    lines = str(text or "").splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)

    # Keep first 10 and last 20 lines for context
    head = lines[:10]
    tail = lines[-20:]
    skipped = len(lines) - 30
    return "\n".join([*head, f"  ... ({skipped} lines omitted) ...", *tail])


def interpret_test_run(command: Sequence[str], exit_status: int, output: str) -> SuiteResult:
    """Turn one test invocation into a :class:`SuiteResult`."""
    passed, failed = parse_test_counts(output)
    if exit_status == 0:
        outcome = TestOutcome.PASSED
    elif exit_status == _PYTEST_NO_TESTS_COLLECTED and "pytest" in " ".join(command):
        outcome = TestOutcome.SKIPPED
    else:
        outcome = TestOutcome.FAILED
    return SuiteResult(
        outcome=outcome,
        passed=passed,
        failed=failed,
        exit_code=exit_status,
        commands=[list(command)],
        summary=summarise_output(output),
    )


def merge_suite_results(results: Sequence[SuiteResult]) -> SuiteResult:
    """Combine per-ecosystem results; any failure fails the whole baseline."""
    if not results:
        return SuiteResult(outcome=TestOutcome.SKIPPED, summary="No test command detected.")
    if len(results) == 1:
        return results[0]

    def _total(values: list[int | None]) -> int | None:
        known = [v for v in values if v is not None]
        return sum(known) if known else None

    outcomes = {r.outcome for r in results}
    if TestOutcome.ERROR in outcomes:
        outcome = TestOutcome.ERROR
    elif TestOutcome.FAILED in outcomes:
        outcome = TestOutcome.FAILED
    elif TestOutcome.PASSED in outcomes:
        outcome = TestOutcome.PASSED
    else:
        outcome = TestOutcome.SKIPPED
    failing = next((r for r in results if r.exit_code != 0 and r.outcome is not TestOutcome.SKIPPED), None)
    return SuiteResult(
        outcome=outcome,
        passed=_total([r.passed for r in results]),
        failed=_total([r.failed for r in results]),
        exit_code=failing.exit_code if failing else 0,
        commands=[cmd for r in results for cmd in r.commands],
        summary="\n\n".join(r.summary for r in results if r.summary),
    )


__all__ = [
    "DEFAULT_RULES",
    "ManifestRule",
    "collect_setup_commands",
    "collect_test_commands",
    "detect_manifests",
    "interpret_test_run",
    "merge_suite_results",
    "parse_test_counts",
    "summarise_output",
]
