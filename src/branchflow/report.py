"""Status reports emitted at every checkpoint of a session."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from pydantic import BaseModel, Field

from branchflow.schemas import (
    DecisionRequest,
    DivergenceReport,
    FailureInfo,
    SuiteResult,
    WorkflowSession,
    WorkflowState,
)

logger = logging.getLogger(__name__)

StatusSink = Callable[["StatusReport", str], None]


class StatusReport(BaseModel):
    """Snapshot of a session suitable for printing or JSON output."""

    session_id: str
    checkpoint: str = ""
    state: WorkflowState
    branch: str
    base_branch: str = ""
    base_commit: str | None = None
    last_test: SuiteResult | None = None
    pending_decision: DecisionRequest | None = None
    divergence: DivergenceReport | None = None
    warnings: list[str] = Field(default_factory=list)
    failure: FailureInfo | None = None
    last_step: str | None = None
    last_summary: str = ""
    updated_at: str = ""


def build_status_report(
    session: WorkflowSession,
    *,
    checkpoint: str = "",
    divergence: DivergenceReport | None = None,
    extra_warnings: Iterable[str] = (),
) -> StatusReport:
    warnings = list(session.warnings)
    for warning in extra_warnings:
        if warning not in warnings:
            warnings.append(warning)
    last = session.history[-1] if session.history else None
    return StatusReport(
        session_id=session.session_id,
        checkpoint=checkpoint,
        state=session.state,
        branch=session.branch,
        base_branch=session.base_branch,
        base_commit=session.base_commit,
        last_test=session.last_test,
        pending_decision=session.pending_decision,
        divergence=divergence,
        warnings=warnings,
        failure=session.failure,
        last_step=last.step.value if last else None,
        last_summary=last.summary if last else "",
        updated_at=session.updated_at,
    )


def render_status_report(report: StatusReport) -> str:
    """Human-readable multi-line rendering of a :class:`StatusReport`."""
    lines = [
        "",
        "  BranchFlow - Session Status",
        "  " + "=" * 58,
        f"  State:      {report.state.value}",
        f"  Branch:     {report.branch}",
        f"  Base:       {report.base_branch or '(unresolved)'}"
        + (f" @ {report.base_commit[:12]}" if report.base_commit else ""),
    ]
    if report.divergence is not None:
        lines.append(f"  Divergence: {report.divergence.ahead} ahead, {report.divergence.behind} behind")
    if report.last_test is not None:
        lines.append(f"  Tests:      {report.last_test.headline()}")
    if report.last_step:
        lines.append(f"  Last step:  {report.last_step} - {report.last_summary}")

    decision = report.pending_decision
    if decision is not None:
        lines.append("")
        lines.append("  Decision Required")
        lines.append("  " + "-" * 58)
        lines.append(f"  {decision.message}")
        for path in decision.paths[:20]:
            lines.append(f"    - {path}")
        if len(decision.paths) > 20:
            lines.append(f"    ... ({len(decision.paths) - 20} more)")
        options = ", ".join(option.value for option in decision.options)
        lines.append(f"  Options: {options}  (re-run with --decision <option>)")

    if report.warnings:
        lines.append("")
        for warning in report.warnings:
            lines.append(f"  [WARN] {warning}")

    failure = report.failure
    if failure is not None:
        lines.append("")
        lines.append("  Failure")
        lines.append("  " + "-" * 58)
        lines.append(f"  Failing step:          {failure.step.value}")
        lines.append(f"  Last successful state: {failure.last_successful_state.value}")
        if failure.last_successful_step is not None:
            lines.append(f"  Last successful step:  {failure.last_successful_step.value}")
        marker = " (timed out)" if failure.timed_out else ""
        lines.append(f"  Error:                 {failure.error_type}{marker}: {failure.message}")
        if failure.diagnostic:
            lines.append("  Diagnostic:")
            lines.extend(f"    {line}" for line in failure.diagnostic.splitlines())
    lines.append("")
    return "\n".join(lines)


class StatusEmitter:
    """Logs every checkpoint and fans the report out to registered sinks."""

    def __init__(self, sinks: Iterable[StatusSink] = ()) -> None:
        self._sinks: list[StatusSink] = list(sinks)

    def add_sink(self, sink: StatusSink) -> None:
        self._sinks.append(sink)

    def emit(self, session: WorkflowSession, checkpoint: str) -> StatusReport:
        report = build_status_report(session, checkpoint=checkpoint)
        if report.state is WorkflowState.FAILED:
            logger.error("[%s] %s -> %s", session.branch, checkpoint, report.state.value)
        else:
            logger.info("[%s] %s -> %s", session.branch, checkpoint, report.state.value)
        for sink in self._sinks:
            sink(report, checkpoint)
        return report


__all__ = ["StatusEmitter", "StatusReport", "StatusSink", "build_status_report", "render_status_report"]
