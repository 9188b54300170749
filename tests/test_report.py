"""Unit tests for status report building, rendering, and emission."""

from __future__ import annotations

import json
import logging

import pytest

from branchflow.report import StatusEmitter, build_status_report, render_status_report
from branchflow.schemas import (
    BranchRef,
    DecisionChoice,
    DecisionKind,
    DecisionRequest,
    DivergenceReport,
    FailureInfo,
    StepId,
    StepOutcome,
    StepStatus,
    SuiteResult,
    TestOutcome,
    WorkflowSession,
    WorkflowState,
)

pytestmark = pytest.mark.unit


def _session(**kwargs) -> WorkflowSession:
    defaults = {
        "repo_path": "/tmp/repo",
        "branch": "feature/login-flow",
        "base_branch": "main",
        "base_commit": "0123456789abcdef0123",
        "state": WorkflowState.READY,
    }
    defaults.update(kwargs)
    return WorkflowSession(**defaults)


def test_build_status_report_copies_session_fields_and_merges_warnings():
    session = _session(warnings=["remote-track: push rejected"])
    session.history.append(StepOutcome(step=StepId.TEST_BASELINE, status=StepStatus.SUCCESS, summary="Baseline ok"))
    divergence = DivergenceReport(
        local=BranchRef.local("feature/login-flow"),
        other=BranchRef.on_remote("origin", "main"),
        ahead=2,
        behind=1,
    )

    report = build_status_report(
        session,
        checkpoint="status",
        divergence=divergence,
        extra_warnings=["resync recommended", "remote-track: push rejected"],
    )

    assert report.state is WorkflowState.READY
    assert report.base_commit == "0123456789abcdef0123"
    assert report.warnings == ["remote-track: push rejected", "resync recommended"]
    assert report.last_step == "test-baseline"
    assert report.last_summary == "Baseline ok"
    assert report.divergence.behind == 1
    assert json.loads(report.model_dump_json())["state"] == "ready"


def test_render_shows_pending_decision_options():
    session = _session(state=WorkflowState.CLEAN_CHECK)
    session.pending_decision = DecisionRequest(
        kind=DecisionKind.DIRTY_TREE,
        step=StepId.CLEAN_CHECK,
        options=[DecisionChoice.STASH, DecisionChoice.COMMIT, DecisionChoice.DISCARD],
        message="Working tree has 1 uncommitted change(s): stash, commit, or discard?",
        paths=["notes.txt"],
    )

    text = render_status_report(build_status_report(session))

    assert "Decision Required" in text
    assert "    - notes.txt" in text
    assert "Options: stash, commit, discard" in text
    assert "--decision <option>" in text


def test_render_shows_failure_details_and_tests():
    session = _session(
        state=WorkflowState.FAILED,
        last_test=SuiteResult(outcome=TestOutcome.FAILED, passed=3, failed=1),
        failure=FailureInfo(
            step=StepId.SETUP_RUN,
            last_successful_state=WorkflowState.SETUP_RUN,
            last_successful_step=StepId.BRANCH_CREATE,
            error_type="ToolTimeout",
            message="`npm ci` timed out after 900s",
            diagnostic="npm WARN slow\nnpm ERR! aborted",
            timed_out=True,
        ),
    )

    text = render_status_report(build_status_report(session))

    assert "Tests:      failed (3 passed, 1 failed)" in text
    assert "Failing step:          setup-run" in text
    assert "Last successful step:  branch-create" in text
    assert "ToolTimeout (timed out)" in text
    assert "    npm ERR! aborted" in text


def test_render_marks_unresolved_base():
    text = render_status_report(build_status_report(_session(base_branch="", base_commit=None)))
    assert "(unresolved)" in text


def test_emitter_logs_and_fans_out(caplog):
    seen: list[tuple[str, str]] = []
    emitter = StatusEmitter([lambda report, checkpoint: seen.append((report.state.value, checkpoint))])
    emitter.add_sink(lambda report, checkpoint: seen.append(("second", checkpoint)))

    with caplog.at_level(logging.INFO, logger="branchflow.report"):
        report = emitter.emit(_session(), "test-baseline:success")
        emitter.emit(_session(state=WorkflowState.FAILED), "setup-run:failure")

    assert report.checkpoint == "test-baseline:success"
    assert seen == [
        ("ready", "test-baseline:success"),
        ("second", "test-baseline:success"),
        ("failed", "setup-run:failure"),
        ("second", "setup-run:failure"),
    ]
    assert any(r.levelno == logging.ERROR and "setup-run:failure" in r.getMessage() for r in caplog.records)
