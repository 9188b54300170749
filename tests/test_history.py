"""Tests for the JSONL step history and its rotation."""

from __future__ import annotations

from pathlib import Path

import pytest

from branchflow.history import HistoryLog
from branchflow.schemas import StepId, StepOutcome, StepStatus, WorkflowSession, WorkflowState

pytestmark = pytest.mark.integration


def _session() -> WorkflowSession:
    return WorkflowSession(repo_path="/tmp/repo", branch="feature/a", base_branch="main", state=WorkflowState.READY)


def test_record_appends_one_line_per_outcome(tmp_path: Path):
    log = HistoryLog(tmp_path / "state")
    session = _session()

    log.record(session, StepOutcome(step=StepId.CLEAN_CHECK, status=StepStatus.SUCCESS, summary="clean"))
    log.record(
        session,
        StepOutcome(
            step=StepId.REMOTE_TRACK,
            status=StepStatus.FAILURE,
            summary="push rejected",
            diagnostic="remote: denied",
            recoverable=True,
            error_type="ToolInvocationError",
        ),
    )

    entries = log.read()
    assert [e["step"] for e in entries] == ["clean-check", "remote-track"]
    assert entries[1]["status"] == "failure"
    assert entries[1]["error_type"] == "ToolInvocationError"
    assert entries[1]["branch"] == "feature/a"
    assert log.read(limit=1)[0]["step"] == "remote-track"
    assert log.read(limit=0) == []


def test_long_diagnostics_are_truncated(tmp_path: Path):
    log = HistoryLog(tmp_path / "state")
    log.record(
        _session(),
        StepOutcome(step=StepId.SETUP_RUN, status=StepStatus.FAILURE, diagnostic="x" * 10_000),
    )
    entry = log.read()[0]
    assert len(entry["diagnostic"]) == 2_000
    assert entry["diagnostic"].endswith("...")


def test_rotation_moves_full_log_to_archive_and_prunes(tmp_path: Path):
    log = HistoryLog(tmp_path / "state", max_bytes=4_096, max_archives=2)
    session = _session()
    outcome = StepOutcome(step=StepId.SETUP_RUN, status=StepStatus.FAILURE, diagnostic="y" * 1_900)

    for _ in range(20):
        log.record(session, outcome)

    archives = list(log.archive_dir.glob("history-*.jsonl"))
    assert 1 <= len(archives) <= 2
    assert log.path.stat().st_size < 4_096 + 2_500


def test_read_skips_malformed_lines(tmp_path: Path):
    log = HistoryLog(tmp_path / "state")
    log.record(_session(), StepOutcome(step=StepId.CLEANUP, status=StepStatus.SUCCESS))
    with log.path.open("a", encoding="utf-8") as handle:
        handle.write("{broken\n\n")
    assert [e["step"] for e in log.read()] == ["cleanup"]
