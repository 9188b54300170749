"""End-to-end tests for the workflow engine against real git repositories."""

from __future__ import annotations

import datetime as dt
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from branchflow.config import FlowConfig
from branchflow.engine import WorkflowEngine
from branchflow.errors import BranchExists, DecisionError, InvalidInvocation, InvalidName, UnknownBranch
from branchflow.history import HistoryLog
from branchflow.manifests import ManifestRule
from branchflow.schemas import (
    Decision,
    DecisionChoice,
    DecisionKind,
    IntegrateMode,
    StepId,
    StepStatus,
    TestOutcome,
    WorkflowSession,
    WorkflowState,
)
from branchflow.steps import TrunkSyncStep
from branchflow.tools import ToolAdapter

pytestmark = pytest.mark.integration


class _RecordingAdapter(ToolAdapter):
    """Real adapter that remembers every invocation and whether it was read-only."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.calls: list[tuple[tuple[str, ...], bool]] = []

    def invoke(self, tool, args, cwd, timeout=None, *, read_only=False, **kwargs):
        self.calls.append((tuple(args), read_only))
        return super().invoke(tool, args, cwd, timeout, read_only=read_only, **kwargs)


def _local_branches(repo: Path, git_cmd) -> list[str]:
    out = git_cmd(repo, "for-each-ref", "--format=%(refname:short)", "refs/heads")
    return out.splitlines()


def _push_trunk_commit(remote_repo: SimpleNamespace, commit, git_cmd, name: str, content: str) -> str:
    sha = commit(remote_repo.seed, name, content, f"trunk: {name}")
    git_cmd(remote_repo.seed, "push", "origin", "main")
    return sha


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------


def test_start_on_clean_up_to_date_repo_reaches_ready(remote_repo, git_cmd, remote_branches):
    work = remote_repo.work
    engine = WorkflowEngine(work)

    session = engine.start("feature/login-flow")

    assert session.state is WorkflowState.READY
    assert not any(o.status is StepStatus.NEEDS_DECISION for o in session.history)
    assert [o.step for o in session.history] == [
        StepId.CLEAN_CHECK,
        StepId.TRUNK_SYNC,
        StepId.BRANCH_CREATE,
        StepId.REMOTE_TRACK,
        StepId.SETUP_RUN,
        StepId.TEST_BASELINE,
    ]
    assert session.base_branch == "main"
    assert session.base_commit == git_cmd(work, "rev-parse", "main")
    assert git_cmd(work, "branch", "--show-current") == "feature/login-flow"
    assert "feature/login-flow" in remote_branches(remote_repo.remote)
    assert git_cmd(work, "rev-parse", "--abbrev-ref", "feature/login-flow@{upstream}") == "origin/feature/login-flow"
    track = next(o for o in session.history if o.step is StepId.REMOTE_TRACK)
    assert track.summary == "Pushed feature/login-flow and tracking origin/feature/login-flow."
    assert session.warnings == []
    assert session.last_test is not None
    assert session.last_test.outcome is TestOutcome.SKIPPED

    report = engine.status(session)
    assert report.branch == "feature/login-flow"
    assert report.base_commit == git_cmd(work, "rev-parse", "main")


def test_start_without_remote_skips_remote_tracking(local_repo, git_cmd):
    session = WorkflowEngine(local_repo).start("fix/offline")

    assert session.state is WorkflowState.READY
    assert session.track_remote is False
    assert StepId.REMOTE_TRACK not in [o.step for o in session.history]
    assert session.warnings == []
    assert "fix/offline" in _local_branches(local_repo, git_cmd)


def test_start_rejects_bad_name_before_touching_git(remote_repo, git_cmd):
    engine = WorkflowEngine(remote_repo.work)
    with pytest.raises(InvalidName):
        engine.start("bad name")
    assert _local_branches(remote_repo.work, git_cmd) == ["main"]


def test_start_outside_a_repository_is_invalid(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(InvalidInvocation):
        WorkflowEngine(plain).start("feature/a")


def test_start_rejects_existing_local_branch_before_touching_the_tree(remote_repo, git_cmd):
    work = remote_repo.work
    git_cmd(work, "branch", "feature/taken")
    (work / "notes.txt").write_text("scratch\n", encoding="utf-8")
    engine = WorkflowEngine(work)

    with pytest.raises(BranchExists, match="feature/taken"):
        engine.start("feature/taken")

    assert (work / "notes.txt").read_text(encoding="utf-8") == "scratch\n"
    assert git_cmd(work, "stash", "list") == ""
    assert git_cmd(work, "branch", "--show-current") == "main"


def test_start_fails_when_branch_exists_on_remote(remote_repo, git_cmd):
    git_cmd(remote_repo.seed, "push", "origin", "main:refs/heads/feature/taken")

    session = WorkflowEngine(remote_repo.work).start("feature/taken")

    assert session.state is WorkflowState.FAILED
    assert session.failure.error_type == "BranchExists"
    assert session.failure.invalid_invocation is True
    assert session.failure.last_successful_step is StepId.TRUNK_SYNC
    assert "feature/taken" not in _local_branches(remote_repo.work, git_cmd)


def test_start_fast_forwards_stale_trunk(remote_repo, git_cmd, commit):
    new_trunk = _push_trunk_commit(remote_repo, commit, git_cmd, "news.txt", "news\n")

    session = WorkflowEngine(remote_repo.work).start("feature/after-update")

    assert session.state is WorkflowState.READY
    assert git_cmd(remote_repo.work, "rev-parse", "main") == new_trunk
    assert session.base_commit == new_trunk
    sync = next(o for o in session.history if o.step is StepId.TRUNK_SYNC)
    assert "Fast-forwarded" in sync.summary


def test_start_blocks_on_unpushed_trunk_commits(remote_repo, git_cmd, commit):
    commit(remote_repo.work, "local.txt", "local\n", "unpushed trunk work")

    session = WorkflowEngine(remote_repo.work).start("feature/blocked")

    assert session.state is WorkflowState.FAILED
    assert session.failure.step is StepId.TRUNK_SYNC
    assert session.failure.error_type == "DivergenceConflict"
    assert "1 ahead" in session.failure.diagnostic
    assert "feature/blocked" not in _local_branches(remote_repo.work, git_cmd)


def test_repeated_noop_trunk_sync_issues_no_mutating_commands(remote_repo):
    adapter = _RecordingAdapter(default_timeout=30)
    engine = WorkflowEngine(remote_repo.work, adapter=adapter)
    session = WorkflowSession(
        repo_path=str(remote_repo.work),
        branch="feature/a",
        state=WorkflowState.TRUNK_SYNC,
    )
    ctx = engine._context(session)

    first = TrunkSyncStep().run(ctx)
    second = TrunkSyncStep().run(ctx)

    assert first.ok and second.ok
    mutating = [args for args, read_only in adapter.calls if not read_only]
    assert mutating == []
    assert any(args[:1] == ("fetch",) for args, _ in adapter.calls)


# ---------------------------------------------------------------------------
# dirty tree decisions
# ---------------------------------------------------------------------------


def test_dirty_tree_suspends_then_stash_reaches_ready(remote_repo, git_cmd):
    work = remote_repo.work
    (work / "notes.txt").write_text("scratch\n", encoding="utf-8")
    engine = WorkflowEngine(work)

    session = engine.start("feature/login-flow")

    assert session.state is WorkflowState.CLEAN_CHECK
    assert session.suspended
    request = session.pending_decision
    assert request.kind is DecisionKind.DIRTY_TREE
    assert request.options == [DecisionChoice.STASH, DecisionChoice.COMMIT, DecisionChoice.DISCARD]
    assert request.paths == ["notes.txt"]
    assert "feature/login-flow" not in _local_branches(work, git_cmd)

    session = engine.resume(session, Decision(choice=DecisionChoice.STASH))

    assert session.state is WorkflowState.READY
    assert not session.suspended
    assert "branchflow" in git_cmd(work, "stash", "list")
    assert not (work / "notes.txt").exists()


def test_dirty_tree_commit_choice_keeps_work_on_new_branch(local_repo, git_cmd):
    trunk_before = git_cmd(local_repo, "rev-parse", "main")
    (local_repo / "README.md").write_text("edited\n", encoding="utf-8")
    engine = WorkflowEngine(local_repo)

    session = engine.start("feature/keep-work")
    session = engine.resume(session, Decision(choice=DecisionChoice.COMMIT, message="save wip"))

    assert session.state is WorkflowState.READY
    assert git_cmd(local_repo, "log", "-1", "--format=%s", "feature/keep-work") == "save wip"
    assert git_cmd(local_repo, "rev-parse", "main") == trunk_before


def test_dirty_trunk_commit_choice_with_remote_lands_on_new_branch(
    remote_repo, git_cmd, commit, remote_branches
):
    work = remote_repo.work
    new_trunk = _push_trunk_commit(remote_repo, commit, git_cmd, "news.txt", "news\n")
    (work / "README.md").write_text("line one\nline two\nmine\n", encoding="utf-8")
    (work / "notes.txt").write_text("scratch\n", encoding="utf-8")
    engine = WorkflowEngine(work)

    session = engine.start("feature/keep-work")
    assert session.pending_decision.kind is DecisionKind.DIRTY_TREE
    session = engine.resume(session, Decision(choice=DecisionChoice.COMMIT, message="save wip"))

    assert session.state is WorkflowState.READY, session.failure
    assert session.carried_commit_message is None
    assert git_cmd(work, "rev-parse", "main") == new_trunk
    assert git_cmd(work, "rev-parse", "feature/keep-work~1") == new_trunk
    assert git_cmd(work, "log", "-1", "--format=%s", "feature/keep-work") == "save wip"
    assert git_cmd(work, "show", "feature/keep-work:README.md") == "line one\nline two\nmine"
    assert git_cmd(work, "show", "feature/keep-work:notes.txt") == "scratch"
    assert git_cmd(work, "stash", "list") == ""
    assert git_cmd(work, "status", "--porcelain") == ""
    tip = git_cmd(work, "rev-parse", "feature/keep-work")
    assert remote_branches(remote_repo.remote)["feature/keep-work"] == tip


def test_dirty_feature_branch_commit_choice_commits_in_place(local_repo, git_cmd):
    git_cmd(local_repo, "checkout", "-b", "feature/old")
    (local_repo / "README.md").write_text("unfinished\n", encoding="utf-8")
    engine = WorkflowEngine(local_repo)

    session = engine.start("feature/new")
    session = engine.resume(session, Decision(choice=DecisionChoice.COMMIT, message="park old work"))

    assert session.state is WorkflowState.READY
    assert git_cmd(local_repo, "log", "-1", "--format=%s", "feature/old") == "park old work"
    assert git_cmd(local_repo, "rev-parse", "feature/new") == git_cmd(local_repo, "rev-parse", "main")


def test_dirty_tree_discard_choice_resets_files(local_repo):
    (local_repo / "README.md").write_text("edited\n", encoding="utf-8")
    engine = WorkflowEngine(local_repo)

    session = engine.start("feature/fresh")
    session = engine.resume(session, Decision(choice=DecisionChoice.DISCARD))

    assert session.state is WorkflowState.READY
    assert (local_repo / "README.md").read_text(encoding="utf-8") == "hello\n"


def test_inapplicable_decision_is_rejected_and_session_stays_suspended(local_repo):
    (local_repo / "stray.txt").write_text("x\n", encoding="utf-8")
    engine = WorkflowEngine(local_repo)
    session = engine.start("feature/a")

    with pytest.raises(DecisionError):
        engine.resume(session, Decision(choice=DecisionChoice.REBASE))

    assert session.suspended
    assert session.state is WorkflowState.CLEAN_CHECK


def test_resume_without_pending_decision_is_rejected(local_repo):
    engine = WorkflowEngine(local_repo)
    session = engine.start("feature/a")
    with pytest.raises(DecisionError):
        engine.resume(session, Decision(choice=DecisionChoice.STASH))


# ---------------------------------------------------------------------------
# cancellation and guards
# ---------------------------------------------------------------------------


def test_cancel_after_branch_create_aborts_and_keeps_branch(remote_repo, git_cmd):
    engine = WorkflowEngine(remote_repo.work)

    def _cancel_after_create(report, checkpoint):
        if checkpoint == "branch-create:success":
            engine.cancel()

    engine.emitter.add_sink(_cancel_after_create)

    session = engine.start("feature/cancel-me")

    assert session.state is WorkflowState.ABORTED
    steps = [o.step for o in session.history]
    assert StepId.SETUP_RUN not in steps
    assert StepId.REMOTE_TRACK not in steps
    assert "feature/cancel-me" in _local_branches(remote_repo.work, git_cmd)
    assert any("not rolled back" in w for w in session.warnings)
    assert any("Cancelled before remote-track" in w for w in session.warnings)


def test_cancel_while_suspended_aborts_with_tree_as_is(local_repo):
    (local_repo / "notes.txt").write_text("keep me\n", encoding="utf-8")
    engine = WorkflowEngine(local_repo)
    session = engine.start("feature/a")

    engine.cancel(session)

    assert session.state is WorkflowState.ABORTED
    assert session.pending_decision is None
    assert (local_repo / "notes.txt").read_text(encoding="utf-8") == "keep me\n"


def test_branch_create_requires_prior_checks(local_repo, git_cmd):
    engine = WorkflowEngine(local_repo)
    session = WorkflowSession(
        repo_path=str(local_repo),
        branch="feature/sneaky",
        base_branch="main",
        state=WorkflowState.BRANCH_CREATE,
    )

    session = engine._drive(session)

    assert session.state is WorkflowState.FAILED
    assert session.failure.error_type == "PreconditionError"
    assert "feature/sneaky" not in _local_branches(local_repo, git_cmd)


# ---------------------------------------------------------------------------
# setup and baseline tests
# ---------------------------------------------------------------------------


def test_failing_baseline_tests_become_a_warning(local_repo, commit):
    commit(local_repo, "check.flag", "on\n", "add check flag")
    rule = ManifestRule(
        "check.flag",
        "custom",
        None,
        (sys.executable, "-c", "import sys; print('1 failed, 2 passed'); sys.exit(1)"),
    )
    engine = WorkflowEngine(local_repo, manifest_rules=(rule,))

    session = engine.start("feature/red-baseline")

    assert session.state is WorkflowState.READY
    assert session.failure is None
    assert session.last_test.outcome is TestOutcome.FAILED
    assert (session.last_test.passed, session.last_test.failed) == (2, 1)
    assert any(w.startswith("test-baseline:") for w in session.warnings)
    assert session.test_commands == [list(rule.test)]


@pytest.mark.slow
def test_setup_timeout_fails_session_with_timeout_marker(local_repo, commit, git_cmd):
    commit(local_repo, "slow.flag", "on\n", "add slow flag")
    rule = ManifestRule("slow.flag", "custom", (sys.executable, "-c", "import time; time.sleep(20)"), None)
    engine = WorkflowEngine(local_repo, FlowConfig(setup_timeout=0.5), manifest_rules=(rule,))

    session = engine.start("feature/slow-setup")

    assert session.state is WorkflowState.FAILED
    failure = session.failure
    assert failure.step is StepId.SETUP_RUN
    assert failure.timed_out is True
    assert failure.error_type == "ToolTimeout"
    assert failure.last_successful_step is StepId.BRANCH_CREATE
    assert failure.last_successful_state is WorkflowState.SETUP_RUN
    assert "feature/slow-setup" in _local_branches(local_repo, git_cmd)


@pytest.mark.skipif(os.name == "nt", reason="server-side hook scripts need a POSIX shell")
def test_rejected_push_is_only_a_warning(remote_repo, remote_branches):
    hook = remote_repo.remote / "hooks" / "pre-receive"
    hook.write_text("#!/bin/sh\necho 'pushes disabled' >&2\nexit 1\n", encoding="utf-8")
    hook.chmod(0o755)

    session = WorkflowEngine(remote_repo.work).start("feature/no-push")

    assert session.state is WorkflowState.READY
    assert any(w.startswith("remote-track:") for w in session.warnings)
    assert "feature/no-push" not in remote_branches(remote_repo.remote)


# ---------------------------------------------------------------------------
# resync and integrate
# ---------------------------------------------------------------------------


def test_resync_rebase_then_integrate_pr_uses_lease(remote_repo, git_cmd, commit, remote_branches):
    work = remote_repo.work
    engine = WorkflowEngine(work)
    session = engine.start("feature/rebase-me")
    commit(work, "a.txt", "a\n", "feature work")
    git_cmd(work, "push")
    _push_trunk_commit(remote_repo, commit, git_cmd, "b.txt", "b\n")

    session = engine.resync(session)

    assert session.state is WorkflowState.RESYNC_CHECK
    request = session.pending_decision
    assert request.kind is DecisionKind.TRUNK_ADVANCED
    assert request.options == [DecisionChoice.REBASE, DecisionChoice.MERGE]

    session = engine.resume(session, Decision(choice=DecisionChoice.REBASE))

    assert session.state is WorkflowState.READY
    assert engine.git.is_ancestor("refs/remotes/origin/main", "refs/heads/feature/rebase-me")
    assert git_cmd(work, "rev-list", "--count", "--merges", "origin/main..feature/rebase-me") == "0"

    session = engine.integrate(session)

    assert session.state is WorkflowState.INTEGRATED
    assert remote_branches(remote_repo.remote)["feature/rebase-me"] == git_cmd(work, "rev-parse", "feature/rebase-me")
    assert "pull request" in session.history[-1].summary


def test_resync_merge_choice_creates_merge_commit(remote_repo, git_cmd, commit):
    work = remote_repo.work
    engine = WorkflowEngine(work)
    session = engine.start("feature/merge-trunk")
    commit(work, "a.txt", "a\n", "feature work")
    _push_trunk_commit(remote_repo, commit, git_cmd, "b.txt", "b\n")

    session = engine.resync(session)
    session = engine.resume(session, Decision(choice=DecisionChoice.MERGE))

    assert session.state is WorkflowState.READY
    parents = git_cmd(work, "rev-list", "--parents", "-n", "1", "feature/merge-trunk").split()
    assert len(parents) == 3


def test_resync_when_up_to_date_is_a_noop(remote_repo):
    engine = WorkflowEngine(remote_repo.work)
    session = engine.start("feature/current")

    session = engine.resync(session)

    assert session.state is WorkflowState.READY
    assert not session.suspended
    assert session.history[-1].step is StepId.RESYNC


def test_resync_conflict_requires_every_path_before_continue(remote_repo, git_cmd, commit):
    work = remote_repo.work
    engine = WorkflowEngine(work)
    session = engine.start("feature/conflict")
    commit(work, "README.md", "line one\nfeature version\n", "feature edit")
    _push_trunk_commit(remote_repo, commit, git_cmd, "README.md", "line one\ntrunk version\n")

    session = engine.resync(session)
    session = engine.resume(session, Decision(choice=DecisionChoice.REBASE))

    request = session.pending_decision
    assert request.kind is DecisionKind.CONFLICT
    assert request.paths == ["README.md"]
    assert request.options == [DecisionChoice.CONTINUE, DecisionChoice.ABORT]
    assert request.context["operation"] == "rebase"

    with pytest.raises(DecisionError):
        engine.resume(session, Decision(choice=DecisionChoice.CONTINUE))
    assert session.suspended

    (work / "README.md").write_text("line one\nmerged version\n", encoding="utf-8")
    session = engine.resume(
        session,
        Decision(choice=DecisionChoice.CONTINUE, resolved_paths=["README.md"]),
    )

    assert session.state is WorkflowState.READY
    assert git_cmd(work, "branch", "--show-current") == "feature/conflict"
    assert (work / "README.md").read_text(encoding="utf-8") == "line one\nmerged version\n"
    assert engine.git.is_ancestor("refs/remotes/origin/main", "refs/heads/feature/conflict")


def test_resync_conflict_continue_rejects_leftover_markers(remote_repo, git_cmd, commit):
    work = remote_repo.work
    engine = WorkflowEngine(work)
    session = engine.start("feature/conflict")
    commit(work, "README.md", "line one\nfeature version\n", "feature edit")
    _push_trunk_commit(remote_repo, commit, git_cmd, "README.md", "line one\ntrunk version\n")

    session = engine.resync(session)
    session = engine.resume(session, Decision(choice=DecisionChoice.MERGE))
    assert session.pending_decision.kind is DecisionKind.CONFLICT
    assert "<<<<<<<" in (work / "README.md").read_text(encoding="utf-8")

    with pytest.raises(DecisionError, match="README.md"):
        engine.resume(
            session,
            Decision(choice=DecisionChoice.CONTINUE, resolved_paths=["README.md"]),
        )

    assert session.suspended
    assert engine.git.conflicted_paths() == ["README.md"]

    (work / "README.md").write_text("line one\nboth versions\n", encoding="utf-8")
    session = engine.resume(
        session,
        Decision(choice=DecisionChoice.CONTINUE, resolved_paths=["README.md"]),
    )

    assert session.state is WorkflowState.READY
    assert git_cmd(work, "show", "HEAD:README.md") == "line one\nboth versions"
    assert engine.git.is_ancestor("refs/remotes/origin/main", "refs/heads/feature/conflict")


def test_resync_conflict_abort_restores_branch(remote_repo, git_cmd, commit):
    work = remote_repo.work
    engine = WorkflowEngine(work)
    session = engine.start("feature/conflict")
    feature_sha = commit(work, "README.md", "line one\nfeature version\n", "feature edit")
    _push_trunk_commit(remote_repo, commit, git_cmd, "README.md", "line one\ntrunk version\n")

    session = engine.resync(session)
    session = engine.resume(session, Decision(choice=DecisionChoice.REBASE))
    session = engine.resume(session, Decision(choice=DecisionChoice.ABORT))

    assert session.state is WorkflowState.ABORTED
    assert git_cmd(work, "rev-parse", "feature/conflict") == feature_sha
    assert engine.git.conflicted_paths() == []
    assert git_cmd(work, "branch", "--show-current") == "feature/conflict"


def test_commands_reject_wrong_state(local_repo):
    engine = WorkflowEngine(local_repo)
    session = WorkflowSession(repo_path=str(local_repo), branch="feature/a", state=WorkflowState.IDLE)
    with pytest.raises(InvalidInvocation):
        engine.resync(session)
    with pytest.raises(InvalidInvocation):
        engine.integrate(session)
    with pytest.raises(InvalidInvocation):
        engine.cleanup(session)


# ---------------------------------------------------------------------------
# integrate (merge mode) and cleanup
# ---------------------------------------------------------------------------


def test_integrate_merge_then_cleanup_deletes_local_and_remote(remote_repo, git_cmd, commit, remote_branches):
    work = remote_repo.work
    engine = WorkflowEngine(work)
    session = engine.start("feature/merge-me")
    commit(work, "a.txt", "a\n", "feature work")

    session = engine.integrate(session, IntegrateMode.MERGE)

    assert session.state is WorkflowState.INTEGRATED
    parents = git_cmd(work, "rev-list", "--parents", "-n", "1", "main").split()
    assert len(parents) == 3
    assert remote_branches(remote_repo.remote)["main"] == git_cmd(work, "rev-parse", "main")
    assert git_cmd(work, "log", "-1", "--format=%s", "main") == "Merge branch 'feature/merge-me' into main"

    session = engine.cleanup(session)

    assert session.state is WorkflowState.CLEANED_UP
    assert "feature/merge-me" not in _local_branches(work, git_cmd)
    assert "feature/merge-me" not in remote_branches(remote_repo.remote)


def test_cleanup_refuses_unmerged_branch_without_force(remote_repo, git_cmd, commit, remote_branches):
    work = remote_repo.work
    engine = WorkflowEngine(work)
    session = engine.start("feature/unmerged")
    commit(work, "a.txt", "a\n", "feature work")

    session = engine.cleanup(session)

    assert session.state is WorkflowState.FAILED
    assert session.failure.error_type == "PreconditionError"
    assert "--force" in session.failure.message
    assert "feature/unmerged" in _local_branches(work, git_cmd)
    assert "feature/unmerged" in remote_branches(remote_repo.remote)

    adopted = engine.adopt("feature/unmerged")
    adopted = engine.cleanup(adopted, force=True)

    assert adopted.state is WorkflowState.CLEANED_UP
    assert "feature/unmerged" not in _local_branches(work, git_cmd)
    assert "feature/unmerged" not in remote_branches(remote_repo.remote)
    assert git_cmd(work, "branch", "--show-current") == "main"


def test_cleanup_of_merged_local_branch_without_remote(local_repo, git_cmd, commit):
    engine = WorkflowEngine(local_repo)
    session = engine.start("feature/local-only")
    commit(local_repo, "a.txt", "a\n", "feature work")
    git_cmd(local_repo, "checkout", "main")
    git_cmd(local_repo, "merge", "--no-ff", "--no-edit", "feature/local-only")

    session = engine.cleanup(session)

    assert session.state is WorkflowState.CLEANED_UP
    assert _local_branches(local_repo, git_cmd) == ["main"]


# ---------------------------------------------------------------------------
# adopt, status, history
# ---------------------------------------------------------------------------


def test_adopt_existing_branch(local_repo, git_cmd):
    git_cmd(local_repo, "checkout", "-b", "feature/existing")
    engine = WorkflowEngine(local_repo)

    session = engine.adopt()

    assert session.state is WorkflowState.READY
    assert session.branch == "feature/existing"
    assert session.base_branch == "main"
    assert session.base_commit == git_cmd(local_repo, "rev-parse", "main")


def test_adopt_rejects_trunk_and_unknown_branches(local_repo):
    engine = WorkflowEngine(local_repo)
    with pytest.raises(InvalidInvocation):
        engine.adopt()
    with pytest.raises(UnknownBranch):
        engine.adopt("feature/missing")


def test_status_reports_live_divergence_and_staleness(remote_repo, git_cmd, commit):
    work = remote_repo.work
    engine = WorkflowEngine(work, FlowConfig(stale_behind_commits=2, stale_after_hours=1))
    session = engine.start("feature/stale")
    for idx in range(3):
        _push_trunk_commit(remote_repo, commit, git_cmd, f"t{idx}.txt", f"{idx}\n")
    git_cmd(work, "fetch", "origin")
    session.last_synced_at = (dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=5)).isoformat()

    report = engine.status(session)

    assert report.divergence is not None
    assert report.divergence.behind == 3
    assert report.divergence.ahead == 0
    assert any("3 commits behind" in w for w in report.warnings)
    assert any("Last synced with trunk" in w for w in report.warnings)
    assert session.warnings == []


def test_history_and_checkpoints_are_recorded(local_repo, tmp_path):
    history = HistoryLog(tmp_path / "state")
    checkpoints: list[str] = []
    engine = WorkflowEngine(local_repo, history=history)
    engine.emitter.add_sink(lambda report, checkpoint: checkpoints.append(checkpoint))

    session = engine.start("feature/audited")

    entries = history.read()
    assert [e["step"] for e in entries] == [o.step.value for o in session.history]
    assert all(e["session_id"] == session.session_id for e in entries)
    assert checkpoints[0] == "started"
    assert checkpoints[-1] == "test-baseline:success"
