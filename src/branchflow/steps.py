"""Step handlers: one per lifecycle action.

Each handler validates its preconditions, executes tool invocations through
the session's :class:`~branchflow.git_tools.GitClient` or
:class:`~branchflow.tools.ToolAdapter`, and interprets the raw results into a
:class:`~branchflow.schemas.StepOutcome`. Handlers raise; they never decide
whether an error is fatal. That is the engine's job.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from branchflow.config import FlowConfig
from branchflow.errors import (
    BranchExists,
    DecisionError,
    DivergenceConflict,
    InvalidName,
    PreconditionError,
    ToolInvocationError,
    UnknownBranch,
)
from branchflow.git_tools import GitClient
from branchflow.manifests import (
    DEFAULT_RULES,
    ManifestRule,
    collect_setup_commands,
    collect_test_commands,
    detect_manifests,
    interpret_test_run,
    merge_suite_results,
)
from branchflow.policy import (
    ResyncAction,
    TrunkSyncAction,
    classify_resync,
    classify_trunk_sync,
    validate_branch_name,
)
from branchflow.schemas import (
    BranchRef,
    Decision,
    DecisionChoice,
    DecisionKind,
    DecisionRequest,
    DivergenceReport,
    IntegrateMode,
    StepId,
    StepOutcome,
    StepStatus,
    SuiteResult,
    TestOutcome,
    WorkflowSession,
)
from branchflow.tools import ToolAdapter, ToolResult

logger = logging.getLogger(__name__)

_FALLBACK_TRUNKS = ("main", "master")
_CONFLICT_MARKER_RE = re.compile(r"^(?:<{7}|>{7})(?: |$)", re.MULTILINE)


@dataclass(slots=True)
class StepContext:
    """Everything a handler may touch, passed explicitly."""

    session: WorkflowSession
    git: GitClient
    adapter: ToolAdapter
    config: FlowConfig
    repo: Path
    manifest_rules: tuple[ManifestRule, ...] = field(default=DEFAULT_RULES)


class StepHandler:
    """Base class for lifecycle step handlers."""

    step: ClassVar[StepId]
    # A failure of a recoverable step becomes a warning instead of ``failed``.
    recoverable: ClassVar[bool] = False

    def run(self, ctx: StepContext) -> StepOutcome:
        self.validate_preconditions(ctx)
        raw = self.execute(ctx)
        return self.interpret_result(ctx, raw)

    def validate_preconditions(self, ctx: StepContext) -> None:
        """Raise :class:`PreconditionError` when the step must not run."""

    def execute(self, ctx: StepContext) -> Any:
        raise NotImplementedError

    def interpret_result(self, ctx: StepContext, raw: Any) -> StepOutcome:
        raise NotImplementedError

    def apply_decision(
        self,
        ctx: StepContext,
        request: DecisionRequest,
        decision: Decision,
    ) -> None:
        """Carry out the caller's answer to a decision this step requested."""
        raise DecisionError(f"{self.step.value} does not accept decisions.")

    def on_error(self, ctx: StepContext, exc: Exception) -> None:
        """Hook for recording partial results before the engine handles *exc*."""

    # -- outcome builders --

    def success(self, summary: str, *, diagnostic: str = "", skipped: bool = False) -> StepOutcome:
        return StepOutcome(
            step=self.step,
            status=StepStatus.SUCCESS,
            summary=summary,
            diagnostic=diagnostic,
            skipped=skipped,
            recoverable=self.recoverable,
        )

    def failure(self, summary: str, *, diagnostic: str = "") -> StepOutcome:
        return StepOutcome(
            step=self.step,
            status=StepStatus.FAILURE,
            summary=summary,
            diagnostic=diagnostic,
            recoverable=self.recoverable,
        )

    def needs_decision(self, request: DecisionRequest) -> StepOutcome:
        return StepOutcome(
            step=self.step,
            status=StepStatus.NEEDS_DECISION,
            summary=request.message,
            decision=request,
            recoverable=self.recoverable,
        )


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def resolve_trunk(ctx: StepContext) -> str:
    """Name of the trunk branch: session, remote HEAD, config, then main/master."""
    if ctx.session.base_branch:
        return ctx.session.base_branch
    git = ctx.git
    if git.has_remote():
        name = git.remote_default_branch()
        if name:
            return name
    if ctx.config.base_branch:
        return ctx.config.base_branch
    for candidate in _FALLBACK_TRUNKS:
        if git.local_branch_exists(candidate):
            return candidate
    raise PreconditionError(
        "Could not determine the trunk branch; set BRANCHFLOW_BASE_BRANCH or pass --base."
    )


def _trunk_guess(ctx: StepContext) -> str | None:
    try:
        return resolve_trunk(ctx)
    except PreconditionError:
        return None


def trunk_ref(ctx: StepContext) -> BranchRef:
    """Most up-to-date view of trunk: the remote-tracking ref when it exists."""
    trunk = ctx.session.base_branch or resolve_trunk(ctx)
    remote = ctx.session.remote
    if remote and ctx.git.has_remote():
        candidate = BranchRef.on_remote(remote, trunk)
        if ctx.git.rev_parse(candidate.full_ref):
            return candidate
    return BranchRef.local(trunk)


def _porcelain_paths(porcelain: str) -> list[str]:
    paths: list[str] = []
    for line in porcelain.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip().strip('"'))
    return paths


def _paths_with_conflict_markers(repo: Path, paths: list[str]) -> list[str]:
    """Paths among *paths* that still contain ``<<<<<<<`` or ``>>>>>>>`` lines."""
    flagged: list[str] = []
    for rel in paths:
        path = repo / rel
        if not path.is_file():
            continue
        text = path.read_bytes().decode("utf-8", errors="replace")
        if _CONFLICT_MARKER_RE.search(text):
            flagged.append(rel)
    return flagged


def _utcnow() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


class ConflictResolutionMixin:
    """Continue/abort handling for rebase and merge conflicts."""

    step: ClassVar[StepId]

    def raise_conflict(self, ctx: StepContext, operation: str, result: ToolResult) -> None:
        paths = ctx.git.conflicted_paths()
        if not paths:
            raise ToolInvocationError(
                f"`{result.command_line}` failed (rc={result.exit_status})",
                tool=result.tool,
                args=result.args,
                exit_status=result.exit_status,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        raise DivergenceConflict(
            f"{operation} stopped with {len(paths)} conflicting path(s)",
            operation=operation,
            paths=paths,
            options=(DecisionChoice.CONTINUE.value, DecisionChoice.ABORT.value),
            diagnostic=result.output,
        )

    def resolve_conflict(
        self,
        ctx: StepContext,
        request: DecisionRequest,
        decision: Decision,
    ) -> None:
        operation = str(request.context.get("operation") or "")
        git = ctx.git
        if decision.choice is DecisionChoice.ABORT:
            if operation == "rebase":
                git.rebase_abort()
            else:
                git.merge_abort()
            logger.info("Aborted %s on %s", operation, ctx.session.branch)
            return

        missing = sorted(set(request.paths) - set(decision.resolved_paths))
        if not decision.resolved_paths or missing:
            raise DecisionError(
                "continue requires every conflicting path to be listed as resolved; "
                f"missing: {', '.join(missing) or ', '.join(request.paths)}"
            )
        unresolved = _paths_with_conflict_markers(ctx.repo, decision.resolved_paths)
        if unresolved:
            raise DecisionError(
                "Conflict markers are still present in: "
                f"{', '.join(unresolved)}; edit them out before continuing."
            )
        git.stage(decision.resolved_paths)
        if operation == "rebase":
            result = git.rebase_continue()
            if not result.ok:
                self.raise_conflict(ctx, operation, result)
        else:
            git.merge_continue()


# ---------------------------------------------------------------------------
# Start sequence
# ---------------------------------------------------------------------------


class CleanCheckStep(StepHandler):
    step = StepId.CLEAN_CHECK

    def execute(self, ctx: StepContext) -> str:
        return ctx.git.status_porcelain()

    def interpret_result(self, ctx: StepContext, raw: str) -> StepOutcome:
        paths = _porcelain_paths(raw)
        if not paths:
            return self.success("Working tree is clean.")
        return self.needs_decision(
            DecisionRequest(
                kind=DecisionKind.DIRTY_TREE,
                step=self.step,
                options=[DecisionChoice.STASH, DecisionChoice.COMMIT, DecisionChoice.DISCARD],
                message=f"Working tree has {len(paths)} uncommitted change(s): stash, commit, or discard?",
                paths=paths,
            )
        )

    def apply_decision(
        self,
        ctx: StepContext,
        request: DecisionRequest,
        decision: Decision,
    ) -> None:
        git = ctx.git
        branch = ctx.session.branch
        if decision.choice is DecisionChoice.STASH:
            git.stash_push(f"branchflow: saved before starting {branch}")
        elif decision.choice is DecisionChoice.COMMIT:
            message = decision.message.strip() or f"WIP: save work before starting {branch}"
            current = git.current_branch()
            if current is None or current == _trunk_guess(ctx):
                # Trunk stays untouched; the work is committed on the new branch after creation.
                git.stash_push(f"branchflow: carried onto {branch}")
                ctx.session.carried_commit_message = message
                logger.info("Stashed pending changes to commit on %s once it exists", branch)
            else:
                sha = git.commit_all(message)
                logger.info("Committed pending changes on %s as %s", current, sha[:12])
        elif decision.choice is DecisionChoice.DISCARD:
            git.discard_all()
        else:
            raise DecisionError(f"Unsupported choice for a dirty tree: {decision.choice.value}")


@dataclass(slots=True)
class _TrunkSyncResult:
    action: TrunkSyncAction
    report: DivergenceReport | None
    note: str


class TrunkSyncStep(StepHandler):
    step = StepId.TRUNK_SYNC

    def execute(self, ctx: StepContext) -> _TrunkSyncResult:
        git = ctx.git
        session = ctx.session
        if not (session.remote and git.has_remote()):
            trunk = resolve_trunk(ctx)
            session.base_branch = trunk
            if not git.local_branch_exists(trunk):
                raise PreconditionError(f"Trunk branch {trunk!r} does not exist.")
            return _TrunkSyncResult(TrunkSyncAction.NOOP, None, f"No remote configured; using local {trunk}.")

        git.fetch()
        trunk = resolve_trunk(ctx)
        session.base_branch = trunk
        remote_trunk = BranchRef.on_remote(session.remote, trunk)
        if git.rev_parse(remote_trunk.full_ref) is None:
            raise PreconditionError(f"{remote_trunk.short} does not exist after fetch.")

        if not git.local_branch_exists(trunk):
            git.create_tracking_branch(trunk)
            return _TrunkSyncResult(
                TrunkSyncAction.FAST_FORWARD, None, f"Created local {trunk} tracking {remote_trunk.short}."
            )

        report = git.divergence(BranchRef.local(trunk, tracking=remote_trunk), remote_trunk)
        action = classify_trunk_sync(report)
        if action is TrunkSyncAction.BLOCKED:
            raise DivergenceConflict(
                f"Local {trunk} has {report.ahead} unpushed commit(s) not on {remote_trunk.short}; "
                "push or reset them before starting a branch.",
                operation="trunk-sync",
                diagnostic=report.describe(),
            )
        if action is TrunkSyncAction.FAST_FORWARD:
            git.checkout(trunk)
            git.merge_ff_only(remote_trunk.short)
            return _TrunkSyncResult(action, report, f"Fast-forwarded {trunk} by {report.behind} commit(s).")
        return _TrunkSyncResult(action, report, f"{trunk} is up to date with {remote_trunk.short}.")

    def interpret_result(self, ctx: StepContext, raw: _TrunkSyncResult) -> StepOutcome:
        session = ctx.session
        session.base_commit = ctx.git.rev_parse(f"refs/heads/{session.base_branch}")
        session.last_synced_at = _utcnow()
        diagnostic = raw.report.describe() if raw.report is not None else ""
        return self.success(raw.note, diagnostic=diagnostic)


class BranchCreateStep(StepHandler):
    step = StepId.BRANCH_CREATE

    def validate_preconditions(self, ctx: StepContext) -> None:
        name = ctx.session.branch
        validate_branch_name(name)
        git = ctx.git
        if not git.check_ref_format(name):
            raise InvalidName(f"{name!r} is not a valid git branch name.")
        if git.local_branch_exists(name):
            raise BranchExists(f"Branch {name} already exists locally.")
        if ctx.session.remote and git.has_remote() and git.remote_branch_exists(name):
            raise BranchExists(f"Branch {name} already exists on {ctx.session.remote}.")

    def execute(self, ctx: StepContext) -> ToolResult:
        return ctx.git.create_branch(ctx.session.branch, ctx.session.base_branch)

    def interpret_result(self, ctx: StepContext, raw: ToolResult) -> StepOutcome:
        session = ctx.session
        session.base_commit = ctx.git.rev_parse(f"refs/heads/{session.base_branch}")
        summary = f"Created {session.branch} from {session.base_branch} at {(session.base_commit or '?')[:12]}."
        if session.carried_commit_message is not None:
            summary += " " + self._commit_carried_work(ctx)
        return self.success(summary, diagnostic=raw.output)

    def _commit_carried_work(self, ctx: StepContext) -> str:
        """Restore the changes stashed at the dirty-tree decision and commit them here."""
        session = ctx.session
        message = session.carried_commit_message or ""
        result = ctx.git.stash_pop()
        if not result.ok:
            raise ToolInvocationError(
                f"Could not restore the carried changes onto {session.branch}; "
                "they are kept in the stash (see `git stash list`).",
                tool=result.tool,
                args=result.args,
                exit_status=result.exit_status,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        sha = ctx.git.commit_all(message)
        session.carried_commit_message = None
        logger.info("Committed carried changes on %s as %s", session.branch, sha[:12])
        return f"Committed pending changes as {sha[:12]}."


class RemoteTrackStep(StepHandler):
    step = StepId.REMOTE_TRACK
    recoverable = True

    def validate_preconditions(self, ctx: StepContext) -> None:
        if not (ctx.session.remote and ctx.git.has_remote()):
            raise PreconditionError("No remote configured; the branch stays local.")

    def execute(self, ctx: StepContext) -> ToolResult:
        return ctx.git.push(ctx.session.branch, set_upstream=True)

    def interpret_result(self, ctx: StepContext, raw: ToolResult) -> StepOutcome:
        session = ctx.session
        upstream = ctx.git.upstream_of(session.branch) or f"{session.remote}/{session.branch}"
        return self.success(f"Pushed {session.branch} and tracking {upstream}.")


class SetupRunStep(StepHandler):
    step = StepId.SETUP_RUN

    def execute(self, ctx: StepContext) -> list[ToolResult] | None:
        session = ctx.session
        rules = detect_manifests(ctx.repo, ctx.manifest_rules)
        session.setup_commands = collect_setup_commands(rules)
        session.test_commands = collect_test_commands(rules)
        if not ctx.config.run_setup or not session.setup_commands:
            return None
        results: list[ToolResult] = []
        for command in session.setup_commands:
            logger.info("Running setup: %s", " ".join(command))
            results.append(
                ctx.adapter.invoke(
                    command[0],
                    command[1:],
                    ctx.repo,
                    ctx.config.setup_timeout,
                    cancellable=False,
                )
            )
        return results

    def interpret_result(self, ctx: StepContext, raw: list[ToolResult] | None) -> StepOutcome:
        if raw is None:
            if not ctx.config.run_setup:
                return self.success("Setup disabled by configuration.", skipped=True)
            return self.success("No project manifest detected; setup skipped.", skipped=True)
        commands = ", ".join(r.command_line for r in raw)
        return self.success(f"Ran {len(raw)} setup command(s): {commands}")


class BaselineTestStep(StepHandler):
    step = StepId.TEST_BASELINE
    recoverable = True

    def execute(self, ctx: StepContext) -> list[SuiteResult] | None:
        commands = ctx.session.test_commands
        if not ctx.config.run_tests or not commands:
            return None
        results: list[SuiteResult] = []
        for command in commands:
            logger.info("Running tests: %s", " ".join(command))
            result = ctx.adapter.invoke(
                command[0],
                command[1:],
                ctx.repo,
                ctx.config.test_timeout,
                check=False,
                cancellable=False,
            )
            results.append(interpret_test_run(command, result.exit_status, result.output))
        return results

    def interpret_result(self, ctx: StepContext, raw: list[SuiteResult] | None) -> StepOutcome:
        if raw is None:
            reason = "Tests disabled by configuration." if not ctx.config.run_tests else "No test command detected."
            ctx.session.last_test = SuiteResult(outcome=TestOutcome.SKIPPED, summary=reason)
            return self.success(reason, skipped=True)
        merged = merge_suite_results(raw)
        ctx.session.last_test = merged
        if merged.outcome in (TestOutcome.FAILED, TestOutcome.ERROR):
            return self.failure(
                f"Baseline tests {merged.headline()}; investigate before building on this branch.",
                diagnostic=merged.summary,
            )
        return self.success(
            f"Baseline tests {merged.headline()}.",
            skipped=merged.outcome is TestOutcome.SKIPPED,
        )

    def on_error(self, ctx: StepContext, exc: Exception) -> None:
        ctx.session.last_test = SuiteResult(outcome=TestOutcome.ERROR, summary=str(exc))


# ---------------------------------------------------------------------------
# Development loop and integration
# ---------------------------------------------------------------------------


def _require_branch(ctx: StepContext) -> None:
    if not ctx.git.local_branch_exists(ctx.session.branch):
        raise UnknownBranch(f"Branch {ctx.session.branch} does not exist locally.")


def _require_clean(ctx: StepContext, action: str) -> None:
    if not ctx.git.is_clean():
        raise PreconditionError(f"Working tree has uncommitted changes; commit or stash them before {action}.")


class ResyncStep(ConflictResolutionMixin, StepHandler):
    step = StepId.RESYNC

    def validate_preconditions(self, ctx: StepContext) -> None:
        _require_branch(ctx)
        _require_clean(ctx, "resyncing")

    def execute(self, ctx: StepContext) -> DivergenceReport:
        git = ctx.git
        session = ctx.session
        if session.remote and git.has_remote():
            git.fetch()
        if git.current_branch() != session.branch:
            git.checkout(session.branch)
        return git.divergence(BranchRef.local(session.branch), trunk_ref(ctx))

    def interpret_result(self, ctx: StepContext, raw: DivergenceReport) -> StepOutcome:
        session = ctx.session
        if classify_resync(raw) is ResyncAction.TRIVIAL:
            session.last_synced_at = _utcnow()
            session.base_commit = ctx.git.rev_parse(raw.other.full_ref)
            return self.success(f"{session.branch} is up to date with {raw.other.short}.", diagnostic=raw.describe())
        return self.needs_decision(
            DecisionRequest(
                kind=DecisionKind.TRUNK_ADVANCED,
                step=self.step,
                options=[DecisionChoice.REBASE, DecisionChoice.MERGE],
                message=(
                    f"{raw.other.short} has advanced by {raw.behind} commit(s) since {session.branch} "
                    "branched: rebase or merge?"
                ),
                context={"onto": raw.other.short, "ahead": raw.ahead, "behind": raw.behind},
            )
        )

    def apply_decision(
        self,
        ctx: StepContext,
        request: DecisionRequest,
        decision: Decision,
    ) -> None:
        if request.kind is DecisionKind.CONFLICT:
            self.resolve_conflict(ctx, request, decision)
            return
        git = ctx.git
        session = ctx.session
        onto = str(request.context.get("onto") or trunk_ref(ctx).short)
        if git.current_branch() != session.branch:
            git.checkout(session.branch)
        if decision.choice is DecisionChoice.REBASE:
            result = git.rebase(onto)
            if not result.ok:
                self.raise_conflict(ctx, "rebase", result)
        elif decision.choice is DecisionChoice.MERGE:
            result = git.merge(onto, message=f"Merge {onto} into {session.branch}")
            if not result.ok:
                self.raise_conflict(ctx, "merge", result)
        else:
            raise DecisionError(f"Unsupported choice for resync: {decision.choice.value}")


class IntegrateStep(ConflictResolutionMixin, StepHandler):
    step = StepId.INTEGRATE

    def validate_preconditions(self, ctx: StepContext) -> None:
        _require_branch(ctx)
        _require_clean(ctx, "integrating")
        if ctx.session.integrate_mode is IntegrateMode.PR and not (
            ctx.session.remote and ctx.git.has_remote()
        ):
            raise PreconditionError("Request-based integration needs a remote to push to.")

    def execute(self, ctx: StepContext) -> str:
        if ctx.session.integrate_mode is IntegrateMode.MERGE:
            return self._merge_into_trunk(ctx)
        return self._push_for_review(ctx)

    def _push_for_review(self, ctx: StepContext) -> str:
        git = ctx.git
        session = ctx.session
        branch = session.branch
        remote_ref = BranchRef.on_remote(session.remote or "", branch)
        remote_sha = git.rev_parse(remote_ref.full_ref)
        if remote_sha is None:
            git.push(branch, set_upstream=True)
        else:
            report = git.divergence(BranchRef.local(branch, tracking=remote_ref), remote_ref)
            if report.behind > 0 and report.ahead == 0:
                raise PreconditionError(
                    f"{remote_ref.short} has {report.behind} commit(s) that {branch} lacks; "
                    "pull them before integrating."
                )
            if report.diverged:
                # History was rewritten locally (e.g. by a rebase resync).
                logger.info("Force-pushing %s with lease on %s", branch, remote_sha[:12])
                git.push_with_lease(branch, remote_sha)
            elif report.ahead > 0:
                git.push(branch, set_upstream=True)
        return (
            f"Pushed {branch} to {session.remote}; open a pull request against {session.base_branch}."
        )

    def _merge_into_trunk(self, ctx: StepContext) -> str:
        git = ctx.git
        session = ctx.session
        trunk = session.base_branch
        has_remote = bool(session.remote) and git.has_remote()
        git.checkout(trunk)
        if has_remote:
            git.pull_ff_only(trunk)
        result = git.merge(
            session.branch,
            no_ff=True,
            message=f"Merge branch '{session.branch}' into {trunk}",
        )
        if not result.ok:
            self.raise_conflict(ctx, "merge", result)
        if has_remote:
            git.push(trunk)
        return f"Merged {session.branch} into {trunk}" + (f" and pushed to {session.remote}." if has_remote else ".")

    def interpret_result(self, ctx: StepContext, raw: str) -> StepOutcome:
        session = ctx.session
        if session.integrate_mode is IntegrateMode.MERGE:
            session.base_commit = ctx.git.rev_parse(f"refs/heads/{session.base_branch}")
        return self.success(raw)

    def apply_decision(
        self,
        ctx: StepContext,
        request: DecisionRequest,
        decision: Decision,
    ) -> None:
        if request.kind is not DecisionKind.CONFLICT:
            raise DecisionError("integrate only accepts conflict decisions.")
        self.resolve_conflict(ctx, request, decision)
        if decision.choice is DecisionChoice.ABORT:
            ctx.git.checkout(ctx.session.branch)


class CleanupStep(StepHandler):
    step = StepId.CLEANUP

    def validate_preconditions(self, ctx: StepContext) -> None:
        session = ctx.session
        if session.branch == session.base_branch:
            raise PreconditionError(f"Refusing to delete the trunk branch {session.branch}.")

    def execute(self, ctx: StepContext) -> list[str]:
        git = ctx.git
        session = ctx.session
        branch = session.branch
        has_remote = bool(session.remote) and git.has_remote()
        if has_remote:
            git.fetch()

        remote_ref = BranchRef.on_remote(session.remote or "", branch)
        tip = git.rev_parse(f"refs/heads/{branch}") or (
            git.rev_parse(remote_ref.full_ref) if has_remote else None
        )
        if tip is None:
            raise UnknownBranch(f"Branch {branch} does not exist.")

        if not self._merged(ctx, tip) and not session.force_cleanup:
            raise PreconditionError(
                f"{branch} is not merged into {session.base_branch}; "
                "re-run cleanup with --force to delete it anyway."
            )

        deleted: list[str] = []
        if git.local_branch_exists(branch):
            if git.current_branch() == branch:
                git.checkout(session.base_branch)
            # Merge evidence was checked above against trunk; -d would only consult HEAD.
            git.delete_local_branch(branch, force=True)
            deleted.append(branch)
        if has_remote and git.remote_branch_exists(branch):
            git.delete_remote_branch(branch)
            deleted.append(remote_ref.short)
        return deleted

    def _merged(self, ctx: StepContext, tip: str) -> bool:
        git = ctx.git
        session = ctx.session
        candidates = [f"refs/heads/{session.base_branch}"]
        if session.remote:
            candidates.insert(0, f"refs/remotes/{session.remote}/{session.base_branch}")
        for ref in candidates:
            if git.rev_parse(ref) and git.is_ancestor(tip, ref):
                return True
        return False

    def interpret_result(self, ctx: StepContext, raw: list[str]) -> StepOutcome:
        if not raw:
            return self.success("Nothing to delete.", skipped=True)
        return self.success(f"Deleted {', '.join(raw)}.")


HANDLERS: dict[StepId, type[StepHandler]] = {
    StepId.CLEAN_CHECK: CleanCheckStep,
    StepId.TRUNK_SYNC: TrunkSyncStep,
    StepId.BRANCH_CREATE: BranchCreateStep,
    StepId.REMOTE_TRACK: RemoteTrackStep,
    StepId.SETUP_RUN: SetupRunStep,
    StepId.TEST_BASELINE: BaselineTestStep,
    StepId.RESYNC: ResyncStep,
    StepId.INTEGRATE: IntegrateStep,
    StepId.CLEANUP: CleanupStep,
}


def handler_for(step: StepId) -> StepHandler:
    return HANDLERS[step]()


__all__ = [
    "HANDLERS",
    "BaselineTestStep",
    "BranchCreateStep",
    "CleanCheckStep",
    "CleanupStep",
    "IntegrateStep",
    "RemoteTrackStep",
    "ResyncStep",
    "SetupRunStep",
    "StepContext",
    "StepHandler",
    "TrunkSyncStep",
    "handler_for",
    "resolve_trunk",
    "trunk_ref",
]
