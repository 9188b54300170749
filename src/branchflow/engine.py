"""State machine engine: drives a :class:`WorkflowSession` through its steps.

The engine is the single place that decides what an error means. Handlers
raise; :meth:`WorkflowEngine._run_step` turns exceptions into outcomes and
:func:`transition` maps each outcome to the next state. The engine never
prompts: a ``needs-user-decision`` outcome suspends the session until the
caller hands a :class:`~branchflow.schemas.Decision` to :meth:`resume`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from branchflow.config import FlowConfig
from branchflow.errors import (
    BranchExists,
    BranchflowError,
    Cancelled,
    DecisionError,
    DivergenceConflict,
    InvalidInvocation,
    PreconditionError,
    ToolInvocationError,
    UnknownBranch,
)
from branchflow.git_tools import GitClient
from branchflow.history import HistoryLog
from branchflow.manifests import DEFAULT_RULES, ManifestRule
from branchflow.policy import staleness_warnings, validate_branch_name
from branchflow.report import StatusEmitter, StatusReport, build_status_report
from branchflow.schemas import (
    BranchRef,
    Decision,
    DecisionChoice,
    DecisionKind,
    DecisionRequest,
    DivergenceReport,
    FailureInfo,
    IntegrateMode,
    Intent,
    StepId,
    StepOutcome,
    StepStatus,
    WorkflowSession,
    WorkflowState,
)
from branchflow.steps import StepContext, StepHandler, handler_for, resolve_trunk, trunk_ref
from branchflow.tools import CancelToken, ToolAdapter

logger = logging.getLogger(__name__)

_STEP_FOR_STATE: dict[WorkflowState, StepId] = {
    WorkflowState.CLEAN_CHECK: StepId.CLEAN_CHECK,
    WorkflowState.TRUNK_SYNC: StepId.TRUNK_SYNC,
    WorkflowState.BRANCH_CREATE: StepId.BRANCH_CREATE,
    WorkflowState.REMOTE_TRACK: StepId.REMOTE_TRACK,
    WorkflowState.SETUP_RUN: StepId.SETUP_RUN,
    WorkflowState.TEST_BASELINE: StepId.TEST_BASELINE,
    WorkflowState.RESYNC_CHECK: StepId.RESYNC,
    WorkflowState.INTEGRATION_READY: StepId.INTEGRATE,
}

_CLEANUP_FROM = frozenset({WorkflowState.READY, WorkflowState.INTEGRATED})
_DEVELOPING_STATES = frozenset({WorkflowState.READY, WorkflowState.INTEGRATED})


# ---------------------------------------------------------------------------
# Pure transition rules
# ---------------------------------------------------------------------------


def transition(session: WorkflowSession, outcome: StepOutcome) -> WorkflowState:
    """Return the state *session* moves to after *outcome* is recorded."""
    if outcome.status is StepStatus.NEEDS_DECISION:
        return session.state
    if outcome.status is StepStatus.FAILURE and not outcome.recoverable:
        return WorkflowState.FAILED

    step = outcome.step
    if step is StepId.CLEAN_CHECK:
        return WorkflowState.TRUNK_SYNC
    if step is StepId.TRUNK_SYNC:
        return WorkflowState.BRANCH_CREATE
    if step is StepId.BRANCH_CREATE:
        return WorkflowState.REMOTE_TRACK if session.track_remote else WorkflowState.SETUP_RUN
    if step is StepId.REMOTE_TRACK:
        return WorkflowState.SETUP_RUN
    if step is StepId.SETUP_RUN:
        return WorkflowState.TEST_BASELINE
    if step is StepId.TEST_BASELINE:
        return WorkflowState.READY
    if step is StepId.RESYNC:
        if session.intent is Intent.INTEGRATE:
            return WorkflowState.INTEGRATION_READY
        return WorkflowState.READY
    if step is StepId.INTEGRATE:
        return WorkflowState.INTEGRATED
    if step is StepId.CLEANUP:
        return WorkflowState.CLEANED_UP
    raise ValueError(f"Unknown step: {step!r}")


def next_step(session: WorkflowSession) -> StepId | None:
    """Step the engine should run next, or ``None`` when it must stop."""
    if session.state.is_terminal or session.suspended:
        return None
    if session.intent is Intent.CLEANUP and session.state in _CLEANUP_FROM:
        return StepId.CLEANUP
    return _STEP_FOR_STATE.get(session.state)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class WorkflowEngine:
    """Runs branch lifecycle commands against one working directory."""

    def __init__(
        self,
        repo_path: str | Path,
        config: FlowConfig | None = None,
        *,
        adapter: ToolAdapter | None = None,
        emitter: StatusEmitter | None = None,
        history: HistoryLog | None = None,
        manifest_rules: Iterable[ManifestRule] = DEFAULT_RULES,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.repo = Path(repo_path).resolve()
        self.config = config or FlowConfig()
        self.cancel_token = cancel_token or (adapter.cancel_token if adapter else None) or CancelToken()
        if adapter is None:
            adapter = ToolAdapter(
                default_timeout=self.config.git_timeout,
                read_only_retries=self.config.read_only_retries,
                cancel_token=self.cancel_token,
            )
        elif adapter.cancel_token is None:
            adapter.cancel_token = self.cancel_token
        self.adapter = adapter
        self.git = GitClient(
            self.repo,
            adapter,
            remote=self.config.remote,
            timeout=self.config.git_timeout,
            network_timeout=self.config.network_timeout,
        )
        self.emitter = emitter or StatusEmitter()
        self.history = history
        self.manifest_rules = tuple(manifest_rules)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start(
        self,
        branch: str,
        *,
        base_branch: str | None = None,
        track_remote: bool | None = None,
    ) -> WorkflowSession:
        """Create *branch* from an up-to-date trunk and drive it to ``ready``.

        Raises :class:`~branchflow.errors.InvalidName` before any git command
        runs when *branch* violates the naming policy, and
        :class:`~branchflow.errors.BranchExists` before anything changes when
        *branch* already exists locally.
        """
        validate_branch_name(branch)
        self._require_repo()
        if self.git.local_branch_exists(branch):
            raise BranchExists(f"Branch {branch} already exists locally.")
        track = self.config.track_remote if track_remote is None else track_remote
        if track and not self.git.has_remote():
            logger.info("No remote %r configured; %s stays local.", self.config.remote, branch)
            track = False
        session = WorkflowSession(
            repo_path=str(self.repo),
            branch=branch,
            base_branch=(base_branch or "").strip(),
            remote=self.config.remote or None,
            state=WorkflowState.CLEAN_CHECK,
            intent=Intent.START,
            integrate_mode=self.config.integrate_mode,
            track_remote=track,
        )
        logger.info("Starting %s (session %s)", branch, session.session_id)
        self.emitter.emit(session, "started")
        return self._drive(session)

    def resume(self, session: WorkflowSession, decision: Decision) -> WorkflowSession:
        """Apply *decision* to the pending request and continue driving."""
        request = session.pending_decision
        if request is None:
            raise DecisionError(f"Session {session.session_id} is not awaiting a decision.")
        if decision.choice not in request.options:
            allowed = ", ".join(option.value for option in request.options)
            raise DecisionError(
                f"{decision.choice.value!r} does not answer the pending {request.kind.value} decision; "
                f"choose one of: {allowed}."
            )

        handler = handler_for(request.step)
        ctx = self._context(session)
        logger.info("Applying %s to %s decision on %s", decision.choice.value, request.kind.value, session.branch)
        try:
            handler.apply_decision(ctx, request, decision)
        except DivergenceConflict as exc:
            session.pending_decision = None
            self._record(session, self._conflict_outcome(handler, exc), exc)
            return self._drive(session)
        except Cancelled:
            session.pending_decision = None
            return self._abort(session, "Cancelled while applying a decision.")
        except DecisionError:
            raise
        except BranchflowError as exc:
            session.pending_decision = None
            self._record(session, self._error_outcome(handler, exc), exc)
            return session

        session.pending_decision = None
        if decision.choice is DecisionChoice.ABORT:
            return self._abort(session, f"{request.kind.value} decision answered with abort.")
        return self._drive(session)

    def resync(self, session: WorkflowSession) -> WorkflowSession:
        """Bring *session*'s branch up to date with trunk."""
        self._require_command_state(session, "resync", _DEVELOPING_STATES)
        session.intent = Intent.RESYNC
        session.state = WorkflowState.RESYNC_CHECK
        return self._drive(session)

    def integrate(self, session: WorkflowSession, mode: IntegrateMode | None = None) -> WorkflowSession:
        """Resync, then hand the branch off as a pull request or merge it into trunk."""
        self._require_command_state(session, "integrate", _DEVELOPING_STATES)
        if mode is not None:
            session.integrate_mode = mode
        session.intent = Intent.INTEGRATE
        session.state = WorkflowState.RESYNC_CHECK
        return self._drive(session)

    def cleanup(self, session: WorkflowSession, *, force: bool = False) -> WorkflowSession:
        """Delete the branch locally and on the remote once it is merged (or *force*)."""
        self._require_command_state(session, "cleanup", _CLEANUP_FROM)
        session.intent = Intent.CLEANUP
        session.force_cleanup = force
        if force:
            logger.warning("Forced cleanup requested for %s", session.branch)
        return self._drive(session)

    def cancel(self, session: WorkflowSession | None = None) -> WorkflowSession | None:
        """Signal cancellation; a session waiting for input is aborted at once."""
        self.cancel_token.cancel()
        if session is None or session.state.is_terminal:
            return session
        if session.suspended or session.state.is_rest:
            session.pending_decision = None
            return self._abort(session, "Session cancelled.")
        return session

    def adopt(self, branch: str | None = None, *, base_branch: str | None = None) -> WorkflowSession:
        """Build a ``ready`` session for an existing branch that has no checkpoint."""
        self._require_repo()
        name = (branch or "").strip() or self.git.current_branch()
        if not name:
            raise UnknownBranch("HEAD is detached; pass --branch to choose a branch.")
        if not self.git.local_branch_exists(name):
            raise UnknownBranch(f"Branch {name} does not exist locally.")
        session = WorkflowSession(
            repo_path=str(self.repo),
            branch=name,
            base_branch=(base_branch or "").strip(),
            remote=self.config.remote or None,
            state=WorkflowState.READY,
            last_good_state=WorkflowState.READY,
            integrate_mode=self.config.integrate_mode,
            track_remote=self.config.track_remote,
        )
        ctx = self._context(session)
        session.base_branch = resolve_trunk(ctx)
        if session.base_branch == name:
            raise InvalidInvocation(f"{name} is the trunk branch; check out a feature branch first.")
        session.base_commit = self.git.rev_parse(trunk_ref(ctx).full_ref)
        logger.info("Adopted existing branch %s (base %s)", name, session.base_branch)
        self.emitter.emit(session, "adopted")
        return session

    def status(self, session: WorkflowSession) -> StatusReport:
        """Status report with live divergence from trunk and staleness warnings."""
        divergence: DivergenceReport | None = None
        extra: list[str] = []
        if not session.state.is_terminal and self.git.local_branch_exists(session.branch):
            ctx = self._context(session)
            try:
                divergence = self.git.divergence(BranchRef.local(session.branch), trunk_ref(ctx))
            except (PreconditionError, ToolInvocationError) as exc:
                logger.warning("Could not compare %s with trunk: %s", session.branch, exc)
                extra.append(f"Divergence unavailable: {exc}")
            extra.extend(
                staleness_warnings(
                    divergence,
                    last_synced_at=session.last_synced_at,
                    behind_threshold=self.config.stale_behind_commits,
                    stale_after_hours=self.config.stale_after_hours,
                )
            )
        return build_status_report(session, checkpoint="status", divergence=divergence, extra_warnings=extra)

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def _drive(self, session: WorkflowSession) -> WorkflowSession:
        while True:
            step = next_step(session)
            if step is None:
                return session
            # setup-run and test-baseline form one atomic unit.
            in_atomic_pair = (
                step is StepId.TEST_BASELINE
                and bool(session.history)
                and session.history[-1].step is StepId.SETUP_RUN
            )
            try:
                if not in_atomic_pair:
                    self.cancel_token.raise_if_cancelled(step.value)
                outcome, error = self._run_step(session, step)
            except Cancelled as exc:
                return self._abort(session, str(exc))
            self._record(session, outcome, error)

    def _run_step(self, session: WorkflowSession, step: StepId) -> tuple[StepOutcome, Exception | None]:
        handler = handler_for(step)
        ctx = self._context(session)
        logger.info("[%s] running %s", session.branch, step.value)
        try:
            if step is StepId.BRANCH_CREATE and not (
                session.succeeded(StepId.CLEAN_CHECK) and session.succeeded(StepId.TRUNK_SYNC)
            ):
                raise PreconditionError(
                    "Branch creation requires a clean working tree and a synced trunk first."
                )
            return handler.run(ctx), None
        except Cancelled:
            raise
        except DivergenceConflict as exc:
            handler.on_error(ctx, exc)
            return self._conflict_outcome(handler, exc), exc
        except BranchflowError as exc:
            handler.on_error(ctx, exc)
            return self._error_outcome(handler, exc), exc

    def _conflict_outcome(self, handler: StepHandler, exc: DivergenceConflict) -> StepOutcome:
        if not exc.options:
            return self._error_outcome(handler, exc)
        return handler.needs_decision(
            DecisionRequest(
                kind=DecisionKind.CONFLICT,
                step=handler.step,
                options=[DecisionChoice(option) for option in exc.options],
                message=(
                    f"{exc}. Resolve the files, then re-run with --decision continue "
                    "--resolved <paths>, or --decision abort."
                ),
                paths=exc.paths,
                context={"operation": exc.operation},
            )
        )

    def _error_outcome(self, handler: StepHandler, exc: BranchflowError) -> StepOutcome:
        diagnostic = getattr(exc, "diagnostic", "") or ""
        return StepOutcome(
            step=handler.step,
            status=StepStatus.FAILURE,
            summary=str(exc),
            diagnostic=diagnostic,
            recoverable=handler.recoverable,
            timed_out=bool(getattr(exc, "timed_out", False)),
            error_type=type(exc).__name__,
        )

    def _record(self, session: WorkflowSession, outcome: StepOutcome, error: Exception | None) -> None:
        session.history.append(outcome)
        new_state = transition(session, outcome)

        if outcome.status is StepStatus.NEEDS_DECISION:
            session.pending_decision = outcome.decision
            logger.info("[%s] %s needs a decision: %s", session.branch, outcome.step.value, outcome.summary)
        elif outcome.status is StepStatus.FAILURE and outcome.recoverable:
            session.add_warning(f"{outcome.step.value}: {outcome.summary}")
            logger.warning("[%s] %s failed (continuing): %s", session.branch, outcome.step.value, outcome.summary)
        elif new_state is WorkflowState.FAILED:
            session.failure = FailureInfo(
                step=outcome.step,
                last_successful_state=session.last_good_state,
                last_successful_step=session.last_successful_step(),
                error_type=outcome.error_type or "StepFailure",
                message=outcome.summary,
                diagnostic=outcome.diagnostic,
                timed_out=outcome.timed_out,
                invalid_invocation=isinstance(error, InvalidInvocation),
            )
            logger.error("[%s] %s failed: %s", session.branch, outcome.step.value, outcome.summary)

        session.state = new_state
        if new_state is not WorkflowState.FAILED:
            session.last_good_state = new_state
        session.touch()
        if self.history is not None:
            self.history.record(session, outcome)
        self.emitter.emit(session, f"{outcome.step.value}:{outcome.status.value}")

    def _abort(self, session: WorkflowSession, reason: str) -> WorkflowSession:
        session.state = WorkflowState.ABORTED
        session.pending_decision = None
        session.add_warning(f"Aborted: {reason} Completed steps were not rolled back.")
        session.touch()
        logger.warning("[%s] aborted: %s", session.branch, reason)
        self.emitter.emit(session, "aborted")
        return session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _context(self, session: WorkflowSession) -> StepContext:
        return StepContext(
            session=session,
            git=self.git,
            adapter=self.adapter,
            config=self.config,
            repo=self.repo,
            manifest_rules=self.manifest_rules,
        )

    def _require_repo(self) -> None:
        if not self.repo.is_dir() or not self.git.is_work_tree():
            raise InvalidInvocation(f"{self.repo} is not a git working tree.")

    def _require_command_state(
        self,
        session: WorkflowSession,
        command: str,
        allowed: frozenset[WorkflowState],
    ) -> None:
        if session.suspended:
            raise InvalidInvocation(
                f"Session is awaiting a {session.pending_decision.kind.value} decision; "
                "answer it with --decision first."
            )
        if session.state not in allowed:
            expected = " or ".join(sorted(state.value for state in allowed))
            raise InvalidInvocation(
                f"Cannot {command} {session.branch} from state {session.state.value}; expected {expected}."
            )


__all__ = ["WorkflowEngine", "next_step", "transition"]
