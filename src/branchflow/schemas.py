"""Pydantic models for sessions, step outcomes, refs, and decisions."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Lifecycle states and steps
# ---------------------------------------------------------------------------


class WorkflowState(str, Enum):
    """States of the branch lifecycle state machine."""

    IDLE = "idle"
    CLEAN_CHECK = "clean-check"
    TRUNK_SYNC = "trunk-sync"
    BRANCH_CREATE = "branch-create"
    REMOTE_TRACK = "remote-track"
    SETUP_RUN = "setup-run"
    TEST_BASELINE = "test-baseline"
    READY = "ready"
    RESYNC_CHECK = "resync-check"
    INTEGRATION_READY = "integration-ready"
    INTEGRATED = "integrated"
    CLEANED_UP = "cleaned-up"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_rest(self) -> bool:
        return self in REST_STATES


TERMINAL_STATES = frozenset(
    {WorkflowState.CLEANED_UP, WorkflowState.ABORTED, WorkflowState.FAILED}
)
# The engine stops in these states until the next command arrives.
REST_STATES = frozenset({WorkflowState.IDLE, WorkflowState.READY, WorkflowState.INTEGRATED})


class StepId(str, Enum):
    """Identifiers of the lifecycle actions."""

    CLEAN_CHECK = "clean-check"
    TRUNK_SYNC = "trunk-sync"
    BRANCH_CREATE = "branch-create"
    REMOTE_TRACK = "remote-track"
    SETUP_RUN = "setup-run"
    TEST_BASELINE = "test-baseline"
    RESYNC = "resync-check"
    INTEGRATE = "integrate"
    CLEANUP = "cleanup"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NEEDS_DECISION = "needs-user-decision"


class Intent(str, Enum):
    """What the command currently driving the session is aiming for."""

    START = "start"
    RESYNC = "resync"
    INTEGRATE = "integrate"
    CLEANUP = "cleanup"


class IntegrateMode(str, Enum):
    PR = "pr"
    MERGE = "merge"


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class DecisionKind(str, Enum):
    DIRTY_TREE = "dirty-tree"
    TRUNK_ADVANCED = "trunk-advanced"
    CONFLICT = "conflict"


class DecisionChoice(str, Enum):
    STASH = "stash"
    COMMIT = "commit"
    DISCARD = "discard"
    REBASE = "rebase"
    MERGE = "merge"
    CONTINUE = "continue"
    ABORT = "abort"


class DecisionRequest(BaseModel):
    """A typed question the session is suspended on."""

    kind: DecisionKind
    step: StepId
    options: list[DecisionChoice]
    message: str = ""
    paths: list[str] = Field(default_factory=list)
    # Extra data the handler needs to apply the answer (e.g. conflict operation).
    context: dict[str, Any] = Field(default_factory=dict)


class Decision(BaseModel):
    """The caller's answer to a :class:`DecisionRequest`."""

    choice: DecisionChoice
    message: str = ""
    resolved_paths: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Refs and divergence
# ---------------------------------------------------------------------------


class RefScope(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class BranchRef(BaseModel):
    """A named pointer into git's ref namespace."""

    name: str
    scope: RefScope = RefScope.LOCAL
    remote: str | None = None
    tracking: BranchRef | None = None

    @classmethod
    def local(cls, name: str, *, tracking: BranchRef | None = None) -> BranchRef:
        return cls(name=name, scope=RefScope.LOCAL, tracking=tracking)

    @classmethod
    def on_remote(cls, remote: str, name: str) -> BranchRef:
        return cls(name=name, scope=RefScope.REMOTE, remote=remote)

    @property
    def full_ref(self) -> str:
        if self.scope is RefScope.REMOTE:
            return f"refs/remotes/{self.remote}/{self.name}"
        return f"refs/heads/{self.name}"

    @property
    def short(self) -> str:
        if self.scope is RefScope.REMOTE:
            return f"{self.remote}/{self.name}"
        return self.name


class DivergenceReport(BaseModel):
    """Commit counts each side has that the other lacks."""

    local: BranchRef
    other: BranchRef
    ahead: int = 0
    behind: int = 0

    @property
    def in_sync(self) -> bool:
        return self.ahead == 0 and self.behind == 0

    @property
    def fast_forwardable(self) -> bool:
        return self.ahead == 0 and self.behind > 0

    @property
    def diverged(self) -> bool:
        return self.ahead > 0 and self.behind > 0

    def describe(self) -> str:
        return (
            f"{self.local.short} is {self.ahead} ahead, {self.behind} behind "
            f"{self.other.short}"
        )


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


class TestOutcome(str, Enum):
    """Outcome of a test-suite run."""
    __test__ = False  # Prevent pytest from collecting this enum as a test class.

    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class SuiteResult(BaseModel):
    """Summary of one baseline test run."""

    outcome: TestOutcome = TestOutcome.SKIPPED
    passed: int | None = None
    failed: int | None = None
    exit_code: int = 0
    commands: list[list[str]] = Field(default_factory=list)
    summary: str = ""

    def headline(self) -> str:
        counts = []
        if self.passed is not None:
            counts.append(f"{self.passed} passed")
        if self.failed is not None:
            counts.append(f"{self.failed} failed")
        suffix = f" ({', '.join(counts)})" if counts else ""
        return f"{self.outcome.value}{suffix}"


class StepOutcome(BaseModel):
    """Immutable record of one lifecycle action."""

    model_config = ConfigDict(frozen=True)

    step: StepId
    status: StepStatus
    summary: str = ""
    diagnostic: str = ""
    recoverable: bool = False
    skipped: bool = False
    timed_out: bool = False
    error_type: str | None = None
    decision: DecisionRequest | None = None
    timestamp: str = Field(default_factory=_utcnow)

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCESS


class FailureInfo(BaseModel):
    """Everything a caller needs to pick up manually after a fatal failure."""

    step: StepId
    last_successful_state: WorkflowState
    last_successful_step: StepId | None = None
    error_type: str = ""
    message: str = ""
    diagnostic: str = ""
    timed_out: bool = False
    invalid_invocation: bool = False


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class WorkflowSession(BaseModel):
    """One branch lifecycle, owned by a single orchestrator process."""

    session_id: str = Field(default_factory=lambda: f"bf_{uuid.uuid4().hex[:12]}")
    repo_path: str
    branch: str
    base_branch: str = ""
    remote: str | None = "origin"
    state: WorkflowState = WorkflowState.IDLE
    # Most recent state reached without a fatal failure.
    last_good_state: WorkflowState = WorkflowState.IDLE
    intent: Intent = Intent.START
    integrate_mode: IntegrateMode = IntegrateMode.PR
    force_cleanup: bool = False
    track_remote: bool = True
    history: list[StepOutcome] = Field(default_factory=list)
    setup_commands: list[list[str]] = Field(default_factory=list)
    test_commands: list[list[str]] = Field(default_factory=list)
    base_commit: str | None = None
    pending_decision: DecisionRequest | None = None
    # Message for dirty-tree changes stashed on trunk and committed after branch creation.
    carried_commit_message: str | None = None
    warnings: list[str] = Field(default_factory=list)
    last_test: SuiteResult | None = None
    failure: FailureInfo | None = None
    last_synced_at: str | None = None
    created_at: str = Field(default_factory=_utcnow)
    updated_at: str = Field(default_factory=_utcnow)

    # -- helpers --

    @property
    def suspended(self) -> bool:
        return self.pending_decision is not None

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def succeeded(self, step: StepId) -> bool:
        """Return True when *step* has a successful outcome since the session began."""
        return any(o.step is step and o.ok for o in self.history)

    def last_successful_step(self) -> StepId | None:
        for outcome in reversed(self.history):
            if outcome.ok:
                return outcome.step
        return None

    def add_warning(self, message: str) -> None:
        if message and message not in self.warnings:
            self.warnings.append(message)


__all__ = [
    "BranchRef",
    "Decision",
    "DecisionChoice",
    "DecisionKind",
    "DecisionRequest",
    "DivergenceReport",
    "FailureInfo",
    "IntegrateMode",
    "Intent",
    "REST_STATES",
    "RefScope",
    "StepId",
    "StepOutcome",
    "StepStatus",
    "SuiteResult",
    "TERMINAL_STATES",
    "TestOutcome",
    "WorkflowSession",
    "WorkflowState",
]
