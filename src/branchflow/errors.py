"""Exception taxonomy shared by the engine, step handlers, and the CLI."""

from __future__ import annotations

from collections.abc import Sequence


class BranchflowError(RuntimeError):
    """Base class for every error raised by branchflow."""


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class PreconditionError(BranchflowError):
    """A required condition does not hold; never auto-resolved."""


class InvalidInvocation(PreconditionError):
    """The caller asked for something that cannot be done as requested."""


class InvalidName(InvalidInvocation):
    """The requested branch name violates the naming policy."""


class BranchExists(InvalidInvocation):
    """The requested branch already exists locally or on the remote."""


class UnknownBranch(InvalidInvocation):
    """The branch a command should operate on does not exist."""


class DecisionError(InvalidInvocation):
    """A decision was supplied that the pending request does not accept."""


# ---------------------------------------------------------------------------
# Tool invocation
# ---------------------------------------------------------------------------


class ToolInvocationError(BranchflowError):
    """An external tool exited non-zero (or could not be run at all)."""

    timed_out = False

    def __init__(
        self,
        message: str,
        *,
        tool: str = "",
        args: Sequence[str] = (),
        exit_status: int = -1,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.tool_args = tuple(args)
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr

    @property
    def command_line(self) -> str:
        return " ".join([self.tool, *self.tool_args]).strip()

    @property
    def diagnostic(self) -> str:
        """Raw captured output, stderr first."""
        parts = [self.stderr.strip(), self.stdout.strip()]
        return "\n".join(part for part in parts if part)


class ToolTimeout(ToolInvocationError):
    """The tool did not finish within its timeout."""

    timed_out = True


# ---------------------------------------------------------------------------
# Divergence / cancellation
# ---------------------------------------------------------------------------


class DivergenceConflict(BranchflowError):
    """Two histories cannot be combined without a human decision.

    ``options`` lists the decision choices that can resolve the conflict; an
    empty tuple means the engine must treat the conflict as a failure.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        paths: Sequence[str] = (),
        options: Sequence[str] = (),
        diagnostic: str = "",
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.paths = list(paths)
        self.options = tuple(options)
        self.diagnostic = diagnostic


class Cancelled(BranchflowError):
    """A cancellation signal interrupted the session."""


__all__ = [
    "BranchExists",
    "BranchflowError",
    "Cancelled",
    "DecisionError",
    "DivergenceConflict",
    "InvalidInvocation",
    "InvalidName",
    "PreconditionError",
    "ToolInvocationError",
    "ToolTimeout",
    "UnknownBranch",
]
