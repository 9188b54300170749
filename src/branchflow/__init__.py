"""BranchFlow - drive a feature branch through its lifecycle, from creation to cleanup."""

from importlib.metadata import PackageNotFoundError, version

from branchflow.engine import WorkflowEngine
from branchflow.schemas import Decision, DecisionChoice, StepOutcome, WorkflowSession, WorkflowState

__all__ = ["Decision", "DecisionChoice", "StepOutcome", "WorkflowEngine", "WorkflowSession", "WorkflowState"]

try:
    __version__ = version("branchflow")
except PackageNotFoundError:
    __version__ = "0.0.0"
