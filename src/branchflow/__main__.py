"""CLI entrypoint for BranchFlow."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from branchflow.config import FlowConfig
from branchflow.engine import WorkflowEngine
from branchflow.errors import BranchflowError, InvalidInvocation
from branchflow.history import HistoryLog
from branchflow.report import StatusReport, build_status_report, render_status_report
from branchflow.schemas import (
    Decision,
    DecisionChoice,
    IntegrateMode,
    WorkflowSession,
    WorkflowState,
)
from branchflow.store import SessionStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AWAITING_DECISION = 2
EXIT_INVALID_INVOCATION = 3

_SUCCESS_STATES = frozenset(
    {WorkflowState.READY, WorkflowState.INTEGRATED, WorkflowState.CLEANED_UP}
)


def _load_dotenv(repo: Path) -> None:
    """Load .env from the target repo or the current directory, first match wins."""
    for dir_ in (repo, Path.cwd()):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all subcommands."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo",
        type=str,
        default=".",
        help="Path to the git working tree (default: current directory).",
    )
    common.add_argument("--json", action="store_true", help="Print the status report as JSON.")
    common.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG) logging.")
    common.add_argument(
        "--decision",
        choices=[choice.value for choice in DecisionChoice],
        default=None,
        help="Answer the pending decision (stash|commit|discard|rebase|merge|continue|abort).",
    )
    common.add_argument(
        "--message",
        type=str,
        default="",
        help="Commit message used with --decision commit.",
    )
    common.add_argument(
        "--resolved",
        nargs="+",
        default=[],
        metavar="PATH",
        help="Conflicting paths you resolved, required with --decision continue.",
    )
    common.add_argument(
        "--abort-session",
        action="store_true",
        help="Abort the checkpointed session, leaving the working tree as-is.",
    )
    common.add_argument(
        "--remote",
        type=str,
        default=None,
        help="Remote name (default: origin, or BRANCHFLOW_REMOTE).",
    )
    common.add_argument(
        "--base",
        type=str,
        default=None,
        help="Trunk branch override when the remote HEAD cannot be resolved.",
    )

    p = argparse.ArgumentParser(
        prog="branchflow",
        description="BranchFlow - drive a feature branch from creation to cleanup.",
    )
    sub = p.add_subparsers(dest="command")

    start_p = sub.add_parser("start", parents=[common], help="Create a branch from an up-to-date trunk.")
    start_p.add_argument("name", help="Branch name as <type>/<slug>, e.g. feature/login-flow.")
    start_p.add_argument(
        "--no-track",
        dest="track_remote",
        action="store_const",
        const=False,
        default=None,
        help="Do not push the new branch or set its upstream.",
    )
    start_p.add_argument(
        "--no-setup",
        dest="run_setup",
        action="store_const",
        const=False,
        default=None,
        help="Skip dependency installation.",
    )
    start_p.add_argument(
        "--no-tests",
        dest="run_tests",
        action="store_const",
        const=False,
        default=None,
        help="Skip the baseline test run.",
    )

    for name, help_text in (
        ("resync", "Bring the branch up to date with trunk."),
        ("status", "Show the session status."),
    ):
        cmd_p = sub.add_parser(name, parents=[common], help=help_text)
        cmd_p.add_argument("--branch", type=str, default=None, help="Branch to operate on.")

    integrate_p = sub.add_parser("integrate", parents=[common], help="Resync, then open a PR or merge.")
    integrate_p.add_argument("--branch", type=str, default=None, help="Branch to operate on.")
    integrate_p.add_argument(
        "--mode",
        choices=[mode.value for mode in IntegrateMode],
        default=None,
        help="pr: push for review; merge: merge into trunk locally and push (default: pr).",
    )

    cleanup_p = sub.add_parser("cleanup", parents=[common], help="Delete a merged branch locally and remotely.")
    cleanup_p.add_argument("--branch", type=str, default=None, help="Branch to operate on.")
    cleanup_p.add_argument(
        "--force",
        action="store_true",
        help="Delete even without merge evidence (confirms the branch is no longer needed).",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run the command, and map the outcome to an exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        return EXIT_INVALID_INVOCATION

    repo = Path(args.repo).expanduser().resolve()
    _load_dotenv(repo)
    try:
        config = FlowConfig.from_env(
            remote=args.remote,
            base_branch=args.base,
            track_remote=getattr(args, "track_remote", None),
            run_setup=getattr(args, "run_setup", None),
            run_tests=getattr(args, "run_tests", None),
        )
    except ValidationError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        return EXIT_INVALID_INVOCATION

    engine = WorkflowEngine(repo, config)
    try:
        return _run_command(engine, args)
    except InvalidInvocation as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID_INVOCATION
    except BranchflowError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILED


@contextmanager
def _sigint_cancels(engine: WorkflowEngine) -> Iterator[None]:
    """Turn Ctrl+C into a cooperative cancel for the duration of a command."""

    def _handler(signum, frame):  # noqa: ARG001
        logger.warning("Interrupt received; cancelling after the current tool invocation.")
        engine.cancel_token.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _decision_from_args(args: argparse.Namespace) -> Decision | None:
    if not args.decision:
        return None
    return Decision(
        choice=DecisionChoice(args.decision),
        message=args.message or "",
        resolved_paths=list(args.resolved or []),
    )


def _run_command(engine: WorkflowEngine, args: argparse.Namespace) -> int:
    if not engine.git.is_work_tree():
        raise InvalidInvocation(f"{engine.repo} is not a git working tree.")
    store = SessionStore.for_git_dir(engine.git.git_dir())
    engine.history = HistoryLog(store.state_dir)
    session = store.load()
    if session is not None and session.state.is_terminal:
        store.clear()
        session = None
    requested_branch = getattr(args, "branch", None) or getattr(args, "name", None)

    if args.command == "status":
        if session is None or (requested_branch and requested_branch != session.branch):
            session = engine.adopt(requested_branch, base_branch=args.base)
        _print_report(engine.status(session), as_json=args.json)
        return EXIT_OK

    if args.abort_session:
        if session is None:
            raise InvalidInvocation("No checkpointed session to abort.")
        engine.cancel(session)
        store.save(session)
        return _finish(engine, session, as_json=args.json)

    decision = _decision_from_args(args)
    with _sigint_cancels(engine):
        if session is not None and session.suspended:
            if requested_branch and requested_branch != session.branch:
                raise InvalidInvocation(
                    f"{session.branch} is awaiting a {session.pending_decision.kind.value} decision; "
                    "answer it or run with --abort-session first."
                )
            if decision is None:
                _print_report(engine.status(session), as_json=args.json)
                return EXIT_AWAITING_DECISION
            session = engine.resume(session, decision)
            decision = None
        else:
            session = _dispatch(engine, args, session, requested_branch)

        store.save(session)
        if decision is not None and session.suspended:
            session = engine.resume(session, decision)
            store.save(session)
    return _finish(engine, session, as_json=args.json)


def _dispatch(
    engine: WorkflowEngine,
    args: argparse.Namespace,
    session: WorkflowSession | None,
    requested_branch: str | None,
) -> WorkflowSession:
    if args.command == "start":
        if session is not None and session.branch == args.name:
            raise InvalidInvocation(
                f"{args.name} already has an active session in state {session.state.value}."
            )
        if session is not None:
            logger.warning("Replacing the checkpointed session for %s", session.branch)
        return engine.start(args.name, base_branch=args.base)

    if session is None or (requested_branch and requested_branch != session.branch):
        session = engine.adopt(requested_branch, base_branch=args.base)
    if args.command == "resync":
        return engine.resync(session)
    if args.command == "integrate":
        mode = IntegrateMode(args.mode) if args.mode else None
        return engine.integrate(session, mode)
    if args.command == "cleanup":
        return engine.cleanup(session, force=args.force)
    raise InvalidInvocation(f"Unknown command: {args.command}")


def _finish(engine: WorkflowEngine, session: WorkflowSession, *, as_json: bool) -> int:
    if session.state.is_terminal:
        report = build_status_report(session, checkpoint="final")
    else:
        report = engine.status(session)
    _print_report(report, as_json=as_json)
    return _exit_code(session)


def _exit_code(session: WorkflowSession) -> int:
    if session.suspended:
        return EXIT_AWAITING_DECISION
    if session.state in _SUCCESS_STATES:
        return EXIT_OK
    if session.state is WorkflowState.FAILED and session.failure and session.failure.invalid_invocation:
        return EXIT_INVALID_INVOCATION
    return EXIT_FAILED


def _print_report(report: StatusReport, *, as_json: bool) -> None:
    if as_json:
        print(report.model_dump_json(indent=2))
    else:
        print(render_status_report(report))


if __name__ == "__main__":
    raise SystemExit(main())
