"""External tool adapter: the single path for running git and build/test tools.

Every step handler goes through :meth:`ToolAdapter.invoke`, so timeouts,
retries, cancellation, and logging live in one place.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from branchflow.errors import Cancelled, ToolInvocationError, ToolTimeout

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_DEFAULT_POLL_INTERVAL = 0.1
_TOOL_NOT_FOUND_STATUS = 127
_TRANSIENT_FAILURE_MARKERS = (
    "could not resolve host",
    "temporary failure in name resolution",
    "connection timed out",
    "operation timed out",
    "connection reset",
    "connection refused",
    "unable to access",
    "early eof",
    "the remote end hung up unexpectedly",
    "could not read from remote repository",
    "rpc failed",
)


def _process_isolation_kwargs() -> dict[str, object]:
    """Keep terminal signals aimed at the orchestrator away from its children.

    SIGINT is turned into a cooperative cancel by the CLI; a mutating git
    command must not be torn down halfway by the same keypress.
    """
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def _kill_process(proc: subprocess.Popen[str]) -> None:
    """Best-effort force kill for a child process (and its group)."""
    if os.name != "nt":
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            with suppress(ProcessLookupError, PermissionError, OSError):
                os.killpg(os.getpgid(pid), signal.SIGKILL)
    with suppress(Exception):
        proc.kill()


class CancelToken:
    """Cooperative cancellation flag shared by the engine and the adapter."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, context: str = "") -> None:
        if self._event.is_set():
            raise Cancelled(f"Cancelled{f' before {context}' if context else ''}.")


@dataclass(slots=True)
class ToolResult:
    """Exit status and captured output of one tool invocation."""

    tool: str
    args: tuple[str, ...]
    cwd: str
    exit_status: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def output(self) -> str:
        return (self.stdout + "\n" + self.stderr).strip()

    @property
    def command_line(self) -> str:
        return " ".join([self.tool, *self.args])


def is_transient_failure(text: str) -> bool:
    """Return True when *text* looks like a network hiccup worth one retry."""
    lowered = str(text or "").lower()
    return any(marker in lowered for marker in _TRANSIENT_FAILURE_MARKERS)


class ToolAdapter:
    """Run external tools as subprocesses with a uniform result contract.

    Parameters
    ----------
    default_timeout:
        Seconds allowed per invocation when the caller passes none.
    read_only_retries:
        Extra attempts for read-only invocations that time out or fail with a
        transient network error. Mutating invocations are never retried.
    cancel_token:
        Observed while cancellable invocations run; the child is killed and
        :class:`Cancelled` raised when it fires.
    env:
        Extra environment variables applied to every invocation.
    """

    def __init__(
        self,
        *,
        default_timeout: float = 60.0,
        read_only_retries: int = 1,
        cancel_token: CancelToken | None = None,
        env: Mapping[str, str] | None = None,
        poll_interval: float = _DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.default_timeout = float(default_timeout)
        self.read_only_retries = max(0, int(read_only_retries))
        self.cancel_token = cancel_token
        self.env = dict(env or {})
        self.poll_interval = max(0.01, float(poll_interval))

    def invoke(
        self,
        tool: str,
        args: Sequence[str],
        cwd: str | Path,
        timeout: float | None = None,
        *,
        read_only: bool = False,
        check: bool = True,
        cancellable: bool | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ToolResult:
        """Run ``tool args...`` in *cwd* and return its :class:`ToolResult`.

        Raises :class:`ToolInvocationError` for a non-zero exit when *check* is
        true, :class:`ToolTimeout` when the last attempt times out, and
        :class:`Cancelled` when a cancellable invocation is interrupted.
        """
        argv = [str(tool), *(str(a) for a in args)]
        workdir = Path(cwd)
        limit = float(timeout) if timeout is not None else self.default_timeout
        max_attempts = 1 + (self.read_only_retries if read_only else 0)
        # Only read-only work may be killed mid-flight.
        interruptible = read_only if cancellable is None else bool(cancellable)
        merged_env = {**os.environ, **self.env, **dict(env or {})}

        attempt = 0
        while True:
            attempt += 1
            logger.debug("%s (cwd=%s, attempt %d/%d)", " ".join(argv), workdir, attempt, max_attempts)
            started = time.monotonic()
            try:
                exit_status, stdout, stderr = self._spawn(
                    argv,
                    cwd=workdir,
                    timeout=limit,
                    env=merged_env,
                    cancellable=interruptible,
                )
            except subprocess.TimeoutExpired as exc:
                if attempt < max_attempts:
                    logger.warning("%s timed out after %ss; retrying", " ".join(argv), limit)
                    continue
                raise ToolTimeout(
                    f"`{' '.join(argv)}` timed out after {limit:g}s",
                    tool=argv[0],
                    args=argv[1:],
                    exit_status=-1,
                    stdout=_as_text(exc.stdout),
                    stderr=_as_text(exc.stderr),
                ) from exc
            except OSError as exc:
                raise ToolInvocationError(
                    f"Could not run {argv[0]}: {exc}",
                    tool=argv[0],
                    args=argv[1:],
                    exit_status=_TOOL_NOT_FOUND_STATUS,
                    stderr=str(exc),
                ) from exc

            result = ToolResult(
                tool=argv[0],
                args=tuple(argv[1:]),
                cwd=str(workdir),
                exit_status=exit_status,
                stdout=stdout,
                stderr=stderr,
                duration_seconds=round(time.monotonic() - started, 3),
                attempts=attempt,
            )
            if result.ok or attempt >= max_attempts or not is_transient_failure(result.output):
                break
            logger.warning(
                "%s failed with a transient error (rc=%d); retrying",
                result.command_line,
                result.exit_status,
            )

        if check and not result.ok:
            raise ToolInvocationError(
                f"`{result.command_line}` failed (rc={result.exit_status}): "
                f"{result.stderr.strip() or result.stdout.strip()}",
                tool=result.tool,
                args=result.args,
                exit_status=result.exit_status,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spawn(
        self,
        argv: list[str],
        *,
        cwd: Path,
        timeout: float,
        env: Mapping[str, str],
        cancellable: bool,
    ) -> tuple[int, str, str]:
        """Run *argv* to completion; raise ``TimeoutExpired`` past *timeout*."""
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=dict(env),
            **_process_isolation_kwargs(),
        )
        deadline = time.monotonic() + timeout
        watch_cancel = cancellable and self.cancel_token is not None
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _kill_process(proc)
                stdout, stderr = proc.communicate()
                raise subprocess.TimeoutExpired(argv, timeout, output=stdout, stderr=stderr)
            wait = min(remaining, self.poll_interval) if watch_cancel else remaining
            try:
                stdout, stderr = proc.communicate(timeout=wait)
            except subprocess.TimeoutExpired:
                if watch_cancel and self.cancel_token.cancelled:
                    _kill_process(proc)
                    proc.communicate()
                    raise Cancelled(f"Cancelled while running {' '.join(argv)}") from None
                continue
            return proc.returncode, stdout or "", stderr or ""


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["CancelToken", "ToolAdapter", "ToolResult", "is_transient_failure"]
