"""Checkpoint storage for the CLI host.

The engine itself keeps no state between processes. The CLI checkpoints the
non-terminal session to ``<git-dir>/branchflow/session.json`` so a later
``resync``/``integrate``/``cleanup`` or a re-invocation carrying a decision
can pick it up. Terminal sessions are discarded.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from contextlib import suppress
from pathlib import Path

from pydantic import ValidationError

from branchflow.schemas import WorkflowSession

logger = logging.getLogger(__name__)

STATE_DIR_NAME = "branchflow"
_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    """Replace *dst* with *src*, retrying on transient Windows file-lock races."""
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str) -> None:
    """Write text to disk atomically to avoid partial/corrupt files."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        _replace_file_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


class SessionStore:
    """One checkpoint slot per working directory."""

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / "session.json"

    @classmethod
    def for_git_dir(cls, git_dir: str | Path) -> SessionStore:
        return cls(Path(git_dir) / STATE_DIR_NAME)

    def save(self, session: WorkflowSession) -> None:
        """Persist *session*, or drop the checkpoint once it is terminal."""
        if session.state.is_terminal:
            self.clear()
            return
        atomic_write_text(self.path, session.model_dump_json(indent=2))

    def load(self) -> WorkflowSession | None:
        """Load the checkpointed session, or return ``None`` when absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
            if not raw.strip():
                logger.warning("Checkpoint is empty; ignoring: %s", self.path)
                return None
            return WorkflowSession.model_validate_json(raw)
        except (OSError, ValidationError) as exc:
            logger.warning("Could not load checkpoint %s: %s", self.path, exc)
            return None

    def clear(self) -> None:
        with suppress(FileNotFoundError):
            self.path.unlink()


__all__ = ["STATE_DIR_NAME", "SessionStore", "atomic_write_text"]
