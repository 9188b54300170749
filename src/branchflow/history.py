"""Append-only audit log of step outcomes with size-based rotation.

Entries are JSON lines under ``<git-dir>/branchflow/history.jsonl`` so the
working tree stays clean.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
from pathlib import Path
from typing import Any

from branchflow.schemas import StepOutcome, WorkflowSession

logger = logging.getLogger(__name__)

_DEFAULT_MAX_BYTES = 512_000
_DEFAULT_MAX_ARCHIVES = 8
_DIAGNOSTIC_LIMIT = 2_000


def _truncate(text: str, max_len: int) -> str:
    clean = (text or "").strip()
    if len(clean) <= max_len:
        return clean
    return clean[: max_len - 3] + "..."


class HistoryLog:
    """JSONL history of every outcome recorded by the engine."""

    def __init__(
        self,
        state_dir: str | Path,
        *,
        max_bytes: int = _DEFAULT_MAX_BYTES,
        max_archives: int = _DEFAULT_MAX_ARCHIVES,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / "history.jsonl"
        self.archive_dir = self.state_dir / "archive"
        self.max_bytes = max(4_096, int(max_bytes))
        self.max_archives = max(1, int(max_archives))
        self._lock = threading.Lock()

    def record(self, session: WorkflowSession, outcome: StepOutcome) -> None:
        payload: dict[str, Any] = {
            "timestamp": outcome.timestamp,
            "session_id": session.session_id,
            "branch": session.branch,
            "base_branch": session.base_branch,
            "step": outcome.step.value,
            "status": outcome.status.value,
            "state": session.state.value,
            "summary": _truncate(outcome.summary, 400),
            "diagnostic": _truncate(outcome.diagnostic, _DIAGNOSTIC_LIMIT),
            "error_type": outcome.error_type,
            "timed_out": outcome.timed_out,
        }
        try:
            with self._lock:
                self.state_dir.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed()
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Could not append history entry to %s: %s", self.path, exc)

    def read(self, *, limit: int | None = None) -> list[dict[str, Any]]:
        """Return recorded entries, oldest first (the newest *limit* when given)."""
        if not self.path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed history line in %s", self.path)
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    def _rotate_if_needed(self) -> None:
        if not self.path.exists() or self.path.stat().st_size < self.max_bytes:
            return
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = self.archive_dir / f"history-{stamp}.jsonl"
        idx = 1
        while target.exists():
            idx += 1
            target = self.archive_dir / f"history-{stamp}-{idx}.jsonl"
        self.path.replace(target)
        self._prune_archives()

    def _prune_archives(self) -> None:
        files = sorted(
            self.archive_dir.glob("history-*.jsonl"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in files[self.max_archives :]:
            old.unlink(missing_ok=True)


__all__ = ["HistoryLog"]
