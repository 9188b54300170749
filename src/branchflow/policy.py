"""Branch naming, divergence classification, and push-safety rules."""

from __future__ import annotations

import datetime as dt
import re
from enum import Enum

from branchflow.errors import InvalidName, PreconditionError
from branchflow.schemas import DivergenceReport

BRANCH_TYPES: tuple[str, ...] = (
    "feature",
    "bugfix",
    "fix",
    "hotfix",
    "experiment",
    "spike",
    "docs",
    "refactor",
)

# Slug: lowercase words separated by single '-', '_' or '.'; nested '/' segments
# are not allowed so the type prefix stays unambiguous.
_SLUG_PATTERN = r"[a-z0-9]+(?:[-_.][a-z0-9]+)*"
BRANCH_NAME_RE = re.compile(rf"^(?P<type>{'|'.join(BRANCH_TYPES)})/(?P<slug>{_SLUG_PATTERN})$")
_MAX_BRANCH_NAME_LENGTH = 100


def validate_branch_name(name: str) -> tuple[str, str]:
    """Return ``(type, slug)`` for a valid ``<type>/<slug>`` name.

    Raises :class:`InvalidName` otherwise.
    """
    candidate = str(name or "")
    if not candidate.strip():
        raise InvalidName("Branch name must not be empty.")
    if len(candidate) > _MAX_BRANCH_NAME_LENGTH:
        raise InvalidName(
            f"Branch name is longer than {_MAX_BRANCH_NAME_LENGTH} characters: {candidate!r}"
        )
    match = BRANCH_NAME_RE.match(candidate)
    if match is None:
        raise InvalidName(
            f"Invalid branch name {candidate!r}: expected <type>/<slug> with type one of "
            f"{', '.join(BRANCH_TYPES)} and a lowercase slug such as 'feature/login-flow'."
        )
    return match.group("type"), match.group("slug")


# ---------------------------------------------------------------------------
# Divergence
# ---------------------------------------------------------------------------


class TrunkSyncAction(str, Enum):
    NOOP = "noop"
    FAST_FORWARD = "fast-forward"
    BLOCKED = "blocked"


class ResyncAction(str, Enum):
    TRIVIAL = "trivial"
    NEEDS_DECISION = "needs-decision"


def classify_trunk_sync(report: DivergenceReport) -> TrunkSyncAction:
    """Local trunk vs remote trunk.

    Any local-only commit blocks the sync: a new branch would silently carry
    unpushed trunk work.
    """
    if report.in_sync:
        return TrunkSyncAction.NOOP
    if report.fast_forwardable:
        return TrunkSyncAction.FAST_FORWARD
    return TrunkSyncAction.BLOCKED


def classify_resync(report: DivergenceReport) -> ResyncAction:
    """Feature branch vs trunk: any commit on trunk not in the branch needs a decision."""
    if report.behind > 0:
        return ResyncAction.NEEDS_DECISION
    return ResyncAction.TRIVIAL


def staleness_warnings(
    report: DivergenceReport | None,
    *,
    last_synced_at: str | None,
    behind_threshold: int,
    stale_after_hours: float,
    now: dt.datetime | None = None,
) -> list[str]:
    """Return human-readable "resync recommended" warnings."""
    warnings: list[str] = []
    if report is not None and report.behind > behind_threshold:
        warnings.append(
            f"{report.local.short} is {report.behind} commits behind {report.other.short} "
            f"(threshold {behind_threshold}); resync recommended."
        )
    if last_synced_at:
        try:
            synced = dt.datetime.fromisoformat(last_synced_at)
        except ValueError:
            synced = None
        if synced is not None:
            current = now or dt.datetime.now(dt.timezone.utc)
            age_hours = (current - synced).total_seconds() / 3600.0
            if age_hours > stale_after_hours:
                warnings.append(
                    f"Last synced with trunk {age_hours:.0f}h ago "
                    f"(threshold {stale_after_hours:g}h); resync recommended."
                )
    return warnings


# ---------------------------------------------------------------------------
# Push safety
# ---------------------------------------------------------------------------


def lease_push_args(remote: str, branch: str, expected_sha: str | None) -> list[str]:
    """Build ``git push`` arguments for a force push that fails if the remote moved.

    An unconditional overwrite is never produced: without a known expected
    remote tip there is nothing to lease against, so the push is refused.
    """
    if not expected_sha:
        raise PreconditionError(
            f"Refusing to force-push {branch}: the last known tip of {remote}/{branch} is unknown."
        )
    return [
        "push",
        f"--force-with-lease=refs/heads/{branch}:{expected_sha}",
        remote,
        f"refs/heads/{branch}:refs/heads/{branch}",
    ]


__all__ = [
    "BRANCH_NAME_RE",
    "BRANCH_TYPES",
    "ResyncAction",
    "TrunkSyncAction",
    "classify_resync",
    "classify_trunk_sync",
    "lease_push_args",
    "staleness_warnings",
    "validate_branch_name",
]
