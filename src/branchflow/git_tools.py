"""Git collaborator: branch, sync, merge, and push primitives over the tool adapter."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from branchflow.errors import ToolInvocationError
from branchflow.policy import lease_push_args
from branchflow.schemas import BranchRef, DivergenceReport
from branchflow.tools import ToolAdapter, ToolResult

logger = logging.getLogger(__name__)

# Git must never block on a prompt or an editor inside an unattended session.
_GIT_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_EDITOR": "true",
    "GIT_MERGE_AUTOEDIT": "no",
}


class GitClient:
    """Thin, explicit wrapper around ``git`` for one working directory.

    Every method names the refs it touches; nothing depends on the process
    working directory or on which branch happens to be checked out unless the
    method says so.
    """

    def __init__(
        self,
        repo: str | Path,
        adapter: ToolAdapter,
        *,
        remote: str = "origin",
        timeout: float = 60.0,
        network_timeout: float = 120.0,
        binary: str = "git",
    ) -> None:
        self.repo = Path(repo)
        self.adapter = adapter
        self.remote = remote
        self.timeout = timeout
        self.network_timeout = network_timeout
        self.binary = binary

    def _git(
        self,
        *args: str,
        read_only: bool = False,
        check: bool = True,
        network: bool = False,
    ) -> ToolResult:
        return self.adapter.invoke(
            self.binary,
            args,
            self.repo,
            self.network_timeout if network else self.timeout,
            read_only=read_only,
            check=check,
            env=_GIT_ENV,
        )

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def is_work_tree(self) -> bool:
        try:
            result = self._git("rev-parse", "--is-inside-work-tree", read_only=True, check=False)
        except ToolInvocationError:
            return False
        return result.ok and result.stdout.strip() == "true"

    def git_dir(self) -> Path:
        """Absolute path of the repository's git directory."""
        return Path(self._git("rev-parse", "--absolute-git-dir", read_only=True).stdout.strip())

    def status_porcelain(self) -> str:
        """Return ``git status --porcelain`` output."""
        return self._git("status", "--porcelain", read_only=True).stdout.rstrip("\n")

    def is_clean(self) -> bool:
        return self.status_porcelain().strip() == ""

    def current_branch(self) -> str | None:
        """Name of the checked-out branch, or ``None`` on a detached HEAD."""
        result = self._git("symbolic-ref", "--short", "-q", "HEAD", read_only=True, check=False)
        name = result.stdout.strip()
        return name if result.ok and name else None

    def rev_parse(self, rev: str) -> str | None:
        """Full commit id for *rev*, or ``None`` when it does not resolve."""
        result = self._git("rev-parse", "--verify", "-q", f"{rev}^{{commit}}", read_only=True, check=False)
        sha = result.stdout.strip()
        return sha if result.ok and sha else None

    def head_sha(self) -> str:
        return self._git("rev-parse", "HEAD", read_only=True).stdout.strip()

    def check_ref_format(self, name: str) -> bool:
        return self._git("check-ref-format", "--branch", name, read_only=True, check=False).ok

    def local_branch_exists(self, name: str) -> bool:
        return self._git(
            "show-ref", "--verify", "--quiet", f"refs/heads/{name}", read_only=True, check=False
        ).ok

    def has_remote(self) -> bool:
        if not self.remote:
            return False
        result = self._git("remote", read_only=True)
        return self.remote in result.stdout.split()

    def remote_branch_exists(self, name: str) -> bool:
        """Ask the remote itself (not the tracking refs) whether *name* exists."""
        result = self._git(
            "ls-remote",
            "--exit-code",
            "--heads",
            self.remote,
            f"refs/heads/{name}",
            read_only=True,
            check=False,
            network=True,
        )
        if result.ok:
            return True
        if result.exit_status == 2:
            return False
        raise ToolInvocationError(
            f"Could not query {self.remote} for {name} (rc={result.exit_status})",
            tool=result.tool,
            args=result.args,
            exit_status=result.exit_status,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def remote_default_branch(self) -> str | None:
        """Resolve the remote's default branch from its HEAD pointer."""
        result = self._git(
            "symbolic-ref", "--short", "-q", f"refs/remotes/{self.remote}/HEAD", read_only=True, check=False
        )
        value = result.stdout.strip()
        prefix = f"{self.remote}/"
        if result.ok and value.startswith(prefix):
            return value[len(prefix):]

        result = self._git(
            "ls-remote", "--symref", self.remote, "HEAD", read_only=True, check=False, network=True
        )
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            # "ref: refs/heads/main\tHEAD"
            if line.startswith("ref:") and line.rstrip().endswith("HEAD"):
                ref = line[len("ref:"):].split("\t", 1)[0].strip()
                if ref.startswith("refs/heads/"):
                    return ref[len("refs/heads/"):]
        return None

    def divergence(self, local: BranchRef, other: BranchRef) -> DivergenceReport:
        """Count commits on each side of ``local...other``."""
        out = self._git(
            "rev-list", "--left-right", "--count", f"{local.full_ref}...{other.full_ref}", read_only=True
        ).stdout.split()
        ahead, behind = (int(out[0]), int(out[1])) if len(out) == 2 else (0, 0)
        return DivergenceReport(local=local, other=other, ahead=ahead, behind=behind)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._git("merge-base", "--is-ancestor", ancestor, descendant, read_only=True, check=False)
        if result.exit_status in (0, 1):
            return result.exit_status == 0
        raise ToolInvocationError(
            f"Could not compare {ancestor} with {descendant} (rc={result.exit_status})",
            tool=result.tool,
            args=result.args,
            exit_status=result.exit_status,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def conflicted_paths(self) -> list[str]:
        out = self._git("diff", "--name-only", "--diff-filter=U", read_only=True).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    def upstream_of(self, branch: str) -> str | None:
        result = self._git(
            "rev-parse", "--abbrev-ref", "--symbolic-full-name", f"{branch}@{{upstream}}",
            read_only=True,
            check=False,
        )
        value = result.stdout.strip()
        return value if result.ok and value else None

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    def fetch(self) -> ToolResult:
        return self._git("fetch", "--prune", self.remote, read_only=True, network=True)

    def push(self, branch: str, *, set_upstream: bool = False) -> ToolResult:
        args = ["push"]
        if set_upstream:
            args.append("--set-upstream")
        args.extend([self.remote, branch])
        return self._git(*args, network=True)

    def push_with_lease(self, branch: str, expected_sha: str | None) -> ToolResult:
        """Force push that fails when the remote branch is no longer *expected_sha*."""
        return self._git(*lease_push_args(self.remote, branch, expected_sha), network=True)

    def pull_ff_only(self, branch: str) -> ToolResult:
        return self._git("pull", "--ff-only", self.remote, branch, network=True)

    def delete_remote_branch(self, branch: str) -> ToolResult:
        return self._git("push", self.remote, "--delete", branch, network=True)

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    def checkout(self, branch: str) -> ToolResult:
        return self._git("checkout", branch)

    def create_branch(self, name: str, start_point: str) -> ToolResult:
        """Create *name* at *start_point* and check it out."""
        result = self._git("checkout", "-b", name, start_point)
        logger.info("Created branch %s from %s", name, start_point)
        return result

    def create_tracking_branch(self, name: str) -> ToolResult:
        return self._git("branch", "--track", name, f"{self.remote}/{name}")

    def delete_local_branch(self, name: str, *, force: bool = False) -> ToolResult:
        return self._git("branch", "-D" if force else "-d", name)

    def merge_ff_only(self, rev: str) -> ToolResult:
        return self._git("merge", "--ff-only", rev)

    def merge(self, rev: str, *, no_ff: bool = False, message: str | None = None) -> ToolResult:
        """Merge *rev* into the checked-out branch; returns the result even on conflict."""
        args = ["merge", "--no-edit"]
        if no_ff:
            args.append("--no-ff")
        if message:
            args.extend(["-m", message])
        args.append(rev)
        return self._git(*args, check=False)

    def merge_continue(self) -> ToolResult:
        return self._git("commit", "--no-edit")

    def merge_abort(self) -> ToolResult:
        return self._git("merge", "--abort")

    def rebase(self, onto: str) -> ToolResult:
        """Rebase the checked-out branch onto *onto*; returns the result even on conflict."""
        return self._git("rebase", onto, check=False)

    def rebase_continue(self) -> ToolResult:
        return self._git("rebase", "--continue", check=False)

    def rebase_abort(self) -> ToolResult:
        return self._git("rebase", "--abort")

    def stage(self, paths: Sequence[str]) -> ToolResult:
        return self._git("add", "--", *paths)

    def stash_push(self, message: str) -> ToolResult:
        return self._git("stash", "push", "--include-untracked", "-m", message)

    def stash_pop(self) -> ToolResult:
        """Apply and drop the newest stash; git keeps the stash when this fails."""
        return self._git("stash", "pop", check=False)

    def commit_all(self, message: str) -> str:
        """Stage everything and commit. Return the new commit SHA."""
        self._git("add", "-A")
        self._git("commit", "-m", message)
        return self.head_sha()

    def discard_all(self) -> None:
        """Reset tracked files to HEAD and remove untracked files."""
        self._git("reset", "--hard", "HEAD")
        self._git("clean", "-fd")
        logger.info("Discarded working-tree changes in %s", self.repo)


__all__ = ["GitClient"]
