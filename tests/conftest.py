"""Shared pytest configuration: markers, ordering, and temporary git repositories."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: tests that wait on real timeouts")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    run_git(repo, "add", "--", name)
    run_git(repo, "commit", "-m", message)
    return run_git(repo, "rev-parse", "HEAD")


def _init_main_repo(repo: Path) -> None:
    repo.mkdir(parents=True, exist_ok=True)
    run_git(repo, "init")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(repo, "config", "commit.gpgsign", "false")


@pytest.fixture(autouse=True)
def _isolated_git_identity(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's git config and BRANCHFLOW_* settings out of tests."""
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for key in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(key, "Test User")
    for key in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(key, "test@example.com")
    for key in list(os.environ):
        if key.startswith("BRANCHFLOW_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def git_cmd():
    return run_git


@pytest.fixture
def commit():
    return commit_file


@pytest.fixture
def local_repo(tmp_path: Path) -> Path:
    """A repository on ``main`` with one commit and no remote."""
    repo = tmp_path / "local"
    _init_main_repo(repo)
    commit_file(repo, "README.md", "hello\n", "init")
    return repo


@pytest.fixture
def remote_repo(tmp_path: Path) -> SimpleNamespace:
    """A bare ``origin`` whose default branch is ``main``, plus two clones.

    ``work`` is the clone the orchestrator drives; ``seed`` stands in for a
    teammate pushing to trunk.
    """
    seed = tmp_path / "seed"
    _init_main_repo(seed)
    commit_file(seed, "README.md", "line one\nline two\n", "init")

    remote = tmp_path / "origin.git"
    subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True, text=True)
    run_git(remote, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(seed, "remote", "add", "origin", str(remote))
    run_git(seed, "push", "--set-upstream", "origin", "main")

    work = tmp_path / "work"
    subprocess.run(["git", "clone", str(remote), str(work)], check=True, capture_output=True, text=True)
    run_git(work, "config", "commit.gpgsign", "false")
    return SimpleNamespace(work=work, remote=remote, seed=seed)


def remote_heads(remote: Path) -> dict[str, str]:
    """Map of branch name to commit id as the bare remote sees it."""
    out = run_git(remote, "for-each-ref", "--format=%(refname:short) %(objectname)", "refs/heads")
    heads: dict[str, str] = {}
    for line in out.splitlines():
        name, sha = line.split(" ", 1)
        heads[name] = sha
    return heads


@pytest.fixture
def remote_branches():
    return remote_heads
