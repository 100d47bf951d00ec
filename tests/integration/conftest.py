"""Fixtures for tests that drive a real git repository."""

from __future__ import annotations

from pathlib import Path

import pytest
from git import Repo

from swarm_conductor.core.workspace import WorkspaceIsolator


def commit_file(repo: Repo, relpath: str, content: str, message: str) -> str:
    """Write a file in the repo's working tree and commit it. Returns the sha."""
    path = Path(repo.working_tree_dir) / relpath
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    repo.index.add([relpath])
    return repo.index.commit(message).hexsha


@pytest.fixture
def git_repo(tmp_path) -> Repo:
    """A repository on `main` with one commit and worktrees ignored."""
    root = tmp_path / "project"
    root.mkdir()
    repo = Repo.init(root)
    with repo.config_writer() as writer:
        writer.set_value("user", "name", "Conductor Tests")
        writer.set_value("user", "email", "tests@example.invalid")
    commit_file(repo, ".gitignore", ".worktrees/\n", "Ignore worktrees")
    commit_file(repo, "app.py", "VALUE = 1\n", "Initial commit")
    repo.git.branch("-M", "main")
    return repo


@pytest.fixture
def isolator(git_repo) -> WorkspaceIsolator:
    return WorkspaceIsolator(git_repo.working_tree_dir, trunk="main")


@pytest.fixture
def commit():
    return commit_file
