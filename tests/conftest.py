"""Global test fixtures for quantumloop."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from tests.helpers.repo import git


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository with one commit on ``main`` and a local identity."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    git(repo, "config", "user.name", "Loop Tester")
    git(repo, "config", "user.email", "loop@example.invalid")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# demo\n", encoding="utf-8")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def plan_path(tmp_path: Path) -> Path:
    """Plan location outside the repository so it never shows up in git status."""
    return tmp_path / "quantum.json"
