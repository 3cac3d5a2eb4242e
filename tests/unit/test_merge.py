"""Tests for quantumloop.coordinator.merge against real repositories."""

from __future__ import annotations

from pathlib import Path

from quantumloop.coordinator.merge import MergeCoordinator, MergeStatus, files_changed_since
from quantumloop.workspace.worktree import WorkspaceManager
from tests.helpers import git


def _setup(repo: Path) -> tuple[WorkspaceManager, MergeCoordinator]:
    mgr = WorkspaceManager(repo)
    mgr.ensure_layout()
    return mgr, MergeCoordinator(mgr)


def _commit(path: Path, name: str, text: str, message: str) -> None:
    (path / name).write_text(text, encoding="utf-8")
    git(path, "add", name)
    git(path, "commit", "-q", "-m", message)


def test_clean_merge_preserves_history(git_repo: Path) -> None:
    mgr, merger = _setup(git_repo)
    ws = mgr.create("t1")
    _commit(ws, "feature.txt", "feature\n", "add feature")

    result = merger.integrate(ws, "t1")

    assert result.status == MergeStatus.OK
    assert result.files_touched == ["feature.txt"]
    assert (git_repo / "feature.txt").read_text(encoding="utf-8") == "feature\n"
    assert "add feature" in git(git_repo, "log", "--format=%s")


def test_uncommitted_worker_changes_are_committed_first(git_repo: Path) -> None:
    mgr, merger = _setup(git_repo)
    ws = mgr.create("t1")
    (ws / "notes.md").write_text("uncommitted\n", encoding="utf-8")
    (ws / ".ql-agent-output.txt").write_text("capture\n", encoding="utf-8")

    result = merger.integrate(ws, "t1")

    assert result.ok
    assert (git_repo / "notes.md").exists()
    assert not (git_repo / ".ql-agent-output.txt").exists()
    assert "ql: t1" in git(git_repo, "log", "--format=%s")


def test_conflict_rolls_back_to_exact_prior_state(git_repo: Path) -> None:
    mgr, merger = _setup(git_repo)
    base = mgr.head_revision()
    ws_p = mgr.create("P", base)
    ws_q = mgr.create("Q", base)
    _commit(ws_p, "README.md", "# from P\n", "P edits readme")
    _commit(ws_q, "README.md", "# from Q\n", "Q edits readme")

    assert merger.integrate(ws_p, "P").ok
    head_before = mgr.head_revision()

    result = merger.integrate(ws_q, "Q")

    assert result.status == MergeStatus.CONFLICT
    assert "README.md" in result.message
    assert mgr.head_revision() == head_before
    assert git(git_repo, "status", "--porcelain") == ""
    assert (git_repo / "README.md").read_text(encoding="utf-8") == "# from P\n"
    assert not (git_repo / ".git" / "MERGE_HEAD").exists()


def test_dirty_base_is_stashed_and_restored(git_repo: Path) -> None:
    mgr, merger = _setup(git_repo)
    ws = mgr.create("t1")
    _commit(ws, "feature.txt", "feature\n", "add feature")
    (git_repo / "README.md").write_text("# local edit\n", encoding="utf-8")
    (git_repo / "scratch.txt").write_text("untracked\n", encoding="utf-8")

    result = merger.integrate(ws, "t1")

    assert result.ok
    assert result.stashed
    assert result.stash_restored
    assert (git_repo / "README.md").read_text(encoding="utf-8") == "# local edit\n"
    assert (git_repo / "scratch.txt").exists()
    assert git(git_repo, "stash", "list") == ""


def test_dirty_base_restored_after_conflict(git_repo: Path) -> None:
    mgr, merger = _setup(git_repo)
    _commit(git_repo, "shared.txt", "base\n", "shared file")
    ws = mgr.create("t1")
    _commit(ws, "shared.txt", "worker\n", "worker edit")
    _commit(git_repo, "shared.txt", "main\n", "main edit")
    (git_repo / "local.txt").write_text("keep me\n", encoding="utf-8")

    result = merger.integrate(ws, "t1")

    assert result.status == MergeStatus.CONFLICT
    assert result.stash_restored
    assert (git_repo / "local.txt").read_text(encoding="utf-8") == "keep me\n"
    assert (git_repo / "shared.txt").read_text(encoding="utf-8") == "main\n"


def test_state_file_inside_repo_is_not_stashed(git_repo: Path) -> None:
    state = git_repo / "quantum.json"
    _commit(git_repo, "quantum.json", '{"tasks": []}\n', "plan")
    mgr = WorkspaceManager(git_repo)
    mgr.ensure_layout()
    merger = MergeCoordinator(mgr, state_file=state)
    ws = mgr.create("t1")
    _commit(ws, "feature.txt", "x\n", "feature")
    state.write_text('{"tasks": [], "progress": [1]}\n', encoding="utf-8")

    result = merger.integrate(ws, "t1")

    assert result.ok
    assert not result.stashed
    assert state.read_text(encoding="utf-8") == '{"tasks": [], "progress": [1]}\n'


def test_files_changed_since(git_repo: Path) -> None:
    base = git(git_repo, "rev-parse", "HEAD")
    _commit(git_repo, "a.txt", "a\n", "a")
    _commit(git_repo, "b.txt", "b\n", "b")
    assert sorted(files_changed_since(git_repo, base)) == ["a.txt", "b.txt"]
