"""Tests for quantumloop.coordinator.recovery."""

from __future__ import annotations

import json
from pathlib import Path

from quantumloop.coordinator.merge import MergeCoordinator
from quantumloop.coordinator.recovery import recover
from quantumloop.coordinator.state_store import StateStore
from quantumloop.workspace.worktree import WorkspaceManager
from tests.helpers import git, make_task, write_plan


def _in_flight(task_id: str, base: str) -> dict:
    return make_task(task_id, status="in_progress", workspaceRef=f".ql-wt/{task_id}", baseRevision=base)


def test_two_active_workspaces_are_removed_and_reset(git_repo: Path, plan_path: Path) -> None:
    mgr = WorkspaceManager(git_repo)
    mgr.ensure_layout()
    base = mgr.head_revision()
    mgr.create("a", base)
    mgr.create("b", base)
    write_plan(
        plan_path,
        [_in_flight("a", base), _in_flight("b", base), make_task("c")],
        execution={"mode": "parallel", "maxParallel": 2, "currentWave": 1, "activeWorkspaces": [".ql-wt/a", ".ql-wt/b"]},
    )

    report = recover(StateStore(plan_path), mgr)

    assert sorted(report.reset) == ["a", "b"]
    assert sorted(report.removed) == ["a", "b"]
    assert mgr.list() == set()
    assert mgr.branch_tip("a") is None
    raw = json.loads(plan_path.read_text(encoding="utf-8"))
    assert raw["execution"]["activeWorkspaces"] == []
    assert raw["execution"]["currentWave"] == 1
    statuses = {t["id"]: t["status"] for t in raw["tasks"]}
    assert statuses == {"a": "pending", "b": "pending", "c": "pending"}
    assert all("workspaceRef" not in t for t in raw["tasks"])


def test_branch_merged_before_crash_is_marked_passed(git_repo: Path, plan_path: Path) -> None:
    mgr = WorkspaceManager(git_repo)
    mgr.ensure_layout()
    base = mgr.head_revision()
    ws = mgr.create("done", base)
    (ws / "f.txt").write_text("x\n", encoding="utf-8")
    git(ws, "add", "f.txt")
    git(ws, "commit", "-q", "-m", "work")
    assert MergeCoordinator(mgr).integrate(ws, "done").ok
    mgr.create("fresh", base)
    write_plan(
        plan_path,
        [_in_flight("done", base), _in_flight("fresh", base)],
        execution={"mode": "parallel", "activeWorkspaces": [".ql-wt/done", ".ql-wt/fresh"]},
    )

    report = recover(StateStore(plan_path), mgr)

    assert report.merged == ["done"]
    assert report.reset == ["fresh"]
    plan = StateStore(plan_path).read()
    assert plan.task("done").status == "passed"
    assert plan.task("fresh").status == "pending"


def test_orphan_directories_removed_and_sequential_in_progress_reset(git_repo: Path, plan_path: Path) -> None:
    mgr = WorkspaceManager(git_repo)
    mgr.ensure_layout()
    mgr.path_for("ghost").mkdir(parents=True)
    write_plan(plan_path, [make_task("s", status="in_progress"), make_task("p", status="passed")])

    report = recover(StateStore(plan_path), mgr)

    assert report.reset == ["s"]
    assert report.removed == ["ghost"]
    plan = StateStore(plan_path).read()
    assert plan.task("s").status == "pending"
    assert plan.task("p").status == "passed"


def test_nothing_to_recover_leaves_file_untouched(git_repo: Path, plan_path: Path) -> None:
    mgr = WorkspaceManager(git_repo)
    write_plan(plan_path, [make_task("a", status="passed")])
    before = plan_path.read_text(encoding="utf-8")
    report = recover(StateStore(plan_path), mgr)
    assert report.empty
    assert plan_path.read_text(encoding="utf-8") == before
