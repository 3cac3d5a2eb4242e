"""Crash recovery: reconcile the plan with workspaces left by a dead run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from quantumloop.coordinator.state_store import StateStore
from quantumloop.errors import InvalidTaskIdError
from quantumloop.protocol.models import PlanState
from quantumloop.workspace.worktree import WorkspaceManager

log = logging.getLogger(__name__)


@dataclass(slots=True)
class RecoveryReport:
    merged: list[str] = field(default_factory=list)  # merged before the crash, now passed
    reset: list[str] = field(default_factory=list)  # back to pending
    removed: list[str] = field(default_factory=list)  # workspace ids cleaned from disk

    @property
    def recovered(self) -> int:
        return len(self.merged) + len(self.reset)

    @property
    def empty(self) -> bool:
        return not (self.merged or self.reset or self.removed)


def _was_merged(workspaces: WorkspaceManager, task_id: str, base_revision: str | None) -> bool:
    tip = workspaces.branch_tip(task_id)
    if tip is None or base_revision is None or tip == base_revision:
        return False
    return workspaces.is_ancestor_of_head(tip)


def recover(store: StateStore, workspaces: WorkspaceManager) -> RecoveryReport:
    """Clean up after an interrupted run.

    A task whose branch already reached the base before the crash is marked
    passed; every other in-flight task goes back to pending. All listed and
    orphaned workspaces are removed and ``activeWorkspaces`` is emptied.
    """
    report = RecoveryReport()
    snapshot = store.read()
    execution = snapshot.execution
    active_ids = [workspaces.task_id_from_ref(ref) for ref in (execution.active_workspaces if execution else [])]

    # Decide before anything is removed; removal deletes the branches.
    merged: set[str] = set()
    for task in snapshot.tasks:
        if task.status == "in_progress" or task.id in active_ids:
            if task.status != "passed" and _was_merged(workspaces, task.id, task.base_revision):
                merged.add(task.id)

    def _apply(plan: PlanState) -> None:
        for task in plan.tasks:
            in_flight = task.status == "in_progress" or task.id in active_ids
            if not in_flight or task.status == "passed":
                continue
            if task.id in merged:
                task.status = "passed"
                report.merged.append(task.id)
            elif task.status == "in_progress":
                task.status = "pending"
                report.reset.append(task.id)
            task.workspace_ref = None
            task.base_revision = None
        if plan.execution is not None:
            plan.execution.active_workspaces = []

    needs_write = bool(active_ids) or any(t.status == "in_progress" for t in snapshot.tasks)
    if needs_write:
        store.write(_apply)

    for task_id in sorted(set(active_ids) | workspaces.list()):
        try:
            workspaces.remove(task_id)
        except InvalidTaskIdError:
            log.warning("Skipping workspace entry with an invalid id: %r", task_id)
            continue
        report.removed.append(task_id)

    if not report.empty:
        log.warning(
            "Recovered from interrupted run: %d task(s) reconciled (%d already merged), %d workspace(s) removed",
            report.recovered, len(report.merged), len(report.removed),
        )
    return report
