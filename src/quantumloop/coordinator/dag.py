"""Dependency-graph queries over plan snapshots.

Everything here is a pure function of a :class:`PlanState`; nothing reads
or writes the store.

Eligibility::

    eligible(t) = (t.status == "pending" or (t.status == "failed" and attempts < maxAttempts))
                  and all(status(d) == "passed" for d in t.dependsOn)
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Iterable

from quantumloop.errors import PlanValidationError
from quantumloop.protocol.models import PlanState, Task


class DagState(StrEnum):
    RUNNABLE = "runnable"
    COMPLETE = "complete"
    BLOCKED = "blocked"


@dataclass(slots=True)
class StuckTask:
    task_id: str
    reason: str  # exhausted | unknown_dependency | waiting | in_progress
    detail: str = ""
    root_causes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DagVerdict:
    state: DagState
    eligible: list[str] = field(default_factory=list)
    stuck: list[StuckTask] = field(default_factory=list)


# ------------------------------------------------------------------
# Cycles
# ------------------------------------------------------------------


def find_cycle(plan: PlanState) -> list[str] | None:
    """Return the ids on one dependency cycle, or None if the graph is acyclic.

    Iterative three-colour DFS along ``dependsOn`` edges. Unknown
    dependency ids are ignored here (they can never be satisfied, which is
    reported by :func:`stuck_report` instead).
    """
    deps = {t.id: t.depends_on for t in plan.tasks}
    white, grey, black = 0, 1, 2
    colour = dict.fromkeys(deps, white)

    for start in deps:
        if colour[start] != white:
            continue
        stack: list[tuple[str, int]] = [(start, 0)]
        path: list[str] = [start]
        colour[start] = grey
        while stack:
            node, idx = stack[-1]
            children = [d for d in deps[node] if d in deps]
            if idx < len(children):
                stack[-1] = (node, idx + 1)
                child = children[idx]
                if colour[child] == grey:
                    return path[path.index(child):]
                if colour[child] == white:
                    colour[child] = grey
                    stack.append((child, 0))
                    path.append(child)
            else:
                colour[node] = black
                stack.pop()
                path.pop()
    return None


def detect_cycles(plan: PlanState) -> bool:
    return find_cycle(plan) is not None


# ------------------------------------------------------------------
# Eligibility
# ------------------------------------------------------------------


def is_eligible(task: Task, by_id: dict[str, Task]) -> bool:
    if task.status == "in_progress":
        return False
    if not (task.status == "pending" or task.retryable):
        return False
    for dep_id in task.depends_on:
        dep = by_id.get(dep_id)
        if dep is None or dep.status != "passed":
            return False
    return True


def eligible(plan: PlanState, scope: Iterable[str] | None = None) -> list[str]:
    """Ids of tasks that may start now, ascending priority, stable on ties."""
    by_id = plan.by_id
    allowed = set(scope) if scope is not None else None
    ready = [
        t for t in plan.tasks if (allowed is None or t.id in allowed) and is_eligible(t, by_id)
    ]
    ready.sort(key=lambda t: t.priority)
    return [t.id for t in ready]


def evaluate(plan: PlanState, scope: Iterable[str] | None = None) -> DagVerdict:
    allowed = set(scope) if scope is not None else None
    ready = eligible(plan, allowed)
    if ready:
        return DagVerdict(state=DagState.RUNNABLE, eligible=ready)
    in_scope = [t for t in plan.tasks if allowed is None or t.id in allowed]
    if all(t.status == "passed" for t in in_scope):
        return DagVerdict(state=DagState.COMPLETE)
    return DagVerdict(state=DagState.BLOCKED, stuck=stuck_report(plan, allowed))


# ------------------------------------------------------------------
# Blocked diagnosis
# ------------------------------------------------------------------


def _is_dead(task: Task) -> bool:
    return task.status == "blocked" or (task.status == "failed" and task.retries.exhausted)


def root_causes(plan: PlanState, task_id: str) -> list[str]:
    """Exhausted (or unknown) tasks reachable through *task_id*'s unmet dependencies."""
    by_id = plan.by_id
    causes: list[str] = []
    seen: set[str] = set()
    queue: deque[str] = deque(by_id[task_id].depends_on if task_id in by_id else [])
    while queue:
        dep_id = queue.popleft()
        if dep_id in seen:
            continue
        seen.add(dep_id)
        dep = by_id.get(dep_id)
        if dep is None or _is_dead(dep):
            causes.append(dep_id)
            continue
        if dep.status != "passed":
            queue.extend(dep.depends_on)
    return causes


def stuck_report(plan: PlanState, scope: Iterable[str] | None = None) -> list[StuckTask]:
    """Explain why every unfinished task cannot run.

    Tasks downstream of an exhausted task are reported with that task as
    root cause even though their own retry budget is untouched.
    """
    by_id = plan.by_id
    allowed = set(scope) if scope is not None else None
    report: list[StuckTask] = []
    for task in plan.tasks:
        if task.status == "passed" or (allowed is not None and task.id not in allowed):
            continue
        if _is_dead(task):
            report.append(
                StuckTask(
                    task_id=task.id,
                    reason="exhausted",
                    detail=f"retries exhausted ({task.retries.attempts}/{task.retries.max_attempts})",
                    root_causes=[task.id],
                )
            )
            continue
        if task.status == "in_progress":
            report.append(StuckTask(task_id=task.id, reason="in_progress", detail="still marked in_progress"))
            continue
        unknown = [d for d in task.depends_on if d not in by_id]
        if unknown:
            report.append(
                StuckTask(
                    task_id=task.id,
                    reason="unknown_dependency",
                    detail=f"depends on unknown task(s): {', '.join(unknown)}",
                    root_causes=unknown,
                )
            )
            continue
        unmet = [d for d in task.depends_on if by_id[d].status != "passed"]
        causes = root_causes(plan, task.id)
        detail = f"waiting on {', '.join(unmet)}" if unmet else "not eligible"
        if causes:
            detail += f" (root cause: {', '.join(causes)})"
        report.append(StuckTask(task_id=task.id, reason="waiting", detail=detail, root_causes=causes))
    return report


# ------------------------------------------------------------------
# Scoping and planning views
# ------------------------------------------------------------------


def lineage(plan: PlanState, task_id: str) -> set[str]:
    """*task_id* plus all of its transitive dependencies."""
    by_id = plan.by_id
    if task_id not in by_id:
        raise PlanValidationError(f"Unknown task id: {task_id}")
    out: set[str] = set()
    queue: deque[str] = deque([task_id])
    while queue:
        tid = queue.popleft()
        if tid in out or tid not in by_id:
            continue
        out.add(tid)
        queue.extend(by_id[tid].depends_on)
    return out


def execution_levels(plan: PlanState, scope: Iterable[str] | None = None) -> list[list[str]]:
    """Group unfinished tasks by dependency depth.

    level[n] = 0 if n has no unfinished dependencies, else 1 + max(level[d]).
    Passed tasks are treated as already satisfied. Must be called on an
    acyclic graph.
    """
    by_id = plan.by_id
    allowed = set(scope) if scope is not None else set(by_id)
    todo = [t for t in plan.tasks if t.id in allowed and t.status != "passed"]
    todo_ids = {t.id for t in todo}

    level: dict[str, int] = {}

    def _level(tid: str) -> int:
        if tid in level:
            return level[tid]
        deps = [d for d in by_id[tid].depends_on if d in todo_ids]
        level[tid] = 0 if not deps else 1 + max(_level(d) for d in deps)
        return level[tid]

    for t in todo:
        _level(t.id)
    if not level:
        return []
    groups: list[list[str]] = [[] for _ in range(max(level.values()) + 1)]
    for t in sorted(todo, key=lambda t: t.priority):
        groups[level[t.id]].append(t.id)
    return groups
