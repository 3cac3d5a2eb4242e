"""Plan document types for quantum-loop.

The plan document (``quantum.json``) is camelCase JSON. Parsing is
tolerant of omitted fields: a task without ``retries`` gets a fresh retry
budget and a document without ``execution`` is a sequential-only history.
Keys this module does not know about are carried through untouched.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from quantumloop.errors import PlanValidationError

TaskStatus = Literal["pending", "in_progress", "passed", "failed", "blocked"]
ExecutionMode = Literal["sequential", "parallel"]

TASK_STATUSES: frozenset[str] = frozenset({"pending", "in_progress", "passed", "failed", "blocked"})
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PRIORITY = 999

_TASK_KEYS = {"id", "title", "status", "dependsOn", "priority", "retries", "workspaceRef", "baseRevision"}
_PLAN_KEYS = {"tasks", "stories", "progress", "execution"}


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True)
class FailureRecord:
    phase: str
    timestamp: str = field(default_factory=utc_now_iso)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "timestamp": self.timestamp, "message": self.message}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "FailureRecord":
        return cls(
            phase=str(raw.get("phase", "unknown")),
            timestamp=str(raw.get("timestamp", "")),
            message=str(raw.get("message", "")),
        )


@dataclass(slots=True)
class RetryInfo:
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    failure_log: list[FailureRecord] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "failureLog": [f.to_dict() for f in self.failure_log],
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "RetryInfo":
        if not isinstance(raw, dict):
            return cls()
        return cls(
            attempts=int(raw.get("attempts", 0) or 0),
            max_attempts=int(raw.get("maxAttempts", DEFAULT_MAX_ATTEMPTS) or DEFAULT_MAX_ATTEMPTS),
            failure_log=[
                FailureRecord.from_dict(item) for item in raw.get("failureLog", []) if isinstance(item, dict)
            ],
        )


@dataclass(slots=True)
class Task:
    id: str
    title: str = ""
    status: TaskStatus = "pending"
    depends_on: list[str] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    retries: RetryInfo = field(default_factory=RetryInfo)
    workspace_ref: str | None = None
    base_revision: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.status == "failed" and not self.retries.exhausted

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "dependsOn": list(self.depends_on),
            "priority": self.priority,
            "retries": self.retries.to_dict(),
        }
        if self.workspace_ref is not None:
            out["workspaceRef"] = self.workspace_ref
        if self.base_revision is not None:
            out["baseRevision"] = self.base_revision
        out.update(copy.deepcopy(self.extra))
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Task":
        if "id" not in raw or not str(raw["id"]).strip():
            raise PlanValidationError(f"Task without an id: {raw!r}")
        status = str(raw.get("status", "pending"))
        if status not in TASK_STATUSES:
            raise PlanValidationError(f"Task {raw['id']} has unknown status {status!r}")
        priority = raw.get("priority")
        return cls(
            id=str(raw["id"]),
            title=str(raw.get("title", "")),
            status=status,  # type: ignore[arg-type]
            depends_on=[str(x) for x in raw.get("dependsOn", []) or [] if isinstance(x, str)],
            priority=int(priority) if isinstance(priority, (int, float)) else DEFAULT_PRIORITY,
            retries=RetryInfo.from_dict(raw.get("retries")),
            workspace_ref=str(raw["workspaceRef"]) if raw.get("workspaceRef") else None,
            base_revision=str(raw["baseRevision"]) if raw.get("baseRevision") else None,
            extra={k: copy.deepcopy(v) for k, v in raw.items() if k not in _TASK_KEYS},
        )


@dataclass(slots=True)
class ExecutionMetadata:
    mode: ExecutionMode = "sequential"
    max_parallel: int = 0
    current_wave: int = 0
    active_workspaces: list[str] = field(default_factory=list)

    def add_workspace(self, ref: str) -> None:
        if ref not in self.active_workspaces:
            self.active_workspaces.append(ref)

    def discard_workspace(self, ref: str) -> None:
        self.active_workspaces = [w for w in self.active_workspaces if w != ref]

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "maxParallel": self.max_parallel,
            "currentWave": self.current_wave,
            "activeWorkspaces": list(self.active_workspaces),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ExecutionMetadata":
        mode = str(raw.get("mode", "sequential"))
        # Older documents call these worktrees.
        active = raw.get("activeWorkspaces", raw.get("activeWorktrees", []))
        return cls(
            mode="parallel" if mode == "parallel" else "sequential",
            max_parallel=int(raw.get("maxParallel", 0) or 0),
            current_wave=int(raw.get("currentWave", 0) or 0),
            active_workspaces=[str(x) for x in active or [] if isinstance(x, str)],
        )


@dataclass(slots=True, frozen=True)
class ProgressEntry:
    task_id: str
    outcome: str
    wave: int = 0
    timestamp: str = field(default_factory=utc_now_iso)
    files_touched: tuple[str, ...] = ()
    learnings: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "wave": self.wave,
            "taskId": self.task_id,
            "outcome": self.outcome,
            "filesTouched": list(self.files_touched),
            "learnings": self.learnings,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ProgressEntry":
        return cls(
            task_id=str(raw.get("taskId", "")),
            outcome=str(raw.get("outcome", "")),
            wave=int(raw.get("wave", 0) or 0),
            timestamp=str(raw.get("timestamp", "")),
            files_touched=tuple(str(x) for x in raw.get("filesTouched", []) or []),
            learnings=str(raw.get("learnings", "")),
        )


@dataclass(slots=True)
class PlanState:
    """The whole plan document: task graph, progress log, execution metadata."""

    tasks: list[Task] = field(default_factory=list)
    progress: list[ProgressEntry] = field(default_factory=list)
    execution: ExecutionMetadata | None = None
    tasks_key: str = "tasks"
    extra: dict[str, Any] = field(default_factory=dict)

    def task(self, task_id: str) -> Task:
        for t in self.tasks:
            if t.id == task_id:
                return t
        raise PlanValidationError(f"Unknown task id: {task_id}")

    @property
    def by_id(self) -> dict[str, Task]:
        return {t.id: t for t in self.tasks}

    def ensure_execution(self) -> ExecutionMetadata:
        if self.execution is None:
            self.execution = ExecutionMetadata()
        return self.execution

    def last_wave(self, task_id: str) -> int | None:
        for entry in reversed(self.progress):
            if entry.task_id == task_id:
                return entry.wave
        return None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = copy.deepcopy(self.extra)
        out[self.tasks_key] = [t.to_dict() for t in self.tasks]
        out["progress"] = [p.to_dict() for p in self.progress]
        if self.execution is not None:
            out["execution"] = self.execution.to_dict()
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> "PlanState":
        if not isinstance(raw, dict):
            raise PlanValidationError("Plan document must be a JSON object")
        tasks_key = "tasks" if "tasks" in raw or "stories" not in raw else "stories"
        raw_tasks = raw.get(tasks_key, [])
        if not isinstance(raw_tasks, list):
            raise PlanValidationError(f"'{tasks_key}' must be a list")
        tasks = [Task.from_dict(t) for t in raw_tasks if isinstance(t, dict)]

        seen: set[str] = set()
        dupes: list[str] = []
        for t in tasks:
            if t.id in seen and t.id not in dupes:
                dupes.append(t.id)
            seen.add(t.id)
        if dupes:
            raise PlanValidationError(f"Duplicate task ids: {', '.join(dupes)}")

        execution_raw = raw.get("execution")
        return cls(
            tasks=tasks,
            progress=[
                ProgressEntry.from_dict(p) for p in raw.get("progress", []) or [] if isinstance(p, dict)
            ],
            execution=ExecutionMetadata.from_dict(execution_raw) if isinstance(execution_raw, dict) else None,
            tasks_key=tasks_key,
            extra={k: copy.deepcopy(v) for k, v in raw.items() if k not in _PLAN_KEYS},
        )
