"""quantum-loop error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    CONFIGURATION = "configuration"
    STATE = "state"
    PLAN = "plan"
    WORKSPACE = "workspace"
    WORKER = "worker"
    MERGE = "merge"
    INTERNAL = "internal"


class QuantumLoopError(Exception):
    """Base error for all quantum-loop exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ConfigurationError(QuantumLoopError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)


class StateStoreError(QuantumLoopError):
    """The plan document is missing, unreadable, or could not be written."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.STATE, retryable=False)
        self.path = path


class PlanValidationError(QuantumLoopError):
    """The task graph is malformed (duplicate ids, unknown task, ...)."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.PLAN, retryable=False, **kwargs)


class CycleDetectedError(PlanValidationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        path = " -> ".join([*cycle, cycle[0]]) if cycle else "?"
        super().__init__(f"Dependency cycle detected: {path}", details={"cycle": list(cycle)})
        self.cycle = list(cycle)


class InvalidTaskIdError(PlanValidationError):
    """A task id contains characters that are unsafe in paths or branch names."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Invalid task id format: {task_id!r}")
        self.task_id = task_id


class WorkspaceError(QuantumLoopError):
    """An isolated workspace could not be created."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.WORKSPACE, retryable=True)
        self.task_id = task_id


class WorkerSpawnError(QuantumLoopError):
    """The executor process could not be launched."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.WORKER, retryable=True)
        self.task_id = task_id


class MergeError(QuantumLoopError):
    """Integration failed for a reason other than a content conflict."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.MERGE, retryable=True)
        self.task_id = task_id
