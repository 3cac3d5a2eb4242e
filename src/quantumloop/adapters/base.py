"""Worker adapter interface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class WorkerContext:
    """Per-spawn values an adapter may substitute into its argv."""

    task_id: str
    workspace: str
    model: str = ""
    skip_permissions: bool = False


class WorkerAdapter(Protocol):
    name: str

    def build_command(self, directive: str, ctx: WorkerContext) -> list[str]: ...

    def stdin_payload(self, directive: str) -> str | None: ...
