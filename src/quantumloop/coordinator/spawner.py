"""Launch executor processes bound to one workspace."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from quantumloop.adapters.base import WorkerAdapter, WorkerContext
from quantumloop.errors import WorkerSpawnError
from quantumloop.workspace.worktree import validate_task_id

log = logging.getLogger(__name__)

PASSED_TOKEN = "<quantum>STORY_PASSED</quantum>"
FAILED_TOKEN = "<quantum>STORY_FAILED</quantum>"

# Env vars that make a nested executor refuse to start inside another session.
_STRIP_ENV_VARS = {
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
}


def build_directive(task_id: str, *, title: str = "", state_file: str = "quantum.json") -> str:
    validate_task_id(task_id)
    heading = f"Implement task {task_id}" + (f": {title}" if title else "")
    return "\n".join([
        heading,
        "",
        f"Read the definition of task {task_id} from {state_file} (read-only).",
        "You are running in an isolated workspace. Make and commit your changes here only.",
        f"Do NOT modify {state_file}; the orchestrator owns it and records your result.",
        "Lines starting with 'LEARNING:' are collected into the progress log.",
        "",
        "Before exiting, print exactly one of these tokens on its own line:",
        f"  {PASSED_TOKEN}  when the task is implemented and its checks pass",
        f"  {FAILED_TOKEN}  when it cannot be completed",
    ])


@dataclass(slots=True)
class WorkerHandle:
    task_id: str
    workspace: Path
    sink: Path
    process: asyncio.subprocess.Process
    started_at: float = field(default_factory=time.monotonic)
    wave: int = 0

    @property
    def exited(self) -> bool:
        return self.process.returncode is not None


class WorkerSpawner:
    def __init__(
        self,
        adapter: WorkerAdapter,
        *,
        model: str = "",
        skip_permissions: bool = False,
        capture_file: str = ".ql-agent-output.txt",
        state_file: str = "quantum.json",
    ) -> None:
        self.adapter = adapter
        self.model = model
        self.skip_permissions = skip_permissions
        self.capture_file = capture_file
        self.state_file = state_file

    def _env(self, task_id: str, workspace: Path) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in _STRIP_ENV_VARS}
        env["QL_TASK_ID"] = task_id
        env["QL_WORKSPACE"] = str(workspace)
        return env

    async def spawn(
        self,
        task_id: str,
        workspace: str | Path,
        *,
        title: str = "",
        sink: str | Path | None = None,
        wave: int = 0,
    ) -> WorkerHandle:
        """Start the executor in *workspace* and return without waiting for it.

        stdout and stderr both go to the capture sink, truncated first so a
        token from an earlier attempt cannot be picked up again.
        """
        ws = Path(workspace)
        directive = build_directive(task_id, title=title, state_file=self.state_file)
        ctx = WorkerContext(
            task_id=task_id,
            workspace=str(ws),
            model=self.model,
            skip_permissions=self.skip_permissions,
        )
        cmd = self.adapter.build_command(directive, ctx)
        payload = self.adapter.stdin_payload(directive)

        sink_path = Path(sink) if sink is not None else ws / self.capture_file
        sink_path.parent.mkdir(parents=True, exist_ok=True)

        with sink_path.open("wb") as out:
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.PIPE if payload is not None else asyncio.subprocess.DEVNULL,
                    stdout=out,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=str(ws),
                    env=self._env(task_id, ws),
                    start_new_session=True,
                )
            except (FileNotFoundError, PermissionError) as exc:
                raise WorkerSpawnError(f"Cannot launch {cmd[0]!r} for {task_id}: {exc}", task_id=task_id) from exc

        if payload is not None and process.stdin is not None:
            try:
                process.stdin.write(payload.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                log.debug("Worker %s closed stdin before reading the directive", task_id)
            finally:
                process.stdin.close()

        log.info("Spawned %s worker for %s (pid %s)", self.adapter.name, task_id, process.pid)
        return WorkerHandle(task_id=task_id, workspace=ws, sink=sink_path, process=process, wave=wave)
