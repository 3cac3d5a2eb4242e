"""Claude Code CLI adapter."""

from __future__ import annotations

from quantumloop.adapters.base import WorkerContext


class ClaudeAdapter:
    name = "claude"

    def __init__(self, binary: str = "claude") -> None:
        self.binary = binary

    def build_command(self, directive: str, ctx: WorkerContext) -> list[str]:
        cmd = [self.binary, "--print"]
        if ctx.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if ctx.model:
            cmd.extend(["--model", ctx.model])
        cmd.append(directive)
        return cmd

    def stdin_payload(self, directive: str) -> str | None:
        return None
