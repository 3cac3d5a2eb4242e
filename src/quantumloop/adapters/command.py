"""Arbitrary executor given as an argv template.

Placeholders ``{directive}``, ``{task_id}`` and ``{workspace}`` are
substituted per spawn. Without a ``{directive}`` placeholder the directive
is written to the process's stdin instead.
"""

from __future__ import annotations

from quantumloop.adapters.base import WorkerContext
from quantumloop.errors import ConfigurationError


class CommandAdapter:
    name = "command"

    def __init__(self, argv: list[str] | None) -> None:
        if not argv:
            raise ConfigurationError("The 'command' backend needs worker.command to be a non-empty list")
        self.argv = list(argv)
        self._directive_in_argv = any("{directive}" in part for part in self.argv)

    def build_command(self, directive: str, ctx: WorkerContext) -> list[str]:
        values = {"{directive}": directive, "{task_id}": ctx.task_id, "{workspace}": ctx.workspace}
        out: list[str] = []
        for part in self.argv:
            for key, value in values.items():
                part = part.replace(key, value)
            out.append(part)
        return out

    def stdin_payload(self, directive: str) -> str | None:
        return None if self._directive_in_argv else directive
