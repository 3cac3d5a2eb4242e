"""Amp CLI adapter. The directive is piped on stdin."""

from __future__ import annotations

from quantumloop.adapters.base import WorkerContext


class AmpAdapter:
    name = "amp"

    def __init__(self, binary: str = "amp") -> None:
        self.binary = binary

    def build_command(self, directive: str, ctx: WorkerContext) -> list[str]:
        cmd = [self.binary]
        if ctx.skip_permissions:
            cmd.append("--dangerously-allow-all")
        return cmd

    def stdin_payload(self, directive: str) -> str | None:
        return directive
