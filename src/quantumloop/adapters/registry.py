"""Adapter registry for built-in backends."""

from __future__ import annotations

from quantumloop.adapters.amp import AmpAdapter
from quantumloop.adapters.base import WorkerAdapter
from quantumloop.adapters.claude import ClaudeAdapter
from quantumloop.adapters.command import CommandAdapter
from quantumloop.errors import ConfigurationError

BACKENDS = ("claude", "amp", "command")


def get_adapter(backend: str, *, command: list[str] | None = None) -> WorkerAdapter:
    b = backend.lower()
    if b == "claude":
        return ClaudeAdapter()
    if b == "amp":
        return AmpAdapter()
    if b == "command":
        return CommandAdapter(command)
    raise ConfigurationError(f"Unsupported backend: {backend!r} (expected one of {', '.join(BACKENDS)})")
