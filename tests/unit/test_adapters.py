"""Tests for worker backends."""

from __future__ import annotations

import pytest

from quantumloop.adapters.base import WorkerContext
from quantumloop.adapters.registry import get_adapter
from quantumloop.errors import ConfigurationError


def _ctx(**kwargs: object) -> WorkerContext:
    return WorkerContext(task_id="US-1", workspace="/repo/.ql-wt/US-1", **kwargs)  # type: ignore[arg-type]


def test_claude_command_shape() -> None:
    adapter = get_adapter("claude")
    cmd = adapter.build_command("do it", _ctx(model="sonnet", skip_permissions=True))
    assert cmd == ["claude", "--print", "--dangerously-skip-permissions", "--model", "sonnet", "do it"]
    assert adapter.stdin_payload("do it") is None


def test_claude_without_optional_flags() -> None:
    assert get_adapter("Claude").build_command("x", _ctx()) == ["claude", "--print", "x"]


def test_amp_reads_directive_from_stdin() -> None:
    adapter = get_adapter("amp")
    assert adapter.build_command("x", _ctx()) == ["amp"]
    assert adapter.stdin_payload("x") == "x"


def test_command_placeholders() -> None:
    adapter = get_adapter("command", command=["worker", "--id={task_id}", "{workspace}", "{directive}"])
    cmd = adapter.build_command("the directive", _ctx())
    assert cmd == ["worker", "--id=US-1", "/repo/.ql-wt/US-1", "the directive"]
    assert adapter.stdin_payload("the directive") is None


def test_command_without_directive_placeholder_uses_stdin() -> None:
    adapter = get_adapter("command", command=["worker", "{task_id}"])
    assert adapter.stdin_payload("d") == "d"


def test_command_backend_requires_argv() -> None:
    with pytest.raises(ConfigurationError):
        get_adapter("command")


def test_unknown_backend() -> None:
    with pytest.raises(ConfigurationError, match="Unsupported backend"):
        get_adapter("codex")
