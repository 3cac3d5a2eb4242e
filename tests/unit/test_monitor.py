"""Tests for quantumloop.coordinator.monitor."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

from quantumloop.adapters.command import CommandAdapter
from quantumloop.coordinator import monitor
from quantumloop.coordinator.monitor import WorkerStatus
from quantumloop.coordinator.spawner import FAILED_TOKEN, PASSED_TOKEN, WorkerHandle, WorkerSpawner


async def _spawn(tmp_path: Path, script: str) -> WorkerHandle:
    spawner = WorkerSpawner(CommandAdapter([sys.executable, "-u", "-c", script]))
    return await spawner.spawn("US-1", tmp_path)


def test_detect_signal(tmp_path: Path) -> None:
    sink = tmp_path / "out.txt"
    assert monitor.detect_signal(sink) is None
    sink.write_text("working...\n", encoding="utf-8")
    assert monitor.detect_signal(sink) is None
    sink.write_text(f"done\n{PASSED_TOKEN}\n", encoding="utf-8")
    assert monitor.detect_signal(sink) == WorkerStatus.SUCCEEDED
    sink.write_text(f"{PASSED_TOKEN}\nthen it broke\n{FAILED_TOKEN}\n", encoding="utf-8")
    assert monitor.detect_signal(sink) == WorkerStatus.FAILED


def test_timed_out() -> None:
    now = time.monotonic()
    assert not monitor.timed_out(now, 900)
    assert monitor.timed_out(now - 901, 900)
    assert monitor.timed_out(now - 2, 1)


@pytest.mark.asyncio
async def test_status_running_then_succeeded(tmp_path: Path) -> None:
    handle = await _spawn(tmp_path, f"import time; time.sleep(0.5); print({PASSED_TOKEN!r})")
    assert monitor.status(handle) == WorkerStatus.RUNNING
    await handle.process.wait()
    assert monitor.status(handle) == WorkerStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_exit_zero_without_token_is_crash(tmp_path: Path) -> None:
    handle = await _spawn(tmp_path, "print('all good, honest')")
    await handle.process.wait()
    assert handle.process.returncode == 0
    assert monitor.status(handle) == WorkerStatus.CRASHED


@pytest.mark.asyncio
async def test_nonzero_exit_with_passed_token_is_success(tmp_path: Path) -> None:
    handle = await _spawn(tmp_path, f"import sys; print({PASSED_TOKEN!r}); sys.exit(3)")
    await handle.process.wait()
    assert monitor.status(handle) == WorkerStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_failed_token(tmp_path: Path) -> None:
    handle = await _spawn(tmp_path, f"print('tests fail'); print({FAILED_TOKEN!r})")
    await handle.process.wait()
    assert monitor.status(handle) == WorkerStatus.FAILED
    assert "tests fail" in monitor.output_tail(handle)


@pytest.mark.asyncio
async def test_kill_terminates_and_is_idempotent(tmp_path: Path) -> None:
    handle = await _spawn(tmp_path, "import time; time.sleep(60)")
    await monitor.kill(handle, grace=2)
    assert handle.process.returncode is not None
    await monitor.kill(handle)


@pytest.mark.asyncio
async def test_kill_escalates_to_sigkill(tmp_path: Path) -> None:
    script = (
        "import signal, time; "
        "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready'); time.sleep(60)"
    )
    handle = await _spawn(tmp_path, script)
    for _ in range(50):
        if "ready" in handle.sink.read_text(encoding="utf-8"):
            break
        await asyncio.sleep(0.05)
    await monitor.kill(handle, grace=0.2)
    assert handle.process.returncode is not None


def test_output_tail_and_learnings(tmp_path: Path) -> None:
    sink = tmp_path / "out.txt"
    sink.write_text(
        "\n".join([*(f"line {i}" for i in range(20)), "LEARNING: tests live in tests/", "  LEARNING:  use tmp_path "]),
        encoding="utf-8",
    )
    handle = WorkerHandle(task_id="US-1", workspace=tmp_path, sink=sink, process=None)  # type: ignore[arg-type]
    tail = monitor.output_tail(handle, lines=3)
    assert tail.splitlines() == ["line 19", "LEARNING: tests live in tests/", "  LEARNING:  use tmp_path"]
    assert monitor.learnings(handle) == "tests live in tests/\nuse tmp_path"
