"""Worker liveness, timeout and completion-token classification."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from enum import StrEnum
from pathlib import Path

from quantumloop.coordinator.spawner import FAILED_TOKEN, PASSED_TOKEN, WorkerHandle

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 900.0
KILL_GRACE_SECONDS = 5.0
LEARNING_PREFIX = "LEARNING:"


class WorkerStatus(StrEnum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CRASHED = "crashed"


def _read_sink(sink: Path) -> str | None:
    try:
        return sink.read_bytes().decode("utf-8", errors="replace")
    except FileNotFoundError:
        return None


def detect_signal(sink: str | Path) -> WorkerStatus | None:
    """Return the outcome announced in *sink*, or None if no token is present.

    If both tokens appear the later one wins.
    """
    text = _read_sink(Path(sink))
    if not text:
        return None
    passed = text.rfind(PASSED_TOKEN)
    failed = text.rfind(FAILED_TOKEN)
    if passed < 0 and failed < 0:
        return None
    return WorkerStatus.SUCCEEDED if passed > failed else WorkerStatus.FAILED


def status(handle: WorkerHandle) -> WorkerStatus:
    """Classify a worker. The exit code is never trusted on its own."""
    token = detect_signal(handle.sink)
    if token is not None:
        return token
    if handle.process.returncode is None:
        return WorkerStatus.RUNNING
    return WorkerStatus.CRASHED


def timed_out(started_at: float, limit: float = DEFAULT_TIMEOUT_SECONDS) -> bool:
    return time.monotonic() - started_at >= limit


async def kill(handle: WorkerHandle, *, grace: float = KILL_GRACE_SECONDS) -> None:
    """SIGTERM the worker's process group, then SIGKILL after *grace* seconds."""
    proc = handle.process
    if proc.returncode is not None:
        return
    _signal(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except TimeoutError:
        log.warning("Worker %s ignored SIGTERM; sending SIGKILL", handle.task_id)
        _signal(proc, signal.SIGKILL)
        await proc.wait()


def _signal(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    # Workers run in their own session, so the group id equals the pid.
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            return


def output_tail(handle: WorkerHandle, lines: int = 10) -> str:
    text = _read_sink(handle.sink) or ""
    return "\n".join(text.rstrip().splitlines()[-lines:])


def learnings(handle: WorkerHandle) -> str:
    text = _read_sink(handle.sink) or ""
    found = [
        line.strip()[len(LEARNING_PREFIX):].strip()
        for line in text.splitlines()
        if line.strip().startswith(LEARNING_PREFIX)
    ]
    return "\n".join(item for item in found if item)
