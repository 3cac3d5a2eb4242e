"""Quality gates: shell commands a finished task must pass before it is merged."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True)
class GateResult:
    command: str
    success: bool
    exit_code: int = 0
    output: str = ""


async def run_gate(command: str, cwd: Path, *, timeout: float) -> GateResult:
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=str(cwd),
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return GateResult(command=command, success=False, exit_code=-1, output=f"timed out after {timeout}s")
    return GateResult(
        command=command,
        success=proc.returncode == 0,
        exit_code=proc.returncode or 0,
        output=stdout.decode(errors="replace").strip(),
    )


async def run_gates(commands: list[str], cwd: Path, *, timeout: float) -> GateResult | None:
    """Run *commands* in order and return the first failure, or None if all pass."""
    for command in commands:
        result = await run_gate(command, cwd, timeout=timeout)
        if not result.success:
            return result
    return None
