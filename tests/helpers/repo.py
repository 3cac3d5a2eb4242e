"""Plan-document builders and git shortcuts used across the suite."""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def make_task(task_id: str, *, deps: list[str] | None = None, status: str = "pending", **extra: Any) -> dict[str, Any]:
    task: dict[str, Any] = {"id": task_id, "title": f"Task {task_id}", "status": status, "dependsOn": deps or []}
    task.update(extra)
    return task


def write_plan(path: Path, tasks: list[dict[str, Any]], **extra: Any) -> Path:
    doc: dict[str, Any] = {"tasks": tasks, "progress": []}
    doc.update(extra)
    path.write_text(json.dumps(doc, indent=2), encoding="utf-8")
    return path
