"""Configuration schema for quantumloop YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class RunConfig:
    plan_file: str = "quantum.json"
    repo_root: str = "."
    log_dir: str = ".quantum-logs"
    max_iterations: int = 20  # total worker spawns per run, retries included
    poll_interval_seconds: float = 5.0


@dataclass(slots=True)
class ParallelConfig:
    enabled: bool = False
    max_parallel: int = 4


@dataclass(slots=True)
class WorkerConfig:
    backend: str = "claude"  # claude | amp | command
    model: str = ""  # empty string = use the tool's own default model
    command: list[str] | None = None  # argv for the "command" backend
    skip_permissions: bool = False
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int | None = None  # None keeps each task's own maxAttempts


@dataclass(slots=True)
class WorkspaceConfig:
    dir: str = ".ql-wt"
    capture_file: str = ".ql-agent-output.txt"


@dataclass(slots=True)
class LoopConfig:
    run: RunConfig = field(default_factory=RunConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    retries: RetryConfig = field(default_factory=RetryConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    gates: list[str] = field(default_factory=list)
