"""YAML config loader for quantumloop."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from quantumloop.config.schema import (
    LoopConfig,
    ParallelConfig,
    RetryConfig,
    RunConfig,
    WorkerConfig,
    WorkspaceConfig,
)
from quantumloop.errors import ConfigurationError

DEFAULT_CONFIG_NAME = "quantumloop.yaml"


def load_config(path: str | Path | None = None) -> LoopConfig:
    """Load *path*, or ``quantumloop.yaml`` in the cwd if it exists, else defaults.

    An explicitly named file that is missing or not valid YAML is an error;
    unknown keys and malformed sections are ignored.
    """
    if path is None:
        p = Path(DEFAULT_CONFIG_NAME)
        if not p.exists():
            return LoopConfig()
    else:
        p = Path(path)
        if not p.exists():
            raise ConfigurationError(f"Config file not found: {p}")
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {p}: {exc}") from exc
    return parse_config(raw)


def parse_config(raw: Any) -> LoopConfig:
    if not isinstance(raw, dict):
        raw = {}

    run_raw = _section(raw, "run")
    parallel_raw = _section(raw, "parallel")
    worker_raw = _section(raw, "worker")
    retries_raw = _section(raw, "retries")
    workspace_raw = _section(raw, "workspace")

    worker = WorkerConfig(**_pick(worker_raw, WorkerConfig))
    if worker.command is not None and not (
        isinstance(worker.command, list) and all(isinstance(a, str) for a in worker.command)
    ):
        raise ConfigurationError("worker.command must be a list of strings")

    gates_raw = raw.get("gates", [])
    gates = [str(g) for g in gates_raw if isinstance(g, str) and g.strip()] if isinstance(gates_raw, list) else []

    config = LoopConfig(
        run=RunConfig(**_pick(run_raw, RunConfig)),
        parallel=ParallelConfig(**_pick(parallel_raw, ParallelConfig)),
        worker=worker,
        retries=RetryConfig(**_pick(retries_raw, RetryConfig)),
        workspace=WorkspaceConfig(**_pick(workspace_raw, WorkspaceConfig)),
        gates=gates,
    )
    validate_config(config)
    return config


def validate_config(config: LoopConfig) -> None:
    if config.parallel.max_parallel < 1:
        raise ConfigurationError("parallel.max_parallel must be at least 1")
    if config.run.max_iterations < 1:
        raise ConfigurationError("run.max_iterations must be at least 1")
    if config.worker.timeout_seconds <= 0:
        raise ConfigurationError("worker.timeout_seconds must be positive")
    if config.run.poll_interval_seconds <= 0:
        raise ConfigurationError("run.poll_interval_seconds must be positive")
    if config.retries.max_attempts is not None and config.retries.max_attempts < 1:
        raise ConfigurationError("retries.max_attempts must be at least 1")


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
