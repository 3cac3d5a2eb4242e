"""quantum-loop command line."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, NoReturn

import click
from rich.console import Console
from rich.markup import escape

from quantumloop.adapters.registry import BACKENDS
from quantumloop.config.loader import load_config, validate_config
from quantumloop.config.schema import LoopConfig
from quantumloop.coordinator import dag
from quantumloop.coordinator.orchestrator import Orchestrator
from quantumloop.coordinator.recovery import recover
from quantumloop.coordinator.report import print_summary
from quantumloop.coordinator.state_store import StateStore
from quantumloop.errors import CycleDetectedError, QuantumLoopError
from quantumloop.logger import setup_logging
from quantumloop.workspace.worktree import WorkspaceManager, validate_task_id

FATAL_EXIT_CODE = 3

_plan_option = click.option(
    "--plan", "plan_file", default=None, type=click.Path(dir_okay=False, path_type=Path),
    help="Plan document (default: run.plan_file from config, else quantum.json)",
)
_config_option = click.option(
    "--config", "config_path", default=None, type=click.Path(dir_okay=False, path_type=Path),
    help="YAML config (default: ./quantumloop.yaml if present)",
)


@click.group()
def main() -> None:
    """DAG-driven task loop with isolated parallel workers."""


def _fatal(exc: QuantumLoopError) -> NoReturn:
    click.echo(f"Error: {exc}", err=True)
    raise SystemExit(FATAL_EXIT_CODE)


def _load(config_path: Path | None, plan_file: Path | None, repo: Path | None = None) -> LoopConfig:
    cfg = load_config(config_path)
    if repo is not None:
        cfg.run.repo_root = str(repo.resolve())
    if plan_file is not None:
        cfg.run.plan_file = str(plan_file.resolve())
    return cfg


def _plan_path(cfg: LoopConfig) -> Path:
    path = Path(cfg.run.plan_file)
    return path if path.is_absolute() else Path(cfg.run.repo_root).resolve() / path


@main.command("run")
@_plan_option
@_config_option
@click.option("--repo", default=None, type=click.Path(file_okay=False, path_type=Path), help="Repository root")
@click.option("--parallel", is_flag=True, help="Run independent tasks concurrently in worktrees")
@click.option("--max-parallel", type=int, default=None, help="Concurrent worker cap (default 4)")
@click.option("--max-iterations", type=int, default=None, help="Total spawn cap, retries included (default 20)")
@click.option("--max-retries", type=int, default=None, help="Override maxAttempts on every task")
@click.option("--timeout", "timeout_seconds", type=float, default=None, help="Per-worker timeout in seconds (default 900)")
@click.option("--poll-interval", type=float, default=None, help="Seconds between worker polls (default 5)")
@click.option("--dry-run", is_flag=True, help="Show the execution plan and exit without running anything")
@click.option("--story", default=None, help="Run only this task and its dependencies")
@click.option("--backend", type=click.Choice(BACKENDS), default=None, help="Worker backend")
@click.option("--tool", "backend_alias", type=click.Choice(["claude", "amp"]), default=None, hidden=True)
@click.option("--model", default=None, help="Model passed to the worker backend")
@click.option("--skip-permissions", is_flag=True, help="Let the worker run without permission prompts")
@click.option("--debug", "debug_flag", is_flag=True, help="Debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def run_command(
    plan_file: Path | None,
    config_path: Path | None,
    repo: Path | None,
    parallel: bool,
    max_parallel: int | None,
    max_iterations: int | None,
    max_retries: int | None,
    timeout_seconds: float | None,
    poll_interval: float | None,
    dry_run: bool,
    story: str | None,
    backend: str | None,
    backend_alias: str | None,
    model: str | None,
    skip_permissions: bool,
    debug_flag: bool,
    json_logs: bool,
) -> None:
    """Run eligible tasks until the plan is complete or blocked."""
    try:
        cfg = _load(config_path, plan_file, repo)
        overrides: dict[str, Any] = {
            "parallel.enabled": parallel or None,
            "parallel.max_parallel": max_parallel,
            "run.max_iterations": max_iterations,
            "retries.max_attempts": max_retries,
            "worker.timeout_seconds": timeout_seconds,
            "run.poll_interval_seconds": poll_interval,
            "worker.backend": backend or backend_alias,
            "worker.model": model,
            "worker.skip_permissions": skip_permissions or None,
        }
        for dotted, value in overrides.items():
            if value is None:
                continue
            section, key = dotted.split(".")
            setattr(getattr(cfg, section), key, value)
        validate_config(cfg)

        setup_logging(
            debug=debug_flag,
            json_output=json_logs,
            log_file=None if dry_run else Path(cfg.run.repo_root).resolve() / cfg.run.log_dir / "run.log",
        )
        if story is not None:
            validate_task_id(story)

        orchestrator = Orchestrator(cfg, console=Console(), story=story, dry_run=dry_run)
        result = asyncio.run(orchestrator.run())
    except QuantumLoopError as exc:
        _fatal(exc)
    raise SystemExit(result.exit_code)


@main.command("validate")
@_plan_option
@_config_option
def validate_command(plan_file: Path | None, config_path: Path | None) -> None:
    """Check the plan for duplicate or malformed ids, unknown dependencies and cycles."""
    try:
        cfg = _load(config_path, plan_file)
        plan = StateStore(_plan_path(cfg)).read()
        for task in plan.tasks:
            validate_task_id(task.id)
        cycle = dag.find_cycle(plan)
        if cycle is not None:
            raise CycleDetectedError(cycle)
    except QuantumLoopError as exc:
        _fatal(exc)

    by_id = plan.by_id
    for task in plan.tasks:
        unknown = [d for d in task.depends_on if d not in by_id]
        if unknown:
            click.echo(f"Warning: {task.id} depends on unknown task(s): {', '.join(unknown)}", err=True)
    levels = dag.execution_levels(plan)
    click.echo(f"OK: {len(plan.tasks)} tasks, {len(levels)} dependency level(s), no cycles")


@main.command("status")
@_plan_option
@_config_option
def status_command(plan_file: Path | None, config_path: Path | None) -> None:
    """Print the task table and what the loop would do next."""
    try:
        cfg = _load(config_path, plan_file)
        plan = StateStore(_plan_path(cfg)).read()
    except QuantumLoopError as exc:
        _fatal(exc)

    console = Console()
    verdict = dag.evaluate(plan)
    outcome = str(verdict.state).upper()
    if verdict.eligible:
        outcome += f" (next: {', '.join(verdict.eligible)})"
    print_summary(console, plan, outcome=outcome, stuck=verdict.stuck)
    if plan.execution is not None and plan.execution.active_workspaces:
        console.print(
            f"[yellow]Active workspaces from an unfinished run:[/yellow] "
            f"{escape(', '.join(plan.execution.active_workspaces))}"
        )


@main.command("recover")
@_plan_option
@_config_option
@click.option("--repo", default=None, type=click.Path(file_okay=False, path_type=Path), help="Repository root")
def recover_command(plan_file: Path | None, config_path: Path | None, repo: Path | None) -> None:
    """Clean up workspaces and in-flight tasks left by an interrupted run."""
    try:
        cfg = _load(config_path, plan_file, repo)
        setup_logging()
        workspaces = WorkspaceManager(
            cfg.run.repo_root,
            dir_name=cfg.workspace.dir,
            capture_file=cfg.workspace.capture_file,
            log_dir=cfg.run.log_dir,
        )
        report = recover(StateStore(_plan_path(cfg)), workspaces)
    except QuantumLoopError as exc:
        _fatal(exc)

    if report.empty:
        click.echo("Nothing to recover")
        return
    if report.merged:
        click.echo(f"Marked passed (already merged): {', '.join(report.merged)}")
    if report.reset:
        click.echo(f"Reset to pending: {', '.join(report.reset)}")
    if report.removed:
        click.echo(f"Removed workspaces: {', '.join(report.removed)}")
