"""Terminal summary of a run: per-task table plus the blocked diagnosis."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from quantumloop.coordinator.dag import StuckTask
from quantumloop.protocol.models import PlanState

_STATUS_STYLE = {
    "passed": "green",
    "failed": "yellow",
    "blocked": "bold red",
    "in_progress": "cyan",
    "pending": "dim",
}


def summary_table(plan: PlanState, *, title: str = "Tasks") -> Table:
    table = Table(title=title, title_justify="left")
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Wave", justify="right")
    table.add_column("Retries", justify="right")
    for task in plan.tasks:
        wave = plan.last_wave(task.id)
        style = _STATUS_STYLE.get(task.status, "")
        table.add_row(
            escape(task.id),
            escape(task.title),
            f"[{style}]{task.status}[/{style}]" if style else escape(task.status),
            "-" if not wave else str(wave),
            f"{task.retries.attempts}/{task.retries.max_attempts}",
        )
    return table


def stuck_table(stuck: list[StuckTask]) -> Table:
    table = Table(title="Blocked", title_justify="left", title_style="bold red")
    table.add_column("ID", style="bold")
    table.add_column("Reason")
    table.add_column("Detail")
    table.add_column("Root cause")
    for item in stuck:
        table.add_row(
            escape(item.task_id),
            item.reason,
            escape(item.detail),
            escape(", ".join(item.root_causes)) or "-",
        )
    return table


def print_summary(
    console: Console,
    plan: PlanState,
    *,
    outcome: str | None = None,
    stuck: list[StuckTask] | None = None,
) -> None:
    passed = sum(1 for t in plan.tasks if t.status == "passed")
    console.print(summary_table(plan))
    line = f"{passed}/{len(plan.tasks)} tasks passed"
    if outcome:
        line = f"[bold]{escape(outcome)}[/bold]: {line}"
    console.print(line)
    if stuck:
        console.print(stuck_table(stuck))


def print_levels(console: Console, plan: PlanState, levels: list[list[str]], *, state_file: str) -> None:
    """Dry-run view: what would run, in dependency order."""
    by_id = plan.by_id
    table = Table(title="Execution plan (dry run)", title_justify="left")
    table.add_column("Level", justify="right")
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Depends on")
    table.add_column("Directive target")
    for depth, ids in enumerate(levels):
        for task_id in ids:
            task = by_id[task_id]
            table.add_row(
                str(depth),
                escape(task_id),
                escape(task.title),
                escape(", ".join(task.depends_on)) or "-",
                escape(f"{state_file}#{task_id}"),
            )
    console.print(table)
