"""Tests for the rich run summary."""

from __future__ import annotations

import io

from rich.console import Console

from quantumloop.coordinator.dag import StuckTask
from quantumloop.coordinator.report import print_levels, print_summary
from quantumloop.protocol.models import PlanState, ProgressEntry, Task


def _console() -> tuple[Console, io.StringIO]:
    out = io.StringIO()
    return Console(file=out, width=200), out


def test_summary_counts_passed_and_shows_wave() -> None:
    plan = PlanState(
        tasks=[Task(id="a", title="First", status="passed"), Task(id="b", title="Second")],
        progress=[ProgressEntry(task_id="a", outcome="passed", wave=3)],
    )
    console, out = _console()
    print_summary(console, plan, outcome="BLOCKED")
    text = out.getvalue()
    assert "BLOCKED: 1/2 tasks passed" in text
    assert "First" in text
    assert "3" in text


def test_bracketed_text_is_not_treated_as_markup() -> None:
    plan = PlanState(tasks=[
        Task(id="m", title="Route [/api] handler", status="blocked"),
        Task(id="n", title="[bold]literal[/bold]", status="weird[/x]"),  # type: ignore[arg-type]
    ])
    stuck = [StuckTask(task_id="n", reason="waiting", detail="needs [/api]", root_causes=["m"])]
    console, out = _console()
    print_summary(console, plan, outcome="RUNNABLE (next: [/x])", stuck=stuck)
    text = out.getvalue()
    assert "Route [/api] handler" in text
    assert "[bold]literal[/bold]" in text
    assert "weird[/x]" in text
    assert "needs [/api]" in text
    assert "RUNNABLE (next: [/x])" in text


def test_dry_run_levels_table() -> None:
    plan = PlanState(tasks=[Task(id="a", title="A [x]"), Task(id="b", depends_on=["a"])])
    console, out = _console()
    print_levels(console, plan, [["a"], ["b"]], state_file="quantum.json")
    text = out.getvalue()
    assert "A [x]" in text
    assert "quantum.json#b" in text
