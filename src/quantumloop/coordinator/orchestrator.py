"""The control loop: query the DAG, run workers, integrate, persist, repeat.

States::

    INIT -> QUERY -> SEQUENTIAL_RUN | PARALLEL_RUN -> QUERY ... -> COMPLETE | BLOCKED | MAX_ITERATIONS

Only this loop mutates the plan document. Workers report back solely
through the completion token in their capture sink.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from rich.console import Console

from quantumloop.adapters.base import WorkerAdapter
from quantumloop.adapters.registry import get_adapter
from quantumloop.config.schema import LoopConfig
from quantumloop.coordinator import dag, monitor
from quantumloop.coordinator.gates import run_gates
from quantumloop.coordinator.merge import MergeCoordinator, files_changed_since
from quantumloop.coordinator.monitor import WorkerStatus
from quantumloop.coordinator.recovery import RecoveryReport, recover
from quantumloop.coordinator.report import print_levels, print_summary
from quantumloop.coordinator.spawner import WorkerHandle, WorkerSpawner
from quantumloop.coordinator.state_store import StateStore
from quantumloop.errors import CycleDetectedError, MergeError, WorkerSpawnError, WorkspaceError
from quantumloop.logger import get_logger
from quantumloop.protocol.io import append_jsonl
from quantumloop.protocol.models import FailureRecord, PlanState, ProgressEntry, utc_now_iso
from quantumloop.workspace.worktree import WorkspaceManager, validate_task_id

TIMEOUT = "timeout"


class RunOutcome(StrEnum):
    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"
    MAX_ITERATIONS = "MAX_ITERATIONS"
    DRY_RUN = "DRY_RUN"


EXIT_CODES: dict[RunOutcome, int] = {
    RunOutcome.COMPLETE: 0,
    RunOutcome.BLOCKED: 1,
    RunOutcome.MAX_ITERATIONS: 2,
    RunOutcome.DRY_RUN: 0,
}


@dataclass(slots=True)
class RunResult:
    outcome: RunOutcome
    plan: PlanState
    spawned: int = 0
    stuck: list[dag.StuckTask] = field(default_factory=list)
    recovery: RecoveryReport | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.outcome]


class Orchestrator:
    def __init__(
        self,
        config: LoopConfig,
        *,
        adapter: WorkerAdapter | None = None,
        console: Console | None = None,
        story: str | None = None,
        dry_run: bool = False,
    ) -> None:
        self.config = config
        self.story = story
        self.dry_run = dry_run
        self.console = console or Console(stderr=True)
        self.run_id = f"run_{uuid.uuid4().hex[:12]}"

        self.repo_root = Path(config.run.repo_root).resolve()
        plan_path = Path(config.run.plan_file)
        self.plan_path = plan_path if plan_path.is_absolute() else self.repo_root / plan_path
        self.log_dir = self.repo_root / config.run.log_dir
        self.events_path = self.log_dir / "events.jsonl"
        self.last_branch_path = self.log_dir / "last-branch"

        self.store = StateStore(self.plan_path)
        self.workspaces = WorkspaceManager(
            self.repo_root,
            dir_name=config.workspace.dir,
            capture_file=config.workspace.capture_file,
            log_dir=config.run.log_dir,
        )
        self.adapter = adapter or get_adapter(config.worker.backend, command=config.worker.command)
        self.spawner = WorkerSpawner(
            self.adapter,
            model=config.worker.model,
            skip_permissions=config.worker.skip_permissions,
            capture_file=config.workspace.capture_file,
            state_file=self.plan_path.name,
        )
        self.merger = MergeCoordinator(self.workspaces, state_file=self.plan_path)

        self.scope: set[str] | None = None
        self.spawned = 0
        self.active: dict[str, WorkerHandle] = {}
        self._base_revision: dict[str, str] = {}
        self.log = get_logger(__name__).bind(run_id=self.run_id)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> RunResult:
        plan = self._init_plan()

        if self.dry_run:
            levels = dag.execution_levels(plan, self.scope)
            print_levels(self.console, plan, levels, state_file=self.plan_path.name)
            return RunResult(outcome=RunOutcome.DRY_RUN, plan=plan)

        self.workspaces.ensure_layout()
        self._archive_if_branch_changed(plan)
        self._apply_retry_override()
        recovery = recover(self.store, self.workspaces)
        self._event("run.started", {
            "plan": str(self.plan_path),
            "parallel": self.config.parallel.enabled,
            "max_parallel": self.config.parallel.max_parallel,
            "recovered": recovery.recovered,
        })

        try:
            result = await self._loop()
        finally:
            await self._shutdown()
        result.recovery = recovery

        self._event("run.finished", {"outcome": str(result.outcome), "spawned": result.spawned})
        self.log.info("run_finished", outcome=str(result.outcome), spawned=result.spawned)
        print_summary(self.console, result.plan, outcome=str(result.outcome), stuck=result.stuck)
        return result

    def _init_plan(self) -> PlanState:
        plan = self.store.read()
        for task in plan.tasks:
            validate_task_id(task.id)
        cycle = dag.find_cycle(plan)
        if cycle is not None:
            raise CycleDetectedError(cycle)
        if self.story is not None:
            self.scope = dag.lineage(plan, self.story)
        return plan

    def _apply_retry_override(self) -> None:
        max_attempts = self.config.retries.max_attempts
        if max_attempts is None:
            return

        def _override(plan: PlanState) -> None:
            for task in plan.tasks:
                task.retries.max_attempts = max_attempts

        self.store.write(_override)

    def _archive_if_branch_changed(self, plan: PlanState) -> None:
        """Archive the plan and event log when the plan moves to another branch."""
        branch = plan.extra.get("branchName")
        if not isinstance(branch, str) or not branch:
            return
        previous = None
        if self.last_branch_path.exists():
            previous = self.last_branch_path.read_text(encoding="utf-8").strip() or None
        if previous is not None and previous != branch:
            archive = self.log_dir / "archive" / f"{datetime.now():%Y-%m-%d}-{previous.replace('/', '-')}"
            archive.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.plan_path, archive / self.plan_path.name)
            if self.events_path.exists():
                self.events_path.replace(archive / self.events_path.name)
            self.log.info("run_archived", previous_branch=previous, branch=branch, archive=str(archive))
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.last_branch_path.write_text(branch, encoding="utf-8")

    async def _loop(self) -> RunResult:
        while True:
            plan = self.store.read()
            verdict = dag.evaluate(plan, self.scope)
            if verdict.state == dag.DagState.COMPLETE:
                return RunResult(outcome=RunOutcome.COMPLETE, plan=plan, spawned=self.spawned)
            if verdict.state == dag.DagState.BLOCKED:
                return RunResult(
                    outcome=RunOutcome.BLOCKED, plan=plan, spawned=self.spawned, stuck=verdict.stuck
                )
            if self.spawned >= self.config.run.max_iterations:
                self.log.warning("max_iterations_reached", limit=self.config.run.max_iterations)
                return RunResult(outcome=RunOutcome.MAX_ITERATIONS, plan=plan, spawned=self.spawned)

            if self.config.parallel.enabled and len(verdict.eligible) >= 2:
                await self._parallel_run()
            else:
                await self._sequential_run(verdict.eligible[0])

    # ------------------------------------------------------------------
    # Sequential
    # ------------------------------------------------------------------

    async def _sequential_run(self, task_id: str) -> None:
        base = self.workspaces.head_revision()
        title = self.store.read().task(task_id).title

        def _start(plan: PlanState) -> None:
            plan.task(task_id).status = "in_progress"

        self.store.write(_start)
        self.spawned += 1
        self._base_revision[task_id] = base
        self.log.info("task_started", task_id=task_id, mode="sequential", attempt=self.spawned)
        self._event("task.started", {"task_id": task_id, "mode": "sequential"})

        try:
            handle = await self.spawner.spawn(
                task_id, self.repo_root, title=title, sink=self.log_dir / f"{task_id}.log"
            )
        except WorkerSpawnError as exc:
            self._record_failure(task_id, "spawn", str(exc), wave=0)
            return

        while True:
            await asyncio.sleep(self.config.run.poll_interval_seconds)
            outcome = await self._poll(handle)
            if outcome is not None:
                await self._on_terminal(handle, outcome, isolated=False)
                return

    # ------------------------------------------------------------------
    # Parallel
    # ------------------------------------------------------------------

    async def _parallel_run(self) -> None:
        await self._fill_slots()
        while self.active:
            await asyncio.sleep(self.config.run.poll_interval_seconds)
            finished = 0
            for task_id, handle in list(self.active.items()):
                outcome = await self._poll(handle)
                if outcome is None:
                    continue
                del self.active[task_id]
                await self._on_terminal(handle, outcome, isolated=True)
                finished += 1
            if finished:
                await self._fill_slots()

    async def _fill_slots(self) -> None:
        """Spawn newly eligible tasks into free slots as a new wave."""
        free = self.config.parallel.max_parallel - len(self.active)
        budget = self.config.run.max_iterations - self.spawned
        if free <= 0 or budget <= 0:
            return
        plan = self.store.read()
        ready = [tid for tid in dag.eligible(plan, self.scope) if tid not in self.active]
        ready = ready[: min(free, budget)]
        if not ready:
            return

        wave = (plan.execution.current_wave if plan.execution else 0) + 1

        def _begin_wave(p: PlanState) -> None:
            execution = p.ensure_execution()
            execution.mode = "parallel"
            execution.max_parallel = self.config.parallel.max_parallel
            execution.current_wave = wave

        self.store.write(_begin_wave)
        self.log.info("wave_started", wave=wave, tasks=ready)
        self._event("wave.started", {"wave": wave, "tasks": ready})

        base = self.workspaces.head_revision()
        for task_id in ready:
            await self._spawn_isolated(task_id, base, wave, plan.task(task_id).title)

    async def _spawn_isolated(self, task_id: str, base: str, wave: int, title: str) -> None:
        self.spawned += 1
        try:
            path = self.workspaces.create(task_id, base)
        except WorkspaceError as exc:
            self._record_failure(task_id, "workspace", str(exc), wave=wave)
            return

        ref = self.workspaces.relative_ref(task_id)

        def _start(plan: PlanState) -> None:
            task = plan.task(task_id)
            task.status = "in_progress"
            task.workspace_ref = ref
            task.base_revision = base
            plan.ensure_execution().add_workspace(ref)

        self.store.write(_start)
        self._base_revision[task_id] = base
        self.log.info("task_started", task_id=task_id, wave=wave, workspace=ref)
        self._event("task.started", {"task_id": task_id, "wave": wave, "workspace": ref})

        try:
            handle = await self.spawner.spawn(task_id, path, title=title, wave=wave)
        except WorkerSpawnError as exc:
            self._record_failure(task_id, "spawn", str(exc), wave=wave, workspace_ref=ref)
            self.workspaces.remove(task_id)
            return
        self.active[task_id] = handle

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _poll(self, handle: WorkerHandle) -> str | None:
        """Return the terminal outcome of *handle*, or None while it is still working."""
        state = monitor.status(handle)
        if state == WorkerStatus.RUNNING:
            if monitor.timed_out(handle.started_at, self.config.worker.timeout_seconds):
                await monitor.kill(handle)
                return TIMEOUT
            return None
        # A worker that printed its token but has not exited yet is stopped
        # before its changes are integrated.
        if not handle.exited:
            try:
                await asyncio.wait_for(handle.process.wait(), timeout=monitor.KILL_GRACE_SECONDS)
            except TimeoutError:
                await monitor.kill(handle)
        return state

    async def _on_terminal(self, handle: WorkerHandle, outcome: str, *, isolated: bool) -> None:
        task_id = handle.task_id
        wave = handle.wave
        ref = self.workspaces.relative_ref(task_id) if isolated else None
        notes = monitor.learnings(handle)
        try:
            if outcome == TIMEOUT:
                self._record_failure(
                    task_id, "timeout",
                    f"no completion token after {self.config.worker.timeout_seconds:g}s",
                    wave=wave, workspace_ref=ref, learnings=notes,
                )
            elif outcome == WorkerStatus.FAILED:
                self._record_failure(
                    task_id, "agent_failed", monitor.output_tail(handle) or "worker reported failure",
                    wave=wave, workspace_ref=ref, learnings=notes,
                )
            elif outcome == WorkerStatus.CRASHED:
                rc = handle.process.returncode
                tail = monitor.output_tail(handle, lines=5)
                message = f"exited with code {rc} without a completion token"
                self._record_failure(
                    task_id, "crash", f"{message}\n{tail}" if tail else message,
                    wave=wave, workspace_ref=ref, learnings=notes,
                )
            else:
                await self._on_success(handle, wave=wave, workspace_ref=ref, learnings=notes)
        finally:
            self._base_revision.pop(task_id, None)
            if isolated:
                self.workspaces.remove(task_id)

    async def _on_success(
        self,
        handle: WorkerHandle,
        *,
        wave: int,
        workspace_ref: str | None,
        learnings: str,
    ) -> None:
        task_id = handle.task_id
        if self.config.gates:
            gate = await run_gates(
                self.config.gates, handle.workspace, timeout=self.config.worker.timeout_seconds
            )
            if gate is not None:
                tail = "\n".join(gate.output.splitlines()[-5:])
                self._record_failure(
                    task_id, "quality_gate", f"{gate.command!r} exited {gate.exit_code}\n{tail}".strip(),
                    wave=wave, workspace_ref=workspace_ref, learnings=learnings,
                )
                return

        if workspace_ref is None:
            files = files_changed_since(self.repo_root, self._base_revision.get(task_id, "HEAD"))
        else:
            try:
                merge = self.merger.integrate(handle.workspace, task_id)
            except MergeError as exc:
                self._record_failure(
                    task_id, "merge", str(exc), wave=wave, workspace_ref=workspace_ref, learnings=learnings
                )
                return
            if not merge.ok:
                self._record_failure(
                    task_id, "merge_conflict", merge.message,
                    wave=wave, workspace_ref=workspace_ref, learnings=learnings,
                )
                return
            if not merge.stash_restored:
                self._event("merge.stash_kept", {"task_id": task_id})
            files = merge.files_touched

        self._record_pass(task_id, wave=wave, workspace_ref=workspace_ref, files=files, learnings=learnings)

    def _record_pass(
        self,
        task_id: str,
        *,
        wave: int,
        workspace_ref: str | None,
        files: list[str],
        learnings: str,
    ) -> None:
        def _pass(plan: PlanState) -> None:
            task = plan.task(task_id)
            task.status = "passed"
            task.workspace_ref = None
            task.base_revision = None
            if workspace_ref is not None and plan.execution is not None:
                plan.execution.discard_workspace(workspace_ref)
            plan.progress.append(
                ProgressEntry(
                    task_id=task_id,
                    outcome="passed",
                    wave=wave,
                    files_touched=tuple(files),
                    learnings=learnings,
                )
            )

        self.store.write(_pass)
        self.log.info("task_passed", task_id=task_id, wave=wave, files=len(files))
        self._event("task.passed", {"task_id": task_id, "wave": wave, "files_touched": files})

    def _record_failure(
        self,
        task_id: str,
        phase: str,
        message: str,
        *,
        wave: int,
        workspace_ref: str | None = None,
        learnings: str = "",
    ) -> None:
        """attempts += 1; blocked once the budget is spent, otherwise failed (retryable)."""
        final_status = "failed"

        def _fail(plan: PlanState) -> None:
            nonlocal final_status
            task = plan.task(task_id)
            task.retries.attempts += 1
            task.retries.failure_log.append(FailureRecord(phase=phase, timestamp=utc_now_iso(), message=message))
            task.status = "blocked" if task.retries.exhausted else "failed"
            final_status = task.status
            task.workspace_ref = None
            task.base_revision = None
            if workspace_ref is not None and plan.execution is not None:
                plan.execution.discard_workspace(workspace_ref)
            plan.progress.append(ProgressEntry(task_id=task_id, outcome=phase, wave=wave, learnings=learnings))

        self.store.write(_fail)
        self.log.warning("task_failed", task_id=task_id, wave=wave, phase=phase, status=final_status)
        self._event("task.failed", {"task_id": task_id, "wave": wave, "phase": phase, "status": final_status})

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def _shutdown(self) -> None:
        """Stop any worker still running when the loop exits abnormally.

        Their workspaces stay listed in ``activeWorkspaces`` so the next run
        recovers them.
        """
        for handle in list(self.active.values()):
            await monitor.kill(handle)
        self.active.clear()

    def _event(self, event_type: str, payload: dict[str, Any]) -> None:
        item = {
            "timestamp": utc_now_iso(),
            "type": event_type,
            "run_id": self.run_id,
            "payload": payload,
        }
        append_jsonl(self.events_path, item)
