"""Tests for quantumloop.coordinator.state_store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from quantumloop.coordinator.state_store import StateStore
from quantumloop.errors import StateStoreError
from quantumloop.protocol.io import tmp_path_for
from quantumloop.protocol.models import PlanState
from tests.helpers import make_task, write_plan


def test_read_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(StateStoreError, match="not found"):
        StateStore(tmp_path / "quantum.json").read()


def test_read_corrupt_file_raises(tmp_path: Path) -> None:
    path = tmp_path / "quantum.json"
    path.write_text('{"tasks": [', encoding="utf-8")
    with pytest.raises(StateStoreError):
        StateStore(path).read()


def test_constructor_discards_stale_tmp(plan_path: Path) -> None:
    write_plan(plan_path, [make_task("a")])
    tmp_path_for(plan_path).write_text("{garbage", encoding="utf-8")
    StateStore(plan_path)
    assert not tmp_path_for(plan_path).exists()


def test_snapshots_are_independent(plan_path: Path) -> None:
    write_plan(plan_path, [make_task("a")])
    store = StateStore(plan_path)
    first = store.read()
    first.task("a").status = "passed"
    assert store.read().task("a").status == "pending"


def test_write_applies_transform_to_fresh_snapshot(plan_path: Path) -> None:
    write_plan(plan_path, [make_task("a"), make_task("b")], project="demo")
    store = StateStore(plan_path)
    stale = store.read()

    def _mark(plan: PlanState) -> None:
        plan.task("a").status = "passed"

    store.write(_mark)
    stale.task("b").status = "failed"  # never persisted

    def _mark_b(plan: PlanState) -> PlanState:
        plan.task("b").status = "in_progress"
        return plan

    updated = store.write(_mark_b)
    assert updated.task("a").status == "passed"
    raw = json.loads(plan_path.read_text(encoding="utf-8"))
    assert [t["status"] for t in raw["tasks"]] == ["passed", "in_progress"]
    assert raw["project"] == "demo"
    assert not tmp_path_for(plan_path).exists()
    assert store.lock_path.exists()


def test_failed_transform_leaves_file_untouched(plan_path: Path) -> None:
    write_plan(plan_path, [make_task("a")])
    before = plan_path.read_text(encoding="utf-8")
    store = StateStore(plan_path)

    def _boom(plan: PlanState) -> None:
        plan.task("a").status = "passed"
        raise RuntimeError("transform failed")

    with pytest.raises(RuntimeError):
        store.write(_boom)
    assert plan_path.read_text(encoding="utf-8") == before
