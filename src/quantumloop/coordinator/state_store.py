"""Single-owner store for the plan document."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable

from quantumloop.errors import StateStoreError
from quantumloop.protocol.io import discard_stale_tmp, write_json_atomic
from quantumloop.protocol.locks import locked_file
from quantumloop.protocol.models import PlanState

log = logging.getLogger(__name__)

Transform = Callable[[PlanState], "PlanState | None"]


class StateStore:
    """Reads snapshots of the plan document and applies atomic transforms.

    Only the orchestrator process writes. Every ``write`` re-reads the file,
    applies the transform to that fresh snapshot and swaps the result into
    place with a rename, so readers never see a partial document.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        if discard_stale_tmp(self.path):
            log.warning("Discarded stale %s.tmp left by an interrupted write", self.path.name)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> PlanState:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise StateStoreError(f"Plan file not found: {self.path}", path=str(self.path)) from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise StateStoreError(f"Cannot read plan file {self.path}: {exc}", path=str(self.path)) from exc
        return PlanState.from_dict(raw)

    def write(self, transform: Transform) -> PlanState:
        with locked_file(self.lock_path):
            snapshot = self.read()
            result = transform(snapshot)
            updated = snapshot if result is None else result
            try:
                write_json_atomic(self.path, updated.to_dict())
            except OSError as exc:
                raise StateStoreError(f"Cannot write plan file {self.path}: {exc}", path=str(self.path)) from exc
        return updated
