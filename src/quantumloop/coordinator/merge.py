"""Serialized integration of finished workspaces into the base branch."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from quantumloop.errors import MergeError
from quantumloop.protocol.locks import locked_file
from quantumloop.workspace.worktree import WorkspaceManager

log = logging.getLogger(__name__)


class MergeStatus(StrEnum):
    OK = "ok"
    CONFLICT = "conflict"


@dataclass(slots=True)
class MergeResult:
    status: MergeStatus
    task_id: str
    files_touched: list[str] = field(default_factory=list)
    message: str = ""
    stashed: bool = False
    stash_restored: bool = True

    @property
    def ok(self) -> bool:
        return self.status == MergeStatus.OK


def _run(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True)


def _checked(cwd: Path, *args: str) -> str:
    result = _run(cwd, *args)
    if result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, ["git", *args], result.stdout, result.stderr)
    return result.stdout


def files_changed_since(repo_root: Path, revision: str) -> list[str]:
    """Paths changed between *revision* and HEAD in *repo_root*."""
    result = _run(repo_root, "diff", "--name-only", f"{revision}..HEAD")
    if result.returncode != 0:
        return []
    return [line for line in result.stdout.splitlines() if line]


class MergeCoordinator:
    """Merges ``ql-wt/<id>`` branches into the base one at a time.

    The base working tree is never left dirty by a merge attempt: local
    edits are stashed first and restored after, and a failed merge is
    aborted back to the exact pre-attempt state.
    """

    def __init__(self, workspaces: WorkspaceManager, *, state_file: str | Path | None = None) -> None:
        self.workspaces = workspaces
        self.repo_root = workspaces.repo_root
        self.lock_path = workspaces.root / ".merge.lock"
        self._excludes = self._state_excludes(state_file)

    def _state_excludes(self, state_file: str | Path | None) -> list[str]:
        if state_file is None:
            return []
        path = Path(state_file).resolve()
        try:
            rel = path.relative_to(self.repo_root)
        except ValueError:
            return []
        base = rel.as_posix()
        return [f":(exclude){base}", f":(exclude){base}.lock", f":(exclude){base}.tmp"]

    # -- steps -------------------------------------------------------

    def commit_pending(self, workspace: Path, task_id: str) -> bool:
        """Commit whatever the worker left uncommitted. Returns True if a commit was made."""
        dirty = _run(workspace, "status", "--porcelain").stdout.strip()
        if not dirty:
            return False
        try:
            _checked(workspace, "add", "-A")
            _checked(workspace, "commit", "--no-verify", "-m", f"ql: {task_id}")
        except subprocess.CalledProcessError as exc:
            raise MergeError(f"Cannot commit work left in {workspace}: {exc.stderr.strip()}", task_id=task_id) from exc
        return True

    def files_touched(self, task_id: str) -> list[str]:
        branch = self.workspaces.branch_for(task_id)
        result = _run(self.repo_root, "diff", "--name-only", f"HEAD...{branch}")
        if result.returncode != 0:
            log.warning("Cannot list files touched by %s: %s", branch, result.stderr.strip())
            return []
        return [line for line in result.stdout.splitlines() if line]

    def _base_is_dirty(self) -> bool:
        out = _run(self.repo_root, "status", "--porcelain", "--", ".", *self._excludes).stdout
        return bool(out.strip())

    def _stash_ref(self) -> str | None:
        result = _run(self.repo_root, "rev-parse", "-q", "--verify", "refs/stash")
        return result.stdout.strip() or None

    def _stash(self, task_id: str) -> bool:
        if not self._base_is_dirty():
            return False
        before = self._stash_ref()
        result = _run(
            self.repo_root,
            "stash", "push", "--include-untracked",
            "-m", f"ql-auto-stash-before-merge-{task_id}",
            "--", ".", *self._excludes,
        )
        if result.returncode != 0:
            raise MergeError(f"git stash failed before merging {task_id}: {result.stderr.strip()}", task_id=task_id)
        if self._stash_ref() == before:
            raise MergeError(f"git stash reported success but created no stash for {task_id}", task_id=task_id)
        return True

    def _unstash(self, task_id: str) -> bool:
        result = _run(self.repo_root, "stash", "pop")
        if result.returncode == 0:
            return True
        # Keep the stash entry; undo any half-applied pop.
        _run(self.repo_root, "reset", "--merge")
        log.error(
            "Could not restore base changes stashed before merging %s; they remain in "
            "stash@{0} ('ql-auto-stash-before-merge-%s'): %s",
            task_id, task_id, result.stderr.strip(),
        )
        return False

    def _abort(self) -> None:
        if _run(self.repo_root, "merge", "--abort").returncode != 0:
            _run(self.repo_root, "reset", "--merge")

    # -- entry point -------------------------------------------------

    def integrate(self, workspace: str | Path, task_id: str) -> MergeResult:
        ws = Path(workspace)
        branch = self.workspaces.branch_for(task_id)
        self.commit_pending(ws, task_id)

        with locked_file(self.lock_path):
            files = self.files_touched(task_id)
            stashed = self._stash(task_id)
            try:
                merge = _run(self.repo_root, "merge", "--no-edit", branch)
                if merge.returncode == 0:
                    result = MergeResult(
                        status=MergeStatus.OK,
                        task_id=task_id,
                        files_touched=files,
                        message=merge.stdout.strip(),
                        stashed=stashed,
                    )
                else:
                    self._abort()
                    lines = (merge.stdout + merge.stderr).strip().splitlines()
                    conflicts = [line for line in lines if line.startswith("CONFLICT")]
                    result = MergeResult(
                        status=MergeStatus.CONFLICT,
                        task_id=task_id,
                        files_touched=files,
                        message="; ".join(conflicts) or (lines[-1] if lines else "merge failed"),
                        stashed=stashed,
                    )
            finally:
                restored = self._unstash(task_id) if stashed else True
        result.stash_restored = restored
        log.info("Merge of %s: %s", branch, result.status)
        return result
