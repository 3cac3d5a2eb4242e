"""Git worktree lifecycle for isolated task workspaces."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path

from quantumloop.errors import InvalidTaskIdError, WorkspaceError

log = logging.getLogger(__name__)

TASK_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
BRANCH_PREFIX = "ql-wt/"


def validate_task_id(task_id: str) -> str:
    if not isinstance(task_id, str) or not TASK_ID_RE.match(task_id):
        raise InvalidTaskIdError(str(task_id))
    return task_id


def _git(repo_root: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=repo_root,
        check=True,
        capture_output=True,
        text=True,
    )


def _prune_worktrees(repo_root: Path) -> None:
    """Run ``git worktree prune`` to clean up stale bookkeeping entries."""
    try:
        _git(repo_root, "worktree", "prune")
    except subprocess.CalledProcessError as exc:
        log.warning("git worktree prune failed: %s", exc.stderr)


def _delete_branch(repo_root: Path, branch_name: str) -> None:
    try:
        _git(repo_root, "branch", "-D", branch_name)
    except subprocess.CalledProcessError:
        pass  # branch already gone


class WorkspaceManager:
    """Creates and removes one worktree per task under a reserved directory.

    Layout: ``<repo>/<dir>/<task_id>`` checked out on branch ``ql-wt/<task_id>``.
    """

    def __init__(
        self,
        repo_root: str | Path,
        *,
        dir_name: str = ".ql-wt",
        capture_file: str = ".ql-agent-output.txt",
        log_dir: str = ".quantum-logs",
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.dir_name = dir_name
        self.root = self.repo_root / dir_name
        self.capture_file = capture_file
        self.log_dir = log_dir

    # -- naming ------------------------------------------------------

    def branch_for(self, task_id: str) -> str:
        return BRANCH_PREFIX + validate_task_id(task_id)

    def path_for(self, task_id: str) -> Path:
        return self.root / validate_task_id(task_id)

    def relative_ref(self, task_id: str) -> str:
        return f"{self.dir_name}/{validate_task_id(task_id)}"

    def task_id_from_ref(self, ref: str) -> str:
        return Path(ref).name

    # -- repository queries -----------------------------------------

    def head_revision(self) -> str:
        try:
            return _git(self.repo_root, "rev-parse", "HEAD").stdout.strip()
        except subprocess.CalledProcessError as exc:
            raise WorkspaceError(f"Cannot resolve HEAD in {self.repo_root}: {exc.stderr.strip()}") from exc

    def branch_tip(self, task_id: str) -> str | None:
        try:
            out = _git(self.repo_root, "rev-parse", "--verify", "--quiet", f"refs/heads/{self.branch_for(task_id)}")
        except subprocess.CalledProcessError:
            return None
        return out.stdout.strip() or None

    def is_ancestor_of_head(self, revision: str) -> bool:
        result = subprocess.run(
            ["git", "merge-base", "--is-ancestor", revision, "HEAD"],
            cwd=self.repo_root,
            capture_output=True,
            text=True,
        )
        return result.returncode == 0

    # -- lifecycle ---------------------------------------------------

    def ensure_layout(self) -> None:
        """Create the reserved dir and keep it (plus capture/log files) out of version control."""
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            git_dir = _git(self.repo_root, "rev-parse", "--git-common-dir").stdout.strip()
        except subprocess.CalledProcessError as exc:
            raise WorkspaceError(f"{self.repo_root} is not a git repository: {exc.stderr.strip()}") from exc
        exclude = (self.repo_root / git_dir / "info" / "exclude").resolve()
        exclude.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude.read_text(encoding="utf-8").splitlines() if exclude.exists() else []
        wanted = [f"/{self.dir_name}/", self.capture_file, f"/{self.log_dir}/"]
        missing = [line for line in wanted if line not in existing]
        if missing:
            with exclude.open("a", encoding="utf-8") as handle:
                if existing and existing[-1] != "":
                    handle.write("\n")
                handle.write("\n".join(missing) + "\n")

    def create(self, task_id: str, base_revision: str = "HEAD") -> Path:
        path = self.path_for(task_id)
        branch = self.branch_for(task_id)

        if path.exists() or self.branch_tip(task_id) is not None:
            log.info("Removing stale workspace for %s before re-creating it", task_id)
            self.remove(task_id)
        self.root.mkdir(parents=True, exist_ok=True)
        _prune_worktrees(self.repo_root)

        try:
            _git(self.repo_root, "worktree", "add", "-b", branch, str(path), base_revision)
        except subprocess.CalledProcessError as exc:
            # Leave nothing half-created behind.
            self.remove(task_id)
            raise WorkspaceError(
                f"git worktree add failed for {task_id}: {exc.stderr.strip()}", task_id=task_id
            ) from exc
        log.debug("Created workspace %s on %s", path, branch)
        return path

    def remove(self, task_id: str) -> None:
        """Remove the workspace and its branch. A missing workspace is a no-op."""
        path = self.path_for(task_id)
        if path.exists():
            try:
                _git(self.repo_root, "worktree", "remove", "--force", str(path))
            except subprocess.CalledProcessError as exc:
                log.warning("git worktree remove %s failed: %s", task_id, exc.stderr.strip())
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
        _delete_branch(self.repo_root, self.branch_for(task_id))
        _prune_worktrees(self.repo_root)

    def list(self) -> set[str]:
        if not self.root.is_dir():
            return set()
        return {child.name for child in self.root.iterdir() if child.is_dir()}
