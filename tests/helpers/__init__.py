"""Test helpers for quantumloop."""

from tests.helpers.repo import git, make_task, requires_git, write_plan

__all__ = ["git", "make_task", "requires_git", "write_plan"]
