"""Per-task git worktree isolation."""
