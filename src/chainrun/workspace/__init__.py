"""Git worktree lifecycle."""

from chainrun.workspace.worktrees import RebaseResult, Workspace, WorktreeManager

__all__ = [
    "RebaseResult",
    "Workspace",
    "WorktreeManager",
]
