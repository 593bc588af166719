"""Utility modules for chainrun."""

from chainrun.utils.git import (
    GitStatusResult,
    WorktreeInfo,
    get_git_status,
    issue_id_from_branch,
    parse_git_status_output,
    parse_worktree_list,
)
from chainrun.utils.locking import edit_lock

__all__ = [
    "GitStatusResult",
    "WorktreeInfo",
    "edit_lock",
    "get_git_status",
    "issue_id_from_branch",
    "parse_git_status_output",
    "parse_worktree_list",
]
