"""Git-related utilities: status parsing, worktree listing and thin command wrappers."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from chainrun.core.errors import GitError

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 60

TRUNK_BRANCHES = ("main", "master")

# feature/123-some-title, issue-123, 123-some-title
_ISSUE_BRANCH_PATTERNS = (
    re.compile(r"^feature/(\d+)(?:-|$)"),
    re.compile(r"^issue-(\d+)$"),
    re.compile(r"^(\d+)-"),
)


@dataclass
class GitStatusResult:
    """Result of parsing git status output.

    Attributes:
        untracked: Untracked file paths
        modified: Tracked file paths with staged or unstaged changes
    """

    untracked: list[str]
    modified: list[str]

    @property
    def is_clean(self) -> bool:
        """Check if working directory is clean (no tracked changes)."""
        return len(self.modified) == 0

    @property
    def has_changes(self) -> bool:
        """Tracked or untracked changes that a commit would pick up."""
        return bool(self.modified or self.untracked)


@dataclass
class WorktreeInfo:
    """One entry of `git worktree list --porcelain`."""

    path: Path
    head: str | None = None
    branch: str | None = None
    detached: bool = False
    bare: bool = False


def parse_git_status_output(output: str) -> GitStatusResult:
    """Parse git status --porcelain output into structured result.

    Each line has a two-character XY prefix followed by a space and the
    path; ``??`` marks untracked files, anything else is a tracked change.
    Renames use ``old -> new`` and are reported under the new path.

    Args:
        output: Raw output from `git status --porcelain`

    Returns:
        GitStatusResult with categorized file lists
    """
    untracked: list[str] = []
    modified: list[str] = []

    for line in output.splitlines():
        if len(line) < 4:
            continue
        prefix, file_path = line[:2], line[3:]
        if " -> " in file_path:
            file_path = file_path.split(" -> ", 1)[1]
        if prefix == "??":
            untracked.append(file_path)
        else:
            modified.append(file_path)

    return GitStatusResult(untracked=untracked, modified=modified)


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain` output.

    Entries are separated by blank lines; the ``branch`` line carries a
    full ref (``refs/heads/<name>``) which is shortened here.

    Args:
        output: Raw porcelain output

    Returns:
        One WorktreeInfo per worktree, main worktree first
    """
    worktrees: list[WorktreeInfo] = []
    current: WorktreeInfo | None = None

    for line in output.splitlines():
        if not line.strip():
            current = None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            current = WorktreeInfo(path=Path(value))
            worktrees.append(current)
        elif current is None:
            continue
        elif key == "HEAD":
            current.head = value
        elif key == "branch":
            current.branch = value.removeprefix("refs/heads/")
        elif key == "detached":
            current.detached = True
        elif key == "bare":
            current.bare = True

    return worktrees


def issue_id_from_branch(branch: str) -> str | None:
    """Extract an issue id from a branch name, or None if it doesn't look like one."""
    if branch in TRUNK_BRANCHES:
        return None
    for pattern in _ISSUE_BRANCH_PATTERNS:
        match = pattern.match(branch)
        if match:
            return match.group(1)
    return None


def slugify(title: str, max_length: int = 50) -> str:
    """Turn an issue title into a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:max_length].rstrip("-")


# =============================================================================
# Command wrappers
# =============================================================================


def run_git(
    args: list[str],
    cwd: Path,
    check: bool = True,
    timeout: int = GIT_TIMEOUT,
) -> subprocess.CompletedProcess[str]:
    """Run a git command.

    Args:
        args: Arguments after ``git``
        cwd: Working directory
        check: Raise GitError on a non-zero exit code
        timeout: Seconds before the command is abandoned

    Returns:
        The completed process

    Raises:
        GitError: If git is missing, times out, or (with check) fails.
    """
    logger.debug(f"git {' '.join(args)} (cwd={cwd})")
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise GitError(args, -1, "git executable not found") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(args, -1, f"timed out after {timeout}s") from e

    if check and result.returncode != 0:
        raise GitError(args, result.returncode, result.stderr or result.stdout)
    return result


def get_repo_root(cwd: Path | None = None) -> Path:
    """Top-level directory of the repository containing cwd."""
    result = run_git(["rev-parse", "--show-toplevel"], cwd or Path.cwd())
    return Path(result.stdout.strip())


def get_git_status(cwd: Path) -> GitStatusResult | None:
    """Get the status of a working tree, or None if git fails."""
    try:
        result = run_git(["status", "--porcelain"], cwd, check=False, timeout=10)
    except GitError:
        return None
    if result.returncode != 0:
        return None
    return parse_git_status_output(result.stdout)


def list_worktrees(repo: Path) -> list[WorktreeInfo]:
    result = run_git(["worktree", "list", "--porcelain"], repo)
    return parse_worktree_list(result.stdout)


def rev_parse(ref: str, cwd: Path) -> str | None:
    """Resolve a ref to a commit id, or None if it doesn't exist."""
    result = run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def head_commit(cwd: Path) -> str | None:
    try:
        return rev_parse("HEAD", cwd)
    except GitError:
        return None


def branch_exists(branch: str, cwd: Path) -> bool:
    return rev_parse(f"refs/heads/{branch}", cwd) is not None


def fetch(remote: str, ref: str, cwd: Path) -> bool:
    """Fetch one ref from a remote; failures are logged, not raised."""
    result = run_git(["fetch", remote, ref], cwd, check=False)
    if result.returncode != 0:
        logger.warning(f"git fetch {remote} {ref} failed: {result.stderr.strip()}")
        return False
    return True


def is_ancestor(ancestor: str, descendant: str, cwd: Path) -> bool:
    """Check whether ``ancestor`` is reachable from ``descendant``."""
    result = run_git(["merge-base", "--is-ancestor", ancestor, descendant], cwd, check=False)
    return result.returncode == 0


def count_commits(since: str, until: str, cwd: Path) -> int:
    """Number of commits reachable from ``until`` but not from ``since``."""
    result = run_git(["rev-list", "--count", f"{since}..{until}"], cwd, check=False)
    if result.returncode != 0:
        return 0
    try:
        return int(result.stdout.strip())
    except ValueError:
        return 0


def commits_behind(base: str, cwd: Path) -> int:
    """Number of commits on base not contained in HEAD."""
    return count_commits("HEAD", base, cwd)


def branch_start(branch: str, cwd: Path) -> str | None:
    """Commit a branch was created at, from the oldest entry of its reflog."""
    result = run_git(["reflog", "show", "--format=%H", f"refs/heads/{branch}"], cwd, check=False)
    if result.returncode != 0:
        return None
    entries = result.stdout.split()
    return entries[-1] if entries else None


def commit_all(message: str, cwd: Path) -> str | None:
    """Stage everything and commit.

    Returns:
        The new commit id, or None if there was nothing to commit.
    """
    status = get_git_status(cwd)
    if status is None or not status.has_changes:
        return None
    run_git(["add", "-A"], cwd)
    run_git(["commit", "-m", message], cwd)
    return head_commit(cwd)


def create_tag(name: str, ref: str, cwd: Path) -> None:
    """Create or move a lightweight tag."""
    run_git(["tag", "-f", name, ref], cwd)


def push_branch(remote: str, branch: str, cwd: Path) -> None:
    run_git(["push", "-u", remote, branch], cwd, timeout=120)
