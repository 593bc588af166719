"""Git worktree lifecycle for issue workspaces.

Each issue gets its own branch (``feature/<id>-<slug>``) checked out in a
separate worktree next to the main repository, so phases for different
issues never share mutable files.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from chainrun.config import WorktreeConfig
from chainrun.core.errors import GitError, TeardownRefusedError, WorkspaceError
from chainrun.utils.git import (
    WorktreeInfo,
    branch_exists,
    branch_start,
    commit_all,
    commits_behind,
    count_commits,
    create_tag,
    fetch,
    get_git_status,
    is_ancestor,
    issue_id_from_branch,
    list_worktrees,
    rev_parse,
    run_git,
    slugify,
)

logger = logging.getLogger(__name__)

_CONFLICT_MARKERS = ("CONFLICT", "could not apply")


@dataclass
class Workspace:
    """A materialized (or reused) issue workspace."""

    issue_id: str
    path: Path
    branch: str
    base_ref: str
    base_commit: str | None
    reused: bool = False
    commits_behind: int = 0
    has_uncommitted_changes: bool = False
    rebase: RebaseResult | None = None


@dataclass
class RebaseResult:
    """Outcome of rebasing a workspace; on failure the workspace is unchanged."""

    success: bool
    conflict: bool = False
    new_base: str | None = None
    message: str = ""


class WorktreeManager:
    """Creates, reuses, rebases and removes issue worktrees."""

    def __init__(self, repo_root: Path, config: WorktreeConfig | None = None) -> None:
        self.repo_root = repo_root
        self.config = config or WorktreeConfig()

    @property
    def worktrees_root(self) -> Path:
        return self.config.root or self.repo_root.parent / "worktrees"

    def branch_name(self, issue_id: str, title: str) -> str:
        slug = slugify(title)
        suffix = f"{issue_id}-{slug}" if slug else issue_id
        return f"{self.config.branch_prefix}/{suffix}"

    # =========================================================================
    # Discovery
    # =========================================================================

    def list_all(self) -> list[WorktreeInfo]:
        return list_worktrees(self.repo_root)

    def find_by_branch(self, branch: str) -> WorktreeInfo | None:
        for worktree in self.list_all():
            if worktree.branch == branch:
                return worktree
        return None

    def find_by_issue(self, issue_id: str) -> WorktreeInfo | None:
        """Any non-main worktree whose branch encodes this issue id."""
        for worktree in self.list_all()[1:]:
            if worktree.branch and issue_id_from_branch(worktree.branch) == issue_id:
                return worktree
        return None

    def _has_remote(self) -> bool:
        result = run_git(["remote"], self.repo_root, check=False)
        return self.config.remote in result.stdout.split()

    def resolve_base(self, base: str) -> str:
        """Pick the ref a new branch should start from.

        Local non-trunk branches (chain predecessors) are used as-is. Trunk and
        remote-style refs are fetched first and the remote-tracking ref is
        preferred when it exists.

        Raises:
            WorkspaceError: If no usable ref exists.
        """
        remote = self.config.remote
        name = base.removeprefix(f"{remote}/")

        # Chain predecessors, checkpoint tags and raw commits
        if base == name and name != self.config.trunk and rev_parse(base, self.repo_root):
            return base

        if self._has_remote():
            logger.debug(f"Fetching {remote} {name}")
            if fetch(remote, name, self.repo_root) and rev_parse(f"{remote}/{name}", self.repo_root):
                return f"{remote}/{name}"
            logger.warning(f"Could not fetch {remote}/{name}, using local state")

        if rev_parse(name, self.repo_root):
            return name
        raise WorkspaceError(f"Base ref '{base}' not found")

    def freshness(self, path: Path, base_ref: str) -> tuple[int, bool]:
        """Commits the workspace is behind base, and whether it has uncommitted changes."""
        status = get_git_status(path)
        dirty = bool(status and status.has_changes)
        return commits_behind(base_ref, path), dirty

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def ensure(
        self,
        issue_id: str,
        title: str,
        base: str,
        chain_mode: bool = False,
        recorded_base: str | None = None,
    ) -> Workspace:
        """Reuse the issue's worktree if present, otherwise create it.

        An existing worktree is never recreated, so in-progress edits survive.
        In chain mode an existing branch is rebased onto ``base`` when it does
        not already contain it; ``recorded_base`` is the base commit stored
        when the workspace was created or last rebased.

        Raises:
            WorkspaceError: If the worktree cannot be created.
        """
        branch = self.branch_name(issue_id, title)
        existing = self.find_by_branch(branch) or self.find_by_issue(issue_id)

        if existing is not None:
            branch = existing.branch or branch
            base_ref = self.resolve_base(base)
            behind, dirty = self.freshness(existing.path, base_ref)
            logger.info(f"Reusing worktree for #{issue_id}: {existing.path}")
            if behind:
                logger.info(f"Worktree for #{issue_id} is {behind} commit(s) behind {base_ref}")
            workspace = Workspace(
                issue_id=issue_id,
                path=existing.path,
                branch=branch,
                base_ref=base_ref,
                base_commit=rev_parse(base_ref, self.repo_root),
                reused=True,
                commits_behind=behind,
                has_uncommitted_changes=dirty,
            )
            if chain_mode and behind:
                workspace.rebase = self.rebase_onto(existing.path, base_ref, recorded_base)
                if not workspace.rebase.success:
                    workspace.base_commit = None
            return workspace

        base_ref = self.resolve_base(base)
        path = self.worktrees_root / branch
        path.parent.mkdir(parents=True, exist_ok=True)

        rebase: RebaseResult | None = None
        try:
            if branch_exists(branch, self.repo_root):
                run_git(["worktree", "add", str(path), branch], self.repo_root)
                if chain_mode and not is_ancestor(base_ref, branch, self.repo_root):
                    rebase = self.rebase_onto(path, base_ref)
            else:
                run_git(["worktree", "add", str(path), "-b", branch, base_ref], self.repo_root)
        except GitError as e:
            raise WorkspaceError(f"Could not create worktree for #{issue_id}: {e}") from e

        logger.info(f"Created worktree for #{issue_id} at {path} from {base_ref}")
        base_commit = rev_parse(base_ref, self.repo_root)
        if rebase is not None and not rebase.success:
            base_commit = None
        return Workspace(
            issue_id=issue_id,
            path=path,
            branch=branch,
            base_ref=base_ref,
            base_commit=base_commit,
            rebase=rebase,
        )

    def rebase_onto(self, path: Path, new_base: str, old_base: str | None = None) -> RebaseResult:
        """Rebase a workspace onto ``new_base``.

        When the commit the workspace was last based on is known, only the
        commits after it are replayed (``rebase --onto``), so a rewritten
        predecessor branch does not drag its old commits along.

        Conflicts are never resolved here: the rebase is aborted and the
        workspace is left exactly as it was.
        """
        args = ["rebase", new_base]
        if old_base and is_ancestor(old_base, "HEAD", path):
            args = ["rebase", "--onto", new_base, old_base]
        result = run_git(args, path, check=False)
        if result.returncode == 0:
            logger.info(f"Rebased {path.name} onto {new_base}")
            return RebaseResult(success=True, new_base=new_base, message="rebased")

        output = f"{result.stdout}\n{result.stderr}".strip()
        conflict = any(marker in output for marker in _CONFLICT_MARKERS)
        run_git(["rebase", "--abort"], path, check=False)

        if conflict:
            logger.warning(f"Rebase conflict in {path} onto {new_base}; rebase aborted, workspace unchanged")
        else:
            logger.warning(f"Rebase of {path} onto {new_base} failed: {output[:300]}")
        return RebaseResult(success=False, conflict=conflict, new_base=new_base, message=output[:500])

    def checkpoint(self, path: Path, tag: str, message: str) -> str | None:
        """Commit pending changes and tag the branch tip.

        Returns:
            The tagged commit id.
        """
        commit_all(message, path)
        tip = rev_parse("HEAD", path)
        if tip is None:
            return None
        create_tag(tag, tip, self.repo_root)
        logger.info(f"Checkpoint {tag} -> {tip[:8]}")
        return tip

    def is_merged(self, branch: str, target: str, base_commit: str | None = None) -> bool:
        """Whether ``branch`` carries work of its own and all of it is in ``target``.

        A branch with no commits beyond the commit it started from is an
        ancestor of its base trivially, so it is never counted as merged.
        Neither is one whose worktree still holds uncommitted changes.

        Args:
            branch: Issue branch
            target: Branch the work must have landed on
            base_commit: Commit the branch was last based on; defaults to
                the commit the branch was created at
        """
        if not branch_exists(branch, self.repo_root):
            return False
        try:
            target_ref = self.resolve_base(target)
        except WorkspaceError:
            return False
        if not is_ancestor(f"refs/heads/{branch}", target_ref, self.repo_root):
            return False

        start = base_commit or branch_start(branch, self.repo_root)
        if start is None or count_commits(start, f"refs/heads/{branch}", self.repo_root) == 0:
            logger.debug(f"Branch {branch} has no commits of its own")
            return False
        worktree = self.find_by_branch(branch)
        if worktree is not None:
            status = get_git_status(worktree.path)
            if status is None or status.has_changes:
                logger.debug(f"Worktree of {branch} has uncommitted changes")
                return False
        return True

    def teardown(
        self,
        issue_id: str,
        branch: str,
        target: str,
        merged_by_tracker: bool = False,
        base_commit: str | None = None,
    ) -> None:
        """Remove an issue's worktree and branch after its merge is confirmed.

        Order is fixed: confirm merge, remove the worktree, then delete the
        branch.

        Raises:
            TeardownRefusedError: If the branch is not confirmed merged into ``target``.
        """
        if not (merged_by_tracker or self.is_merged(branch, target, base_commit)):
            raise TeardownRefusedError(f"Branch {branch} of #{issue_id} is not merged into {target}; refusing teardown")

        worktree = self.find_by_branch(branch)
        if worktree is not None:
            run_git(["worktree", "remove", str(worktree.path)], self.repo_root)
            logger.info(f"Removed worktree {worktree.path}")
        if branch_exists(branch, self.repo_root):
            run_git(["branch", "-D", branch], self.repo_root)
            logger.info(f"Deleted branch {branch}")
