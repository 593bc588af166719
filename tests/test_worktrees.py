"""Worktree lifecycle tests against a scratch repository."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import git

from chainrun.config import WorktreeConfig
from chainrun.core.errors import TeardownRefusedError, WorkspaceError
from chainrun.workspace.worktrees import WorktreeManager


@pytest.fixture
def manager(git_repo: Path, tmp_path: Path) -> WorktreeManager:
    return WorktreeManager(git_repo, WorktreeConfig(root=tmp_path / "wt"))


def commit_file(path: Path, name: str, content: str, message: str) -> str:
    (path / name).write_text(content)
    git(path, "add", name)
    git(path, "commit", "-q", "-m", message)
    return git(path, "rev-parse", "HEAD")


class TestNaming:
    """Tests for branch naming and default locations."""

    def test_branch_name(self, tmp_path: Path) -> None:
        manager = WorktreeManager(tmp_path)
        assert manager.branch_name("12", "Add login page") == "feature/12-add-login-page"
        assert manager.branch_name("12", "") == "feature/12"

    def test_custom_prefix(self, tmp_path: Path) -> None:
        manager = WorktreeManager(tmp_path, WorktreeConfig(branch_prefix="work"))
        assert manager.branch_name("3", "x") == "work/3-x"

    def test_default_root_is_next_to_repo(self, tmp_path: Path) -> None:
        assert WorktreeManager(tmp_path / "repo").worktrees_root == tmp_path / "worktrees"


class TestEnsure:
    """Tests for creating and reusing workspaces."""

    def test_creates_branch_from_base(self, manager: WorktreeManager, git_repo: Path) -> None:
        workspace = manager.ensure("12", "Add login", "main")

        assert workspace.path.is_dir()
        assert workspace.branch == "feature/12-add-login"
        assert workspace.base_ref == "main"
        assert workspace.base_commit == git(git_repo, "rev-parse", "main")
        assert not workspace.reused
        assert git(workspace.path, "rev-parse", "--abbrev-ref", "HEAD") == "feature/12-add-login"

    def test_reuse_keeps_uncommitted_work(self, manager: WorktreeManager) -> None:
        """An existing worktree is never recreated."""
        first = manager.ensure("12", "Add login", "main")
        (first.path / "draft.txt").write_text("work in progress\n")

        again = manager.ensure("12", "Add login", "main")

        assert again.reused
        assert again.path == first.path
        assert again.has_uncommitted_changes
        assert (again.path / "draft.txt").read_text() == "work in progress\n"

    def test_reuse_finds_worktree_after_title_change(self, manager: WorktreeManager) -> None:
        first = manager.ensure("12", "Add login", "main")
        again = manager.ensure("12", "Add login page (renamed)", "main")
        assert again.reused
        assert again.branch == first.branch

    def test_reuse_reports_staleness(self, manager: WorktreeManager, git_repo: Path) -> None:
        manager.ensure("12", "Add login", "main")
        commit_file(git_repo, "trunk.txt", "moved on\n", "trunk moves")

        again = manager.ensure("12", "Add login", "main")

        assert again.commits_behind == 1
        assert again.rebase is None

    def test_existing_branch_without_worktree(self, manager: WorktreeManager, git_repo: Path) -> None:
        git(git_repo, "branch", "feature/5-old")
        workspace = manager.ensure("5", "Old", "main")
        assert workspace.branch == "feature/5-old"
        assert workspace.path.is_dir()

    def test_unknown_base(self, manager: WorktreeManager) -> None:
        with pytest.raises(WorkspaceError, match="not found"):
            manager.ensure("12", "Add login", "no-such-branch")


class TestDiscovery:
    """Tests for listing and finding worktrees."""

    def test_list_all_main_first(self, manager: WorktreeManager, git_repo: Path) -> None:
        workspace = manager.ensure("12", "Add login", "main")
        worktrees = manager.list_all()
        assert worktrees[0].path.resolve() == git_repo.resolve()
        assert worktrees[0].branch == "main"
        assert worktrees[1].path.resolve() == workspace.path.resolve()

    def test_find_by_issue(self, manager: WorktreeManager) -> None:
        manager.ensure("12", "Add login", "main")
        found = manager.find_by_issue("12")
        assert found is not None
        assert found.branch == "feature/12-add-login"
        assert manager.find_by_issue("13") is None


class TestTeardown:
    """Tests for the merge-confirm, remove-worktree, delete-branch order."""

    def test_refuses_unmerged_branch(self, manager: WorktreeManager) -> None:
        workspace = manager.ensure("12", "Add login", "main")
        commit_file(workspace.path, "login.py", "print('hi')\n", "login")

        with pytest.raises(TeardownRefusedError):
            manager.teardown("12", workspace.branch, "main")
        assert workspace.path.is_dir()
        assert manager.find_by_branch(workspace.branch) is not None

    def test_removes_after_merge(self, manager: WorktreeManager, git_repo: Path) -> None:
        workspace = manager.ensure("12", "Add login", "main")
        commit_file(workspace.path, "login.py", "print('hi')\n", "login")
        git(git_repo, "merge", "-q", "--ff-only", workspace.branch)

        assert manager.is_merged(workspace.branch, "main")
        manager.teardown("12", workspace.branch, "main")

        assert not workspace.path.exists()
        assert git(git_repo, "branch", "--list", workspace.branch) == ""

    def test_tracker_confirmation_overrides_ancestry(self, manager: WorktreeManager, git_repo: Path) -> None:
        """A squash-merged PR is confirmed by the tracker, not by ancestry."""
        workspace = manager.ensure("12", "Add login", "main")
        commit_file(workspace.path, "login.py", "print('hi')\n", "login")

        manager.teardown("12", workspace.branch, "main", merged_by_tracker=True)

        assert not workspace.path.exists()
        assert git(git_repo, "branch", "--list", workspace.branch) == ""

    def test_is_merged_unknown_branch(self, manager: WorktreeManager) -> None:
        assert manager.is_merged("feature/404", "main") is False

    def test_branch_without_commits_is_not_merged(self, manager: WorktreeManager) -> None:
        """Its tip is an ancestor of trunk, but no work has landed."""
        workspace = manager.ensure("12", "Add login", "main")

        assert manager.is_merged(workspace.branch, "main") is False
        assert manager.is_merged(workspace.branch, "main", workspace.base_commit) is False
        with pytest.raises(TeardownRefusedError):
            manager.teardown("12", workspace.branch, "main", base_commit=workspace.base_commit)
        assert workspace.path.is_dir()

    def test_uncommitted_changes_block_merge(self, manager: WorktreeManager, git_repo: Path) -> None:
        workspace = manager.ensure("12", "Add login", "main")
        commit_file(workspace.path, "login.py", "print('hi')\n", "login")
        git(git_repo, "merge", "-q", "--ff-only", workspace.branch)
        (workspace.path / "later.py").write_text("print('not committed')\n")

        assert manager.is_merged(workspace.branch, "main", workspace.base_commit) is False
        with pytest.raises(TeardownRefusedError):
            manager.teardown("12", workspace.branch, "main", base_commit=workspace.base_commit)
        assert (workspace.path / "later.py").exists()

    def test_recorded_base_limits_own_commits(self, manager: WorktreeManager, git_repo: Path) -> None:
        """Commits up to the recorded base are not the branch's own work."""
        workspace = manager.ensure("12", "Add login", "main")
        tip = commit_file(workspace.path, "login.py", "print('hi')\n", "login")
        git(git_repo, "merge", "-q", "--ff-only", workspace.branch)

        assert manager.is_merged(workspace.branch, "main", workspace.base_commit) is True
        assert manager.is_merged(workspace.branch, "main", tip) is False
