"""Tests for git utility functions."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import git

from chainrun.core.errors import GitError
from chainrun.utils.git import (
    branch_start,
    commit_all,
    commits_behind,
    count_commits,
    get_git_status,
    issue_id_from_branch,
    parse_git_status_output,
    parse_worktree_list,
    rev_parse,
    run_git,
    slugify,
)


class TestParseGitStatusOutput:
    """Tests for parse_git_status_output function."""

    def test_empty_output_returns_clean(self) -> None:
        result = parse_git_status_output("")
        assert result.is_clean is True
        assert result.has_changes is False

    def test_untracked_files_only(self) -> None:
        """Untracked files don't make the tree dirty but a commit would pick them up."""
        result = parse_git_status_output("?? notes/test.md\n?? temp.txt\n")
        assert result.untracked == ["notes/test.md", "temp.txt"]
        assert result.is_clean is True
        assert result.has_changes is True

    def test_modified_staged_and_unstaged(self) -> None:
        result = parse_git_status_output(" M src/main.py\nM  docs/README.md\nA  new.py")
        assert result.modified == ["src/main.py", "docs/README.md", "new.py"]
        assert result.is_clean is False

    def test_rename_uses_new_path(self) -> None:
        result = parse_git_status_output("R  old.py -> new.py")
        assert result.modified == ["new.py"]


class TestParseWorktreeList:
    """Tests for parse_worktree_list function."""

    def test_porcelain_entries(self) -> None:
        output = (
            "worktree /repo\n"
            "HEAD 1111111111111111111111111111111111111111\n"
            "branch refs/heads/main\n"
            "\n"
            "worktree /worktrees/feature/12-login\n"
            "HEAD 2222222222222222222222222222222222222222\n"
            "branch refs/heads/feature/12-login\n"
            "\n"
            "worktree /worktrees/detached\n"
            "HEAD 3333333333333333333333333333333333333333\n"
            "detached\n"
        )
        worktrees = parse_worktree_list(output)

        assert [w.path for w in worktrees] == [Path("/repo"), Path("/worktrees/feature/12-login"), Path("/worktrees/detached")]
        assert worktrees[1].branch == "feature/12-login"
        assert worktrees[2].branch is None
        assert worktrees[2].detached is True

    def test_bare_repository(self) -> None:
        worktrees = parse_worktree_list("worktree /srv/repo.git\nbare\n")
        assert worktrees[0].bare is True

    def test_empty_output(self) -> None:
        assert parse_worktree_list("") == []


class TestBranchNames:
    """Tests for issue id extraction and slugs."""

    @pytest.mark.parametrize(
        ("branch", "expected"),
        [
            ("feature/123-add-login", "123"),
            ("feature/123", "123"),
            ("issue-45", "45"),
            ("67-quick-fix", "67"),
            ("main", None),
            ("master", None),
            ("feature/login", None),
            ("feature/123abc", None),
            ("release/1.2", None),
        ],
    )
    def test_issue_id_from_branch(self, branch: str, expected: str | None) -> None:
        assert issue_id_from_branch(branch) == expected

    def test_slugify(self) -> None:
        assert slugify("Add OAuth login (Google & GitHub)!") == "add-oauth-login-google-github"

    def test_slugify_truncates_without_trailing_dash(self) -> None:
        slug = slugify("word " * 20, max_length=12)
        assert slug == "word-word-wo"
        assert not slug.endswith("-")

    def test_slugify_empty(self) -> None:
        assert slugify("!!!") == ""


class TestRunGit:
    """Tests for the git command wrapper."""

    def test_missing_git_executable(self, tmp_path: Path) -> None:
        with patch("subprocess.run", side_effect=FileNotFoundError("git")):
            with pytest.raises(GitError, match="git executable not found"):
                run_git(["status"], tmp_path)

    def test_timeout(self, tmp_path: Path) -> None:
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["git"], 1)):
            with pytest.raises(GitError, match="timed out"):
                run_git(["fetch"], tmp_path, timeout=1)

    def test_failure_raises_with_check(self, git_repo: Path) -> None:
        with pytest.raises(GitError) as exc_info:
            run_git(["checkout", "does-not-exist"], git_repo)
        assert exc_info.value.returncode != 0

    def test_failure_returned_without_check(self, git_repo: Path) -> None:
        result = run_git(["checkout", "does-not-exist"], git_repo, check=False)
        assert result.returncode != 0


class TestRepositoryHelpers:
    """Helpers against a real repository."""

    def test_get_git_status_outside_repo(self, tmp_path: Path) -> None:
        outside = tmp_path / "plain"
        outside.mkdir()
        with patch("chainrun.utils.git.run_git", side_effect=GitError(["status"], 128, "not a repo")):
            assert get_git_status(outside) is None

    def test_rev_parse(self, git_repo: Path) -> None:
        assert rev_parse("main", git_repo) == git(git_repo, "rev-parse", "HEAD")
        assert rev_parse("no-such-ref", git_repo) is None

    def test_commit_all(self, git_repo: Path) -> None:
        assert commit_all("nothing", git_repo) is None
        (git_repo / "new.txt").write_text("hi\n")
        sha = commit_all("add new.txt", git_repo)
        assert sha == git(git_repo, "rev-parse", "HEAD")
        assert git(git_repo, "log", "-1", "--format=%s") == "add new.txt"

    def test_commits_behind(self, git_repo: Path) -> None:
        git(git_repo, "branch", "old")
        (git_repo / "x.txt").write_text("x\n")
        commit_all("x", git_repo)
        git(git_repo, "checkout", "-q", "old")
        assert commits_behind("main", git_repo) == 1

    def test_count_commits(self, git_repo: Path) -> None:
        start = git(git_repo, "rev-parse", "HEAD")
        for name in ("a.txt", "b.txt"):
            (git_repo / name).write_text("x\n")
            commit_all(name, git_repo)
        assert count_commits(start, "main", git_repo) == 2
        assert count_commits("main", start, git_repo) == 0
        assert count_commits("no-such-ref", "main", git_repo) == 0

    def test_branch_start(self, git_repo: Path) -> None:
        created_at = git(git_repo, "rev-parse", "HEAD")
        git(git_repo, "checkout", "-q", "-b", "feature/3-search")
        (git_repo / "search.py").write_text("x\n")
        commit_all("search", git_repo)

        assert branch_start("feature/3-search", git_repo) == created_at
        assert branch_start("feature/404", git_repo) is None
