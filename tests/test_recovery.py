"""Tests for state recovery: init, rebuild, clean and merge reconciliation."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest
from conftest import FakeExecutor, fail, git

from chainrun.config import Config, WorktreeConfig
from chainrun.core.errors import ConfigurationError
from chainrun.core.models import ExecutionRequest, IssueRunRecord, IssueStatus, PhaseName, PhaseStatus
from chainrun.core.orchestrator import BatchOrchestrator, RunOptions
from chainrun.core.recovery import clean, init_untracked, rebuild, reconcile_merged
from chainrun.core.run_log import PhaseLogEntry, RunConfigSnapshot, RunLogWriter
from chainrun.core.state import StateStore
from chainrun.tracker import NullIssueTracker
from chainrun.tracker.base import PullRequest
from chainrun.workspace.worktrees import WorktreeManager

PHASES = [PhaseName.PLAN, PhaseName.IMPLEMENT, PhaseName.REVIEW]


@pytest.fixture
def log_dir(state_path: Path) -> Path:
    return state_path.parent / "logs"


@pytest.fixture
def manager(git_repo: Path, tmp_path: Path) -> WorktreeManager:
    return WorktreeManager(git_repo, WorktreeConfig(root=tmp_path / "wt"))


def comparable(record: IssueRunRecord) -> dict[str, object]:
    """Everything but timestamps."""
    return {
        "status": record.status,
        "title": record.title,
        "chain_position": record.chain_position,
        "failure_category": record.failure_category,
        "failure_reason": record.failure_reason,
        "warnings": record.warnings,
        "phases": [(p.name, p.status, p.iteration, p.outcome, p.error) for p in record.phases],
    }


def add_issue(store: StateStore, issue_id: str, *statuses: IssueStatus, workspace: Path | None = None) -> None:
    store.ensure_issue(issue_id)
    if workspace is not None:
        store.set_workspace(issue_id, workspace, branch=f"feature/{issue_id}")
    for status in statuses:
        store.set_issue_status(issue_id, status)


MERGED_PATH = (IssueStatus.IN_PROGRESS, IssueStatus.READY_FOR_REVIEW, IssueStatus.MERGED)


class OpenPullRequestTracker(NullIssueTracker):
    """Every branch already has an open pull request."""

    async def find_pull_request(self, branch: str) -> PullRequest | None:
        return PullRequest(number=31, url="https://github.com/acme/app/pull/31")


class TestInit:
    """Tests for adopting untracked worktrees."""

    @pytest.mark.asyncio
    async def test_adopts_issue_worktrees(
        self, store: StateStore, manager: WorktreeManager, git_repo: Path, tmp_path: Path, log_dir: Path
    ) -> None:
        issue_path = tmp_path / "wt" / "fix-bug"
        git(git_repo, "worktree", "add", str(issue_path), "-b", "feature/7-fix-bug")
        git(git_repo, "worktree", "add", str(tmp_path / "wt" / "exp"), "-b", "experiment")
        git(git_repo, "worktree", "add", "--detach", str(tmp_path / "wt" / "detached"))

        writer = RunLogWriter(log_dir, RunConfigSnapshot(phases=PHASES))
        writer.start_issue("7")
        writer.log_phase(
            "7",
            PhaseLogEntry(phase=PhaseName.IMPLEMENT, status=PhaseStatus.FAILED, started_at=datetime.now()),
        )

        result = await init_untracked(store, manager, NullIssueTracker(), log_dir)

        assert result.scanned == 4
        assert [d.issue_id for d in result.discovered] == ["7"]
        assert result.discovered[0].last_phase == PhaseName.IMPLEMENT
        reasons = sorted(reason for _, reason in result.skipped)
        assert reasons == [
            "branch doesn't match an issue pattern: experiment",
            "detached HEAD (no branch)",
            "trunk branch",
        ]

        record = store.get_issue("7")
        assert record is not None
        assert record.title == "(title unavailable for #7)"
        assert record.branch == "feature/7-fix-bug"
        assert record.workspace is not None
        assert record.workspace.resolve() == issue_path.resolve()
        assert record.status == IssueStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_dry_run_and_already_tracked(
        self, store: StateStore, manager: WorktreeManager, log_dir: Path
    ) -> None:
        manager.ensure("7", "Fix bug", "main")
        manager.ensure("8", "Other", "main")
        store.ensure_issue("8")

        result = await init_untracked(store, manager, NullIssueTracker(), log_dir, dry_run=True)

        assert [d.issue_id for d in result.discovered] == ["7"]
        assert result.already_tracked == 1
        assert store.get_issue("7") is None


class TestRebuild:
    """Tests for reconstructing state from run logs."""

    def test_requires_confirmation(self, store: StateStore, log_dir: Path) -> None:
        with pytest.raises(ConfigurationError, match="--yes"):
            rebuild(store, log_dir)

    @pytest.mark.asyncio
    async def test_equivalent_to_live_state(
        self, config: Config, store: StateStore, executor: FakeExecutor, log_dir: Path, tmp_path: Path
    ) -> None:
        """Replaying every run log reproduces the live state modulo timestamps."""
        orchestrator = BatchOrchestrator(config, store, executor)
        executor.script("1", PhaseName.IMPLEMENT, fail())
        executor.script("2", PhaseName.REVIEW, fail())
        await orchestrator.run(["1", "2", "3"], RunOptions(phases=PHASES, quality_loop=True, max_iterations=1))

        # A second run resumes issue 2 and leaves 1 blocked
        executor.scripts.clear()
        await orchestrator.run(["2"], RunOptions(phases=PHASES, resume=True))

        live = {r.issue_id: comparable(r) for r in store.list_issues()}
        rebuilt_store = StateStore(tmp_path / "rebuilt" / "state.json")
        result = rebuild(rebuilt_store, log_dir, confirm=True)

        assert result.logs_processed == 2
        assert result.issues == ["1", "2", "3"]
        rebuilt = {r.issue_id: comparable(r) for r in rebuilt_store.list_issues()}
        assert rebuilt == live
        assert live["1"]["status"] == IssueStatus.BLOCKED
        assert live["2"]["status"] == IssueStatus.READY_FOR_REVIEW

    @pytest.mark.asyncio
    async def test_keeps_pull_request(
        self,
        config: Config,
        store: StateStore,
        executor: FakeExecutor,
        manager: WorktreeManager,
        log_dir: Path,
        tmp_path: Path,
    ) -> None:
        orchestrator = BatchOrchestrator(config, store, executor, worktrees=manager, tracker=OpenPullRequestTracker())
        await orchestrator.run(["5"], RunOptions(phases=PHASES, create_pr=True))
        live = store.get_issue("5")
        assert live is not None and live.pr_number == 31

        rebuilt_store = StateStore(tmp_path / "rebuilt" / "state.json")
        rebuild(rebuilt_store, log_dir, confirm=True)

        record = rebuilt_store.get_issue("5")
        assert record is not None
        assert record.pr_number == 31
        assert record.pr_url == "https://github.com/acme/app/pull/31"

    def test_replaces_corrupt_state(self, store: StateStore, state_path: Path, log_dir: Path) -> None:
        writer = RunLogWriter(log_dir, RunConfigSnapshot(phases=PHASES))
        writer.start_issue("4", "Title")
        writer.complete_issue("4", IssueStatus.BLOCKED)
        state_path.parent.mkdir(parents=True, exist_ok=True)
        state_path.write_text("{broken")

        rebuild(store, log_dir, confirm=True)

        record = store.get_issue("4")
        assert record is not None
        assert record.title == "Title"
        assert record.status == IssueStatus.BLOCKED

    def test_attaches_live_worktrees(
        self, store: StateStore, manager: WorktreeManager, log_dir: Path
    ) -> None:
        workspace = manager.ensure("3", "Add search", "main")
        writer = RunLogWriter(log_dir, RunConfigSnapshot(phases=PHASES))
        writer.start_issue("3")
        writer.complete_issue("3", IssueStatus.READY_FOR_REVIEW)

        result = rebuild(store, log_dir, worktrees=manager, confirm=True)

        assert result.attached_worktrees == ["3"]
        record = store.get_issue("3")
        assert record is not None
        assert record.branch == "feature/3-add-search"
        assert record.workspace is not None
        assert record.workspace.resolve() == workspace.path.resolve()


class TestClean:
    """Tests for retiring orphaned entries."""

    @pytest.fixture
    def populated(self, store: StateStore, manager: WorktreeManager, tmp_path: Path) -> StateStore:
        gone = tmp_path / "gone"
        add_issue(store, "1", IssueStatus.IN_PROGRESS, workspace=gone / "1")
        add_issue(store, "2", IssueStatus.ABANDONED, workspace=gone / "2")
        add_issue(store, "3", *MERGED_PATH, workspace=gone / "3")
        live = manager.ensure("5", "Live", "main")
        add_issue(store, "5", IssueStatus.IN_PROGRESS, workspace=live.path)
        add_issue(store, "6")
        return store

    @pytest.mark.asyncio
    async def test_clean(self, populated: StateStore, manager: WorktreeManager) -> None:
        result = await clean(populated, manager)

        assert sorted(result.removed) == ["2", "3"]
        assert sorted(result.orphaned) == ["1", "2"]
        assert result.merged == ["3"]

        orphan = populated.get_issue("1")
        assert orphan is not None
        assert orphan.status == IssueStatus.ABANDONED
        assert orphan.failure_reason == "worktree no longer exists"
        assert populated.get_issue("2") is None
        assert populated.get_issue("3") is None
        assert populated.get_issue("5") is not None
        assert populated.get_issue("6") is not None

    @pytest.mark.asyncio
    async def test_dry_run(self, populated: StateStore, manager: WorktreeManager) -> None:
        result = await clean(populated, manager, dry_run=True)

        assert sorted(result.removed) == ["2", "3"]
        assert len(populated.list_issues()) == 5
        orphan = populated.get_issue("1")
        assert orphan is not None
        assert orphan.status == IssueStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_remove_all(self, populated: StateStore, manager: WorktreeManager) -> None:
        result = await clean(populated, manager, remove_all=True)
        assert sorted(result.removed) == ["1", "2", "3"]
        assert sorted(r.issue_id for r in populated.list_issues()) == ["5", "6"]

    @pytest.mark.asyncio
    async def test_max_age(self, store: StateStore, manager: WorktreeManager) -> None:
        add_issue(store, "old", *MERGED_PATH)
        add_issue(store, "new", *MERGED_PATH)
        add_issue(store, "active", IssueStatus.IN_PROGRESS)
        with store.transaction() as state:
            for issue_id in ("old", "active"):
                state.issues[issue_id].last_activity = datetime.now() - timedelta(days=40)

        result = await clean(store, manager, max_age_days=30)

        assert result.removed == ["old"]
        assert sorted(r.issue_id for r in store.list_issues()) == ["active", "new"]


class TestReconcileMerged:
    """Tests for advancing issues whose branch landed on trunk."""

    @pytest.mark.asyncio
    async def test_advances_merged_branches(
        self, store: StateStore, manager: WorktreeManager, git_repo: Path
    ) -> None:
        merged = manager.ensure("8", "Merged", "main")
        pending = manager.ensure("9", "Pending", "main")
        for workspace in (merged, pending):
            (workspace.path / "work.txt").write_text("x\n")
            git(workspace.path, "add", "work.txt")
            git(workspace.path, "commit", "-q", "-m", "work")
        git(git_repo, "merge", "-q", "--ff-only", merged.branch)

        for workspace in (merged, pending):
            store.ensure_issue(workspace.issue_id)
            store.set_workspace(
                workspace.issue_id, workspace.path, branch=workspace.branch, base_commit=workspace.base_commit
            )
            store.set_issue_status(workspace.issue_id, IssueStatus.IN_PROGRESS)
            store.set_issue_status(workspace.issue_id, IssueStatus.READY_FOR_REVIEW)

        advanced = await reconcile_merged(store, manager)

        assert advanced == ["8"]
        assert store.get_issue("8").status == IssueStatus.MERGED  # type: ignore[union-attr]
        assert store.get_issue("9").status == IssueStatus.READY_FOR_REVIEW  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_uncommitted_work_is_not_merged(
        self, config: Config, store: StateStore, manager: WorktreeManager, git_repo: Path
    ) -> None:
        """A branch without commits is an ancestor of trunk but has not landed."""
        executor = FakeExecutor()

        def leave_uncommitted(request: ExecutionRequest) -> None:
            if request.phase == PhaseName.IMPLEMENT and request.workspace is not None:
                (request.workspace / "feature.py").write_text("print('new')\n")

        executor.on_execute = leave_uncommitted
        orchestrator = BatchOrchestrator(config, store, executor, worktrees=manager)
        await orchestrator.run(["7"], RunOptions(phases=PHASES))
        assert store.get_issue("7").status == IssueStatus.READY_FOR_REVIEW  # type: ignore[union-attr]

        advanced = await reconcile_merged(store, manager)

        assert advanced == []
        record = store.get_issue("7")
        assert record is not None and record.workspace is not None
        assert record.status == IssueStatus.READY_FOR_REVIEW
        assert (record.workspace / "feature.py").exists()

    @pytest.mark.asyncio
    async def test_empty_branch_is_not_merged(self, store: StateStore, manager: WorktreeManager) -> None:
        workspace = manager.ensure("6", "Nothing yet", "main")
        store.ensure_issue("6")
        store.set_workspace("6", workspace.path, branch=workspace.branch, base_commit=workspace.base_commit)
        store.set_issue_status("6", IssueStatus.IN_PROGRESS)
        store.set_issue_status("6", IssueStatus.READY_FOR_REVIEW)

        assert await reconcile_merged(store, manager) == []
