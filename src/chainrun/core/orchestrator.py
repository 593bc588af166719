"""Batch orchestrator: drives issues through their phases."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from chainrun.config import Config, QualityLoopConfig
from chainrun.core.chain import ChainManager
from chainrun.core.errors import ConfigurationError, GitError, WorkspaceError
from chainrun.core.issue_rules import (
    PhaseSelection,
    adjust_phases_for_labels,
    parse_dependencies,
    phases_from_labels,
    sort_by_dependencies,
)
from chainrun.core.markers import PhaseMarker, completed_phases_from_comments, format_phase_comment
from chainrun.core.models import (
    BatchSummary,
    FailureCategory,
    IssueResult,
    IssueStatus,
    PhaseClass,
    PhaseName,
    PhaseRunResult,
    PhaseStatus,
)
from chainrun.core.quality_loop import QualityLoopController
from chainrun.core.run_log import PhaseLogEntry, RunConfigSnapshot, RunLogWriter
from chainrun.core.state import StateStore
from chainrun.notifications import Notifier, NullNotifier
from chainrun.runners.background import BackgroundChecks
from chainrun.runners.executor import PhaseExecutor
from chainrun.tracker import IssueTracker, NullIssueTracker
from chainrun.tracker.base import TrackedIssue, TrackerError
from chainrun.utils.git import push_branch
from chainrun.workspace.worktrees import Workspace, WorktreeManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPolicy:
    """How one issue's failure affects the rest of the batch.

    Attributes:
        halt_on_failure: Stop starting new issues once one is blocked
        chain_ordering: Issue i may only start once issue i-1 is chain-eligible
    """

    halt_on_failure: bool = False
    chain_ordering: bool = False


class RunOptions(BaseModel):
    """Per-invocation options; None fields fall back to the config file."""

    phases: list[PhaseName] | None = None
    sequential: bool = False
    chain: bool = False
    qa_gate: bool = False
    quality_loop: bool | None = None
    max_iterations: int | None = None
    batches: list[list[str]] = Field(default_factory=list)
    resume: bool = False
    dry_run: bool = False
    base: str | None = None
    phase_timeout: int | None = None
    batch_timeout: float | None = None
    create_pr: bool = False
    label_phases: bool = False
    dependency_order: bool = False

    @property
    def policy(self) -> ExecutionPolicy:
        return ExecutionPolicy(halt_on_failure=self.sequential, chain_ordering=self.chain)


@dataclass
class IssuePlan:
    """Phases an invocation would run for one issue."""

    issue_id: str
    to_run: list[PhaseName]
    already_done: list[PhaseName] = field(default_factory=list)
    retired: bool = False


def validate_options(issue_ids: list[str], options: RunOptions) -> list[list[str]]:
    """Check flag combinations before any work starts.

    Returns:
        The issue groups to run, in order.

    Raises:
        ConfigurationError: On contradictory flags or an empty issue list.
    """
    if options.chain and not options.sequential:
        raise ConfigurationError("--chain requires --sequential")
    if options.chain and options.batches:
        raise ConfigurationError("--chain cannot be combined with --batch")
    if options.qa_gate and not options.chain:
        raise ConfigurationError("--qa-gate requires --chain")
    if options.dependency_order and options.batches:
        raise ConfigurationError("--dependency-order cannot be combined with --batch")
    if options.max_iterations is not None and options.max_iterations < 0:
        raise ConfigurationError("--max-iterations must be zero or more")

    groups = [list(group) for group in options.batches if group] if options.batches else [list(issue_ids)]
    flat = [issue_id for group in groups for issue_id in group]
    if not flat:
        raise ConfigurationError("No issues given")
    duplicates = sorted({i for i in flat if flat.count(i) > 1})
    if duplicates:
        raise ConfigurationError(f"Issue(s) listed more than once: {', '.join(duplicates)}")
    return groups


def effective_loop_config(config: QualityLoopConfig, options: RunOptions) -> QualityLoopConfig:
    """Apply command-line loop overrides on top of the configured budgets.

    ``--max-iterations`` sets the implementation budget; the review budget
    is capped by it.
    """
    loop = config.model_copy()
    if options.quality_loop is not None:
        loop.enabled = options.quality_loop
    if options.max_iterations is not None:
        loop.implementation_max_iterations = options.max_iterations
        loop.review_max_iterations = min(options.max_iterations, loop.review_max_iterations)
    return loop


class BatchOrchestrator:
    """Runs a batch of issues through their phase lists."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        executor: PhaseExecutor,
        worktrees: WorktreeManager | None = None,
        tracker: IssueTracker | None = None,
        notifier: Notifier | None = None,
        log_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.executor = executor
        self.worktrees = worktrees
        self.tracker = tracker or NullIssueTracker()
        self.notifier = notifier or NullNotifier()
        self.log_dir = log_dir or store.path.parent / "logs"

        self._current_issue: str | None = None
        self._issues: dict[str, TrackedIssue | None] = {}

    # =========================================================================
    # Planning
    # =========================================================================

    def phases_for(self, options: RunOptions) -> list[PhaseName]:
        phases = options.phases or self.config.phases
        if not phases:
            raise ConfigurationError("Phase list is empty")
        if PhaseName.FIX in phases:
            raise ConfigurationError("'fix' is run by the quality loop and cannot be listed as a phase")
        return list(phases)

    def plan(self, issue_ids: list[str], options: RunOptions) -> list[IssuePlan]:
        """Which phases each issue would run; reads state, writes nothing."""
        groups = validate_options(issue_ids, options)
        phases = self.phases_for(options)
        plans: list[IssuePlan] = []
        for issue_id in (i for group in groups for i in group):
            record = self.store.get_issue(issue_id)
            if record is not None and record.status.is_retired:
                plans.append(IssuePlan(issue_id, to_run=[], retired=True))
                continue
            done = record.completed_phases() if (record is not None and options.resume) else set()
            plans.append(
                IssuePlan(
                    issue_id,
                    to_run=[p for p in phases if p not in done],
                    already_done=[p for p in phases if p in done],
                )
            )
        return plans

    # =========================================================================
    # Batch
    # =========================================================================

    async def run(self, issue_ids: list[str], options: RunOptions) -> BatchSummary:
        """Run the batch.

        Args:
            issue_ids: Issues in processing order (ignored when ``options.batches`` is set)
            options: Invocation options

        Returns:
            Per-issue results and counts.

        Raises:
            ConfigurationError: On invalid options (before any work).
            StateError: If the state file is corrupt or unwritable.
            LockTimeoutError: If another process holds the state lock.
            TimeoutError: If ``options.batch_timeout`` expires.
        """
        groups = validate_options(issue_ids, options)
        phases = self.phases_for(options)
        # Surface a corrupt state file before anything is started
        self.store.load()

        if options.dry_run:
            return self._dry_run(issue_ids, options)

        if options.batch_timeout:
            return await asyncio.wait_for(self._run(groups, phases, options), timeout=options.batch_timeout)
        return await self._run(groups, phases, options)

    async def _run(self, groups: list[list[str]], phases: list[PhaseName], options: RunOptions) -> BatchSummary:
        # Batches are never reordered; validate_options rejects the combination
        if options.dependency_order and len(groups[0]) > 1:
            async with self.tracker:
                groups = [await self._dependency_order(groups[0])]

        started = datetime.now()
        loop_config = effective_loop_config(self.config.quality_loop, options)
        run_log = RunLogWriter(
            self.log_dir,
            RunConfigSnapshot(
                phases=phases,
                sequential=options.sequential,
                chain=options.chain,
                qa_gate=options.qa_gate,
                quality_loop=loop_config.enabled,
                max_iterations={c.value: loop_config.max_iterations(c) for c in PhaseClass},
                base=options.base,
                resume=options.resume,
                label_phases=options.label_phases,
                dependency_order=options.dependency_order,
            ),
            max_files=self.config.logs.max_files,
            max_size_mb=self.config.logs.max_size_mb,
        )
        loop = QualityLoopController(
            self.executor,
            self.store,
            loop_config,
            phase_timeout=options.phase_timeout or self.config.phase_timeout,
            run_log=run_log,
        )
        background = BackgroundChecks(self.config.background_checks) if self.config.background_checks else None
        policy = options.policy
        all_ids = [i for group in groups for i in group]

        chain: ChainManager | None = None
        if policy.chain_ordering:
            chain = ChainManager(
                all_ids,
                self.store,
                self.worktrees,
                self.config.chain,
                base=options.base or self.config.worktree.trunk,
                qa_gate=options.qa_gate,
            )
            chain.validate(phases)

        summary = BatchSummary(run_id=run_log.run_id)
        self.notifier.info("Batch Started", f"{len(all_ids)} issue(s): {', '.join('#' + i for i in all_ids)}")
        logger.info(f"Run {run_log.run_id}: {len(all_ids)} issue(s), phases {', '.join(p.value for p in phases)}")

        try:
            async with self.tracker:
                halted = False
                for group in groups:
                    for issue_id in group:
                        if halted:
                            summary.not_started.append(issue_id)
                            continue

                        if chain is not None:
                            check = chain.check_predecessor(issue_id)
                            if not check.eligible:
                                halted = True
                                self._halt_chain(chain, issue_id, check.reason or "predecessor not eligible", summary, run_log)
                                continue

                        self._current_issue = issue_id
                        result = await self._run_issue(issue_id, phases, options, loop, chain, run_log, background)
                        self._current_issue = None
                        summary.results.append(result)
                        self.notifier.issue_finished(result)

                        # In a chain the next predecessor check decides between halt and pause
                        if result.status == IssueStatus.BLOCKED and policy.halt_on_failure and chain is None:
                            logger.warning(f"Halting batch after #{issue_id} was blocked")
                            halted = True
        except (asyncio.CancelledError, KeyboardInterrupt):
            self._record_cancellation(run_log)
            self.notifier.warning("Batch Cancelled", f"Interrupted during #{self._current_issue or '?'}")
            raise
        finally:
            if background is not None:
                await background.shutdown()
            summary.duration_seconds = (datetime.now() - started).total_seconds()
            path = run_log.finalize()
            logger.info(f"Run log written to {path}")

        self.notifier.batch_finished(summary)
        return summary

    def _dry_run(self, issue_ids: list[str], options: RunOptions) -> BatchSummary:
        summary = BatchSummary(run_id="dry-run")
        for plan in self.plan(issue_ids, options):
            if plan.retired:
                logger.info(f"[dry-run] #{plan.issue_id}: retired, nothing to do")
            else:
                would_run = ", ".join(p.value for p in plan.to_run) or "nothing"
                logger.info(f"[dry-run] #{plan.issue_id}: would run {would_run}")
            summary.not_started.append(plan.issue_id)
        return summary

    def _halt_chain(
        self,
        chain: ChainManager,
        issue_id: str,
        reason: str,
        summary: BatchSummary,
        run_log: RunLogWriter,
    ) -> None:
        """Stop the chain at ``issue_id``; with a gate the issue is parked, not failed."""
        if not chain.qa_gate:
            logger.warning(f"Chain halted before #{issue_id}: {reason}")
            summary.not_started.append(issue_id)
            return

        record = self.store.ensure_issue(issue_id, chain_position=chain.position(issue_id))
        if record.status.is_retired:
            summary.not_started.append(issue_id)
            return
        record = chain.pause(issue_id, reason)
        run_log.start_issue(issue_id, record.title, chain_position=record.chain_position)
        run_log.complete_issue(issue_id, record.status, record.failure_category, record.failure_reason, record.warnings)
        self.notifier.warning(f"Chain Paused at #{issue_id}", reason)
        summary.results.append(
            IssueResult(
                issue_id=issue_id,
                title=record.title,
                status=record.status,
                chain_position=record.chain_position,
                failure_category=record.failure_category,
                failure_reason=record.failure_reason,
                warnings=record.warnings,
            )
        )

    def _record_cancellation(self, run_log: RunLogWriter) -> None:
        """Log the in-flight phase as interrupted; state keeps it in_progress."""
        issue_id = self._current_issue
        if issue_id is None:
            return
        logger.warning(f"Batch cancelled while processing #{issue_id}")
        record = self.store.get_issue(issue_id)
        if record is not None:
            now = datetime.now()
            for phase in record.phases:
                if phase.status == PhaseStatus.IN_PROGRESS:
                    run_log.log_phase(
                        issue_id,
                        PhaseLogEntry(
                            phase=phase.name,
                            status=PhaseStatus.IN_PROGRESS,
                            iteration=phase.iteration,
                            started_at=phase.started_at or now,
                            error="cancelled",
                            commit_before=phase.commit_before,
                        ),
                    )
        run_log.complete_issue(issue_id, IssueStatus.IN_PROGRESS, FailureCategory.CANCELLED, "batch cancelled")

    # =========================================================================
    # Issue
    # =========================================================================

    async def _run_issue(
        self,
        issue_id: str,
        phases: list[PhaseName],
        options: RunOptions,
        loop: QualityLoopController,
        chain: ChainManager | None,
        run_log: RunLogWriter,
        background: BackgroundChecks | None,
    ) -> IssueResult:
        started = datetime.now()
        position = chain.position(issue_id) if chain else None
        issue = await self._fetch_issue(issue_id)
        record = self.store.ensure_issue(issue_id, issue.title if issue else "", chain_position=position)
        title = record.title

        if record.status.is_retired:
            logger.warning(f"#{issue_id} is {record.status.value}; skipping")
            return IssueResult(issue_id=issue_id, title=title, status=record.status, chain_position=position)

        selection = self._select_phases(issue, phases, options)
        if selection.phases != phases:
            logger.info(f"#{issue_id}: labels select {', '.join(p.value for p in selection.phases)}")
        phases = selection.phases
        if selection.quality_loop and options.quality_loop is not False and not loop.config.enabled:
            logger.info(f"#{issue_id}: labelled complex, quality loop enabled")
            loop = loop.with_loop_enabled()

        run_log.start_issue(issue_id, title, chain_position=position)
        to_run = await self._phases_to_run(issue_id, phases, options.resume, run_log)
        if to_run:
            logger.info(f"#{issue_id}: running {', '.join(p.value for p in to_run)}")
        else:
            logger.info(f"#{issue_id}: all phases already completed")

        if not (record.status == IssueStatus.READY_FOR_REVIEW and not to_run):
            self.store.set_issue_status(issue_id, IssueStatus.IN_PROGRESS)

        workspace: Workspace | None = None
        results: list[PhaseRunResult] = []
        category: FailureCategory | None = None
        reason: str | None = None

        # A successor's base is re-checked even when all its phases are done
        if chain is not None and self.worktrees is not None and record.workspace is not None:
            try:
                workspace = self._open_workspace(issue_id, title, options, chain, run_log)
            except (WorkspaceError, GitError) as e:
                category, reason = FailureCategory.INFRASTRUCTURE, f"workspace unavailable: {e}"
                logger.error(f"#{issue_id}: {reason}")

        for phase in to_run if category is None else []:
            if phase.needs_workspace and workspace is None and self.worktrees is not None:
                try:
                    workspace = self._open_workspace(issue_id, title, options, chain, run_log)
                except (WorkspaceError, GitError) as e:
                    category, reason = FailureCategory.INFRASTRUCTURE, f"workspace unavailable: {e}"
                    logger.error(f"#{issue_id}: {reason}")
                    break

            path = workspace.path if (workspace is not None and phase.needs_workspace) else None
            result = await loop.run(issue_id, phase, path)
            results.append(result)

            if not result.succeeded:
                category = (
                    FailureCategory.EXECUTOR_TIMEOUT if result.status == PhaseStatus.TIMED_OUT else FailureCategory.EXECUTOR_FAILURE
                )
                reason = f"{phase.value} {result.status.value} after {result.iteration} fix cycle(s)"
                if result.error:
                    reason += f": {result.error[-300:]}"
                break
            if background is not None and path is not None:
                background.launch(issue_id, path)

        if category is None:
            record = self.store.set_issue_status(issue_id, IssueStatus.READY_FOR_REVIEW, required_phases=phases)
            if chain is not None:
                try:
                    tag = chain.checkpoint(issue_id, title)
                except GitError as e:
                    logger.warning(f"Could not checkpoint #{issue_id}: {e}")
                    record = self.store.add_warning(issue_id, f"checkpoint not created: {e}")
                    tag = None
                if tag:
                    run_log.update_issue(issue_id, checkpoint_ref=tag)
            if options.create_pr and record.branch:
                await self._open_pull_request(issue_id, title, record.branch, chain, run_log)
        else:
            logger.warning(f"#{issue_id} blocked ({category.value}): {reason}")
            current = self.store.get_issue(issue_id)
            if current is not None and current.status == IssueStatus.READY_FOR_REVIEW:
                self.store.set_issue_status(issue_id, IssueStatus.IN_PROGRESS)
            self.store.set_issue_status(issue_id, IssueStatus.BLOCKED, category=category, reason=reason)

        await self._post_markers(issue_id, results)

        record = self.store.get_issue(issue_id) or record
        run_log.complete_issue(issue_id, record.status, record.failure_category, record.failure_reason, record.warnings)
        return IssueResult(
            issue_id=issue_id,
            title=title,
            status=record.status,
            chain_position=position,
            failure_category=record.failure_category,
            failure_reason=record.failure_reason,
            warnings=record.warnings,
            phases=results,
            duration_seconds=(datetime.now() - started).total_seconds(),
        )

    async def _phases_to_run(
        self,
        issue_id: str,
        phases: list[PhaseName],
        resume: bool,
        run_log: RunLogWriter,
    ) -> list[PhaseName]:
        """Reset phases for this invocation and return the ones to execute.

        With resume, completed/skipped phases are kept and tracker markers fill
        in completions the state file missed. Without it every phase re-runs.
        """
        if resume:
            for phase in await self._marker_completions(issue_id):
                if phase in phases and phase not in self.store.completed_phases(issue_id):
                    record = self.store.mark_phase_completed(issue_id, phase, "completion marker found on tracker")
                    run_log.log_phase(
                        issue_id,
                        PhaseLogEntry(
                            phase=phase,
                            status=record.status,
                            outcome=record.outcome,
                            started_at=record.started_at or datetime.now(),
                            ended_at=record.ended_at,
                        ),
                    )
            done = self.store.completed_phases(issue_id)
        else:
            done = set()
            for phase in phases:
                self.store.rerun_phase(issue_id, phase)

        to_run = [p for p in phases if p not in done]
        for phase in to_run:
            self.store.reopen_phase(issue_id, phase)
        # Rebuild replays these resets before the phase entries
        run_log.update_issue(issue_id, reset_phases=to_run)
        return to_run

    def _open_workspace(
        self,
        issue_id: str,
        title: str,
        options: RunOptions,
        chain: ChainManager | None,
        run_log: RunLogWriter,
    ) -> Workspace:
        workspace = self._prepare_workspace(issue_id, title, options, chain)
        run_log.update_issue(
            issue_id,
            workspace=workspace.path,
            branch=workspace.branch,
            base_ref=workspace.base_ref,
            base_commit=workspace.base_commit,
        )
        return workspace

    def _prepare_workspace(
        self,
        issue_id: str,
        title: str,
        options: RunOptions,
        chain: ChainManager | None,
    ) -> Workspace:
        assert self.worktrees is not None
        if chain is not None:
            return chain.prepare_workspace(issue_id, title)

        workspace = self.worktrees.ensure(issue_id, title, options.base or self.config.worktree.trunk)
        if workspace.reused and (workspace.commits_behind or workspace.has_uncommitted_changes):
            logger.info(
                f"Reusing workspace for #{issue_id}: {workspace.commits_behind} commit(s) behind "
                f"{workspace.base_ref}, uncommitted changes: {workspace.has_uncommitted_changes}"
            )
        self.store.set_workspace(
            issue_id,
            workspace.path,
            branch=workspace.branch,
            base_ref=workspace.base_ref,
            base_commit=workspace.base_commit,
        )
        return workspace

    # =========================================================================
    # Tracker
    # =========================================================================

    async def _fetch_issue(self, issue_id: str) -> TrackedIssue | None:
        if issue_id in self._issues:
            return self._issues[issue_id]
        try:
            issue: TrackedIssue | None = await self.tracker.get_issue(issue_id)
        except TrackerError as e:
            logger.warning(f"Could not fetch issue #{issue_id}: {e}")
            issue = None
        self._issues[issue_id] = issue
        return issue

    async def _dependency_order(self, issue_ids: list[str]) -> list[str]:
        """Reorder issues so dependencies declared on the tracker run first."""
        dependencies: dict[str, list[str]] = {}
        for issue_id in issue_ids:
            issue = await self._fetch_issue(issue_id)
            dependencies[issue_id] = parse_dependencies(issue) if issue is not None else []
        ordered = sort_by_dependencies(issue_ids, dependencies)
        if ordered != issue_ids:
            logger.info(f"Dependency order: {' -> '.join('#' + i for i in ordered)}")
        return ordered

    def _select_phases(
        self,
        issue: TrackedIssue | None,
        phases: list[PhaseName],
        options: RunOptions,
    ) -> PhaseSelection:
        """Phases for one issue; with label selection the issue's labels adjust them."""
        if not options.label_phases or issue is None:
            return PhaseSelection(phases=phases)
        if options.phases is None:
            return phases_from_labels(issue.labels)
        return adjust_phases_for_labels(phases, issue.labels)

    async def _marker_completions(self, issue_id: str) -> set[PhaseName]:
        try:
            comments = await self.tracker.list_comments(issue_id)
        except TrackerError as e:
            logger.warning(f"Could not read phase markers for #{issue_id}: {e}")
            return set()
        return completed_phases_from_comments(comments)

    async def _post_markers(self, issue_id: str, results: list[PhaseRunResult]) -> None:
        if not results or not self.config.tracker.post_markers:
            return
        now = datetime.now()
        markers = [PhaseMarker(phase=r.phase, status=r.status, timestamp=now) for r in results]
        try:
            await self.tracker.post_comment(issue_id, format_phase_comment(issue_id, markers))
        except TrackerError as e:
            logger.warning(f"Could not post phase markers for #{issue_id}: {e}")

    async def _open_pull_request(
        self,
        issue_id: str,
        title: str,
        branch: str,
        chain: ChainManager | None,
        run_log: RunLogWriter,
    ) -> None:
        """Push the branch and open a PR; failures become warnings on the issue."""
        assert self.worktrees is not None
        target = self.config.worktree.trunk
        if chain is not None:
            previous = chain.predecessor(issue_id)
            if previous is not None and previous.branch and previous.status != IssueStatus.MERGED:
                target = previous.branch
        try:
            existing = await self.tracker.find_pull_request(branch)
            if existing is None:
                push_branch(self.config.worktree.remote, branch, self.worktrees.repo_root)
                existing = await self.tracker.create_pull_request(
                    branch,
                    target,
                    title=f"#{issue_id}: {title}" if title else f"#{issue_id}",
                    body=f"Closes #{issue_id}",
                )
                logger.info(f"Opened PR #{existing.number} for #{issue_id}")
            self.store.set_pr(issue_id, existing.number, existing.url or None)
            run_log.update_issue(issue_id, pr_number=existing.number, pr_url=existing.url or None)
        except (TrackerError, GitError) as e:
            logger.warning(f"Could not open a pull request for #{issue_id}: {e}")
            self.store.add_warning(issue_id, f"pull request not opened: {e}")


def run_batch(orchestrator: BatchOrchestrator, issue_ids: list[str], options: RunOptions) -> BatchSummary:
    """Convenience function to run a batch synchronously."""
    return asyncio.run(orchestrator.run(issue_ids, options))
