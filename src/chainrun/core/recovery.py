"""State recovery: adopt untracked worktrees, rebuild from run logs, clean stale entries.

These back the ``chainrun state`` commands. None of them run during a
normal batch except :func:`reconcile_merged`, which the CLI calls before a
run so issues merged since the last batch are not picked up again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from chainrun.core.errors import ConfigurationError
from chainrun.core.models import (
    IssueRunRecord,
    IssueStatus,
    PhaseName,
    PhaseRecord,
    PhaseStatus,
    WorkflowState,
)
from chainrun.core.run_log import IssueLogEntry, read_run_logs
from chainrun.core.state import StateStore
from chainrun.tracker.base import IssueTracker, TrackerError
from chainrun.utils.git import TRUNK_BRANCHES, issue_id_from_branch
from chainrun.workspace.worktrees import WorktreeManager

logger = logging.getLogger(__name__)


@dataclass
class DiscoveredWorktree:
    issue_id: str
    title: str
    path: Path
    branch: str
    last_phase: PhaseName | None = None


@dataclass
class InitResult:
    """Outcome of :func:`init_untracked`."""

    scanned: int = 0
    already_tracked: int = 0
    discovered: list[DiscoveredWorktree] = field(default_factory=list)
    skipped: list[tuple[Path, str]] = field(default_factory=list)


@dataclass
class RebuildResult:
    logs_processed: int = 0
    issues: list[str] = field(default_factory=list)
    attached_worktrees: list[str] = field(default_factory=list)


@dataclass
class CleanResult:
    """Issue ids touched by :func:`clean`.

    ``removed`` overlaps with the other two lists: a merged orphan is both
    merged and removed.
    """

    removed: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)


# =============================================================================
# Init
# =============================================================================


def last_logged_phase(issue_id: str, log_dir: Path) -> PhaseName | None:
    """Most recent phase recorded for an issue across all run logs."""
    for log in reversed(read_run_logs(log_dir)):
        entry = log.issue(issue_id)
        if entry is not None and entry.phases:
            return entry.phases[-1].phase
    return None


async def init_untracked(
    store: StateStore,
    worktrees: WorktreeManager,
    tracker: IssueTracker,
    log_dir: Path,
    dry_run: bool = False,
) -> InitResult:
    """Add state entries for issue worktrees the state file doesn't know about.

    Args:
        store: State store to populate
        worktrees: Source of the worktree list
        tracker: Used for issue titles; a placeholder is used when it fails
        log_dir: Run logs consulted for the last phase each issue reached
        dry_run: Report only

    Returns:
        What was scanned, adopted and skipped.
    """
    result = InitResult()
    tracked = {record.issue_id for record in store.list_issues()}

    for worktree in worktrees.list_all():
        result.scanned += 1
        if worktree.bare:
            continue
        if worktree.branch is None:
            result.skipped.append((worktree.path, "detached HEAD (no branch)"))
            continue
        if worktree.branch in TRUNK_BRANCHES:
            result.skipped.append((worktree.path, "trunk branch"))
            continue
        issue_id = issue_id_from_branch(worktree.branch)
        if issue_id is None:
            result.skipped.append((worktree.path, f"branch doesn't match an issue pattern: {worktree.branch}"))
            continue
        if issue_id in tracked:
            result.already_tracked += 1
            continue

        try:
            title = (await tracker.get_issue(issue_id)).title
        except TrackerError as e:
            logger.debug(f"No title for #{issue_id}: {e}")
            title = ""
        discovered = DiscoveredWorktree(
            issue_id=issue_id,
            title=title or f"(title unavailable for #{issue_id})",
            path=worktree.path,
            branch=worktree.branch,
            last_phase=last_logged_phase(issue_id, log_dir),
        )
        result.discovered.append(discovered)
        tracked.add(issue_id)

        if dry_run:
            continue
        store.ensure_issue(issue_id, discovered.title)
        store.set_workspace(issue_id, worktree.path, branch=worktree.branch)
        if discovered.last_phase is not None:
            store.set_issue_status(issue_id, IssueStatus.IN_PROGRESS)
        logger.info(f"Adopted worktree for #{issue_id}: {worktree.path}")

    return result


# =============================================================================
# Rebuild
# =============================================================================


def _reset(record: PhaseRecord) -> None:
    record.status = PhaseStatus.PENDING
    record.iteration = 0
    record.outcome = None
    record.error = None
    record.started_at = None
    record.ended_at = None


def apply_log_entry(record: IssueRunRecord, entry: IssueLogEntry) -> None:
    """Replay one run-log issue entry on top of a reconstructed record."""
    if entry.title:
        record.title = entry.title
    record.status = entry.status
    record.chain_position = entry.chain_position
    record.failure_category = entry.failure_category
    record.failure_reason = entry.failure_reason
    for name in ("workspace", "branch", "base_ref", "base_commit", "checkpoint_ref", "pr_number", "pr_url"):
        value = getattr(entry, name)
        if value is not None:
            setattr(record, name, value)
    for warning in entry.warnings:
        if warning not in record.warnings:
            record.warnings.append(warning)

    for phase in entry.reset_phases:
        _reset(record.phase(phase))

    for logged in entry.phases:
        # Fix attempts count towards the phase's iteration, they have no record of their own
        if logged.phase == PhaseName.FIX:
            continue
        phase = record.phase(logged.phase)
        phase.status = logged.status
        phase.outcome = logged.outcome
        phase.iteration = logged.iteration
        phase.error = logged.error
        phase.started_at = phase.started_at or logged.started_at
        phase.ended_at = logged.ended_at
        if logged.commit_before and phase.commit_before is None:
            phase.commit_before = logged.commit_before
        if logged.commit_after:
            phase.commit_after = logged.commit_after

    last = entry.phases[-1].ended_at if entry.phases else None
    record.last_activity = last or entry.started_at


def rebuild(
    store: StateStore,
    log_dir: Path,
    worktrees: WorktreeManager | None = None,
    confirm: bool = False,
) -> RebuildResult:
    """Replace the state file with one reconstructed from run logs.

    Logs are replayed oldest first so the newest run wins for every field
    it touched. Live worktrees are then attached to the issues whose branch
    they carry.

    Raises:
        ConfigurationError: Without ``confirm``; the current state is discarded.
    """
    if not confirm:
        raise ConfigurationError("Rebuild replaces the state file; pass --yes to confirm")

    result = RebuildResult()
    issues: dict[str, IssueRunRecord] = {}
    for log in read_run_logs(log_dir):
        result.logs_processed += 1
        for entry in log.issues:
            record = issues.setdefault(entry.issue_id, IssueRunRecord(issue_id=entry.issue_id))
            apply_log_entry(record, entry)

    if worktrees is not None:
        for worktree in worktrees.list_all()[1:]:
            if worktree.branch is None:
                continue
            issue_id = issue_id_from_branch(worktree.branch)
            record = issues.get(issue_id) if issue_id else None
            if record is None:
                continue
            if record.workspace != worktree.path or record.branch != worktree.branch:
                record.workspace = worktree.path
                record.branch = worktree.branch
                result.attached_worktrees.append(record.issue_id)

    store.save(WorkflowState(issues=issues))
    result.issues = sorted(issues)
    logger.info(f"Rebuilt state for {len(issues)} issue(s) from {result.logs_processed} run log(s)")
    return result


# =============================================================================
# Clean / reconcile
# =============================================================================


async def _pr_merged(tracker: IssueTracker | None, record: IssueRunRecord) -> bool:
    if tracker is None or not record.branch:
        return False
    try:
        pr = await tracker.find_pull_request(record.branch)
    except TrackerError as e:
        logger.debug(f"Could not check PR for #{record.issue_id}: {e}")
        return False
    return pr is not None and pr.merged


async def clean(
    store: StateStore,
    worktrees: WorktreeManager,
    tracker: IssueTracker | None = None,
    max_age_days: int | None = None,
    remove_all: bool = False,
    dry_run: bool = False,
) -> CleanResult:
    """Drop or retire entries whose worktree is gone.

    An orphan whose PR merged (or that is already ``merged``) is removed.
    An orphan that is already ``abandoned``, or any orphan with
    ``remove_all``, is removed too. Other orphans are marked ``abandoned``
    and kept for review. With ``max_age_days``, merged and abandoned entries
    whose last activity is older than that are removed.
    """
    result = CleanResult()
    live = {w.path.resolve() for w in worktrees.list_all()}
    cutoff = datetime.now() - timedelta(days=max_age_days) if max_age_days else None
    to_abandon: list[str] = []

    for record in store.list_issues():
        if record.workspace is not None and record.workspace.resolve() not in live:
            logger.debug(f"Orphaned: #{record.issue_id} (worktree not found: {record.workspace})")
            if record.status == IssueStatus.MERGED or await _pr_merged(tracker, record):
                result.merged.append(record.issue_id)
                result.removed.append(record.issue_id)
            elif record.status == IssueStatus.ABANDONED or remove_all:
                result.orphaned.append(record.issue_id)
                result.removed.append(record.issue_id)
            else:
                result.orphaned.append(record.issue_id)
                to_abandon.append(record.issue_id)
            continue

        if cutoff is not None and record.status.is_retired and record.last_activity < cutoff:
            logger.debug(f"Stale: #{record.issue_id} (last activity {record.last_activity:%Y-%m-%d})")
            result.removed.append(record.issue_id)

    if dry_run:
        return result

    for issue_id in to_abandon:
        store.set_issue_status(issue_id, IssueStatus.ABANDONED, reason="worktree no longer exists")
    for issue_id in result.removed:
        store.remove_issue(issue_id)
    if result.removed or to_abandon:
        logger.info(f"Cleaned state: {len(result.removed)} removed, {len(to_abandon)} marked abandoned")
    return result


async def reconcile_merged(
    store: StateStore,
    worktrees: WorktreeManager,
    tracker: IssueTracker | None = None,
) -> list[str]:
    """Advance ``ready_for_review`` issues whose work has landed on trunk to ``merged``.

    Returns:
        Issue ids that were advanced.
    """
    advanced: list[str] = []
    trunk = worktrees.config.trunk
    for record in store.issues_by_status(IssueStatus.READY_FOR_REVIEW):
        merged = await _pr_merged(tracker, record)
        if not merged and record.branch:
            merged = worktrees.is_merged(record.branch, trunk, record.base_commit)
        if merged:
            store.set_issue_status(record.issue_id, IssueStatus.MERGED)
            advanced.append(record.issue_id)
            logger.info(f"#{record.issue_id} is merged into {trunk}")
    return advanced
