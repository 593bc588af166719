"""JSON state store for issue run records.

The store never caches state between calls: every mutation locks the file,
re-reads whatever is on disk (which may have been edited by hand or by the
`chainrun state` utilities) and writes it back atomically.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from chainrun.core.errors import InvalidTransitionError, IssueNotFoundError, StateCorruptionError, StateWriteError
from chainrun.core.models import (
    FailureCategory,
    IssueRunRecord,
    IssueStatus,
    PhaseName,
    PhaseOutcome,
    PhaseRecord,
    PhaseStatus,
    WorkflowState,
    check_issue_transition,
    check_phase_transition,
)
from chainrun.utils.locking import DEFAULT_LOCK_TIMEOUT, edit_lock

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateStore:
    """Issue-keyed workflow state persisted as one JSON document."""

    def __init__(self, path: Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        self.path = path
        self.lock_timeout = lock_timeout

    # =========================================================================
    # Raw I/O
    # =========================================================================

    def load(self) -> WorkflowState:
        """Read the state file.

        Returns:
            The parsed state; an empty state if the file doesn't exist.

        Raises:
            StateCorruptionError: If the file is not valid JSON or fails validation.
        """
        if not self.path.exists():
            return WorkflowState()

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StateCorruptionError(str(self.path), f"invalid JSON: {e}") from e
        except OSError as e:
            raise StateCorruptionError(str(self.path), f"unreadable: {e}") from e

        if not isinstance(data, dict):
            raise StateCorruptionError(str(self.path), "top level is not an object")
        if data.get("version", STATE_VERSION) != STATE_VERSION:
            raise StateCorruptionError(str(self.path), f"unsupported version {data.get('version')}")

        try:
            return WorkflowState.model_validate(data)
        except ValidationError as e:
            raise StateCorruptionError(str(self.path), f"schema violation: {e.error_count()} error(s)") from e

    def _write(self, state: WorkflowState) -> None:
        """Write via a temp file in the same directory, then rename over the target."""
        state.last_updated = datetime.now()
        payload = state.model_dump_json(indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.write("\n")
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateWriteError(f"Cannot write state file {self.path}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[WorkflowState]:
        """Lock, read the latest on-disk state, yield it for mutation, write it back.

        If the block raises, nothing is written.

        Raises:
            LockTimeoutError: If another process holds the state lock too long.
            StateCorruptionError: If the current file cannot be parsed.
        """
        with edit_lock(self.path, self.lock_timeout):
            state = self.load()
            yield state
            self._write(state)

    def save(self, state: WorkflowState) -> None:
        """Replace the whole document (used by rebuild)."""
        with edit_lock(self.path, self.lock_timeout):
            self._write(state)

    def _mutate_issue(self, issue_id: str, fn: Callable[[IssueRunRecord], None]) -> IssueRunRecord:
        with self.transaction() as state:
            record = state.issues.get(issue_id)
            if record is None:
                raise IssueNotFoundError(f"No state for issue #{issue_id}")
            fn(record)
            record.last_activity = datetime.now()
            return record.model_copy(deep=True)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_issue(self, issue_id: str) -> IssueRunRecord | None:
        return self.load().issues.get(issue_id)

    def list_issues(self) -> list[IssueRunRecord]:
        return list(self.load().issues.values())

    def issues_by_status(self, status: IssueStatus) -> list[IssueRunRecord]:
        return [r for r in self.list_issues() if r.status == status]

    def completed_phases(self, issue_id: str) -> set[PhaseName]:
        record = self.get_issue(issue_id)
        return record.completed_phases() if record else set()

    # =========================================================================
    # Issue mutations
    # =========================================================================

    def ensure_issue(
        self,
        issue_id: str,
        title: str = "",
        chain_position: int | None = None,
    ) -> IssueRunRecord:
        """Create the record on first touch; refresh title and chain position otherwise."""
        with self.transaction() as state:
            record = state.issues.get(issue_id)
            if record is None:
                record = IssueRunRecord(issue_id=issue_id, title=title, chain_position=chain_position)
                state.issues[issue_id] = record
                logger.debug(f"Created state for issue #{issue_id}")
            else:
                if title:
                    record.title = title
                record.chain_position = chain_position
                record.last_activity = datetime.now()
            return record.model_copy(deep=True)

    def set_issue_status(
        self,
        issue_id: str,
        status: IssueStatus,
        category: FailureCategory | None = None,
        reason: str | None = None,
        required_phases: list[PhaseName] | None = None,
    ) -> IssueRunRecord:
        """Move an issue to a new status.

        Args:
            issue_id: Issue to update
            status: Target status
            category: Failure category for blocked/paused outcomes
            reason: Human readable cause
            required_phases: Phases that must be done before ``ready_for_review``

        Raises:
            InvalidTransitionError: If the state machine forbids the change or
                a required phase is not completed/skipped.
        """

        def apply(record: IssueRunRecord) -> None:
            check_issue_transition(record.status, status, f"issue #{issue_id}")
            if status == IssueStatus.READY_FOR_REVIEW and required_phases is not None:
                missing = [p.value for p in required_phases if p not in record.completed_phases()]
                if missing:
                    raise InvalidTransitionError(
                        f"issue #{issue_id} (phases not done: {', '.join(missing)})",
                        record.status.value,
                        status.value,
                    )
            record.status = status
            if status in (IssueStatus.IN_PROGRESS, IssueStatus.READY_FOR_REVIEW, IssueStatus.MERGED):
                record.failure_category = None
                record.failure_reason = None
            else:
                record.failure_category = category
                record.failure_reason = reason

        return self._mutate_issue(issue_id, apply)

    def set_workspace(
        self,
        issue_id: str,
        workspace: Path | None,
        branch: str | None = None,
        base_ref: str | None = None,
        base_commit: str | None = None,
    ) -> IssueRunRecord:
        def apply(record: IssueRunRecord) -> None:
            record.workspace = workspace
            if branch is not None:
                record.branch = branch
            if base_ref is not None:
                record.base_ref = base_ref
            if base_commit is not None:
                record.base_commit = base_commit

        return self._mutate_issue(issue_id, apply)

    def set_checkpoint(self, issue_id: str, ref: str) -> IssueRunRecord:
        def apply(record: IssueRunRecord) -> None:
            record.checkpoint_ref = ref

        return self._mutate_issue(issue_id, apply)

    def set_pr(self, issue_id: str, number: int, url: str | None = None) -> IssueRunRecord:
        def apply(record: IssueRunRecord) -> None:
            record.pr_number = number
            record.pr_url = url

        return self._mutate_issue(issue_id, apply)

    def add_warning(self, issue_id: str, warning: str) -> IssueRunRecord:
        def apply(record: IssueRunRecord) -> None:
            if warning not in record.warnings:
                record.warnings.append(warning)

        return self._mutate_issue(issue_id, apply)

    def remove_issue(self, issue_id: str) -> bool:
        with self.transaction() as state:
            return state.issues.pop(issue_id, None) is not None

    # =========================================================================
    # Phase mutations
    # =========================================================================

    def reopen_phase(self, issue_id: str, phase: PhaseName) -> IssueRunRecord:
        """Reset a phase that is not done back to pending for a fresh attempt.

        Used at the start of an invocation: a phase left ``in_progress`` by a
        crash, or ``failed`` by an earlier exhausted loop, gets a new budget.
        Completed and skipped phases are left alone.
        """

        def apply(record: IssueRunRecord) -> None:
            existing = record.phase(phase)
            if existing.status.is_done or existing.status == PhaseStatus.PENDING:
                return
            logger.info(f"Reopening {phase.value} for #{issue_id} (was {existing.status.value})")
            existing.status = PhaseStatus.PENDING
            existing.iteration = 0
            existing.outcome = None
            existing.error = None
            existing.ended_at = None

        return self._mutate_issue(issue_id, apply)

    def rerun_phase(self, issue_id: str, phase: PhaseName) -> IssueRunRecord:
        """Explicitly reset a phase, including completed ones, for a full re-run."""

        def apply(record: IssueRunRecord) -> None:
            existing = record.phase(phase)
            existing.status = PhaseStatus.PENDING
            existing.iteration = 0
            existing.outcome = None
            existing.error = None
            existing.started_at = None
            existing.ended_at = None

        return self._mutate_issue(issue_id, apply)

    def start_phase(
        self,
        issue_id: str,
        phase: PhaseName,
        max_iterations: int,
        commit_before: str | None = None,
        iteration: int | None = None,
    ) -> PhaseRecord:
        """Mark a phase in_progress (first attempt or a retry after fix).

        The retry budget is checked against the iteration count before
        ``iteration`` is stored.

        Raises:
            InvalidTransitionError: On a disallowed transition or an exhausted retry budget.
        """
        now = datetime.now()

        def apply(record: IssueRunRecord) -> None:
            existing = record.phase(phase)
            check_phase_transition(existing, PhaseStatus.IN_PROGRESS, max_iterations, f"{phase.value} of #{issue_id}")
            existing.status = PhaseStatus.IN_PROGRESS
            existing.error = None
            existing.ended_at = None
            if iteration is not None:
                existing.iteration = iteration
            if existing.started_at is None:
                existing.started_at = now
            if commit_before is not None and existing.commit_before is None:
                existing.commit_before = commit_before

        record = self._mutate_issue(issue_id, apply)
        return record.phase(phase)

    def finish_phase(
        self,
        issue_id: str,
        phase: PhaseName,
        status: PhaseStatus,
        max_iterations: int,
        outcome: PhaseOutcome | None = None,
        error: str | None = None,
        commit_after: str | None = None,
    ) -> PhaseRecord:
        """Move an in-progress phase to a terminal status.

        ``error`` is only kept for failed and timed out phases.
        """
        now = datetime.now()

        def apply(record: IssueRunRecord) -> None:
            existing = record.phase(phase)
            check_phase_transition(existing, status, max_iterations, f"{phase.value} of #{issue_id}")
            existing.status = status
            existing.outcome = outcome
            existing.ended_at = now
            existing.error = error if status in (PhaseStatus.FAILED, PhaseStatus.TIMED_OUT) else None
            if commit_after is not None:
                existing.commit_after = commit_after

        record = self._mutate_issue(issue_id, apply)
        return record.phase(phase)

    def set_phase_iteration(self, issue_id: str, phase: PhaseName, iteration: int) -> PhaseRecord:
        def apply(record: IssueRunRecord) -> None:
            record.phase(phase).iteration = iteration

        record = self._mutate_issue(issue_id, apply)
        return record.phase(phase)

    def mark_phase_skipped(self, issue_id: str, phase: PhaseName, reason: str | None = None) -> PhaseRecord:
        """Skip a pending phase (e.g. completed according to tracker markers)."""
        now = datetime.now()

        def apply(record: IssueRunRecord) -> None:
            existing = record.phase(phase)
            if existing.status.is_done:
                return
            existing.status = PhaseStatus.SKIPPED
            existing.started_at = existing.started_at or now
            existing.ended_at = now
            existing.error = None
            if reason:
                logger.info(f"Skipping {phase.value} for #{issue_id}: {reason}")

        record = self._mutate_issue(issue_id, apply)
        return record.phase(phase)

    def mark_phase_completed(self, issue_id: str, phase: PhaseName, reason: str) -> PhaseRecord:
        """Record a phase as completed from external evidence (tracker markers)."""
        now = datetime.now()

        def apply(record: IssueRunRecord) -> None:
            existing = record.phase(phase)
            if existing.status.is_done:
                return
            logger.info(f"Marking {phase.value} completed for #{issue_id}: {reason}")
            existing.status = PhaseStatus.COMPLETED
            existing.outcome = existing.outcome or PhaseOutcome.PASSED
            existing.started_at = existing.started_at or now
            existing.ended_at = now
            existing.error = None

        record = self._mutate_issue(issue_id, apply)
        return record.phase(phase)
