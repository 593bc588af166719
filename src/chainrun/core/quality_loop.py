"""Bounded fix-and-retry loop around a single phase."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from chainrun.config import QualityLoopConfig
from chainrun.core.models import (
    ExecutionRequest,
    ExecutionResult,
    ExecutorStatus,
    PhaseName,
    PhaseRunResult,
    PhaseStatus,
)
from chainrun.core.run_log import PhaseLogEntry, RunLogWriter
from chainrun.core.state import StateStore
from chainrun.runners.executor import PhaseExecutor
from chainrun.utils.git import head_commit

logger = logging.getLogger(__name__)


def phase_status_for(result: ExecutionResult) -> PhaseStatus:
    """Phase status implied by an executor result.

    Only a successful run with a forward-progress outcome completes the
    phase; notes and pending external verification count as progress.
    """
    if result.status == ExecutorStatus.TIMEOUT:
        return PhaseStatus.TIMED_OUT
    if result.status == ExecutorStatus.SUCCESS and result.classified_outcome.is_progress:
        return PhaseStatus.COMPLETED
    return PhaseStatus.FAILED


class QualityLoopController:
    """Runs a phase and, while it fails, a fix phase followed by a re-run.

    Every transition is written to the state store as it happens, so an
    interrupted loop can be picked up from disk.
    """

    def __init__(
        self,
        executor: PhaseExecutor,
        store: StateStore,
        config: QualityLoopConfig,
        phase_timeout: int = 1800,
        run_log: RunLogWriter | None = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.config = config
        self.phase_timeout = phase_timeout
        self.run_log = run_log

    def with_loop_enabled(self) -> QualityLoopController:
        """Same controller with fix cycles switched on, for issues that need them."""
        config = self.config.model_copy(update={"enabled": True})
        return QualityLoopController(self.executor, self.store, config, self.phase_timeout, self.run_log)

    def max_iterations(self, phase: PhaseName) -> int:
        return self.config.max_iterations(phase.phase_class)

    async def run(self, issue_id: str, phase: PhaseName, workspace: Path | None = None) -> PhaseRunResult:
        """Execute ``phase`` with up to ``max_iterations`` fix cycles.

        Args:
            issue_id: Issue being processed
            phase: Phase to run
            workspace: Issue workspace, or None for planning phases

        Returns:
            Final status, outcome and iteration count of the phase.
        """
        budget = self.max_iterations(phase)
        started = datetime.now()
        iteration = 0

        result = await self._attempt(issue_id, phase, workspace, budget, iteration)
        status = phase_status_for(result)

        while status in (PhaseStatus.FAILED, PhaseStatus.TIMED_OUT) and iteration < budget:
            logger.info(f"{phase.display_name} failed for #{issue_id}; fix cycle {iteration + 1}/{budget}")
            await self._fix(issue_id, phase, workspace, result, iteration + 1)
            iteration += 1
            result = await self._attempt(issue_id, phase, workspace, budget, iteration)
            status = phase_status_for(result)

        error = result.error if status in (PhaseStatus.FAILED, PhaseStatus.TIMED_OUT) else None
        if error is not None and budget:
            logger.warning(f"{phase.display_name} for #{issue_id} still failing after {iteration} fix cycle(s)")

        return PhaseRunResult(
            phase=phase,
            status=status,
            outcome=result.classified_outcome,
            iteration=iteration,
            error=error,
            duration_seconds=(datetime.now() - started).total_seconds(),
        )

    async def _attempt(
        self,
        issue_id: str,
        phase: PhaseName,
        workspace: Path | None,
        budget: int,
        iteration: int,
    ) -> ExecutionResult:
        commit_before = head_commit(workspace) if workspace else None
        self.store.start_phase(issue_id, phase, budget, commit_before=commit_before, iteration=iteration)
        started = datetime.now()

        result = await self.executor.execute(
            ExecutionRequest(
                issue_id=issue_id,
                phase=phase,
                workspace=workspace if phase.needs_workspace else None,
                timeout=self.phase_timeout,
            )
        )

        status = phase_status_for(result)
        commit_after = head_commit(workspace) if workspace else None
        error = result.error if status in (PhaseStatus.FAILED, PhaseStatus.TIMED_OUT) else None
        self.store.finish_phase(
            issue_id,
            phase,
            status,
            budget,
            outcome=result.classified_outcome,
            error=error,
            commit_after=commit_after,
        )
        self._log(issue_id, phase, result, status, iteration, started, commit_before, commit_after)
        return result

    async def _fix(
        self,
        issue_id: str,
        phase: PhaseName,
        workspace: Path | None,
        failure: ExecutionResult,
        iteration: int,
    ) -> None:
        commit_before = head_commit(workspace) if workspace else None
        started = datetime.now()
        result = await self.executor.execute(
            ExecutionRequest(
                issue_id=issue_id,
                phase=PhaseName.FIX,
                workspace=workspace,
                context=f"{phase.display_name} failed:\n{failure.error}",
                timeout=self.phase_timeout,
            )
        )
        if result.status != ExecutorStatus.SUCCESS:
            logger.warning(f"Fix attempt {iteration} for #{issue_id} reported {result.status.value}; re-running {phase.value} anyway")
        commit_after = head_commit(workspace) if workspace else None
        self._log(issue_id, PhaseName.FIX, result, phase_status_for(result), iteration, started, commit_before, commit_after)

    def _log(
        self,
        issue_id: str,
        phase: PhaseName,
        result: ExecutionResult,
        status: PhaseStatus,
        iteration: int,
        started: datetime,
        commit_before: str | None,
        commit_after: str | None,
    ) -> None:
        if self.run_log is None:
            return
        ended = datetime.now()
        self.run_log.log_phase(
            issue_id,
            PhaseLogEntry(
                phase=phase,
                status=status,
                outcome=result.classified_outcome,
                iteration=iteration,
                started_at=started,
                ended_at=ended,
                duration_seconds=(ended - started).total_seconds(),
                error=result.error if status in (PhaseStatus.FAILED, PhaseStatus.TIMED_OUT) else None,
                commit_before=commit_before,
                commit_after=commit_after,
            ),
        )
