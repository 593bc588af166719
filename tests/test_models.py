"""Unit tests for the phase vocabulary, status machines and result models."""

from __future__ import annotations

import pytest

from chainrun.core.errors import ConfigurationError, InvalidTransitionError
from chainrun.core.models import (
    BatchSummary,
    ExecutionResult,
    ExecutorStatus,
    ExitCode,
    IssueResult,
    IssueStatus,
    PhaseClass,
    PhaseName,
    PhaseOutcome,
    PhaseRecord,
    PhaseStatus,
    check_issue_transition,
    check_phase_transition,
    parse_phase,
    parse_phase_list,
)


class TestPhaseVocabulary:
    """Tests for phase names, classes and parsing."""

    def test_declaration_order_is_execution_order(self) -> None:
        """Phases sort into plan -> ... -> review."""
        shuffled = [PhaseName.REVIEW, PhaseName.PLAN, PhaseName.IMPLEMENT]
        assert sorted(shuffled, key=lambda p: p.order) == [PhaseName.PLAN, PhaseName.IMPLEMENT, PhaseName.REVIEW]

    def test_phase_classes(self) -> None:
        assert PhaseName.PLAN.phase_class == PhaseClass.PLANNING
        assert PhaseName.SECURITY_REVIEW.phase_class == PhaseClass.PLANNING
        assert PhaseName.IMPLEMENT.phase_class == PhaseClass.IMPLEMENTATION
        assert PhaseName.REVIEW.phase_class == PhaseClass.REVIEW

    def test_planning_phases_need_no_workspace(self) -> None:
        assert not PhaseName.PLAN.needs_workspace
        assert PhaseName.IMPLEMENT.needs_workspace

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("plan", PhaseName.PLAN),
            ("Security Review", PhaseName.SECURITY_REVIEW),
            ("exec", PhaseName.IMPLEMENT),
            (" QA ", PhaseName.REVIEW),
        ],
    )
    def test_parse_phase_accepts_names_and_aliases(self, value: str, expected: PhaseName) -> None:
        assert parse_phase(value) == expected

    def test_parse_phase_unknown(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown phase 'deploy'"):
            parse_phase("deploy")

    def test_parse_phase_list_keeps_order(self) -> None:
        assert parse_phase_list("review, plan,,implement") == [PhaseName.REVIEW, PhaseName.PLAN, PhaseName.IMPLEMENT]

    def test_parse_phase_list_rejects_fix(self) -> None:
        with pytest.raises(ConfigurationError, match="quality loop"):
            parse_phase_list("implement,fix")

    def test_parse_phase_list_rejects_duplicates(self) -> None:
        with pytest.raises(ConfigurationError, match="more than once"):
            parse_phase_list("plan,spec")

    def test_parse_phase_list_rejects_empty(self) -> None:
        with pytest.raises(ConfigurationError, match="empty"):
            parse_phase_list(" , ")


class TestPhaseTransitions:
    """Tests for the phase status machine and its retry bound."""

    def test_pending_to_in_progress(self) -> None:
        check_phase_transition(PhaseRecord(name=PhaseName.PLAN), PhaseStatus.IN_PROGRESS, 0)

    def test_completed_is_final(self) -> None:
        record = PhaseRecord(name=PhaseName.PLAN, status=PhaseStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            check_phase_transition(record, PhaseStatus.IN_PROGRESS, 3)

    def test_pending_cannot_complete_directly(self) -> None:
        with pytest.raises(InvalidTransitionError):
            check_phase_transition(PhaseRecord(name=PhaseName.PLAN), PhaseStatus.COMPLETED, 3)

    def test_retry_allowed_below_budget(self) -> None:
        record = PhaseRecord(name=PhaseName.IMPLEMENT, status=PhaseStatus.FAILED, iteration=2)
        check_phase_transition(record, PhaseStatus.IN_PROGRESS, 3)

    def test_retry_refused_at_budget(self) -> None:
        """A failed phase at its iteration budget may not be retried."""
        record = PhaseRecord(name=PhaseName.IMPLEMENT, status=PhaseStatus.TIMED_OUT, iteration=3)
        with pytest.raises(InvalidTransitionError, match="iteration 3/3"):
            check_phase_transition(record, PhaseStatus.IN_PROGRESS, 3)


class TestIssueTransitions:
    """Tests for the issue status machine."""

    def test_same_status_is_noop(self) -> None:
        check_issue_transition(IssueStatus.MERGED, IssueStatus.MERGED)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (IssueStatus.NOT_STARTED, IssueStatus.IN_PROGRESS),
            (IssueStatus.IN_PROGRESS, IssueStatus.READY_FOR_REVIEW),
            (IssueStatus.BLOCKED, IssueStatus.IN_PROGRESS),
            (IssueStatus.WAITING_FOR_GATE, IssueStatus.IN_PROGRESS),
            (IssueStatus.READY_FOR_REVIEW, IssueStatus.MERGED),
        ],
    )
    def test_allowed(self, current: IssueStatus, target: IssueStatus) -> None:
        check_issue_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (IssueStatus.MERGED, IssueStatus.IN_PROGRESS),
            (IssueStatus.ABANDONED, IssueStatus.IN_PROGRESS),
            (IssueStatus.NOT_STARTED, IssueStatus.READY_FOR_REVIEW),
            (IssueStatus.BLOCKED, IssueStatus.MERGED),
        ],
    )
    def test_forbidden(self, current: IssueStatus, target: IssueStatus) -> None:
        with pytest.raises(InvalidTransitionError):
            check_issue_transition(current, target)


class TestExecutionResult:
    """Tests for defaults derived from executor status."""

    def test_outcome_defaults_from_status(self) -> None:
        assert ExecutionResult(status=ExecutorStatus.SUCCESS).classified_outcome == PhaseOutcome.PASSED
        assert ExecutionResult(status=ExecutorStatus.TIMEOUT).classified_outcome == PhaseOutcome.TIMED_OUT
        assert ExecutionResult(status=ExecutorStatus.FAILURE).classified_outcome == PhaseOutcome.FAILED

    def test_explicit_outcome_wins(self) -> None:
        result = ExecutionResult(status=ExecutorStatus.SUCCESS, outcome=PhaseOutcome.PASSED_WITH_NOTES)
        assert result.classified_outcome == PhaseOutcome.PASSED_WITH_NOTES

    def test_error_text(self) -> None:
        assert ExecutionResult(status=ExecutorStatus.TIMEOUT).error == "Phase timed out"
        assert ExecutionResult(status=ExecutorStatus.FAILURE).error == "Phase reported failure"
        assert ExecutionResult(status=ExecutorStatus.FAILURE, output="x" * 3000).error == "x" * 2000


class TestBatchSummary:
    """Tests for aggregate counts and exit codes."""

    def test_all_passed_exits_ok(self) -> None:
        summary = BatchSummary(
            run_id="r",
            results=[IssueResult(issue_id="1", status=IssueStatus.READY_FOR_REVIEW)],
        )
        assert summary.exit_code == ExitCode.OK
        assert summary.describe() == "1 passed, 0 failed"

    def test_blocked_issue_exits_one(self) -> None:
        summary = BatchSummary(
            run_id="r",
            results=[
                IssueResult(issue_id="1", status=IssueStatus.READY_FOR_REVIEW),
                IssueResult(issue_id="2", status=IssueStatus.BLOCKED),
            ],
        )
        assert summary.exit_code == ExitCode.ISSUES_BLOCKED
        assert summary.describe() == "1 passed, 1 failed"

    def test_pause_and_not_started_are_reported(self) -> None:
        summary = BatchSummary(
            run_id="r",
            results=[IssueResult(issue_id="1", status=IssueStatus.WAITING_FOR_GATE)],
            not_started=["2", "3"],
        )
        assert summary.exit_code == ExitCode.ISSUES_BLOCKED
        assert summary.describe() == "0 passed, 0 failed, 1 waiting for gate, 2 not started"
