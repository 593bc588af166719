"""Core data models for chainrun."""

from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path

from pydantic import BaseModel, Field

from chainrun.core.errors import ConfigurationError, InvalidTransitionError


class PhaseClass(str, Enum):
    """Retry class of a phase; each class has its own loop budget."""

    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"


class PhaseName(str, Enum):
    """Closed, ordered vocabulary of workflow phases.

    Declaration order is the default phase order and decides where
    label-selected phases are inserted into a configured list.
    """

    PLAN = "plan"
    SECURITY_REVIEW = "security-review"
    GENERATE_TESTS = "generate-tests"
    IMPLEMENT = "implement"
    TEST = "test"
    UI_TEST = "ui-test"
    REVIEW = "review"
    FIX = "fix"

    @property
    def display_name(self) -> str:
        return _PHASE_INFO[self][0]

    @property
    def phase_class(self) -> PhaseClass:
        return _PHASE_INFO[self][1]

    @property
    def needs_workspace(self) -> bool:
        """Whether the phase modifies or executes code."""
        return _PHASE_INFO[self][2]

    @property
    def order(self) -> int:
        return list(PhaseName).index(self)


# name -> (display name, class, needs workspace)
_PHASE_INFO: dict[PhaseName, tuple[str, PhaseClass, bool]] = {
    PhaseName.PLAN: ("Plan", PhaseClass.PLANNING, False),
    PhaseName.SECURITY_REVIEW: ("Security Review", PhaseClass.PLANNING, False),
    PhaseName.GENERATE_TESTS: ("Generate Tests", PhaseClass.IMPLEMENTATION, True),
    PhaseName.IMPLEMENT: ("Implement", PhaseClass.IMPLEMENTATION, True),
    PhaseName.TEST: ("Test", PhaseClass.IMPLEMENTATION, True),
    PhaseName.UI_TEST: ("UI Test", PhaseClass.IMPLEMENTATION, True),
    PhaseName.REVIEW: ("Review", PhaseClass.REVIEW, True),
    PhaseName.FIX: ("Fix", PhaseClass.IMPLEMENTATION, True),
}

# Aliases accepted on the command line and in config files
_PHASE_ALIASES: dict[str, PhaseName] = {
    "spec": PhaseName.PLAN,
    "testgen": PhaseName.GENERATE_TESTS,
    "exec": PhaseName.IMPLEMENT,
    "qa": PhaseName.REVIEW,
}


def parse_phase(value: str) -> PhaseName:
    """Resolve a phase identifier, display name or alias.

    Raises:
        ConfigurationError: If the name is not part of the vocabulary.
    """
    key = value.strip().lower()
    for phase in PhaseName:
        if key in (phase.value, phase.display_name.lower()):
            return phase
    if key in _PHASE_ALIASES:
        return _PHASE_ALIASES[key]
    valid = ", ".join(p.value for p in PhaseName if p is not PhaseName.FIX)
    raise ConfigurationError(f"Unknown phase '{value}'. Valid phases: {valid}")


def parse_phase_list(value: str | list[str]) -> list[PhaseName]:
    """Parse a comma-separated (or pre-split) phase list.

    The list keeps the caller's order; duplicates and the loop-only ``fix``
    phase are rejected.

    Args:
        value: e.g. ``"plan,implement,review"``

    Returns:
        Ordered list of phases.

    Raises:
        ConfigurationError: On unknown names, duplicates, ``fix`` or an empty list.
    """
    items = value.split(",") if isinstance(value, str) else value
    phases: list[PhaseName] = []
    for item in items:
        if not item.strip():
            continue
        phase = parse_phase(item)
        if phase is PhaseName.FIX:
            raise ConfigurationError("'fix' is run by the quality loop and cannot be listed as a phase")
        if phase in phases:
            raise ConfigurationError(f"Phase '{phase.value}' listed more than once")
        phases.append(phase)
    if not phases:
        raise ConfigurationError("Phase list is empty")
    return phases


class PhaseStatus(str, Enum):
    """Status of a single phase for one issue."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED, PhaseStatus.TIMED_OUT)

    @property
    def is_done(self) -> bool:
        """Completed or skipped; the phase never needs to run again."""
        return self in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED)


class IssueStatus(str, Enum):
    """Status of an issue under orchestration."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    MERGED = "merged"
    BLOCKED = "blocked"
    ABANDONED = "abandoned"
    WAITING_FOR_GATE = "waiting_for_gate"

    @property
    def is_retired(self) -> bool:
        return self in (IssueStatus.MERGED, IssueStatus.ABANDONED)


class ExecutorStatus(str, Enum):
    """Raw status reported by a phase executor."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class PhaseOutcome(str, Enum):
    """Classified outcome of a phase run.

    The first three are forward progress.
    """

    PASSED = "passed"
    PASSED_WITH_NOTES = "passed_with_notes"
    NEEDS_EXTERNAL_VERIFICATION = "needs_external_verification"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_progress(self) -> bool:
        return self in (PhaseOutcome.PASSED, PhaseOutcome.PASSED_WITH_NOTES, PhaseOutcome.NEEDS_EXTERNAL_VERIFICATION)


class FailureCategory(str, Enum):
    """Why an issue did not reach a clean terminal status."""

    EXECUTOR_FAILURE = "executor_failure"
    EXECUTOR_TIMEOUT = "executor_timeout"
    CHAIN_PRECONDITION = "chain_precondition"
    WORKSPACE_CONFLICT = "workspace_conflict"
    CONFIGURATION = "configuration"
    STATE_CORRUPTION = "state_corruption"
    INFRASTRUCTURE = "infrastructure"
    CANCELLED = "cancelled"


class ExitCode(IntEnum):
    """Process exit codes for a batch."""

    OK = 0
    ISSUES_BLOCKED = 1
    CONFIGURATION_ERROR = 2
    INFRASTRUCTURE_ERROR = 3


# =============================================================================
# State Machine
# =============================================================================

_PHASE_TRANSITIONS: dict[PhaseStatus, set[PhaseStatus]] = {
    PhaseStatus.PENDING: {PhaseStatus.IN_PROGRESS, PhaseStatus.SKIPPED},
    PhaseStatus.IN_PROGRESS: {PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.TIMED_OUT, PhaseStatus.SKIPPED},
    PhaseStatus.FAILED: {PhaseStatus.IN_PROGRESS},
    PhaseStatus.TIMED_OUT: {PhaseStatus.IN_PROGRESS},
    PhaseStatus.COMPLETED: set(),
    PhaseStatus.SKIPPED: set(),
}

_ISSUE_TRANSITIONS: dict[IssueStatus, set[IssueStatus]] = {
    IssueStatus.NOT_STARTED: {
        IssueStatus.IN_PROGRESS,
        IssueStatus.WAITING_FOR_GATE,
        IssueStatus.BLOCKED,
        IssueStatus.ABANDONED,
    },
    IssueStatus.IN_PROGRESS: {
        IssueStatus.READY_FOR_REVIEW,
        IssueStatus.BLOCKED,
        IssueStatus.WAITING_FOR_GATE,
        IssueStatus.ABANDONED,
    },
    IssueStatus.BLOCKED: {IssueStatus.IN_PROGRESS, IssueStatus.WAITING_FOR_GATE, IssueStatus.ABANDONED},
    IssueStatus.WAITING_FOR_GATE: {IssueStatus.IN_PROGRESS, IssueStatus.ABANDONED},
    IssueStatus.READY_FOR_REVIEW: {
        IssueStatus.MERGED,
        IssueStatus.IN_PROGRESS,
        IssueStatus.WAITING_FOR_GATE,
        IssueStatus.ABANDONED,
    },
    IssueStatus.MERGED: set(),
    IssueStatus.ABANDONED: set(),
}


def check_phase_transition(
    record: PhaseRecord,
    target: PhaseStatus,
    max_iterations: int,
    subject: str = "phase",
) -> None:
    """Validate a phase status change.

    Retrying a failed or timed out phase is only allowed while the phase's
    iteration count is below its class budget.

    Raises:
        InvalidTransitionError: If the change is not allowed.
    """
    if target not in _PHASE_TRANSITIONS[record.status]:
        raise InvalidTransitionError(subject, record.status.value, target.value)
    if record.status in (PhaseStatus.FAILED, PhaseStatus.TIMED_OUT) and record.iteration >= max_iterations:
        raise InvalidTransitionError(
            f"{subject} (iteration {record.iteration}/{max_iterations})",
            record.status.value,
            target.value,
        )


def check_issue_transition(current: IssueStatus, target: IssueStatus, subject: str = "issue") -> None:
    """Validate an issue status change; same-status updates are no-ops."""
    if current == target:
        return
    if target not in _ISSUE_TRANSITIONS[current]:
        raise InvalidTransitionError(subject, current.value, target.value)


# =============================================================================
# State Models
# =============================================================================


class PhaseRecord(BaseModel):
    """State of one named phase for one issue."""

    name: PhaseName
    status: PhaseStatus = PhaseStatus.PENDING
    iteration: int = Field(default=0, ge=0)
    outcome: PhaseOutcome | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    commit_before: str | None = None
    commit_after: str | None = None


class IssueRunRecord(BaseModel):
    """Everything the orchestrator knows about one issue."""

    issue_id: str
    title: str = ""
    status: IssueStatus = IssueStatus.NOT_STARTED
    workspace: Path | None = None
    branch: str | None = None
    base_ref: str | None = None
    base_commit: str | None = None
    chain_position: int | None = None
    phases: list[PhaseRecord] = Field(default_factory=list)
    failure_category: FailureCategory | None = None
    failure_reason: str | None = None
    warnings: list[str] = Field(default_factory=list)
    checkpoint_ref: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    last_activity: datetime = Field(default_factory=datetime.now)

    def get_phase(self, name: PhaseName) -> PhaseRecord | None:
        for record in self.phases:
            if record.name == name:
                return record
        return None

    def phase(self, name: PhaseName) -> PhaseRecord:
        """Get the record for a phase, appending a pending one if absent."""
        record = self.get_phase(name)
        if record is None:
            record = PhaseRecord(name=name)
            self.phases.append(record)
        return record

    def completed_phases(self) -> set[PhaseName]:
        return {p.name for p in self.phases if p.status.is_done}

    def all_done(self, phases: list[PhaseName]) -> bool:
        """Check every listed phase is completed or skipped."""
        done = self.completed_phases()
        return all(p in done for p in phases)


class WorkflowState(BaseModel):
    """The persisted state document, keyed by issue id."""

    version: int = 1
    last_updated: datetime = Field(default_factory=datetime.now)
    issues: dict[str, IssueRunRecord] = Field(default_factory=dict)


# =============================================================================
# Execution Models
# =============================================================================


class ExecutionRequest(BaseModel):
    """What an executor is told about one phase invocation."""

    issue_id: str
    phase: PhaseName
    workspace: Path | None = None
    context: str | None = None
    timeout: int = 1800


class ExecutionResult(BaseModel):
    """Result reported by a phase executor."""

    status: ExecutorStatus
    output: str = ""
    duration_ms: int = 0
    outcome: PhaseOutcome | None = None

    @property
    def classified_outcome(self) -> PhaseOutcome:
        """Outcome as classified by the executor, defaulting from status."""
        if self.outcome is not None:
            return self.outcome
        if self.status == ExecutorStatus.SUCCESS:
            return PhaseOutcome.PASSED
        if self.status == ExecutorStatus.TIMEOUT:
            return PhaseOutcome.TIMED_OUT
        return PhaseOutcome.FAILED

    @property
    def error(self) -> str:
        """Short failure text passed as context to the fix phase."""
        text = self.output.strip()
        if self.status == ExecutorStatus.TIMEOUT and not text:
            return "Phase timed out"
        return text[-2000:] if text else f"Phase reported {self.status.value}"


class PhaseRunResult(BaseModel):
    """Final result of a phase after the quality loop."""

    phase: PhaseName
    status: PhaseStatus
    outcome: PhaseOutcome | None = None
    iteration: int = 0
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status.is_done


class IssueResult(BaseModel):
    """Final result for one issue in a batch."""

    issue_id: str
    title: str = ""
    status: IssueStatus
    chain_position: int | None = None
    failure_category: FailureCategory | None = None
    failure_reason: str | None = None
    warnings: list[str] = Field(default_factory=list)
    phases: list[PhaseRunResult] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status in (IssueStatus.READY_FOR_REVIEW, IssueStatus.MERGED)


class BatchSummary(BaseModel):
    """Aggregate outcome of a batch invocation."""

    run_id: str
    results: list[IssueResult] = Field(default_factory=list)
    not_started: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == IssueStatus.BLOCKED)

    @property
    def paused(self) -> int:
        return sum(1 for r in self.results if r.status == IssueStatus.WAITING_FOR_GATE)

    @property
    def exit_code(self) -> ExitCode:
        if self.failed or self.paused:
            return ExitCode.ISSUES_BLOCKED
        return ExitCode.OK

    def describe(self) -> str:
        """One-line summary, e.g. ``"1 passed, 1 failed"``."""
        parts = [f"{self.passed} passed", f"{self.failed} failed"]
        if self.paused:
            parts.append(f"{self.paused} waiting for gate")
        if self.not_started:
            parts.append(f"{len(self.not_started)} not started")
        return ", ".join(parts)
