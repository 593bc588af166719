"""Core orchestration logic."""

from chainrun.core.errors import (
    ChainrunError,
    ConfigurationError,
    GitError,
    InvalidTransitionError,
    IssueNotFoundError,
    LockTimeoutError,
    StateCorruptionError,
    StateError,
    StateWriteError,
    TeardownRefusedError,
    WorkspaceError,
)
from chainrun.core.models import (
    BatchSummary,
    ExitCode,
    FailureCategory,
    IssueResult,
    IssueRunRecord,
    IssueStatus,
    PhaseName,
    PhaseOutcome,
    PhaseRecord,
    PhaseStatus,
    WorkflowState,
)
from chainrun.core.state import StateStore

__all__ = [
    "BatchSummary",
    "ChainrunError",
    "ConfigurationError",
    "ExitCode",
    "FailureCategory",
    "GitError",
    "InvalidTransitionError",
    "IssueNotFoundError",
    "IssueResult",
    "IssueRunRecord",
    "IssueStatus",
    "LockTimeoutError",
    "PhaseName",
    "PhaseOutcome",
    "PhaseRecord",
    "PhaseStatus",
    "StateCorruptionError",
    "StateError",
    "StateStore",
    "StateWriteError",
    "TeardownRefusedError",
    "WorkflowState",
    "WorkspaceError",
]
