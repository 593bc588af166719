"""Exception hierarchy for chainrun.

Errors that abort a whole batch (configuration, state store I/O, lock
contention) derive from distinct classes so the CLI can map them to exit
codes. Per-issue failures are never raised; they are recorded on the
issue's run record instead.
"""

from __future__ import annotations


class ChainrunError(Exception):
    """Base exception for all chainrun errors."""


class ConfigurationError(ChainrunError):
    """Invalid flag combination or configuration value.

    Raised before any phase executes.
    """


class StateError(ChainrunError):
    """Base class for state store failures."""


class StateCorruptionError(StateError):
    """The state file exists but cannot be parsed or validated."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"State file {path} is corrupt ({reason}); rebuild required: run `chainrun state rebuild --yes`")
        self.path = path
        self.reason = reason


class StateWriteError(StateError):
    """The state file could not be written at all."""


class InvalidTransitionError(StateError):
    """A status change that the state machine does not allow."""

    def __init__(self, subject: str, current: str, target: str) -> None:
        super().__init__(f"Invalid transition for {subject}: {current} -> {target}")
        self.subject = subject
        self.current = current
        self.target = target


class IssueNotFoundError(StateError):
    """No run record exists for the requested issue."""


class LockTimeoutError(ChainrunError):
    """An advisory file lock could not be acquired in time."""

    def __init__(self, path: str, timeout: float) -> None:
        super().__init__(f"Could not acquire lock on {path} within {timeout:.1f}s")
        self.path = path
        self.timeout = timeout


class GitError(ChainrunError):
    """A git command failed unexpectedly."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()[:300]}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr


class WorkspaceError(ChainrunError):
    """A workspace could not be created or reused."""


class TeardownRefusedError(WorkspaceError):
    """Teardown requested for a branch not confirmed merged."""
