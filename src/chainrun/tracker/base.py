"""Issue tracker interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from chainrun.core.errors import ChainrunError


class TrackerError(ChainrunError):
    """Base exception for issue tracker errors."""


class TrackerAuthError(TrackerError):
    """Authentication with the tracker failed."""


class TrackerNotFoundError(TrackerError):
    """Requested issue or pull request not found."""


class TrackerRateLimitError(TrackerError):
    """Tracker API rate limit exceeded."""

    def __init__(self, message: str, reset_at: int | None = None) -> None:
        super().__init__(message)
        self.reset_at = reset_at


@dataclass
class TrackedIssue:
    """Issue metadata as reported by the tracker."""

    issue_id: str
    title: str
    state: str = "open"
    labels: list[str] = field(default_factory=list)
    url: str = ""
    body: str = ""


@dataclass
class PullRequest:
    number: int
    url: str = ""
    merged: bool = False


@runtime_checkable
class IssueTracker(Protocol):
    """What the orchestrator needs from an issue tracker."""

    async def get_issue(self, issue_id: str) -> TrackedIssue: ...

    async def list_comments(self, issue_id: str) -> list[str]: ...

    async def post_comment(self, issue_id: str, body: str) -> None: ...

    async def find_pull_request(self, branch: str) -> PullRequest | None: ...

    async def create_pull_request(self, branch: str, base: str, title: str, body: str) -> PullRequest: ...


class NullIssueTracker:
    """Tracker used when none is configured: no titles, no markers, no PRs."""

    async def __aenter__(self) -> NullIssueTracker:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def get_issue(self, issue_id: str) -> TrackedIssue:
        return TrackedIssue(issue_id=issue_id, title="")

    async def list_comments(self, issue_id: str) -> list[str]:
        return []

    async def post_comment(self, issue_id: str, body: str) -> None:
        return None

    async def find_pull_request(self, branch: str) -> PullRequest | None:
        return None

    async def create_pull_request(self, branch: str, base: str, title: str, body: str) -> PullRequest:
        raise TrackerError("No issue tracker configured; cannot open a pull request")
