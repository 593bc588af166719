"""Issue tracker integrations."""

from __future__ import annotations

import logging

from chainrun.config import TrackerConfig
from chainrun.tracker.base import (
    IssueTracker,
    NullIssueTracker,
    PullRequest,
    TrackedIssue,
    TrackerAuthError,
    TrackerError,
    TrackerNotFoundError,
    TrackerRateLimitError,
)
from chainrun.tracker.github import GitHubIssueTracker

logger = logging.getLogger(__name__)


def create_tracker(config: TrackerConfig) -> GitHubIssueTracker | NullIssueTracker:
    """Build the configured tracker, falling back to a null tracker without credentials."""
    if config.provider != "github" or not config.repo:
        return NullIssueTracker()
    try:
        return GitHubIssueTracker(config.repo, dry_run=config.dry_run)
    except TrackerAuthError as e:
        logger.warning(f"GitHub tracker disabled: {e}")
        return NullIssueTracker()


__all__ = [
    "GitHubIssueTracker",
    "IssueTracker",
    "NullIssueTracker",
    "PullRequest",
    "TrackedIssue",
    "TrackerAuthError",
    "TrackerError",
    "TrackerNotFoundError",
    "TrackerRateLimitError",
    "create_tracker",
]
