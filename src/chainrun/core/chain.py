"""Chain dependency management.

In a chain ``[A, B, C]`` each issue branches from its predecessor's branch
tip instead of trunk. B may not start until A is chain-eligible, B's
workspace follows A when A's branch moves, and with a quality gate B waits
(rather than fails) when A has not passed review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chainrun.config import ChainConfig
from chainrun.core.errors import ConfigurationError
from chainrun.core.models import (
    FailureCategory,
    IssueRunRecord,
    IssueStatus,
    PhaseName,
    PhaseStatus,
)
from chainrun.core.state import StateStore
from chainrun.utils.git import branch_exists
from chainrun.workspace.worktrees import Workspace, WorktreeManager

logger = logging.getLogger(__name__)

ELIGIBLE_STATUSES = (IssueStatus.READY_FOR_REVIEW, IssueStatus.MERGED)


@dataclass
class ChainCheck:
    """Whether the next issue in a chain may start."""

    eligible: bool
    reason: str | None = None


class ChainManager:
    """Enforces ordering and branch ancestry across a chain of issues."""

    def __init__(
        self,
        issue_ids: list[str],
        store: StateStore,
        worktrees: WorktreeManager | None,
        config: ChainConfig,
        base: str,
        qa_gate: bool = False,
    ) -> None:
        self.issue_ids = issue_ids
        self.store = store
        self.worktrees = worktrees
        self.config = config
        self.base = base
        self.qa_gate = qa_gate

    def validate(self, phases: list[PhaseName]) -> list[str]:
        """Check chain settings before any work starts.

        Returns:
            Advisory warnings (long chains).

        Raises:
            ConfigurationError: If the quality gate cannot be evaluated.
        """
        if self.qa_gate and PhaseName.REVIEW not in phases:
            raise ConfigurationError("--qa-gate needs the 'review' phase in the phase list")

        warnings: list[str] = []
        if len(self.issue_ids) > self.config.max_length:
            message = (
                f"Chain of {len(self.issue_ids)} issues exceeds the recommended maximum of "
                f"{self.config.max_length}; long chains are harder to review and recover"
            )
            logger.warning(message)
            warnings.append(message)
        return warnings

    def position(self, issue_id: str) -> int:
        return self.issue_ids.index(issue_id)

    def predecessor(self, issue_id: str) -> IssueRunRecord | None:
        position = self.position(issue_id)
        if position == 0:
            return None
        return self.store.get_issue(self.issue_ids[position - 1])

    def base_for(self, issue_id: str) -> str:
        """Ref issue ``issue_id`` should branch from.

        The predecessor's live branch when it exists, its checkpoint tag when
        the branch is gone, and otherwise whatever the predecessor itself was
        based on.
        """
        position = self.position(issue_id)
        if position == 0:
            return self.base

        previous = self.predecessor(issue_id)
        if previous is None:
            return self.base_for(self.issue_ids[position - 1])
        repo = self.worktrees.repo_root if self.worktrees else None
        if previous.branch and repo is not None and branch_exists(previous.branch, repo):
            return previous.branch
        if previous.checkpoint_ref:
            return previous.checkpoint_ref
        return self.base_for(previous.issue_id)

    def check_predecessor(self, issue_id: str) -> ChainCheck:
        """Decide whether ``issue_id`` may start.

        Without a gate the predecessor must be ready for review (or merged).
        With a gate its review phase must additionally have completed.
        """
        if self.position(issue_id) == 0:
            return ChainCheck(eligible=True)

        previous = self.predecessor(issue_id)
        if previous is None:
            return ChainCheck(eligible=False, reason="predecessor has not been started")
        label = f"#{previous.issue_id}"
        if previous.status not in ELIGIBLE_STATUSES:
            return ChainCheck(eligible=False, reason=f"predecessor {label} is {previous.status.value}")
        if self.qa_gate:
            review = previous.get_phase(PhaseName.REVIEW)
            if review is None or review.status != PhaseStatus.COMPLETED:
                return ChainCheck(eligible=False, reason=f"predecessor {label} has not passed review")
        return ChainCheck(eligible=True)

    def pause(self, issue_id: str, reason: str) -> IssueRunRecord:
        """Park an issue at the quality gate; this is a pause, not a failure."""
        logger.warning(f"Chain paused at #{issue_id}: {reason}")
        return self.store.set_issue_status(
            issue_id,
            IssueStatus.WAITING_FOR_GATE,
            category=FailureCategory.CHAIN_PRECONDITION,
            reason=reason,
        )

    def prepare_workspace(self, issue_id: str, title: str) -> Workspace:
        """Create or reuse the issue's workspace on top of its predecessor.

        A reused workspace whose predecessor has moved is rebased. On conflict
        the rebase is aborted, the issue keeps its previous base and the
        conflict is recorded as a warning for manual reconciliation.
        """
        if self.worktrees is None:
            raise RuntimeError("ChainManager needs a WorktreeManager to prepare workspaces")

        record = self.store.get_issue(issue_id)
        recorded_base = record.base_commit if record else None
        base = self.base_for(issue_id)
        workspace = self.worktrees.ensure(issue_id, title, base, chain_mode=True, recorded_base=recorded_base)

        if workspace.rebase is not None and not workspace.rebase.success:
            kind = "conflict" if workspace.rebase.conflict else "failure"
            warning = (
                f"{FailureCategory.WORKSPACE_CONFLICT.value}: rebase onto {base} aborted ({kind}); "
                "continuing on previous base, manual rebase required"
            )
            logger.warning(f"#{issue_id}: {warning}")
            self.store.add_warning(issue_id, warning)

        self.store.set_workspace(
            issue_id,
            workspace.path,
            branch=workspace.branch,
            base_ref=workspace.base_ref,
            base_commit=workspace.base_commit,
        )
        return workspace

    def checkpoint(self, issue_id: str, title: str) -> str | None:
        """Tag the issue's branch tip after it passed review.

        Returns:
            The checkpoint tag name, or None if there is no workspace to tag.
        """
        record = self.store.get_issue(issue_id)
        if record is None or record.workspace is None or self.worktrees is None:
            return None
        tag = f"{self.config.checkpoint_tag_prefix}/{issue_id}"
        message = self.config.checkpoint_message.format(issue=issue_id, title=title or record.title)
        if self.worktrees.checkpoint(record.workspace, tag, message) is None:
            return None
        self.store.set_checkpoint(issue_id, tag)
        return tag
