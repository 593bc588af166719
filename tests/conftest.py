"""Shared fixtures: a temporary state store, a scripted executor and a scratch git repo."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from chainrun.config import Config, NotificationConfig, TrackerConfig
from chainrun.core.models import (
    ExecutionRequest,
    ExecutionResult,
    ExecutorStatus,
    PhaseName,
    PhaseOutcome,
)
from chainrun.core.state import StateStore


def ok(output: str = "done", outcome: PhaseOutcome | None = None) -> ExecutionResult:
    return ExecutionResult(status=ExecutorStatus.SUCCESS, output=output, duration_ms=5, outcome=outcome)


def fail(output: str = "tests failed") -> ExecutionResult:
    return ExecutionResult(status=ExecutorStatus.FAILURE, output=output, duration_ms=5, outcome=PhaseOutcome.FAILED)


def timeout() -> ExecutionResult:
    return ExecutionResult(status=ExecutorStatus.TIMEOUT, output="", duration_ms=5, outcome=PhaseOutcome.TIMED_OUT)


class FakeExecutor:
    """Executor returning scripted results per (issue, phase).

    Each script is consumed in order and its last result repeats; unscripted
    phases succeed. ``on_execute`` runs before the result is returned, e.g.
    to commit a file in the workspace.
    """

    def __init__(self) -> None:
        self.scripts: dict[tuple[str, PhaseName], list[ExecutionResult]] = {}
        self.calls: list[ExecutionRequest] = []
        self.on_execute: Callable[[ExecutionRequest], None] | None = None

    def script(self, issue_id: str, phase: PhaseName, *results: ExecutionResult) -> None:
        self.scripts[(issue_id, phase)] = list(results)

    def phases_run(self, issue_id: str | None = None) -> list[PhaseName]:
        return [c.phase for c in self.calls if issue_id is None or c.issue_id == issue_id]

    def issues_run(self) -> list[str]:
        seen: list[str] = []
        for call in self.calls:
            if call.issue_id not in seen:
                seen.append(call.issue_id)
        return seen

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.calls.append(request)
        if self.on_execute is not None:
            self.on_execute(request)
        script = self.scripts.get((request.issue_id, request.phase))
        if not script:
            return ok()
        return script.pop(0) if len(script) > 1 else script[0]


def git(repo: Path, *args: str) -> str:
    """Run git in ``repo`` and return stripped stdout."""
    result = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True)
    return result.stdout.strip()


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / ".chainrun" / "state.json"


@pytest.fixture
def store(state_path: Path) -> StateStore:
    """A state store backed by a temporary file."""
    return StateStore(state_path, lock_timeout=2.0)


@pytest.fixture
def config() -> Config:
    """Defaults with tracker and notifications switched off."""
    return Config(
        tracker=TrackerConfig(provider="none"),
        notifications=NotificationConfig(provider="none"),
    )


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository on ``main`` with one commit and no remote."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "dev@example.com")
    git(repo, "config", "user.name", "Dev")
    git(repo, "config", "commit.gpgsign", "false")
    git(repo, "config", "tag.gpgsign", "false")
    (repo / "README.md").write_text("# project\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "initial")
    return repo
