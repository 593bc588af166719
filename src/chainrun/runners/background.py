"""Fire-and-forget background checks.

After a code-changing phase the orchestrator may start auxiliary shell
commands (linters, quick test runs) in the workspace. They run as asyncio
tasks next to the main loop, are never awaited by it, and their results are
only logged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """Result of one background check."""

    issue_id: str
    command: str
    passed: bool
    output: str
    finished_at: datetime = field(default_factory=datetime.now)


class BackgroundChecks:
    """Launches advisory checks and keeps track of the tasks."""

    def __init__(self, commands: list[str], timeout: int = 300) -> None:
        self.commands = commands
        self.timeout = timeout
        self.results: list[CheckResult] = []
        self._tasks: set[asyncio.Task[CheckResult]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def launch(self, issue_id: str, workspace: Path) -> None:
        """Schedule every configured command for a workspace and return immediately."""
        for command in self.commands:
            task = asyncio.create_task(self._run(issue_id, command, workspace), name=f"check-{issue_id}")
            self._tasks.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[CheckResult]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Background check crashed: {exc}")
            return
        result = task.result()
        self.results.append(result)
        if result.passed:
            logger.info(f"Background check passed for #{result.issue_id}: {result.command}")
        else:
            logger.warning(f"Background check failed for #{result.issue_id}: {result.command}\n{result.output[-500:]}")

    async def _run(self, issue_id: str, command: str, workspace: Path) -> CheckResult:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=workspace,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            return CheckResult(issue_id, command, passed=False, output=f"TIMEOUT after {self.timeout} seconds")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        return CheckResult(
            issue_id,
            command,
            passed=process.returncode == 0,
            output=stdout.decode("utf-8", errors="replace"),
        )

    async def shutdown(self) -> None:
        """Cancel whatever is still running; called once at batch end."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"Cancelled {len(tasks)} background check(s)")
