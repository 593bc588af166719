"""Phase executors.

The orchestrator only knows the PhaseExecutor protocol; AgentCliExecutor is
the concrete adapter that shells out to an agent CLI. Tests inject their own
executors returning scripted results.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

from chainrun.config import ExecutorConfig
from chainrun.core.models import (
    ExecutionRequest,
    ExecutionResult,
    ExecutorStatus,
    PhaseClass,
    PhaseName,
    PhaseOutcome,
)

logger = logging.getLogger(__name__)

PHASE_PROMPTS: dict[PhaseName, str] = {
    PhaseName.PLAN: "Review issue #{issue} and write an implementation plan with verification criteria. Run the /spec {issue} workflow.",
    PhaseName.SECURITY_REVIEW: "Perform a security analysis for issue #{issue}. Run the /security-review {issue} workflow.",
    PhaseName.GENERATE_TESTS: "Generate test stubs for issue #{issue} from its plan. Run the /testgen {issue} workflow.",
    PhaseName.IMPLEMENT: "Implement issue #{issue} following its plan. Run the /exec {issue} workflow.",
    PhaseName.TEST: "Run the test suite for issue #{issue} and report failures. Run the /test {issue} workflow.",
    PhaseName.UI_TEST: "Run browser-based testing for issue #{issue}. Run the /test {issue} workflow.",
    PhaseName.REVIEW: "Review the implementation of issue #{issue} against its acceptance criteria and end with a Verdict line. Run the /qa {issue} workflow.",
    PhaseName.FIX: "Fix the problems reported for issue #{issue} and make the failing checks pass. Run the /loop {issue} workflow.",
}

# Matches "Verdict: X", "### Verdict: X", "**Verdict:** **X**"
_VERDICT_RE = re.compile(
    r"(?:#{1,3}\s*)?(?:\*\*)?Verdict:?(?:\*\*)?\s*(?:\*\*)?\s*"
    r"(READY_FOR_MERGE|AC_MET_BUT_NOT_A_PLUS|AC_NOT_MET|NEEDS_VERIFICATION)",
    re.IGNORECASE,
)

VERDICT_OUTCOMES: dict[str, PhaseOutcome] = {
    "READY_FOR_MERGE": PhaseOutcome.PASSED,
    "AC_MET_BUT_NOT_A_PLUS": PhaseOutcome.PASSED_WITH_NOTES,
    "NEEDS_VERIFICATION": PhaseOutcome.NEEDS_EXTERNAL_VERIFICATION,
    "AC_NOT_MET": PhaseOutcome.FAILED,
}


@runtime_checkable
class PhaseExecutor(Protocol):
    """Runs one phase for one issue and reports what happened."""

    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...


def parse_verdict(output: str) -> PhaseOutcome | None:
    """Outcome from the last verdict line in review output, if any."""
    matches = _VERDICT_RE.findall(output or "")
    if not matches:
        return None
    return VERDICT_OUTCOMES[matches[-1].upper()]


def classify(phase: PhaseName, exit_code: int, output: str) -> tuple[ExecutorStatus, PhaseOutcome | None]:
    """Turn a process exit code and output into an executor status and outcome.

    Review-class phases are classified by their verdict line; a failing
    verdict makes the phase fail even when the process exited cleanly.
    """
    if exit_code != 0:
        return ExecutorStatus.FAILURE, PhaseOutcome.FAILED
    if phase.phase_class != PhaseClass.REVIEW:
        return ExecutorStatus.SUCCESS, PhaseOutcome.PASSED
    verdict = parse_verdict(output)
    if verdict is None:
        return ExecutorStatus.SUCCESS, PhaseOutcome.PASSED
    if verdict == PhaseOutcome.FAILED:
        return ExecutorStatus.FAILURE, verdict
    return ExecutorStatus.SUCCESS, verdict


def build_prompt(request: ExecutionRequest) -> str:
    prompt = PHASE_PROMPTS[request.phase].replace("{issue}", request.issue_id)
    if request.context:
        prompt += f"\n\nPrevious attempt failed with:\n{request.context}"
    return prompt


class AgentCliExecutor:
    """Executes phases by running an agent CLI as a subprocess.

    Code-changing phases run with the issue workspace as working directory;
    planning phases run from the project root.
    """

    def __init__(self, project_root: Path, config: ExecutorConfig | None = None) -> None:
        self.project_root = project_root
        self.config = config or ExecutorConfig()

    def build_command(self, request: ExecutionRequest) -> list[str]:
        prompt = build_prompt(request)
        return [
            part.replace("{prompt}", prompt).replace("{phase}", request.phase.value).replace("{issue}", request.issue_id)
            for part in self.config.command
        ]

    def build_env(self, request: ExecutionRequest) -> dict[str, str]:
        env = dict(os.environ)
        env["CHAINRUN_ORCHESTRATOR"] = "chainrun"
        env["CHAINRUN_PHASE"] = request.phase.value
        env["CHAINRUN_ISSUE"] = request.issue_id
        if request.workspace is not None:
            env["CHAINRUN_WORKTREE"] = str(request.workspace)
        return env

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run the phase, retrying fast start-up failures.

        A failure that returns well before any real work could have been done
        is almost always the CLI failing to start, so it is retried without
        counting against the quality loop. A run that printed a verdict did
        start, so it is never retried here.
        """
        result = await self._run_once(request)
        retries = 0
        while (
            result.status == ExecutorStatus.FAILURE
            and result.duration_ms < self.config.cold_start_threshold * 1000
            and parse_verdict(result.output) is None
            and retries < self.config.cold_start_retries
        ):
            retries += 1
            logger.warning(f"{request.phase.value} for #{request.issue_id} failed after {result.duration_ms}ms, retrying start-up ({retries}/{self.config.cold_start_retries})")
            result = await self._run_once(request)
        return result

    async def _run_once(self, request: ExecutionRequest) -> ExecutionResult:
        cwd = request.workspace if request.workspace is not None and request.phase.needs_workspace else self.project_root
        cmd = self.build_command(request)
        logger.debug(f"Running {cmd[0]} for {request.phase.value} #{request.issue_id} in {cwd}")

        start = time.monotonic()
        if not cwd.is_dir():
            return _start_failure(f"Working directory does not exist: {cwd}", start)

        process: asyncio.subprocess.Process | None = None
        try:
            process = await asyncio.create_subprocess_exec(
                cmd[0],
                *cmd[1:],
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.build_env(request),
            )
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=request.timeout)
            except TimeoutError:
                logger.warning(f"{request.phase.value} for #{request.issue_id} timed out, killing PID {process.pid}")
                process.kill()
                await process.wait()
                return ExecutionResult(
                    status=ExecutorStatus.TIMEOUT,
                    output=f"TIMEOUT after {request.timeout} seconds",
                    duration_ms=_elapsed_ms(start),
                    outcome=PhaseOutcome.TIMED_OUT,
                )
            except asyncio.CancelledError:
                logger.info(f"Cancellation requested, killing PID {process.pid}")
                process.kill()
                await process.wait()
                raise
        except FileNotFoundError:
            return _start_failure(f"Executor command not found: {cmd[0]}", start)
        except OSError as e:
            # Not executable, exec format error, too many open files
            return _start_failure(f"Could not start executor command {cmd[0]}: {e}", start)

        output = stdout.decode("utf-8", errors="replace")
        if stderr:
            output += f"\n\nSTDERR:\n{stderr.decode('utf-8', errors='replace')}"
        status, outcome = classify(request.phase, process.returncode or 0, output)
        return ExecutionResult(status=status, output=output, duration_ms=_elapsed_ms(start), outcome=outcome)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _start_failure(message: str, start: float) -> ExecutionResult:
    logger.error(message)
    return ExecutionResult(
        status=ExecutorStatus.FAILURE,
        output=message,
        duration_ms=_elapsed_ms(start),
        outcome=PhaseOutcome.FAILED,
    )
