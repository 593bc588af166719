"""Per-batch run logs.

One JSON file per invocation under ``.chainrun/logs``. The file is rewritten
atomically after every phase so an interrupted batch still leaves a usable
record; `chainrun state rebuild` treats these files as ground truth.
"""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from chainrun.core.models import (
    FailureCategory,
    IssueStatus,
    PhaseName,
    PhaseOutcome,
    PhaseStatus,
)

logger = logging.getLogger(__name__)

LOG_VERSION = 1
LOG_GLOB = "run-*.json"


class RunConfigSnapshot(BaseModel):
    """Execution settings a batch ran with."""

    phases: list[PhaseName]
    sequential: bool = False
    chain: bool = False
    qa_gate: bool = False
    quality_loop: bool = False
    max_iterations: dict[str, int] = Field(default_factory=dict)
    base: str | None = None
    resume: bool = False
    label_phases: bool = False
    dependency_order: bool = False


class PhaseLogEntry(BaseModel):
    """One executor-level phase attempt (fix attempts included)."""

    phase: PhaseName
    status: PhaseStatus
    outcome: PhaseOutcome | None = None
    iteration: int = 0
    started_at: datetime
    ended_at: datetime | None = None
    duration_seconds: float = 0.0
    error: str | None = None
    commit_before: str | None = None
    commit_after: str | None = None


class IssueLogEntry(BaseModel):
    """Everything logged for one issue in one batch."""

    issue_id: str
    title: str = ""
    status: IssueStatus = IssueStatus.IN_PROGRESS
    chain_position: int | None = None
    branch: str | None = None
    workspace: Path | None = None
    base_ref: str | None = None
    base_commit: str | None = None
    checkpoint_ref: str | None = None
    pr_number: int | None = None
    pr_url: str | None = None
    failure_category: FailureCategory | None = None
    failure_reason: str | None = None
    warnings: list[str] = Field(default_factory=list)
    reset_phases: list[PhaseName] = Field(default_factory=list)
    phases: list[PhaseLogEntry] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    total_duration_seconds: float = 0.0


class RunSummary(BaseModel):
    total_issues: int = 0
    passed: int = 0
    failed: int = 0
    paused: int = 0
    total_duration_seconds: float = 0.0


class RunLog(BaseModel):
    """Top-level run log document."""

    version: int = LOG_VERSION
    run_id: str
    start_time: datetime
    end_time: datetime | None = None
    config: RunConfigSnapshot
    issues: list[IssueLogEntry] = Field(default_factory=list)
    summary: RunSummary | None = None

    def issue(self, issue_id: str) -> IssueLogEntry | None:
        for entry in self.issues:
            if entry.issue_id == issue_id:
                return entry
        return None


def log_filename(start_time: datetime, run_id: str) -> str:
    return f"run-{start_time.strftime('%Y%m%dT%H%M%S')}-{run_id[:8]}.json"


class RunLogWriter:
    """Accumulates a RunLog and flushes it to disk after each change."""

    def __init__(
        self,
        log_dir: Path,
        config: RunConfigSnapshot,
        run_id: str | None = None,
        max_files: int = 100,
        max_size_mb: float = 10.0,
    ) -> None:
        self.log_dir = log_dir
        self.max_files = max_files
        self.max_size_mb = max_size_mb
        self.log = RunLog(run_id=run_id or str(uuid.uuid4()), start_time=datetime.now(), config=config)
        self.path = log_dir / log_filename(self.log.start_time, self.log.run_id)
        self._issue_started: dict[str, datetime] = {}

    @property
    def run_id(self) -> str:
        return self.log.run_id

    def start_issue(self, issue_id: str, title: str = "", chain_position: int | None = None) -> IssueLogEntry:
        entry = self.log.issue(issue_id)
        if entry is None:
            entry = IssueLogEntry(issue_id=issue_id, title=title, chain_position=chain_position)
            self.log.issues.append(entry)
        self._issue_started[issue_id] = datetime.now()
        self._flush()
        return entry

    def update_issue(self, issue_id: str, **fields: object) -> None:
        """Set workspace/branch/checkpoint style fields on an issue entry."""
        entry = self._require(issue_id)
        for key, value in fields.items():
            setattr(entry, key, value)
        self._flush()

    def log_phase(self, issue_id: str, entry: PhaseLogEntry) -> None:
        self._require(issue_id).phases.append(entry)
        self._flush()

    def complete_issue(
        self,
        issue_id: str,
        status: IssueStatus,
        category: FailureCategory | None = None,
        reason: str | None = None,
        warnings: list[str] | None = None,
    ) -> None:
        entry = self._require(issue_id)
        entry.status = status
        entry.failure_category = category
        entry.failure_reason = reason
        if warnings:
            entry.warnings = list(warnings)
        started = self._issue_started.get(issue_id, entry.started_at)
        entry.total_duration_seconds = (datetime.now() - started).total_seconds()
        self._flush()

    def finalize(self) -> Path:
        """Stamp end time and summary, write, and rotate old logs."""
        self.log.end_time = datetime.now()
        self.log.summary = RunSummary(
            total_issues=len(self.log.issues),
            passed=sum(1 for i in self.log.issues if i.status in (IssueStatus.READY_FOR_REVIEW, IssueStatus.MERGED)),
            failed=sum(1 for i in self.log.issues if i.status == IssueStatus.BLOCKED),
            paused=sum(1 for i in self.log.issues if i.status == IssueStatus.WAITING_FOR_GATE),
            total_duration_seconds=(self.log.end_time - self.log.start_time).total_seconds(),
        )
        self._flush()
        try:
            rotate_logs(self.log_dir, self.max_files, self.max_size_mb, keep=self.path)
        except OSError as e:
            logger.warning(f"Log rotation failed: {e}")
        return self.path

    def _require(self, issue_id: str) -> IssueLogEntry:
        entry = self.log.issue(issue_id)
        if entry is None:
            entry = self.start_issue(issue_id)
        return entry

    def _flush(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".run-", suffix=".tmp", dir=self.log_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self.log.model_dump_json(indent=2))
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def read_run_logs(log_dir: Path) -> list[RunLog]:
    """Load every readable run log, oldest first.

    Unparseable files are skipped with a warning.
    """
    if not log_dir.is_dir():
        return []

    logs: list[RunLog] = []
    for path in sorted(log_dir.glob(LOG_GLOB)):
        try:
            logs.append(RunLog.model_validate_json(path.read_text(encoding="utf-8")))
        except (OSError, ValidationError, ValueError) as e:
            logger.warning(f"Skipping unreadable run log {path.name}: {e}")
    logs.sort(key=lambda log: log.start_time)
    return logs


def rotate_logs(log_dir: Path, max_files: int, max_size_mb: float, keep: Path | None = None) -> list[Path]:
    """Delete the oldest run logs once either limit is exceeded.

    When pruning starts it goes down to 90% of the limit so rotation doesn't
    run on every batch.

    Returns:
        Deleted paths.
    """
    files = sorted(log_dir.glob(LOG_GLOB), key=lambda p: p.stat().st_mtime)
    max_bytes = max_size_mb * 1024 * 1024
    total = sum(p.stat().st_size for p in files)

    if len(files) <= max_files and total <= max_bytes:
        return []

    target_files = int(max_files * 0.9)
    target_bytes = max_bytes * 0.9
    deleted: list[Path] = []

    for path in files:
        if len(files) - len(deleted) <= target_files and total <= target_bytes:
            break
        if keep is not None and path == keep:
            continue
        size = path.stat().st_size
        path.unlink()
        total -= size
        deleted.append(path)

    if deleted:
        logger.info(f"Rotated {len(deleted)} old run log(s)")
    return deleted
