"""CLI interface for chainrun."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from chainrun.config import Config, get_orchestrator_dir
from chainrun.core.errors import (
    ChainrunError,
    ConfigurationError,
    GitError,
    InvalidTransitionError,
    TeardownRefusedError,
)
from chainrun.core.models import (
    BatchSummary,
    ExitCode,
    IssueRunRecord,
    IssueStatus,
    PhaseStatus,
    parse_phase_list,
)
from chainrun.core.orchestrator import BatchOrchestrator, RunOptions, run_batch, validate_options
from chainrun.core.recovery import CleanResult, InitResult, clean, init_untracked, rebuild, reconcile_merged
from chainrun.core.run_log import read_run_logs
from chainrun.core.state import StateStore
from chainrun.notifications import create_notifier
from chainrun.runners.executor import AgentCliExecutor
from chainrun.tracker import create_tracker
from chainrun.utils.git import get_repo_root
from chainrun.workspace.worktrees import WorktreeManager

__version__ = "0.1.0"

app = typer.Typer(
    name="chainrun",
    help="Drive issues through plan/implement/review phases in isolated git worktrees.",
    no_args_is_help=True,
)
state_app = typer.Typer(help="Inspect and repair the workflow state file.", no_args_is_help=True)
app.add_typer(state_app, name="state")

console = Console()
logger = logging.getLogger(__name__)

STATUS_COLORS = {
    IssueStatus.NOT_STARTED: "dim",
    IssueStatus.IN_PROGRESS: "blue",
    IssueStatus.READY_FOR_REVIEW: "green",
    IssueStatus.MERGED: "cyan",
    IssueStatus.BLOCKED: "red",
    IssueStatus.ABANDONED: "dim",
    IssueStatus.WAITING_FOR_GATE: "yellow",
}

PHASE_COLORS = {
    PhaseStatus.PENDING: "dim",
    PhaseStatus.IN_PROGRESS: "blue",
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.FAILED: "red",
    PhaseStatus.SKIPPED: "cyan",
    PhaseStatus.TIMED_OUT: "magenta",
}


@dataclass
class _Context:
    project_root: Path
    orchestrator_dir: Path
    config: Config
    store: StateStore
    worktrees: WorktreeManager | None

    @property
    def log_dir(self) -> Path:
        return self.orchestrator_dir / "logs"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose, rich_tracebacks=verbose)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_context(config_path: Path | None = None) -> _Context:
    """Locate the project, load config and open the state store.

    Outside a git repository there is no worktree manager; only planning
    phases can run then.
    """
    try:
        project_root = get_repo_root()
        in_repo = True
    except GitError:
        project_root = Path.cwd()
        in_repo = False

    orchestrator_dir = get_orchestrator_dir(project_root)
    config = Config.load(config_path or orchestrator_dir / "config.yaml")
    worktrees = WorktreeManager(project_root, config.worktree) if in_repo else None
    store = StateStore(orchestrator_dir / "state.json", lock_timeout=config.lock_timeout)
    return _Context(project_root, orchestrator_dir, config, store, worktrees)


def _exit_for(error: Exception) -> typer.Exit:
    """Print an error and map it to the process exit code."""
    if isinstance(error, ConfigurationError):
        console.print(f"[red]Configuration error:[/red] {error}")
        return typer.Exit(int(ExitCode.CONFIGURATION_ERROR))
    if isinstance(error, TimeoutError):
        console.print("[red]Batch timed out; in-flight work is left in_progress[/red]")
        return typer.Exit(int(ExitCode.ISSUES_BLOCKED))
    console.print(f"[red]{type(error).__name__}:[/red] {error}")
    return typer.Exit(int(ExitCode.INFRASTRUCTURE_ERROR))


def _parse_issue_ids(values: list[str]) -> list[str]:
    ids: list[str] = []
    for value in values:
        for part in re.split(r"[,\s]+", value.strip()):
            if part:
                ids.append(part.lstrip("#"))
    return ids


def _require_issue(store: StateStore, issue_id: str) -> IssueRunRecord:
    record = store.get_issue(issue_id)
    if record is None:
        console.print(f"[yellow]No state for issue #{issue_id}[/yellow]")
        raise typer.Exit(1)
    return record


# =============================================================================
# run
# =============================================================================


@app.command()
def run(
    issues: Annotated[
        list[str] | None,
        typer.Argument(help="Issue ids in processing order"),
    ] = None,
    phases: Annotated[
        str | None,
        typer.Option("--phases", "-p", help="Comma-separated phases, e.g. plan,implement,review"),
    ] = None,
    sequential: Annotated[
        bool,
        typer.Option("--sequential", "-s", help="Stop the batch at the first blocked issue"),
    ] = False,
    chain: Annotated[
        bool,
        typer.Option("--chain", help="Each issue branches from its predecessor (requires --sequential)"),
    ] = False,
    qa_gate: Annotated[
        bool,
        typer.Option("--qa-gate", help="In a chain, wait until the predecessor passed review"),
    ] = False,
    quality_loop: Annotated[
        bool | None,
        typer.Option("--quality-loop/--no-quality-loop", help="Run fix cycles when a phase fails"),
    ] = None,
    max_iterations: Annotated[
        int | None,
        typer.Option("--max-iterations", help="Fix cycles per implementation phase"),
    ] = None,
    batch: Annotated[
        list[str] | None,
        typer.Option("--batch", "-b", help="An issue group, e.g. --batch '1 2' --batch 3"),
    ] = None,
    resume: Annotated[
        bool,
        typer.Option("--resume", "-r", help="Skip phases already completed"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would run without executing anything"),
    ] = False,
    base: Annotated[
        str | None,
        typer.Option("--base", help="Base ref for new branches (default: trunk)"),
    ] = None,
    timeout: Annotated[
        int | None,
        typer.Option("--timeout", "-t", help="Per-phase timeout in seconds"),
    ] = None,
    batch_timeout: Annotated[
        float | None,
        typer.Option("--batch-timeout", help="Abort the whole batch after this many seconds"),
    ] = None,
    pr: Annotated[
        bool,
        typer.Option("--pr", help="Push and open a pull request for each issue that passes"),
    ] = False,
    labels: Annotated[
        bool,
        typer.Option("--labels", help="Let each issue's tracker labels adjust its phases and quality loop"),
    ] = False,
    dependency_order: Annotated[
        bool,
        typer.Option("--dependency-order", help="Run issues after the issues they declare they depend on"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging"),
    ] = False,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", help="Config file (default: .chainrun/config.yaml)"),
    ] = None,
) -> None:
    """Run phases for one or more issues."""
    _setup_logging(verbose)
    try:
        ctx = _load_context(config_path)
        options = RunOptions(
            phases=parse_phase_list(phases) if phases else None,
            sequential=sequential,
            chain=chain,
            qa_gate=qa_gate,
            quality_loop=quality_loop,
            max_iterations=max_iterations,
            batches=[_parse_issue_ids([group]) for group in batch or []],
            resume=resume,
            dry_run=dry_run,
            base=base,
            phase_timeout=timeout,
            batch_timeout=batch_timeout,
            create_pr=pr,
            label_phases=labels,
            dependency_order=dependency_order,
        )
        issue_ids = _parse_issue_ids(issues or [])
        validate_options(issue_ids, options)
        orchestrator = BatchOrchestrator(
            ctx.config,
            ctx.store,
            AgentCliExecutor(ctx.project_root, ctx.config.executor),
            worktrees=ctx.worktrees,
            tracker=create_tracker(ctx.config.tracker),
            notifier=create_notifier(ctx.config.notifications),
            log_dir=ctx.log_dir,
        )

        if dry_run:
            _print_plan(orchestrator, issue_ids, options)
            return

        needs_workspace = any(p.needs_workspace for p in orchestrator.phases_for(options))
        if ctx.worktrees is None and needs_workspace:
            raise GitError(["rev-parse", "--show-toplevel"], 128, "not a git repository")
        if ctx.worktrees is not None:
            asyncio.run(_reconcile(ctx))

        summary = run_batch(orchestrator, issue_ids, options)
    except (ChainrunError, TimeoutError) as e:
        raise _exit_for(e) from e
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; run `chainrun run --resume` to continue[/yellow]")
        raise typer.Exit(int(ExitCode.ISSUES_BLOCKED)) from None

    _print_summary(summary)
    raise typer.Exit(int(summary.exit_code))


async def _reconcile(ctx: _Context) -> None:
    assert ctx.worktrees is not None
    async with create_tracker(ctx.config.tracker) as tracker:
        advanced = await reconcile_merged(ctx.store, ctx.worktrees, tracker)
    if advanced:
        console.print(f"[cyan]Merged since last run: {', '.join('#' + i for i in advanced)}[/cyan]")


def _print_plan(orchestrator: BatchOrchestrator, issue_ids: list[str], options: RunOptions) -> None:
    table = Table(title="Dry run")
    table.add_column("Issue")
    table.add_column("Would run")
    table.add_column("Already done", style="dim")
    for plan in orchestrator.plan(issue_ids, options):
        if plan.retired:
            table.add_row(f"#{plan.issue_id}", "[dim]retired[/dim]", "")
            continue
        table.add_row(
            f"#{plan.issue_id}",
            ", ".join(p.value for p in plan.to_run) or "[dim]nothing[/dim]",
            ", ".join(p.value for p in plan.already_done),
        )
    console.print(table)


def _print_summary(summary: BatchSummary) -> None:
    table = Table(title=f"Run {summary.run_id[:8]}")
    table.add_column("Issue")
    table.add_column("Status")
    table.add_column("Category")
    table.add_column("Reason", overflow="fold")

    for result in summary.results:
        color = STATUS_COLORS.get(result.status, "white")
        table.add_row(
            f"#{result.issue_id}",
            f"[{color}]{result.status.value}[/{color}]",
            result.failure_category.value if result.failure_category else "",
            result.failure_reason or "",
        )
    for issue_id in summary.not_started:
        table.add_row(f"#{issue_id}", "[dim]not started[/dim]", "", "")

    console.print(table)
    console.print(f"{summary.describe()} in {summary.duration_seconds:.0f}s")


# =============================================================================
# status / history
# =============================================================================


def _phase_cell(record: IssueRunRecord) -> str:
    cells = []
    for phase in record.phases:
        color = PHASE_COLORS.get(phase.status, "white")
        suffix = f" x{phase.iteration}" if phase.iteration else ""
        cells.append(f"[{color}]{phase.name.value}{suffix}[/{color}]")
    return " ".join(cells)


@app.command()
def status(
    issue: Annotated[
        str | None,
        typer.Argument(help="Show phase details for one issue"),
    ] = None,
) -> None:
    """Show the state of every tracked issue."""
    try:
        ctx = _load_context()
        if issue is not None:
            _print_issue(_require_issue(ctx.store, issue.lstrip("#")))
            return
        records = ctx.store.list_issues()
    except ChainrunError as e:
        raise _exit_for(e) from e

    if not records:
        console.print("[yellow]No issues tracked yet[/yellow]")
        return

    table = Table()
    table.add_column("Issue")
    table.add_column("Title", overflow="ellipsis", max_width=40)
    table.add_column("Status")
    table.add_column("Phases")
    table.add_column("Branch", style="dim")

    for record in sorted(records, key=lambda r: (r.chain_position is None, r.chain_position or 0, r.issue_id)):
        color = STATUS_COLORS.get(record.status, "white")
        table.add_row(
            f"#{record.issue_id}",
            record.title,
            f"[{color}]{record.status.value}[/{color}]",
            _phase_cell(record),
            record.branch or "",
        )
    console.print(table)


def _print_issue(record: IssueRunRecord) -> None:
    color = STATUS_COLORS.get(record.status, "white")
    console.print(f"\n[bold]#{record.issue_id}[/bold] {record.title}")
    console.print(f"  Status: [{color}]{record.status.value}[/{color}]")
    if record.failure_category:
        console.print(f"  Category: {record.failure_category.value}")
        console.print(f"  Reason: {record.failure_reason or ''}", markup=False)
    if record.workspace:
        console.print(f"  Workspace: {record.workspace}")
        console.print(f"  Branch: {record.branch} (base {record.base_ref} @ {(record.base_commit or '?')[:8]})")
    if record.checkpoint_ref:
        console.print(f"  Checkpoint: {record.checkpoint_ref}")
    if record.pr_number:
        console.print(f"  PR: #{record.pr_number} {record.pr_url or ''}")
    for warning in record.warnings:
        console.print(f"  [yellow]! {warning}[/yellow]")

    if not record.phases:
        return
    table = Table()
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Fix cycles")
    table.add_column("Outcome")
    table.add_column("Duration")
    table.add_column("Error", overflow="fold")
    for phase in record.phases:
        p_color = PHASE_COLORS.get(phase.status, "white")
        duration = ""
        if phase.started_at and phase.ended_at:
            duration = f"{(phase.ended_at - phase.started_at).total_seconds():.1f}s"
        table.add_row(
            phase.name.display_name,
            f"[{p_color}]{phase.status.value}[/{p_color}]",
            str(phase.iteration),
            phase.outcome.value if phase.outcome else "",
            duration,
            (phase.error or "")[-200:],
        )
    console.print(table)


@app.command()
def history(
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Number of runs to show"),
    ] = 10,
) -> None:
    """List past batch runs from the run logs."""
    ctx = _load_context()
    logs = read_run_logs(ctx.log_dir)[-limit:]
    if not logs:
        console.print("[yellow]No run logs found[/yellow]")
        return

    table = Table(title="Run History")
    table.add_column("Run ID")
    table.add_column("Started")
    table.add_column("Issues")
    table.add_column("Passed", style="green")
    table.add_column("Failed", style="red")
    table.add_column("Paused", style="yellow")
    table.add_column("Duration")

    for log in reversed(logs):
        summary = log.summary
        table.add_row(
            log.run_id[:8],
            log.start_time.strftime("%Y-%m-%d %H:%M"),
            " ".join(f"#{i.issue_id}" for i in log.issues),
            str(summary.passed) if summary else "?",
            str(summary.failed) if summary else "?",
            str(summary.paused) if summary else "?",
            f"{summary.total_duration_seconds:.0f}s" if summary else "[dim]interrupted[/dim]",
        )
    console.print(table)


# =============================================================================
# teardown
# =============================================================================


@app.command()
def teardown(
    issue: Annotated[str, typer.Argument(help="Issue whose merged worktree and branch should be removed")],
    target: Annotated[
        str | None,
        typer.Option("--target", help="Branch the work must be merged into (default: trunk)"),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    """Remove an issue's worktree and branch once its work is merged."""
    _setup_logging(verbose)
    issue_id = issue.lstrip("#")
    try:
        ctx = _load_context()
        if ctx.worktrees is None:
            raise GitError(["rev-parse", "--show-toplevel"], 128, "not a git repository")
        record = _require_issue(ctx.store, issue_id)
        if not record.branch:
            console.print(f"[yellow]#{issue_id} has no branch recorded[/yellow]")
            raise typer.Exit(1)

        merged_by_tracker = asyncio.run(_pr_merged(ctx.config, record.branch))
        ctx.worktrees.teardown(
            issue_id,
            record.branch,
            target or ctx.config.worktree.trunk,
            merged_by_tracker,
            base_commit=record.base_commit,
        )
        ctx.store.set_workspace(issue_id, None)
        try:
            ctx.store.set_issue_status(issue_id, IssueStatus.MERGED)
        except InvalidTransitionError as e:
            console.print(f"[yellow]Workspace removed, status left as {record.status.value}: {e}[/yellow]")
    except TeardownRefusedError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e
    except ChainrunError as e:
        raise _exit_for(e) from e

    console.print(f"[green]Tore down #{issue_id}[/green]")


async def _pr_merged(config: Config, branch: str) -> bool:
    async with create_tracker(config.tracker) as tracker:
        try:
            pr = await tracker.find_pull_request(branch)
        except ChainrunError as e:
            logger.debug(f"PR lookup failed: {e}")
            return False
    return pr is not None and pr.merged


# =============================================================================
# state
# =============================================================================


@state_app.command("init")
def state_init(
    dry_run: Annotated[bool, typer.Option("--dry-run", "-n", help="Report without writing")] = False,
) -> None:
    """Adopt existing issue worktrees that the state file doesn't track."""
    try:
        ctx = _load_context()
        if ctx.worktrees is None:
            raise GitError(["rev-parse", "--show-toplevel"], 128, "not a git repository")
        result = asyncio.run(_init(ctx, dry_run))
    except ChainrunError as e:
        raise _exit_for(e) from e

    console.print(f"Scanned {result.scanned} worktree(s), {result.already_tracked} already tracked")
    for found in result.discovered:
        phase = f" (last phase: {found.last_phase.value})" if found.last_phase else ""
        prefix = "Would add" if dry_run else "Added"
        console.print(f"  [green]{prefix}[/green] #{found.issue_id} {found.title}{phase}")
    for path, reason in result.skipped:
        console.print(f"  [dim]Skipped {path}: {reason}[/dim]")


async def _init(ctx: _Context, dry_run: bool) -> InitResult:
    assert ctx.worktrees is not None
    async with create_tracker(ctx.config.tracker) as tracker:
        return await init_untracked(ctx.store, ctx.worktrees, tracker, ctx.log_dir, dry_run=dry_run)


@state_app.command("rebuild")
def state_rebuild(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Confirm replacing the state file")] = False,
) -> None:
    """Reconstruct the state file from run logs and live worktrees."""
    try:
        ctx = _load_context()
        result = rebuild(ctx.store, ctx.log_dir, worktrees=ctx.worktrees, confirm=yes)
    except ChainrunError as e:
        raise _exit_for(e) from e

    console.print(f"[green]Rebuilt {len(result.issues)} issue(s) from {result.logs_processed} run log(s)[/green]")
    if result.attached_worktrees:
        console.print(f"  Attached worktrees: {', '.join('#' + i for i in result.attached_worktrees)}")


@state_app.command("clean")
def state_clean(
    dry_run: Annotated[bool, typer.Option("--dry-run", "-n", help="Report without writing")] = False,
    max_age: Annotated[
        int | None,
        typer.Option("--max-age", help="Also remove merged/abandoned entries older than N days"),
    ] = None,
    remove_all: Annotated[bool, typer.Option("--all", help="Remove every orphaned entry")] = False,
) -> None:
    """Retire entries whose worktree is gone and drop stale ones."""
    try:
        ctx = _load_context()
        if ctx.worktrees is None:
            raise GitError(["rev-parse", "--show-toplevel"], 128, "not a git repository")
        result = asyncio.run(_clean(ctx, max_age, remove_all, dry_run))
    except ChainrunError as e:
        raise _exit_for(e) from e

    prefix = "Would remove" if dry_run else "Removed"
    console.print(f"{prefix} {len(result.removed)} entr{'y' if len(result.removed) == 1 else 'ies'}")
    if result.merged:
        console.print(f"  Merged: {', '.join('#' + i for i in result.merged)}")
    if result.orphaned:
        console.print(f"  Orphaned: {', '.join('#' + i for i in result.orphaned)}")


async def _clean(ctx: _Context, max_age: int | None, remove_all: bool, dry_run: bool) -> CleanResult:
    assert ctx.worktrees is not None
    async with create_tracker(ctx.config.tracker) as tracker:
        return await clean(ctx.store, ctx.worktrees, tracker, max_age_days=max_age, remove_all=remove_all, dry_run=dry_run)


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"chainrun {__version__}")


if __name__ == "__main__":
    app()
