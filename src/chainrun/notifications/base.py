"""Notification interface and the console/no-op providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Literal

from rich.console import Console

from chainrun.core.models import IssueStatus

if TYPE_CHECKING:
    from chainrun.core.models import BatchSummary, IssueResult

NotificationLevel = Literal["info", "success", "warning", "error", "alert"]


class Notifier(ABC):
    """Abstract base class for notification providers."""

    @abstractmethod
    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = "info",
    ) -> None:
        """Send a notification.

        Args:
            title: Notification title
            message: Notification body
            level: Severity level
        """

    def info(self, title: str, message: str) -> None:
        self.notify(title, message, "info")

    def success(self, title: str, message: str) -> None:
        self.notify(title, message, "success")

    def warning(self, title: str, message: str) -> None:
        self.notify(title, message, "warning")

    def error(self, title: str, message: str) -> None:
        self.notify(title, message, "error")

    def alert(self, title: str, message: str) -> None:
        """Highest priority; used when the batch itself cannot continue."""
        self.notify(title, message, "alert")

    # =========================================================================
    # Batch events
    # =========================================================================

    def issue_finished(self, result: IssueResult) -> None:
        """Report the terminal status of one issue."""
        label = f"Issue #{result.issue_id}"
        if result.passed:
            self.success(f"{label} Ready for Review", result.title or "All phases completed")
        elif result.status == IssueStatus.WAITING_FOR_GATE:
            self.warning(f"{label} Waiting for Gate", result.failure_reason or "")
        else:
            category = result.failure_category.value if result.failure_category else "unknown"
            self.error(f"{label} Blocked", f"{category}: {result.failure_reason or 'no details'}")

    def batch_finished(self, summary: BatchSummary) -> None:
        if summary.failed or summary.paused:
            self.warning("Batch Finished", summary.describe())
        else:
            self.success("Batch Finished", summary.describe())


class ConsoleNotifier(Notifier):
    """Prints notifications with Rich styling."""

    STYLES: dict[str, str] = {
        "info": "blue",
        "success": "green",
        "warning": "yellow",
        "error": "red",
        "alert": "bold red",
    }
    ICONS: dict[str, str] = {
        "info": "i",
        "success": "+",
        "warning": "!",
        "error": "x",
        "alert": "!!!",
    }

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = "info",
    ) -> None:
        style = self.STYLES.get(level, "blue")
        icon = self.ICONS.get(level, "i")
        self.console.print(f"[{style}]\\[{icon}] {title}[/{style}]")
        if message:
            self.console.print(f"    {message}", markup=False)


class NullNotifier(Notifier):
    """No-op notifier for tests or when notifications are disabled."""

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = "info",
    ) -> None:
        """Do nothing."""
