"""Desktop notifications via plyer, and fan-out to several providers."""

from __future__ import annotations

import logging

from chainrun.notifications.base import NotificationLevel, Notifier

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "alert": logging.CRITICAL,
}


class DesktopNotifier(Notifier):
    """Cross-platform desktop notifications using plyer.

    Only warnings and worse are shown on the desktop; a batch produces one
    event per issue and popping all of them up is noise. Anything plyer
    cannot deliver goes to the log instead.
    """

    def __init__(self, app_name: str = "chainrun", timeout: int = 10, min_level: NotificationLevel = "warning") -> None:
        self.app_name = app_name
        self.timeout = timeout
        self.min_level = min_level

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = "info",
    ) -> None:
        if _LOG_LEVELS[level] < _LOG_LEVELS[self.min_level]:
            return
        try:
            from plyer import notification

            notification.notify(  # type: ignore[misc]
                title=f"[{self.app_name}] {title}",
                message=message[:250],
                app_name=self.app_name,
                timeout=self.timeout,
                toast=level in ("error", "alert"),
            )
        except Exception as e:
            # plyer raises backend-specific errors (NotImplementedError, dbus failures, ...)
            logger.debug(f"Desktop notification failed: {e}")
            logger.log(_LOG_LEVELS[level], f"{title}: {message}")


class CompositeNotifier(Notifier):
    """Sends each notification to every provider; one failing provider doesn't stop the rest."""

    def __init__(self, notifiers: list[Notifier]) -> None:
        self.notifiers = notifiers

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = "info",
    ) -> None:
        for notifier in self.notifiers:
            try:
                notifier.notify(title, message, level)
            except Exception as e:
                logger.warning(f"Notifier {type(notifier).__name__} failed: {e}")
