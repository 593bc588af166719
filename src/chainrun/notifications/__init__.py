"""Notification providers."""

from __future__ import annotations

from chainrun.config import NotificationConfig
from chainrun.notifications.base import ConsoleNotifier, Notifier, NullNotifier
from chainrun.notifications.desktop import CompositeNotifier, DesktopNotifier
from chainrun.notifications.ntfy import NtfyNotifier


def create_notifier(config: NotificationConfig) -> Notifier:
    """Build the notifier described by the config.

    Desktop and ntfy providers are always paired with the console so the
    terminal still shows batch events.
    """
    if not config.enabled or config.provider == "none":
        return NullNotifier()
    if config.provider == "desktop":
        return CompositeNotifier([DesktopNotifier(), ConsoleNotifier()])
    if config.provider == "ntfy":
        ntfy = NtfyNotifier(server=config.ntfy_server, topic=config.ntfy_topic, click_url=config.ntfy_click_url)
        return CompositeNotifier([ntfy, ConsoleNotifier()])
    return ConsoleNotifier()


__all__ = [
    "CompositeNotifier",
    "ConsoleNotifier",
    "DesktopNotifier",
    "Notifier",
    "NtfyNotifier",
    "NullNotifier",
    "create_notifier",
]
