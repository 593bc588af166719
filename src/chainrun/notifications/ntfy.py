"""ntfy.sh notification provider."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from chainrun.notifications.base import NotificationLevel, Notifier

if TYPE_CHECKING:
    from chainrun.core.models import IssueResult

logger = logging.getLogger(__name__)

# https://docs.ntfy.sh/publish/#message-priority
PRIORITY_MAP: dict[NotificationLevel, int] = {
    "info": 2,
    "success": 3,
    "warning": 4,
    "error": 5,
    "alert": 5,
}

# https://docs.ntfy.sh/publish/#tags-emojis
TAGS_MAP: dict[NotificationLevel, list[str]] = {
    "info": ["information_source"],
    "success": ["white_check_mark"],
    "warning": ["hourglass"],
    "error": ["no_entry"],
    "alert": ["rotating_light"],
}


class NtfyNotifier(Notifier):
    """Publishes batch events to an ntfy topic so long batches can be followed from a phone.

    Issue events are tagged with the issue id and, when ``click_url`` is set
    (e.g. ``https://github.com/owner/repo/issues/{issue}``), open the issue
    when tapped. Delivery failures are logged and never interrupt the batch.
    """

    def __init__(
        self,
        server: str = "https://ntfy.sh",
        topic: str = "chainrun",
        timeout: float = 10.0,
        click_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server = server.rstrip("/")
        self.topic = topic
        self.timeout = timeout
        self.click_url = click_url
        self._transport = transport
        self._client: httpx.Client | None = None
        self._issue: str | None = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, transport=self._transport)
        return self._client

    def issue_finished(self, result: IssueResult) -> None:
        self._issue = result.issue_id
        try:
            super().issue_finished(result)
        finally:
            self._issue = None

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = "info",
    ) -> None:
        tags = list(TAGS_MAP.get(level, []))
        headers = {"Title": f"chainrun: {title}", "Priority": str(PRIORITY_MAP.get(level, 3))}
        if self._issue is not None:
            tags.append(f"issue-{self._issue}")
            if self.click_url:
                headers["Click"] = self.click_url.format(issue=self._issue)
        headers["Tags"] = ",".join(tags)

        try:
            response = self.client.post(f"{self.server}/{self.topic}", content=message, headers=headers)
            response.raise_for_status()
            logger.debug(f"ntfy notification sent: {title}")
        except httpx.HTTPStatusError as e:
            logger.warning(f"ntfy notification failed (HTTP {e.response.status_code}): {e}")
        except httpx.RequestError as e:
            logger.warning(f"ntfy notification failed (network error): {e}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
