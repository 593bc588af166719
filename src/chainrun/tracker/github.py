"""GitHub issue tracker backed by the REST API.

Uses the GITHUB_TOKEN environment variable for authentication. All calls go
through one retrying request helper with exponential backoff on timeouts,
transport errors and primary rate limits.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import httpx

from chainrun.tracker.base import (
    PullRequest,
    TrackedIssue,
    TrackerAuthError,
    TrackerError,
    TrackerNotFoundError,
    TrackerRateLimitError,
)

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0  # seconds
COMMENTS_PER_PAGE = 100


class GitHubIssueTracker:
    """Async GitHub client implementing the IssueTracker protocol.

    Must be used as an async context manager so the underlying
    httpx.AsyncClient is opened and closed with the batch.
    """

    def __init__(
        self,
        repo: str,
        token: str | None = None,
        dry_run: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            repo: Repository in 'owner/repo' format.
            token: GitHub token. If None, reads from GITHUB_TOKEN env var.
            dry_run: If True, log write operations without executing.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).

        Raises:
            TrackerAuthError: If no token is provided or found in environment.
        """
        self.repo = repo
        self.dry_run = dry_run
        self.timeout = timeout
        self._transport = transport

        self._token = token or os.getenv("GITHUB_TOKEN")
        if not self._token:
            raise TrackerAuthError("No GitHub token provided. Set GITHUB_TOKEN environment variable or pass token parameter.")

        self._headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> GitHubIssueTracker:
        self._client = httpx.AsyncClient(
            base_url=GITHUB_API_BASE,
            headers=self._headers,
            timeout=self.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHubIssueTracker must be used as async context manager")
        return self._client

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Raises:
            TrackerAuthError: On 401.
            TrackerRateLimitError: If the rate limit persists after retries.
            TrackerNotFoundError: On 404.
            TrackerError: For other API or transport errors.
        """
        for attempt in range(MAX_RETRIES):
            wait_time = INITIAL_BACKOFF * (2**attempt)
            try:
                response = await self.client.request(method, endpoint, **kwargs)
            except httpx.TimeoutException as e:
                if attempt < MAX_RETRIES - 1:
                    logger.warning(f"GitHub request timeout, retrying in {wait_time:.1f}s")
                    await asyncio.sleep(wait_time)
                    continue
                raise TrackerError(f"Request timeout after {MAX_RETRIES} attempts") from e
            except httpx.HTTPError as e:
                if attempt < MAX_RETRIES - 1:
                    logger.warning(f"GitHub HTTP error: {e}, retrying in {wait_time:.1f}s")
                    await asyncio.sleep(wait_time)
                    continue
                raise TrackerError(f"HTTP error after {MAX_RETRIES} attempts: {e}") from e

            if response.status_code in (403, 429) and response.headers.get("X-RateLimit-Remaining") == "0":
                reset_at = int(response.headers.get("X-RateLimit-Reset", "0"))
                if attempt < MAX_RETRIES - 1:
                    wait_time = min(wait_time, 60)
                    logger.warning(f"Rate limit hit, waiting {wait_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})")
                    await asyncio.sleep(wait_time)
                    continue
                raise TrackerRateLimitError(f"GitHub API rate limit exceeded. Resets at {reset_at}", reset_at=reset_at)
            if response.status_code == 401:
                raise TrackerAuthError("GitHub authentication failed. Check your token.")
            if response.status_code == 404:
                raise TrackerNotFoundError(f"Resource not found: {endpoint}")
            if response.status_code >= 400:
                logger.error(f"GitHub API error {response.status_code}: {response.text}")
                raise TrackerError(f"GitHub API error {response.status_code}: {response.text[:200]}")
            return response

        raise TrackerError("Max retries exceeded")

    # =========================================================================
    # Issues
    # =========================================================================

    async def get_issue(self, issue_id: str) -> TrackedIssue:
        response = await self._request("GET", f"/repos/{self.repo}/issues/{issue_id}")
        data = response.json()
        return TrackedIssue(
            issue_id=str(data["number"]),
            title=data["title"],
            state=data["state"],
            labels=[label["name"] for label in data.get("labels", [])],
            url=data.get("html_url", ""),
            body=data.get("body") or "",
        )

    async def list_comments(self, issue_id: str) -> list[str]:
        """Bodies of all comments on an issue, oldest first."""
        bodies: list[str] = []
        page = 1
        while True:
            response = await self._request(
                "GET",
                f"/repos/{self.repo}/issues/{issue_id}/comments",
                params={"per_page": COMMENTS_PER_PAGE, "page": page},
            )
            batch = response.json()
            bodies.extend(item.get("body") or "" for item in batch)
            if len(batch) < COMMENTS_PER_PAGE:
                return bodies
            page += 1

    async def post_comment(self, issue_id: str, body: str) -> None:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would comment on #{issue_id} ({len(body)} chars)")
            return
        await self._request("POST", f"/repos/{self.repo}/issues/{issue_id}/comments", json={"body": body})

    # =========================================================================
    # Pull requests
    # =========================================================================

    async def find_pull_request(self, branch: str) -> PullRequest | None:
        """Most recent PR whose head is ``branch`` (open or closed)."""
        owner = self.repo.split("/", 1)[0]
        response = await self._request(
            "GET",
            f"/repos/{self.repo}/pulls",
            params={"head": f"{owner}:{branch}", "state": "all"},
        )
        items = response.json()
        if not items:
            return None
        data = items[0]
        return PullRequest(number=data["number"], url=data.get("html_url", ""), merged=bool(data.get("merged_at")))

    async def create_pull_request(self, branch: str, base: str, title: str, body: str) -> PullRequest:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would open PR {branch} -> {base}: {title}")
            return PullRequest(number=0)
        response = await self._request(
            "POST",
            f"/repos/{self.repo}/pulls",
            json={"head": branch, "base": base, "title": title, "body": body},
        )
        data = response.json()
        return PullRequest(number=data["number"], url=data.get("html_url", ""))
