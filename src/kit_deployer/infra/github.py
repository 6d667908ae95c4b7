"""Revision metadata lookups against the GitHub REST API.

The orchestrator uses commit metadata to avoid rolling a cluster back to an
older revision than the one it already runs.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import httpx
from loguru import logger

from kit_deployer.constants import DEFAULT_CONSTANTS
from kit_deployer.errors import RevisionLookupError

Commit = dict[str, Any]


class GitHubClient:
    """Fetches commit metadata, cached per revision for the client's lifetime.

    Concurrent lookups for the same revision share one request. Failed
    lookups are not cached so a later call can retry.

    Example:
        ```python
        async with GitHubClient(token) as github:
            commit = await github.get_commit("acme", "web", "3f2c1aa")
            when = committer_date(commit)
        ```
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = DEFAULT_CONSTANTS.GITHUB_API_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the GitHub client.

        Args:
            token: Personal access token used for authentication
            base_url: API root URL
            http_client: Optional preconfigured client (owned by the caller,
                never modified)
        """
        self.base_url = base_url.rstrip("/")
        # Sent per request so a shared client never carries the token
        self._headers = {"Accept": "application/vnd.github+json"}
        if token:
            self._headers["Authorization"] = f"token {token}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        self._commits: dict[str, asyncio.Task[Commit]] = {}

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def get_commit(self, user: str, repo: str, revision: str) -> Commit:
        """Return commit metadata for a revision.

        Args:
            user: Repository owner
            repo: Repository name
            revision: Commit SHA (or any ref GitHub resolves)

        Returns:
            The commit resource as returned by GitHub

        Raises:
            RevisionLookupError: If the request fails
        """
        task = self._commits.get(revision)
        if task is None:
            task = asyncio.ensure_future(self._fetch_commit(user, repo, revision))
            self._commits[revision] = task
        try:
            return await asyncio.shield(task)
        except RevisionLookupError:
            if self._commits.get(revision) is task:
                del self._commits[revision]
            raise

    async def _fetch_commit(self, user: str, repo: str, revision: str) -> Commit:
        url = f"{self.base_url}/repos/{user}/{repo}/commits/{revision}"
        logger.debug(f"Fetching commit {revision} from {user}/{repo}")
        try:
            response = await self._client.get(url, headers=self._headers)
            response.raise_for_status()
            commit = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise RevisionLookupError(
                f"Unable to fetch commit {revision} for {user}/{repo}",
                details=str(e),
            ) from e
        if not isinstance(commit, dict):
            raise RevisionLookupError(
                f"Unexpected commit payload for {revision} in {user}/{repo}"
            )
        return commit


def committer_date(commit: Commit | None) -> datetime | None:
    """Extract the committer timestamp from commit metadata, if present."""
    if not isinstance(commit, dict):
        return None
    committer = (commit.get("commit") or {}).get("committer") or {}
    date = committer.get("date")
    if not date:
        return None
    try:
        return datetime.fromisoformat(date.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
