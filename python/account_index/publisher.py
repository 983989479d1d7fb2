"""
Publisher - Commit updated shards back to their repositories.

Every letter shard lives in its own repository ({owner}/{letter}) as
map.json. The commit collaborator is a small interface so the store can be
tested without a remote; GitHubCommitter implements it on top of the
GitHub contents API.

CredentialGate holds the token used for publishing. A failed publish
invalidates the token so that retries wait until fresh credentials are
supplied.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from .config import get_config, IndexerConfig
from .errors import AuthError, ConflictError, PublishError
from .fetcher import Fetcher


logger = logging.getLogger(__name__)


class CommitHandle(Protocol):
    def put(self, path: str, content: str) -> None: ...

    async def commit(self, message: str) -> Any: ...


class Committer(Protocol):
    def begin_commit(
        self,
        owner: str,
        repo: str,
        credentials: str,
        branch: str = "main",
    ) -> CommitHandle: ...


class CredentialGate:
    """
    Current publishing credentials, or a wait until some are supplied.

    Usage:
        gate = CredentialGate()
        gate.supply(token)            # from the operator
        token = await gate.wait()     # from the publisher
        gate.invalidate(token)        # after a failed publish
    """

    def __init__(self, credentials: Optional[str] = None):
        self._credentials: Optional[str] = None
        self._ready = asyncio.Event()
        if credentials:
            self.supply(credentials)

    @property
    def current(self) -> Optional[str]:
        return self._credentials

    def supply(self, credentials: str) -> None:
        if not credentials:
            raise ValueError("credentials must not be empty")
        self._credentials = credentials
        self._ready.set()

    def invalidate(self, credentials: str) -> None:
        """Drop credentials, unless fresher ones were supplied meanwhile."""
        if self._credentials != credentials:
            return
        self._credentials = None
        self._ready.clear()
        logger.warning("Publishing credentials invalidated; waiting for new ones")

    async def wait(self) -> str:
        while self._credentials is None:
            await self._ready.wait()
        return self._credentials


class GitHubCommit:
    """Files staged for one commit to one GitHub repository."""

    def __init__(
        self,
        committer: "GitHubCommitter",
        owner: str,
        repo: str,
        credentials: str,
        branch: str,
    ):
        self._committer = committer
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self._headers = {
            "Authorization": f"token {credentials}",
            "Accept": "application/vnd.github.v3+json",
        }
        self._files: Dict[str, str] = {}

    def put(self, path: str, content: str) -> None:
        self._files[path] = content

    def _contents_url(self, path: str) -> str:
        api = self._committer.config.github_api_url
        return f"{api}/repos/{self.owner}/{self.repo}/contents/{path}"

    async def _current_sha(self, session: aiohttp.ClientSession, path: str) -> Optional[str]:
        async with session.get(
            self._contents_url(path),
            params={"ref": self.branch},
            headers=self._headers,
        ) as response:
            if response.status == 404:
                return None
            self._raise_for_status(response.status, await response.text())
            body = await response.json(content_type=None)
            return body.get("sha")

    def _raise_for_status(self, status: int, detail: str) -> None:
        if status < 400:
            return
        reason = f"HTTP {status}: {detail[:200]}"
        if status in (401, 403):
            raise AuthError(self.repo, reason)
        if status in (409, 422):
            raise ConflictError(self.repo, reason)
        raise PublishError(self.repo, reason)

    async def commit(self, message: str) -> List[dict]:
        """Write every staged file; one contents-API commit per file."""
        session = self._committer.fetcher()
        results: List[dict] = []

        try:
            for path, content in self._files.items():
                payload = {
                    "message": message,
                    "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                    "branch": self.branch,
                }
                sha = await self._current_sha(session, path)
                if sha:
                    payload["sha"] = sha

                async with session.put(
                    self._contents_url(path),
                    json=payload,
                    headers=self._headers,
                ) as response:
                    self._raise_for_status(response.status, await response.text())
                    results.append(await response.json(content_type=None))

                logger.debug(f"Committed {self.owner}/{self.repo}/{path} on {self.branch}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PublishError(self.repo, str(e) or type(e).__name__) from e

        self._files.clear()
        return results


class GitHubCommitter:
    """Committer backed by the GitHub contents API."""

    def __init__(self, fetcher: Fetcher, config: IndexerConfig | None = None):
        self.config = config or get_config()
        self.fetcher = fetcher

    def begin_commit(
        self,
        owner: str,
        repo: str,
        credentials: str,
        branch: str = "main",
    ) -> GitHubCommit:
        return GitHubCommit(self, owner, repo, credentials, branch)
