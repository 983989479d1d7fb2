"""
Test Configuration - Shared fixtures for account index tests.

Network collaborators are replaced by in-memory fakes so every test runs
offline and deterministically.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional

import pytest

from account_index.config import IndexerConfig, LETTERS, set_config
from account_index.errors import NotFoundError
from account_index.models import AccountProfile, Missing
from account_index.shards import ShardStore


class Outcomes:
    """Successive outcomes for one URL; the last one repeats."""

    def __init__(self, *outcomes: Any):
        self._outcomes = list(outcomes)

    def next(self) -> Any:
        if len(self._outcomes) > 1:
            return self._outcomes.pop(0)
        return self._outcomes[0]


class FakeFetcher:
    """Stands in for Fetcher: URL -> JSON value, Exception or Outcomes."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.calls: List[tuple] = []
        self.session = None

    def start(self):
        pass

    async def stop(self):
        pass

    async def get_json(self, url: str, via_proxy: bool = False) -> Any:
        self.calls.append((url, via_proxy))
        await asyncio.sleep(0)
        outcome = self.responses.get(url)
        if isinstance(outcome, Outcomes):
            outcome = outcome.next()
        if isinstance(outcome, Exception):
            raise outcome
        return copy.deepcopy(outcome)


class FakeResponse:
    """Minimal aiohttp response usable as `async with session.get(...)`."""

    def __init__(self, status: int = 200, payload: Any = None):
        self.status = status
        self.payload = payload

    async def json(self, content_type=None) -> Any:
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def text(self) -> str:
        return str(self.payload)

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeResolver:
    """short DID -> AccountProfile (or an exception to raise)."""

    def __init__(self, profiles: Optional[Dict[str, Any]] = None):
        self.profiles: Dict[str, Any] = dict(profiles or {})
        self.calls: List[str] = []

    async def resolve(self, identifier: str) -> AccountProfile:
        self.calls.append(identifier)
        await asyncio.sleep(0)
        profile = self.profiles.get(identifier)
        if profile is None:
            raise NotFoundError(identifier, "unknown in test")
        if isinstance(profile, Exception):
            raise profile
        return profile


class FakeCommit:
    def __init__(self, committer: "FakeCommitter", owner, repo, credentials, branch):
        self.committer = committer
        self.owner = owner
        self.repo = repo
        self.credentials = credentials
        self.branch = branch
        self.files: Dict[str, str] = {}

    def put(self, path: str, content: str) -> None:
        self.files[path] = content

    async def commit(self, message: str):
        await asyncio.sleep(0)
        failure = self.committer.failures.get(self.repo)
        if failure is not None:
            raise failure
        self.committer.commits.append({
            "owner": self.owner,
            "repo": self.repo,
            "credentials": self.credentials,
            "branch": self.branch,
            "files": dict(self.files),
            "message": message,
        })
        return {"ok": True}


class FakeCommitter:
    """Records commits; failures maps letter -> exception to raise."""

    def __init__(self, failures: Optional[Dict[str, Exception]] = None):
        self.failures: Dict[str, Exception] = dict(failures or {})
        self.commits: List[dict] = []

    def begin_commit(self, owner, repo, credentials, branch="main") -> FakeCommit:
        return FakeCommit(self, owner, repo, credentials, branch)


def writable_store(config: IndexerConfig, committer: Optional[FakeCommitter] = None) -> ShardStore:
    """A store whose letters all came back missing, so every update applies."""
    store = ShardStore(FakeFetcher(), config, committer)
    store.states = {letter: Missing(letter) for letter in LETTERS}
    return store


@pytest.fixture
def test_config() -> IndexerConfig:
    """Create an isolated test configuration."""
    config = IndexerConfig(
        discovery_base_url="https://dids.test",
        index_base_url="https://shards.test",
        appview_url="https://appview.test",
        discovery_alphabet="ab",
        discovery_concurrency=4,
        shard_load_attempts=3,
        backoff_min=0.3,
        backoff_max=30.0,
    )
    set_config(config)
    return config


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def no_sleep(sleeps):
    """Replacement for asyncio.sleep that records delays instead of waiting."""
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def fake_committer() -> FakeCommitter:
    return FakeCommitter()


@pytest.fixture
def jane() -> AccountProfile:
    return AccountProfile(short_did="jane1", short_handle="jane.doe", display_name="Jane Doe")
