"""
Shard Store - The 26 letter shards: load, merge updates, publish.

Each letter shard maps a short DID to the comma-joined suffix pairs of
every indexed prefix starting with that letter:

    {"abc123": "og,at"}   # under 'd': prefixes "dog" and "dat"

Shards are loaded once per process (26 independent fetches, each with its
own retries and state), mutated in place by IndexUpdates, and written back
one letter at a time through the commit collaborator.
"""

import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .config import get_config, IndexerConfig, LETTERS
from .errors import PublishError, TransientNetworkError, handle_error
from .fetcher import Fetcher, compute_backoff
from .indexer import join_pairs, split_pairs
from .models import (
    CompactShard, Failed, IndexUpdate, Loaded, Loading, LoadProgress,
    Missing, PublishResult, ShardLoadState,
)
from .publisher import Committer, CredentialGate


logger = logging.getLogger(__name__)


SHARD_FILE = "map.json"


def parse_stored_shard(data: Any) -> CompactShard:
    """
    Normalize a downloaded shard to the compact form.

    Accepts either the compact form ({id: "og,at"}) or the stored form
    ({id: [timestamp, "og", "at"]}).
    """
    if not isinstance(data, dict):
        raise ValueError(f"Shard must be a JSON object, got {type(data).__name__}")

    shard: CompactShard = {}
    for short_did, value in data.items():
        if isinstance(value, str):
            shard[short_did] = value
        elif isinstance(value, list):
            shard[short_did] = join_pairs([str(pair) for pair in value[1:]])
        else:
            raise ValueError(f"Unexpected shard entry for {short_did}: {value!r}")
    return shard


def serialize_shard(shard: CompactShard) -> str:
    """
    One '"id":"pairs"' line per entry, always ending with a newline.

    Line-per-entry keeps diffs in the backing repository small.
    """
    lines = [
        json.dumps(short_did, ensure_ascii=False) + ":" + json.dumps(suffixes, ensure_ascii=False)
        for short_did, suffixes in shard.items()
    ]
    return "{\n" + ",\n".join(lines) + "\n}\n"


def deserialize_shard(text: str) -> CompactShard:
    return parse_stored_shard(json.loads(text))


class ShardStore:
    """
    In-memory letter shards plus their load states.

    shards only holds letters that loaded (or were created by an update);
    states holds one ShardLoadState per letter.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        config: IndexerConfig | None = None,
        committer: Optional[Committer] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.config = config or get_config()
        self.fetcher = fetcher
        self.committer = committer
        self._sleep = sleep
        self._rng = rng or random.Random()

        self.shards: Dict[str, CompactShard] = {}
        self.states: Dict[str, ShardLoadState] = {letter: Loading(letter) for letter in LETTERS}
        self.dirty: Set[str] = set()
        self._versions: Dict[str, int] = {letter: 0 for letter in LETTERS}

    def shard_url(self, letter: str) -> str:
        return f"{self.config.index_base_url}/{letter}/{SHARD_FILE}"

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_letter(self, letter: str) -> ShardLoadState:
        """
        Fetch one shard, retrying transport failures.

        The first attempt is direct; later attempts go through the proxy
        when one is configured.
        """
        url = self.shard_url(letter)
        start = time.monotonic()
        attempts = max(1, self.config.shard_load_attempts)

        for attempt in range(attempts):
            via_proxy = attempt > 0 and bool(self.config.proxy_url)
            try:
                data = await self.fetcher.get_json(url, via_proxy=via_proxy)
            except TransientNetworkError as e:
                if attempt + 1 >= attempts:
                    handle_error(e, letter, "load shard")
                    return Failed(letter, e)
                delay = compute_backoff(time.monotonic() - start, self.config, self._rng)
                logger.debug(f"Shard {letter}: attempt {attempt + 1} failed, waiting {delay:.2f}s")
                await self._sleep(delay)
                continue

            if data is None:
                return Missing(letter)

            try:
                return Loaded(letter, parse_stored_shard(data))
            except ValueError as e:
                logger.warning(f"Shard {letter} is malformed: {e}")
                return Failed(letter, e)

        return Failed(letter, TransientNetworkError(url, "no attempts made"))

    async def load_all(
        self,
        on_progress: Optional[Callable[[LoadProgress], None]] = None,
    ) -> Dict[str, CompactShard]:
        """
        Load all 26 shards concurrently.

        on_progress is called after every letter settles. A failed or
        missing letter never fails the whole call; it is simply absent
        from the returned mapping.
        """
        self.states = {letter: Loading(letter) for letter in LETTERS}

        async def settle(letter: str):
            try:
                state = await self.load_letter(letter)
            except Exception as e:
                handle_error(e, letter, "load shard")
                state = Failed(letter, e)

            self.states[letter] = state
            if isinstance(state, Loaded):
                self.shards[letter] = state.shard

            if on_progress is not None:
                try:
                    on_progress(self.progress())
                except Exception as e:
                    logger.error(f"Progress callback error: {e}")

        await asyncio.gather(*(settle(letter) for letter in LETTERS))

        progress = self.progress()
        logger.info(f"Shards: {progress}")
        return {letter: self.shards[letter] for letter in LETTERS if letter in self.shards}

    def progress(self) -> LoadProgress:
        loaded: List[str] = []
        pending: List[str] = []
        errors: List[str] = []
        missing: List[str] = []
        for letter in LETTERS:
            state = self.states[letter]
            if isinstance(state, Loaded):
                loaded.append(letter)
            elif isinstance(state, Loading):
                pending.append(letter)
            elif isinstance(state, Failed):
                errors.append(letter)
            elif isinstance(state, Missing):
                missing.append(letter)
        return LoadProgress(
            loaded=loaded,
            pending=pending,
            errors=errors,
            missing=missing,
            by_letter=dict(self.states),
        )

    def indexed_identifiers(self) -> Set[str]:
        indexed: Set[str] = set()
        for shard in self.shards.values():
            indexed.update(shard.keys())
        return indexed

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def is_writable(self, letter: str) -> bool:
        """
        True once the letter's remote content is known: it loaded, or it
        does not exist yet. A Loading or Failed letter is never written,
        since publishing it would replace the remote shard with a partial one.
        """
        return isinstance(self.states.get(letter), (Loaded, Missing))

    def apply(self, update: IndexUpdate) -> bool:
        """
        Merge one update; empty suffixes delete the entry.

        Returns False when the update was held back because its letter is
        not writable.
        """
        if update.letter not in self._versions:
            raise ValueError(f"Invalid letter: {update.letter!r}")
        if not self.is_writable(update.letter):
            logger.debug(f"Holding update for {update.short_did}: shard {update.letter} not loaded")
            return False

        shard = self.shards.setdefault(update.letter, {})
        if update.is_removal:
            if shard.pop(update.short_did, None) is None:
                return True
        else:
            # Re-encode so stored values always use the canonical separator
            suffixes = join_pairs(split_pairs(update.suffixes))
            if shard.get(update.short_did) == suffixes:
                return True
            shard[update.short_did] = suffixes

        self.dirty.add(update.letter)
        self._versions[update.letter] += 1
        return True

    def apply_all(self, updates: Iterable[IndexUpdate]) -> int:
        """Apply updates in order; returns how many were held back."""
        return sum(1 for update in updates if not self.apply(update))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(
        self,
        letter: str,
        credentials: str,
        message: str = "Update map",
    ) -> PublishResult:
        """
        Commit one letter shard back to its repository.

        Raises:
            PublishError: for this letter only (AuthError, ConflictError, ...)
        """
        if letter not in self._versions:
            raise ValueError(f"Invalid letter: {letter!r}")
        if self.committer is None:
            raise PublishError(letter, "no committer configured")
        if not self.is_writable(letter):
            raise PublishError(letter, f"shard not loaded ({type(self.states[letter]).__name__})")

        shard = self.shards.get(letter, {})
        content = serialize_shard(shard)
        version = self._versions[letter]

        try:
            commit = self.committer.begin_commit(
                owner=self.config.publish_owner,
                repo=letter,
                credentials=credentials,
                branch=self.config.publish_branch,
            )
            commit.put(SHARD_FILE, content)
            await commit.commit(message)
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(letter, str(e) or type(e).__name__) from e

        # Only clear if nothing changed while the commit was in flight
        if self._versions[letter] == version:
            self.dirty.discard(letter)

        logger.info(f"Published shard {letter}: {len(shard)} entries")
        return PublishResult(letter=letter, success=True, entries=len(shard))

    async def publish_dirty(
        self,
        gate: CredentialGate,
        message: str = "Update map",
    ) -> List[PublishResult]:
        """
        Publish every changed letter concurrently with the gate's credentials.

        Failed letters stay dirty; any failure invalidates the credentials,
        so the next call waits for fresh ones.
        """
        letters = sorted(letter for letter in self.dirty if self.is_writable(letter))
        if not letters:
            return []

        credentials = await gate.wait()

        async def publish_one(letter: str) -> PublishResult:
            try:
                return await self.publish(letter, credentials, message)
            except PublishError as e:
                handle_error(e, letter, "publish")
                return PublishResult(letter=letter, success=False, error=e)

        results = await asyncio.gather(*(publish_one(letter) for letter in letters))

        if any(not result.success for result in results):
            gate.invalidate(credentials)

        return list(results)
