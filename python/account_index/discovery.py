"""
Discovery - Enumerate every known account identifier.

The discovery store shards identifiers into buckets keyed by the first two
characters of the short DID. Every bucket is fetched by its own task; the
tasks report into a queue and the consumer yields one batch per group of
buckets that settled since the previous yield.

A bucket that keeps failing is retried forever with jittered backoff, so a
slow bucket delays the end of enumeration but never fails it.
"""

import asyncio
import logging
import random
import time
from typing import AsyncIterator, Awaitable, Callable, List, Tuple

from .config import get_config, IndexerConfig
from .errors import TransientNetworkError, handle_error
from .fetcher import Fetcher, compute_backoff


logger = logging.getLogger(__name__)


class IdentifierDiscovery:
    """
    Full-population discovery over the two-character bucket keyspace.

    Transport selection: direct fetches only, unless a proxy is configured.
    With a proxy, retries after a failure alternate between proxy and direct
    until any direct fetch has succeeded; from then on only direct is used.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        config: IndexerConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.config = config or get_config()
        self.fetcher = fetcher
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.any_direct_succeeded = False

    def buckets(self) -> List[Tuple[str, str]]:
        """All (first, second) character pairs of the keyspace."""
        alphabet = self.config.discovery_alphabet
        return [(first, second) for first in alphabet for second in alphabet]

    def bucket_url(self, first: str, second: str) -> str:
        return f"{self.config.discovery_base_url}/{first}/{first}{second}.json"

    def _use_proxy(self, failures: int) -> bool:
        if not self.config.proxy_url or self.any_direct_succeeded:
            return False
        # 0 failures: direct; then proxy, direct, proxy, ...
        return failures % 2 == 1

    async def load_bucket(self, first: str, second: str) -> List[str]:
        """Fetch one bucket, retrying until it succeeds. 404 is an empty bucket."""
        url = self.bucket_url(first, second)
        start = time.monotonic()
        failures = 0

        while True:
            via_proxy = self._use_proxy(failures)
            try:
                data = await self.fetcher.get_json(url, via_proxy=via_proxy)
            except TransientNetworkError as e:
                failures += 1
                delay = compute_backoff(time.monotonic() - start, self.config, self._rng)
                handle_error(e, url, f"discovery attempt {failures}")
                logger.debug(f"Bucket {first}{second}: waiting {delay:.2f}s")
                await self._sleep(delay)
                continue

            if not via_proxy:
                self.any_direct_succeeded = True

            return _parse_bucket(data, url)

    async def batches(self) -> AsyncIterator[List[str]]:
        """
        Yield batches of short DIDs until every bucket has been enumerated.

        Closing the generator early cancels the outstanding bucket tasks.
        """
        queue: asyncio.Queue[List[str]] = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.config.discovery_concurrency)

        async def load_into_queue(first: str, second: str):
            short_dids: List[str] = []
            try:
                async with semaphore:
                    short_dids = await self.load_bucket(first, second)
            except Exception as e:
                # Not a transport error; give up on this bucket only
                handle_error(e, self.bucket_url(first, second), "discovery")
            queue.put_nowait(short_dids)

        buckets = self.buckets()
        tasks = [
            asyncio.create_task(load_into_queue(first, second))
            for first, second in buckets
        ]
        remaining = len(tasks)
        total = 0
        logger.info(f"Discovering identifiers across {remaining} buckets")

        try:
            while remaining:
                batch = list(await queue.get())
                remaining -= 1

                # Merge everything else that settled meanwhile
                while not queue.empty():
                    batch.extend(queue.get_nowait())
                    remaining -= 1

                if batch:
                    total += len(batch)
                    yield batch

            logger.info(f"Discovery complete: {total} identifiers")
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()


def _parse_bucket(data, url: str) -> List[str]:
    if data is None:
        return []
    if isinstance(data, dict):
        data = list(data.keys())
    if not isinstance(data, list):
        logger.warning(f"Unexpected bucket payload at {url}: {type(data).__name__}")
        return []
    return [item for item in data if isinstance(item, str) and item]


async def load_known_identifiers(
    fetcher: Fetcher,
    config: IndexerConfig | None = None,
) -> AsyncIterator[List[str]]:
    """
    Convenience generator over IdentifierDiscovery.batches().

    Usage:
        async for batch in load_known_identifiers(fetcher):
            print(f"{len(batch)} more identifiers")
    """
    discovery = IdentifierDiscovery(fetcher, config)
    async for batch in discovery.batches():
        yield batch
