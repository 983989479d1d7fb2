"""
Fetcher - Shared aiohttp session and JSON GET with retry-friendly errors.

All remote reads (discovery buckets, letter shards, profiles) go through
one pooled ClientSession. Transport failures surface as
TransientNetworkError so callers can apply their own backoff; HTTP 404 is
a valid empty result and comes back as None.
"""

import asyncio
import logging
import random
from typing import Any, Optional

import aiohttp

from .config import get_config, IndexerConfig
from .errors import TransientNetworkError


logger = logging.getLogger(__name__)


def compute_backoff(
    elapsed: float,
    config: IndexerConfig | None = None,
    rng: random.Random | None = None,
) -> float:
    """
    Jittered delay before the next retry, in seconds.

    clamp(backoff_min, elapsed / backoff_divisor, backoff_max), scaled by a
    random factor in [1 - jitter, 1 + jitter].
    """
    config = config or get_config()
    rng = rng or random
    base = min(config.backoff_max, max(config.backoff_min, elapsed / config.backoff_divisor))
    jitter = config.backoff_jitter
    return base * (1 - jitter + rng.random() * 2 * jitter)


class Fetcher:
    """
    Pooled HTTP client for JSON GETs.

    Usage:
        async with Fetcher(config) as fetcher:
            data = await fetcher.get_json(url)
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        session: aiohttp.ClientSession | None = None,
    ):
        self.config = config or get_config()
        self.session = session
        self._owns_session = session is None

    def start(self):
        if self.session is not None:
            return

        timeout = aiohttp.ClientTimeout(
            total=self.config.http_timeout,
            connect=10.0,
        )
        connector = aiohttp.TCPConnector(
            limit=self.config.http_limit,
            limit_per_host=self.config.http_limit_per_host,
            enable_cleanup_closed=True,
            use_dns_cache=True,
            ttl_dns_cache=300,
        )
        self.session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        self._owns_session = True

    async def stop(self):
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> "Fetcher":
        self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    def __call__(self) -> aiohttp.ClientSession:
        assert self.session is not None, "Fetcher not started"
        return self.session

    def proxied(self, url: str) -> str:
        """Wrap a URL with the configured proxy prefix."""
        if not self.config.proxy_url:
            return url
        return self.config.proxy_url + url

    async def get_json(self, url: str, via_proxy: bool = False) -> Optional[Any]:
        """
        GET a JSON document.

        Returns:
            Parsed JSON, or None when the server answers 404

        Raises:
            TransientNetworkError: connection failure, timeout, non-404 HTTP
                error or an unparseable body
        """
        target = self.proxied(url) if via_proxy else url
        session = self()

        try:
            async with session.get(target) as response:
                if response.status == 404:
                    return None
                if response.status >= 400:
                    raise TransientNetworkError(url, f"HTTP {response.status}")
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransientNetworkError(url, str(e) or type(e).__name__) from e
