"""
Indexing Configuration - Centralized settings for the account index pipeline.

Uses environment variables with sensible defaults. Remote endpoints,
concurrency limits and backoff tuning all live here so that tests can
swap in an isolated config with set_config().
"""

import os
from dataclasses import dataclass


# Shard keys: one shard per lowercase ASCII letter
LETTERS = "abcdefghijklmnopqrstuvwxyz"


@dataclass
class IndexerConfig:
    """
    Configuration for the account index pipeline.

    Defaults point at the production discovery and shard stores.
    Concurrency limits are tuned so that a full discovery pass does not
    exhaust the connection pool.
    """

    # --- Remote stores ---
    discovery_base_url: str = "https://dids.colds.ky"
    index_base_url: str = "https://accounts.colds.ky"
    appview_url: str = "https://public.api.bsky.app"
    relay_url: str | None = None            # None = atproto client default relay
    proxy_url: str | None = None            # e.g. "https://corsproxy.io/?"

    # --- Discovery keyspace ---
    discovery_alphabet: str = "234567abcdefghjiklmnopqrstuvwxyz"

    # --- Publishing ---
    publish_owner: str = "colds-ky-accounts"
    publish_branch: str = "main"
    github_api_url: str = "https://api.github.com"

    # --- Concurrency Limits ---
    discovery_concurrency: int = 64  # In-flight bucket fetches
    shard_load_attempts: int = 3     # Per-letter shard fetch attempts
    http_limit: int = 100            # Total connection pool size
    http_limit_per_host: int = 30
    http_timeout: float = 30.0       # Seconds, whole request

    # --- Backoff ---
    backoff_min: float = 0.3         # Seconds
    backoff_max: float = 30.0
    backoff_divisor: float = 3.0     # wait ~ elapsed / divisor
    backoff_jitter: float = 0.3      # +/- fraction

    # --- Priorities ---
    backlog_weight: float = 10.0
    referenced_weight: float = 1.0   # Weight of identifiers referenced by an event

    def __post_init__(self):
        """Normalize base URLs (no trailing slash)."""
        self.discovery_base_url = self.discovery_base_url.rstrip("/")
        self.index_base_url = self.index_base_url.rstrip("/")
        self.appview_url = self.appview_url.rstrip("/")
        self.github_api_url = self.github_api_url.rstrip("/")
        if not self.discovery_alphabet:
            raise ValueError("discovery_alphabet must not be empty")

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        """
        Create config from environment variables.

        Supported env vars:
            ACCOUNT_INDEX_DISCOVERY_URL: Base URL of the discovery buckets
            ACCOUNT_INDEX_SHARDS_URL: Base URL of the letter shards
            ACCOUNT_INDEX_APPVIEW_URL: AppView used for profile resolution
            ACCOUNT_INDEX_RELAY_URL: Firehose relay
            ACCOUNT_INDEX_PROXY_URL: Fallback proxy prefix
            ACCOUNT_INDEX_PUBLISH_OWNER: Owner of the per-letter repositories
            ACCOUNT_INDEX_PUBLISH_BRANCH: Branch commits go to
            ACCOUNT_INDEX_DISCOVERY_CONCURRENCY: Parallel bucket fetches
            ACCOUNT_INDEX_SHARD_LOAD_ATTEMPTS: Attempts per shard fetch
        """
        config = cls()

        if discovery_url := os.environ.get("ACCOUNT_INDEX_DISCOVERY_URL"):
            config.discovery_base_url = discovery_url

        if shards_url := os.environ.get("ACCOUNT_INDEX_SHARDS_URL"):
            config.index_base_url = shards_url

        if appview_url := os.environ.get("ACCOUNT_INDEX_APPVIEW_URL"):
            config.appview_url = appview_url

        if relay_url := os.environ.get("ACCOUNT_INDEX_RELAY_URL"):
            config.relay_url = relay_url

        if proxy_url := os.environ.get("ACCOUNT_INDEX_PROXY_URL"):
            config.proxy_url = proxy_url

        if owner := os.environ.get("ACCOUNT_INDEX_PUBLISH_OWNER"):
            config.publish_owner = owner

        if branch := os.environ.get("ACCOUNT_INDEX_PUBLISH_BRANCH"):
            config.publish_branch = branch

        if concurrency := os.environ.get("ACCOUNT_INDEX_DISCOVERY_CONCURRENCY"):
            config.discovery_concurrency = int(concurrency)

        if attempts := os.environ.get("ACCOUNT_INDEX_SHARD_LOAD_ATTEMPTS"):
            config.shard_load_attempts = int(attempts)

        config.__post_init__()
        return config


# Singleton default config
_default_config: IndexerConfig | None = None


def get_config() -> IndexerConfig:
    """Get the default configuration (singleton)."""
    global _default_config
    if _default_config is None:
        _default_config = IndexerConfig.from_env()
    return _default_config


def set_config(config: IndexerConfig) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
