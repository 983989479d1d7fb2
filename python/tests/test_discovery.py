"""
Discovery Tests - Verify bucket enumeration, retries and transport choice.
"""

import random

import pytest

from account_index.discovery import IdentifierDiscovery
from account_index.errors import TransientNetworkError
from account_index.fetcher import compute_backoff

from conftest import FakeFetcher, Outcomes


def bucket(first: str, second: str) -> str:
    return f"https://dids.test/{first}/{first}{second}.json"


class TestBuckets:
    """Tests for the bucket keyspace."""

    def test_keyspace_is_alphabet_squared(self, test_config):
        discovery = IdentifierDiscovery(FakeFetcher(), test_config)
        assert discovery.buckets() == [("a", "a"), ("a", "b"), ("b", "a"), ("b", "b")]

    def test_production_alphabet(self, test_config):
        test_config.discovery_alphabet = "234567abcdefghjiklmnopqrstuvwxyz"
        discovery = IdentifierDiscovery(FakeFetcher(), test_config)
        assert len(discovery.buckets()) == len(test_config.discovery_alphabet) ** 2

    def test_bucket_url(self, test_config):
        discovery = IdentifierDiscovery(FakeFetcher(), test_config)
        assert discovery.bucket_url("a", "b") == "https://dids.test/a/ab.json"


class TestBatches:
    """Tests for IdentifierDiscovery.batches."""

    @pytest.mark.asyncio
    async def test_enumerates_every_bucket(self, test_config, no_sleep):
        fetcher = FakeFetcher({
            bucket("a", "a"): ["A", "B", "C"],
            bucket("a", "b"): None,          # 404: empty bucket
            bucket("b", "a"): ["D"],
            bucket("b", "b"): [],
        })
        discovery = IdentifierDiscovery(fetcher, test_config, sleep=no_sleep)

        seen = []
        async for batch in discovery.batches():
            assert batch, "empty batches are never yielded"
            seen.extend(batch)

        assert sorted(seen) == ["A", "B", "C", "D"]
        assert len(fetcher.calls) == 4

    @pytest.mark.asyncio
    async def test_retries_failed_bucket_until_success(self, test_config, no_sleep, sleeps):
        error = TransientNetworkError(bucket("a", "a"), "reset")
        fetcher = FakeFetcher({
            bucket("a", "a"): Outcomes(error, error, ["A"]),
        })
        discovery = IdentifierDiscovery(fetcher, test_config, sleep=no_sleep)

        seen = [x async for batch in discovery.batches() for x in batch]

        assert seen == ["A"]
        assert len(sleeps) == 2
        assert all(0.2 <= delay <= 0.4 for delay in sleeps)

    @pytest.mark.asyncio
    async def test_direct_only_without_proxy(self, test_config, no_sleep):
        error = TransientNetworkError(bucket("a", "a"), "reset")
        fetcher = FakeFetcher({bucket("a", "a"): Outcomes(error, error, error, ["A"])})
        discovery = IdentifierDiscovery(fetcher, test_config, sleep=no_sleep)

        await discovery.load_bucket("a", "a")

        assert all(not via_proxy for _, via_proxy in fetcher.calls)

    @pytest.mark.asyncio
    async def test_alternates_with_proxy_after_failure(self, test_config, no_sleep):
        test_config.proxy_url = "https://proxy.test/?"
        error = TransientNetworkError(bucket("a", "a"), "cors")
        fetcher = FakeFetcher({bucket("a", "a"): Outcomes(error, error, error, ["A"])})
        discovery = IdentifierDiscovery(fetcher, test_config, sleep=no_sleep)

        result = await discovery.load_bucket("a", "a")

        assert result == ["A"]
        assert [via_proxy for _, via_proxy in fetcher.calls] == [False, True, False, True]
        assert discovery.any_direct_succeeded is False

    @pytest.mark.asyncio
    async def test_direct_success_disables_proxy(self, test_config, no_sleep):
        test_config.proxy_url = "https://proxy.test/?"
        error = TransientNetworkError(bucket("a", "b"), "flaky")
        fetcher = FakeFetcher({
            bucket("a", "a"): ["A"],
            bucket("a", "b"): Outcomes(error, error, ["B"]),
        })
        discovery = IdentifierDiscovery(fetcher, test_config, sleep=no_sleep)

        await discovery.load_bucket("a", "a")
        await discovery.load_bucket("a", "b")

        assert discovery.any_direct_succeeded
        assert all(not via_proxy for _, via_proxy in fetcher.calls)

    @pytest.mark.asyncio
    async def test_dict_payload_uses_keys(self, test_config, no_sleep):
        fetcher = FakeFetcher({bucket("a", "a"): {"A": 1, "B": 2}})
        discovery = IdentifierDiscovery(fetcher, test_config, sleep=no_sleep)
        assert await discovery.load_bucket("a", "a") == ["A", "B"]


class TestBackoff:
    """Tests for compute_backoff."""

    def test_floor(self, test_config):
        rng = random.Random(1)
        for _ in range(50):
            assert 0.2 <= compute_backoff(0, test_config, rng) <= 0.4

    def test_proportional(self, test_config):
        rng = random.Random(2)
        for _ in range(50):
            assert 7.0 <= compute_backoff(30, test_config, rng) <= 13.0

    def test_ceiling(self, test_config):
        rng = random.Random(3)
        for _ in range(50):
            assert 21.0 <= compute_backoff(3600, test_config, rng) <= 39.0
