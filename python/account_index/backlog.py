"""
Backlog - Identifiers that exist but have never been indexed.
"""

import logging
from typing import AsyncIterable, AsyncIterator, Iterable, List, Set

from .models import CompactShard


logger = logging.getLogger(__name__)


def indexed_identifiers(shards: Iterable[CompactShard]) -> Set[str]:
    """Union of the identifiers present in any shard."""
    indexed: Set[str] = set()
    for shard in shards:
        indexed.update(shard.keys())
    return indexed


async def source_unindexed(
    shards: Iterable[CompactShard],
    known_batches: AsyncIterable[List[str]],
) -> AsyncIterator[List[str]]:
    """
    Filter discovery batches down to identifiers missing from every shard.

    The indexed set is computed once, up front. Batches with nothing left
    after filtering are dropped rather than yielded empty.
    """
    indexed = indexed_identifiers(shards)
    logger.info(f"Backlog filter: {len(indexed)} identifiers already indexed")

    async for batch in known_batches:
        unindexed = [short_did for short_did in batch if short_did not in indexed]
        if unindexed:
            yield unindexed
