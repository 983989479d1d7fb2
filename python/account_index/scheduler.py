"""
Scheduler - Decide which account to re-index next.

Two feeders (firehose and backlog) and one consumer share a priority
table: identifier -> accumulated score. Scores only grow until the
consumer drains an identifier by re-indexing it, so an account that keeps
showing up in the firehose eventually outranks a single backlog entry.

The table has exactly one writer. Feeders never touch it; they put
(short_did, weight) messages on an inbox queue, and the consumer applies
them between re-indexes. There is no backpressure: feeders may run
arbitrarily far ahead of the consumer.
"""

import asyncio
import dataclasses
import heapq
import logging
from typing import AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple, Union

from .config import get_config, IndexerConfig
from .errors import handle_error
from .indexer import diff_account
from .models import AccountReport, FirehoseError, FirehoseReport, IndexingStats
from .resolver import IdentityResolver
from .shards import ShardStore


logger = logging.getLogger(__name__)


class PriorityTable:
    """
    Identifier -> score, additive and unbounded.

    pop_top() returns the highest score; ties go to the lexicographically
    smallest identifier. Scores live in a dict; a heap of (-score, id)
    entries orders them. Raising a score pushes a fresh entry and leaves
    the old one behind, which is skipped when it surfaces.
    """

    def __init__(self):
        self._scores: Dict[str, float] = {}
        self._heap: List[Tuple[float, str]] = []

    def add(self, short_did: str, weight: float) -> float:
        if weight < 0:
            raise ValueError(f"Priority weight must be non-negative, got {weight}")
        if weight == 0:
            return self._scores.get(short_did, 0)
        score = self._scores.get(short_did, 0) + weight
        self._scores[short_did] = score
        heapq.heappush(self._heap, (-score, short_did))
        if len(self._heap) > 2 * len(self._scores) + 64:
            self._compact()
        return score

    def score(self, short_did: str) -> float:
        return self._scores.get(short_did, 0)

    def _is_current(self, entry: Tuple[float, str]) -> bool:
        neg_score, short_did = entry
        return self._scores.get(short_did) == -neg_score

    def _compact(self) -> None:
        self._heap = [(-score, short_did) for short_did, score in self._scores.items()]
        heapq.heapify(self._heap)

    def peek_top(self) -> Optional[Tuple[str, float]]:
        while self._heap and not self._is_current(self._heap[0]):
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        neg_score, short_did = self._heap[0]
        return short_did, -neg_score

    def pop_top(self) -> Optional[Tuple[str, float]]:
        top = self.peek_top()
        if top is not None:
            heapq.heappop(self._heap)
            del self._scores[top[0]]
        return top

    def __len__(self) -> int:
        return len(self._scores)

    def __contains__(self, short_did: object) -> bool:
        return short_did in self._scores


class Scheduler:
    """
    Priority-driven re-index loop.

    Usage:
        scheduler = Scheduler(shard_store, resolver)
        scheduler.start_feeder(scheduler.feed_backlog(batches))
        scheduler.start_feeder(scheduler.feed_firehose(reports))
        async for report in scheduler.run_iter():
            ...
        scheduler.stop()
    """

    def __init__(
        self,
        shard_store: ShardStore,
        resolver: IdentityResolver,
        config: IndexerConfig | None = None,
    ):
        self.config = config or get_config()
        self.shard_store = shard_store
        self.resolver = resolver
        self.table = PriorityTable()
        self.stats = IndexingStats()

        self._inbox: asyncio.Queue[Tuple[str, float]] = asyncio.Queue()
        self._stop = asyncio.Event()
        self._feeders: List[asyncio.Task] = []

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # ------------------------------------------------------------------
    # Feeder side (writes to the inbox only)
    # ------------------------------------------------------------------

    def submit(self, short_did: str, weight: float) -> None:
        if weight < 0:
            raise ValueError(f"Priority weight must be non-negative, got {weight}")
        self._inbox.put_nowait((short_did, weight))

    async def feed_firehose(
        self,
        reports: AsyncIterable[Union[FirehoseReport, FirehoseError]],
    ) -> Optional[FirehoseError]:
        """
        Submit firehose weights until the stream ends or fails.

        Returns the terminal FirehoseError, if any, so the caller can
        reconnect after its retry delay.
        """
        async for report in reports:
            if self.stopped:
                return None
            if isinstance(report, FirehoseError):
                return report
            for short_did, weight in report.weights.items():
                self.submit(short_did, weight)
        return None

    async def feed_backlog(self, batches: AsyncIterable[List[str]]) -> int:
        """Submit every unindexed identifier with the backlog weight."""
        count = 0
        async for batch in batches:
            if self.stopped:
                break
            for short_did in batch:
                self.submit(short_did, self.config.backlog_weight)
            count += len(batch)
        logger.info(f"Backlog feeder finished: {count} unindexed identifiers")
        return count

    def start_feeder(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._feeders.append(task)
        return task

    # ------------------------------------------------------------------
    # Consumer side (sole writer of the table)
    # ------------------------------------------------------------------

    def _apply(self, message: Tuple[str, float]) -> None:
        short_did, weight = message
        self.table.add(short_did, weight)

    def _drain_inbox(self) -> None:
        while not self._inbox.empty():
            self._apply(self._inbox.get_nowait())

    async def next_identifier(self) -> Optional[Tuple[str, float]]:
        """
        Pop the top-priority identifier, waiting for signals if the table
        is empty. Returns None once stopped.
        """
        while not self.stopped:
            self._drain_inbox()
            top = self.table.pop_top()
            if top is not None:
                return top

            get_task = asyncio.create_task(self._inbox.get())
            stop_task = asyncio.create_task(self._stop.wait())
            try:
                done, _ = await asyncio.wait(
                    {get_task, stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                get_task.cancel()
                stop_task.cancel()

            if get_task in done and not get_task.cancelled():
                self._apply(get_task.result())

        return None

    async def process(self, short_did: str, priority: float) -> AccountReport:
        """Resolve, index and diff one identifier; apply its updates."""
        self.stats.accounts_processed += 1

        try:
            profile = await self.resolver.resolve(short_did)
        except Exception as e:
            handle_error(e, short_did, "resolve")
            self.stats.resolution_errors += 1
            return AccountReport(short_did, priority, None, [])

        if profile.short_did != short_did:
            profile = dataclasses.replace(profile, short_did=short_did)

        updates = diff_account(profile, self.shard_store.shards)
        self.stats.updates_held += self.shard_store.apply_all(updates)

        if updates:
            self.stats.accounts_changed += 1
            self.stats.updates_emitted += len(updates)
            self.stats.removals_emitted += sum(1 for u in updates if u.is_removal)
            logger.info(f"Re-indexed {short_did} (priority {priority:g}): {len(updates)} updates")
        else:
            self.stats.accounts_unchanged += 1
            logger.debug(f"Re-indexed {short_did}: unchanged")

        return AccountReport(short_did, priority, profile, updates)

    async def run_iter(self, max_accounts: Optional[int] = None) -> AsyncIterator[AccountReport]:
        """
        Consumer loop: yield one AccountReport per processed identifier.

        Runs until stop() is called or max_accounts identifiers were done.
        """
        done = 0
        while max_accounts is None or done < max_accounts:
            top = await self.next_identifier()
            if top is None:
                break
            report = await self.process(*top)
            done += 1
            yield report
            if self.stopped:
                break

        logger.info(f"Scheduler finished: {self.stats}")

    async def run(self, max_accounts: Optional[int] = None) -> IndexingStats:
        async for _ in self.run_iter(max_accounts):
            pass
        return self.stats

    def stop(self) -> None:
        """Stop the consumer at its next suspension point and cancel feeders."""
        self._stop.set()
        for task in self._feeders:
            if not task.done():
                task.cancel()
        self._feeders.clear()
