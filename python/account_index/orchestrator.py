"""
Orchestrator - Main entry point for the account index refresh pipeline.

Wires the pipeline together:

    Shard Store (load 26 letters)
        ├── Backlog:  Discovery → filter against shards ─┐
        └── Firehose: live stream → weighted signals ────┤
                                                         ▼
                                Scheduler (priority table → resolve → diff)
                                                         │
                                Shard Store (apply updates → publish letters)
"""

import asyncio
import logging
import os
import time
from typing import AsyncIterable, Callable, List, Optional

from .config import get_config, IndexerConfig, set_config
from .backlog import source_unindexed
from .discovery import IdentifierDiscovery
from .fetcher import Fetcher
from .firehose import FirehoseBlock, FirehoseSource, firehose_blocks
from .models import AccountReport, IndexingStats, LoadProgress, PublishResult
from .publisher import Committer, CredentialGate, GitHubCommitter
from .resolver import IdentityResolver
from .scheduler import Scheduler
from .shards import ShardStore


logger = logging.getLogger(__name__)


BlocksFactory = Callable[[], AsyncIterable[FirehoseBlock]]


class Orchestrator:
    """
    Main orchestrator for the refresh pipeline.

    Collaborators default to the real network adapters; tests pass fakes.
    """

    def __init__(
        self,
        config: Optional[IndexerConfig] = None,
        fetcher: Optional[Fetcher] = None,
        resolver: Optional[IdentityResolver] = None,
        committer: Optional[Committer] = None,
        blocks_factory: Optional[BlocksFactory] = None,
    ):
        self.config = config or get_config()
        if config:
            set_config(config)

        self._fetcher = fetcher or Fetcher(self.config)
        self._resolver = resolver or IdentityResolver(self._fetcher, self.config)
        self._committer = committer or GitHubCommitter(self._fetcher, self.config)
        self._blocks_factory = blocks_factory or (lambda: firehose_blocks(self.config))

        self.shard_store = ShardStore(self._fetcher, self.config, self._committer)
        self.scheduler: Optional[Scheduler] = None
        self.credentials = CredentialGate()

    async def load_shards(
        self,
        on_progress: Optional[Callable[[LoadProgress], None]] = None,
    ) -> LoadProgress:
        start_time = time.monotonic()
        logger.info("Loading letter shards...")

        await self.shard_store.load_all(on_progress)
        progress = self.shard_store.progress()

        logger.info(f"Shards loaded in {time.monotonic() - start_time:.1f}s: {progress}")
        return progress

    async def run_firehose(self, scheduler: Scheduler) -> None:
        """Feed firehose signals, reconnecting after each stream failure."""
        source = FirehoseSource(self.config)
        while not scheduler.stopped:
            error = await scheduler.feed_firehose(source.reports(self._blocks_factory()))
            if error is None:
                logger.info("Firehose stream ended")
                return
            logger.info(f"Reconnecting to firehose in {error.retry_delay:.1f}s")
            await asyncio.sleep(error.retry_delay)

    async def run(
        self,
        max_accounts: Optional[int] = None,
        use_backlog: bool = True,
        use_firehose: bool = True,
        on_report: Optional[Callable[[AccountReport], None]] = None,
    ) -> IndexingStats:
        """
        Load shards, start the feeders and re-index until stopped.

        Args:
            max_accounts: Stop after this many identifiers (default: run forever)
            use_backlog: Feed never-indexed identifiers from discovery
            use_firehose: Feed identifiers active on the live stream
            on_report: Called with every AccountReport
        """
        if self._fetcher.session is None:
            self._fetcher.start()

        progress = await self.load_shards()

        scheduler = Scheduler(self.shard_store, self._resolver, self.config)
        self.scheduler = scheduler

        if use_backlog and progress.errors:
            # Identifiers stored in a failed letter would all look unindexed
            logger.warning(f"Backlog disabled: shards {''.join(progress.errors)} failed to load")
        elif use_backlog:
            discovery = IdentifierDiscovery(self._fetcher, self.config)
            batches = source_unindexed(
                list(self.shard_store.shards.values()),
                discovery.batches(),
            )
            scheduler.start_feeder(scheduler.feed_backlog(batches))

        if use_firehose:
            scheduler.start_feeder(self.run_firehose(scheduler))

        try:
            async for report in scheduler.run_iter(max_accounts):
                if on_report is not None:
                    on_report(report)
        finally:
            scheduler.stop()

        return scheduler.stats

    async def publish(self, message: str = "Update map") -> List[PublishResult]:
        """Publish every changed letter with the current credentials."""
        results = await self.shard_store.publish_dirty(self.credentials, message)
        published = sum(1 for r in results if r.success)
        logger.info(f"Published {published}/{len(results)} changed shards")
        return results

    def stop(self):
        if self.scheduler is not None:
            self.scheduler.stop()

    async def close(self):
        """Clean up resources."""
        self.stop()
        await self._fetcher.stop()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Account prefix index refresher")
    parser.add_argument("--max-accounts", type=int, help="Stop after re-indexing this many accounts")
    parser.add_argument("--no-backlog", action="store_true", help="Skip never-indexed accounts")
    parser.add_argument("--no-firehose", action="store_true", help="Do not tail the live stream")
    parser.add_argument("--publish", action="store_true", help="Publish changed shards (needs GITHUB_TOKEN)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    if args.publish and args.max_accounts is None:
        parser.error("--publish requires --max-accounts (publishing happens after the run ends)")

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    async def _main():
        orchestrator = Orchestrator()

        try:
            stats = await orchestrator.run(
                max_accounts=args.max_accounts,
                use_backlog=not args.no_backlog,
                use_firehose=not args.no_firehose,
            )
            print(f"\n{stats}")

            if args.publish:
                token = os.environ.get("GITHUB_TOKEN")
                if not token:
                    print("GITHUB_TOKEN is not set; nothing published.")
                    return
                orchestrator.credentials.supply(token)
                for result in await orchestrator.publish():
                    status = "ok" if result.success else f"failed: {result.error}"
                    print(f"  {result.letter}: {status}")

        except KeyboardInterrupt:
            print("\nStopped.")
        finally:
            await orchestrator.close()

    asyncio.run(_main())


if __name__ == "__main__":
    main()
