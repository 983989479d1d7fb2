"""
Account Index Package - Letter-sharded prefix index of account identities.

Modules:
    - config: Centralized configuration
    - fetcher: Pooled aiohttp JSON GETs and retry backoff
    - discovery: Full-population identifier enumeration (two-char buckets)
    - firehose: Live stream → weighted re-index signals (atproto)
    - backlog: Known identifiers missing from every shard
    - scheduler: Priority table and the re-index loop
    - indexer: Word-start prefixes per letter, and the shard diff
    - shards: Load, merge and publish the 26 letter shards
    - resolver: Short DID → handle and display name
    - publisher: Commit collaborator (GitHub) and credential gate
    - orchestrator: Main entry point

Refresh Flow:
    Discovery + Firehose → Scheduler → Resolve → Index → Diff → Shards

Usage:
    from account_index import Orchestrator

    orchestrator = Orchestrator()
    await orchestrator.run(max_accounts=100)
"""

from .orchestrator import Orchestrator

__all__ = ["Orchestrator"]
