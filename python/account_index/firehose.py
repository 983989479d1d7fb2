"""
Firehose - Turn the live event stream into re-index signals.

Every message touches its acting account and, depending on the record
type, the accounts it refers to (the liked post's author, the followed
account, ...). Touched identifiers are accumulated per block and flushed as
one FirehoseReport whenever the block touched anything.

The stream itself comes from the atproto firehose client (see
firehose_blocks); the signal source only needs an async iterable of blocks,
which keeps it independent of the transport.
"""

import asyncio
import logging
import random
import time
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Optional, Union

from atproto import (
    CAR,
    AsyncFirehoseSubscribeReposClient,
    firehose_models,
    models,
    parse_subscribe_repos_message,
)

from .config import get_config, IndexerConfig
from .errors import StreamError, handle_error
from .fetcher import compute_backoff
from .identity import break_at_uri, shorten_did, unwrap_short_did
from .models import FirehoseError, FirehoseReport


logger = logging.getLogger(__name__)


# A block is a list of entries, each {"messages": [message, ...]}
FirehoseMessage = Dict[str, Any]
FirehoseBlock = List[Dict[str, Any]]


class FirehoseSource:
    """
    Firehose signal source.

    Weights: the acting account gets 1 per message, referenced accounts get
    referenced_weight. filter_weight, when given, is called with the full DID
    and multiplies every increment (returning 0 drops the identifier).
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        referenced_weight: float | None = None,
        filter_weight: Optional[Callable[[str], float]] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ):
        self.config = config or get_config()
        self.referenced_weight = (
            self.config.referenced_weight if referenced_weight is None else referenced_weight
        )
        self.filter_weight = filter_weight
        self._clock = clock
        self._rng = rng

    def collect(self, message: FirehoseMessage, weights: Dict[str, float]) -> None:
        """Add every identifier one message touches to weights."""
        if not isinstance(message, dict):
            return

        self._add(weights, shorten_did(_as_str(message.get("repo"))), 1)

        ratio = self.referenced_weight
        record_type = message.get("$type")

        if record_type in ("app.bsky.feed.like", "app.bsky.feed.repost"):
            self._add_uri(weights, _dig(message, "subject", "uri"), ratio)

        elif record_type == "app.bsky.feed.post":
            self._add_uri(weights, _dig(message, "reply", "parent", "uri"), ratio)
            self._add_uri(weights, _dig(message, "reply", "root", "uri"), ratio)
            embed_type = _dig(message, "embed", "$type")
            if embed_type == "app.bsky.embed.record":
                self._add_uri(weights, _dig(message, "embed", "record", "uri"), ratio)
            elif embed_type == "app.bsky.embed.recordWithMedia":
                self._add_uri(weights, _dig(message, "embed", "record", "record", "uri"), ratio)

        elif record_type in (
            "app.bsky.graph.follow",
            "app.bsky.graph.block",
            "app.bsky.graph.listitem",
        ):
            self._add(weights, shorten_did(_as_str(message.get("subject"))), ratio)

        # threadgate, list, actor.profile and unknown types: actor only

    def _add_uri(self, weights: Dict[str, float], uri: Any, ratio: float) -> None:
        parsed = break_at_uri(_as_str(uri))
        if parsed:
            self._add(weights, parsed[0], ratio)

    def _add(self, weights: Dict[str, float], short_did: Optional[str], ratio: float) -> None:
        if not short_did:
            return
        increment = ratio
        if self.filter_weight is not None:
            increment *= self.filter_weight(unwrap_short_did(short_did))
        if not increment:
            return
        weights[short_did] = weights.get(short_did, 0) + increment

    async def reports(
        self,
        blocks: AsyncIterable[FirehoseBlock],
    ) -> AsyncIterator[Union[FirehoseReport, FirehoseError]]:
        """
        Yield one FirehoseReport per block that touched any identifier.

        If reading the stream raises, yields a single FirehoseError with a
        suggested retry delay and stops. Reconnecting is the caller's job.
        """
        iterator = blocks.__aiter__()
        last_healthy = self._clock()
        weights: Dict[str, float] = {}

        while True:
            try:
                block = await iterator.__anext__()
            except StopAsyncIteration:
                return
            except Exception as e:
                delay = compute_backoff(self._clock() - last_healthy, self.config, self._rng)
                handle_error(StreamError(str(e) or type(e).__name__), "firehose", "read")
                yield FirehoseError(error=e, retry_delay=delay, retry_at=time.time() + delay)
                return

            last_healthy = self._clock()
            if not block:
                continue

            for entry in block:
                messages = entry.get("messages") if isinstance(entry, dict) else None
                if not messages:
                    continue
                for message in messages:
                    self.collect(message, weights)

            if weights:
                report = FirehoseReport(weights=weights)
                weights = {}
                yield report


async def source_firehose(
    blocks: AsyncIterable[FirehoseBlock],
    config: IndexerConfig | None = None,
    *,
    referenced_weight: float | None = None,
    filter_weight: Optional[Callable[[str], float]] = None,
) -> AsyncIterator[Union[FirehoseReport, FirehoseError]]:
    """
    Convenience generator over FirehoseSource.reports().

    Usage:
        async for report in source_firehose(firehose_blocks()):
            if isinstance(report, FirehoseError):
                await asyncio.sleep(report.retry_delay)
                break
            print(report.weights)
    """
    source = FirehoseSource(config, referenced_weight=referenced_weight, filter_weight=filter_weight)
    async for report in source.reports(blocks):
        yield report


# --- atproto adapter ---

_CLOSED = object()


def decode_commit(commit: models.ComAtprotoSyncSubscribeRepos.Commit) -> List[FirehoseMessage]:
    """Records created or updated by one commit, each tagged with its repo DID."""
    if not commit.blocks:
        return []

    try:
        car = CAR.from_bytes(commit.blocks)
    except Exception as e:
        logger.debug(f"Could not parse CAR for {commit.repo}: {e}")
        return []

    messages: List[FirehoseMessage] = []
    for op in commit.ops:
        if op.action not in ("create", "update") or not op.cid:
            continue
        record = car.blocks.get(op.cid)
        if not isinstance(record, dict):
            continue
        messages.append({**record, "repo": commit.repo})

    return messages


async def firehose_blocks(config: IndexerConfig | None = None) -> AsyncIterator[FirehoseBlock]:
    """
    Subscribe to the relay and yield one block per commit.

    The client runs as a background task feeding a queue; closing this
    generator stops the client. A client failure is raised as StreamError.
    """
    config = config or get_config()
    queue: asyncio.Queue = asyncio.Queue()

    if config.relay_url:
        client = AsyncFirehoseSubscribeReposClient(base_uri=config.relay_url)
    else:
        client = AsyncFirehoseSubscribeReposClient()

    async def on_message(message: firehose_models.MessageFrame) -> None:
        commit = parse_subscribe_repos_message(message)
        if not isinstance(commit, models.ComAtprotoSyncSubscribeRepos.Commit):
            return
        messages = decode_commit(commit)
        if messages:
            queue.put_nowait([{"messages": messages}])

    def on_callback_error(error: BaseException) -> None:
        logger.warning(f"Firehose message handler error: {error}")

    def on_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            queue.put_nowait(task.exception())
        queue.put_nowait(_CLOSED)

    logger.info(f"Connecting to firehose at {config.relay_url or 'default relay'}")
    task = asyncio.create_task(client.start(on_message, on_callback_error))
    task.add_done_callback(on_done)

    try:
        while True:
            item = await queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, BaseException):
                raise StreamError(str(item) or type(item).__name__) from item
            yield item
    finally:
        if not task.done():
            await client.stop()
            task.cancel()
        logger.info("Firehose subscription closed")


def _dig(value: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None
