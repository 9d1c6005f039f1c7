"""
Fan-in aggregator - merge the record streams of every shard into one.

One fetcher thread per shard writes into a single unbounded queue. The
last fetcher to finish puts an end-of-stream marker, so the consumer
reads until it sees it. Order within a shard is the order the shard
returned rows; interleaving across shards is whatever the threads do.

Failure policy is fail-fast: the first fetch error travels through the
queue, the shared abort event is set so every other fetcher stops, and
the error is raised to whoever is iterating.
"""

import logging
import queue
import threading
from typing import Callable, Iterator, Optional, Sequence

from sqlalchemy.engine import Engine

from shardback.errors import ExportAborted
from shardback.fetcher import RowFetcher
from shardback.models import EntityQuery, Record, ShardSource
from shardback.shard import default_engine_factory

logger = logging.getLogger(__name__)

# Seconds between abort checks while the consumer waits on the queue
POLL_INTERVAL = 0.1


class CompletionBarrier:
    """Counts live fetchers. arrive() returns True for the last one only."""

    def __init__(self, count: int):
        self._remaining = count
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    def arrive(self) -> bool:
        with self._lock:
            if self._remaining <= 0:
                raise RuntimeError("CompletionBarrier: more arrivals than participants")
            self._remaining -= 1
            return self._remaining == 0


class _EndOfStream:
    def __repr__(self) -> str:
        return "<end of stream>"


END_OF_STREAM = _EndOfStream()


class _FetchFailure:
    """Wraps an exception raised in a fetcher thread for delivery to the consumer."""

    def __init__(self, source: ShardSource, error: BaseException):
        self.source = source
        self.error = error


class FanInAggregator:
    """
    Lazy, finite stream of records from every shard for one entity kind.

    Iterate it once:
        for record in FanInAggregator(shards, USERS_QUERY, abort):
            ...

    Args:
        shards: Shards to read, one fetcher thread each
        query: Entity kind to fetch
        abort: Event shared with the rest of the run; set on failure here
            and checked here so another pipeline's failure stops this one
        engine_factory: Builds the engine for each shard connection
        poll_interval: Seconds between abort checks while waiting for rows
    """

    def __init__(
        self,
        shards: Sequence[ShardSource],
        query: EntityQuery,
        abort: Optional[threading.Event] = None,
        engine_factory: Callable[[str], Engine] = default_engine_factory,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.shards = list(shards)
        self.query = query
        self.abort = abort if abort is not None else threading.Event()
        self.engine_factory = engine_factory
        self.poll_interval = poll_interval
        self._started = False

    def __iter__(self) -> Iterator[Record]:
        return self.stream()

    def stream(self) -> Iterator[Record]:
        if self._started:
            raise RuntimeError("FanInAggregator can only be iterated once")
        self._started = True
        if self.abort.is_set():
            raise ExportAborted(f"{self.query.kind}: export aborted before start")

        if not self.shards:
            logger.info(f"{self.query.kind}: no shards configured")
            return

        channel: queue.Queue = queue.Queue()
        barrier = CompletionBarrier(len(self.shards))

        for source in self.shards:
            worker = threading.Thread(
                target=self._run_fetcher,
                args=(source, channel, barrier),
                name=f"fetch-{self.query.kind}-{source.shard_id}",
                daemon=True,
            )
            worker.start()

        finished = False
        try:
            while True:
                try:
                    item = channel.get(timeout=self.poll_interval)
                except queue.Empty:
                    if self.abort.is_set():
                        self._raise_pending_failure(channel)
                        raise ExportAborted(f"{self.query.kind}: export aborted")
                    continue

                if item is END_OF_STREAM:
                    if self.abort.is_set():
                        # Fetchers stopped early, the stream is incomplete
                        raise ExportAborted(f"{self.query.kind}: export aborted")
                    finished = True
                    return
                if isinstance(item, _FetchFailure):
                    logger.error(
                        f"{self.query.kind}: shard {item.source.shard_id} failed: {item.error}"
                    )
                    raise item.error
                yield item
        finally:
            if not finished:
                # Consumer failed, stopped early, or a fetcher failed
                self.abort.set()

    def _raise_pending_failure(self, channel: queue.Queue) -> None:
        """Drain what is left after an abort and raise the first fetch error in it."""
        while True:
            try:
                item = channel.get_nowait()
            except queue.Empty:
                return
            if isinstance(item, _FetchFailure):
                raise item.error

    def _run_fetcher(self, source: ShardSource, channel: queue.Queue, barrier: CompletionBarrier) -> None:
        fetcher = RowFetcher(source, self.query, self.engine_factory)
        try:
            sent = fetcher.run(channel, self.abort)
            logger.debug(f"{self.query.kind}: shard {source.shard_id} sent {sent} rows")
        except Exception as e:
            # Queued before abort is set; the consumer drains it on abort
            channel.put(_FetchFailure(source, e))
            self.abort.set()
        finally:
            if barrier.arrive():
                channel.put(END_OF_STREAM)
