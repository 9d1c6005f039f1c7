"""Row fetcher - stream decoded records out of one shard."""

import logging
import queue
import threading
from typing import Callable, Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from shardback.errors import QueryError
from shardback.models import EntityQuery, Record, ShardSource
from shardback.shard import ShardConnection, default_engine_factory

logger = logging.getLogger(__name__)


class RowFetcher:
    """
    Fetch one entity kind from one shard.

    Records are decoded one at a time as the cursor advances and are
    tagged with the shard's id. The shard connection is closed before
    fetch() finishes, on success, on error, and when the consumer stops
    iterating early.
    """

    def __init__(
        self,
        source: ShardSource,
        query: EntityQuery,
        engine_factory: Callable[[str], Engine] = default_engine_factory,
    ):
        self.source = source
        self.query = query
        self.engine_factory = engine_factory

    def fetch(self) -> Iterator[Record]:
        """
        Yield records in the order the shard returns them.

        Raises:
            ShardConnectionError: If the shard cannot be reached
            QueryError: If the query fails or a row cannot be decoded
        """
        shard_id = self.source.shard_id
        with ShardConnection(self.source, self.engine_factory) as conn:
            result = conn.execute(self.query.sql)
            try:
                for row in result:
                    yield self.query.decode(shard_id, tuple(row))
            except SQLAlchemyError as e:
                raise QueryError(f"reading rows failed: {e}", shard_id=shard_id) from e
            finally:
                result.close()

    def run(self, channel: "queue.Queue", abort: Optional[threading.Event] = None) -> int:
        """
        Put every fetched record onto a shared channel as soon as it is decoded.

        Stops early, closing the connection, once abort is set.

        Returns:
            Number of records sent
        """
        sent = 0
        records = self.fetch()
        try:
            for record in records:
                if abort is not None and abort.is_set():
                    logger.debug(
                        f"Shard {self.source.shard_id} {self.query.kind}: aborted after {sent} rows"
                    )
                    break
                channel.put(record)
                sent += 1
        finally:
            records.close()
        return sent
