"""
Shard connection - one live connection to one shard.

The connection is opened lazily on first use and closed when the
context exits, whichever way it exits. Each connection gets its own
engine with NullPool so closing it really closes the DBAPI connection.
"""

import logging
from typing import Callable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, CursorResult, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from shardback.errors import QueryError, ShardConnectionError
from shardback.models import ShardSource, mask_dsn

logger = logging.getLogger(__name__)


def default_engine_factory(dsn: str) -> Engine:
    """Create a non-pooling engine for one shard."""
    return create_engine(dsn, poolclass=NullPool)


class ShardConnection:
    """
    Scoped connection to a single shard.

    Usage:
        with ShardConnection(source) as conn:
            for row in conn.execute("SELECT ..."):
                ...
    """

    def __init__(
        self,
        source: ShardSource,
        engine_factory: Callable[[str], Engine] = default_engine_factory,
    ):
        self.source = source
        self._engine_factory = engine_factory
        self._engine: Optional[Engine] = None
        self._connection: Optional[Connection] = None

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def open(self) -> Connection:
        """Open the connection if needed and return it."""
        if self._connection is not None:
            return self._connection

        shard_id = self.source.shard_id
        try:
            logger.debug(f"Connecting to shard {shard_id}: {mask_dsn(self.source.dsn)}")
            self._engine = self._engine_factory(self.source.dsn)
            self._connection = self._engine.connect()
        except (SQLAlchemyError, ImportError, ValueError) as e:
            # ValueError: malformed URL parts such as a non-numeric port
            self._dispose_engine()
            raise ShardConnectionError(
                f"cannot connect to {mask_dsn(self.source.dsn)}: {e}",
                shard_id=shard_id,
            ) from e
        return self._connection

    def execute(self, sql: str) -> CursorResult:
        """Run a query and return its (lazily fetched) result."""
        connection = self.open()
        try:
            return connection.execute(text(sql))
        except SQLAlchemyError as e:
            raise QueryError(f"query failed: {e}", shard_id=self.source.shard_id) from e

    def close(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            except SQLAlchemyError as e:
                logger.warning(f"Error closing shard {self.source.shard_id}: {e}")
            finally:
                self._connection = None
        self._dispose_engine()

    def _dispose_engine(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> "ShardConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"ShardConnection(shard_id={self.source.shard_id}, {state})"
