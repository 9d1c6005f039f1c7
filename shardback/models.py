"""
Data model for shardback exports.

ShardSource -> Record (UserRecord | OrderRecord) -> ExportCounters -> ArchiveManifest

- ShardSource: one shard from the configured list, identified by its position
- EntityQuery: what to select from every shard and how to decode each row
- Record: one decoded row tagged with the shard it came from
- ExportCounters: rows written by one export sink
- ArchiveManifest: ordered output files handed to the archiver
- ExportResult: what a successful run returns
"""

from __future__ import annotations

import numbers
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Sequence, Union

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from shardback.errors import ArchiveError, QueryError


def mask_dsn(dsn: str) -> str:
    """Return the connection string with its password replaced by ***."""
    try:
        return make_url(dsn).render_as_string(hide_password=True)
    except (ArgumentError, ValueError):
        # Not a URL we can parse; never echo it back in case it holds secrets
        return "<unparseable dsn>"


@dataclass(frozen=True)
class ShardSource:
    """
    One shard to export from.

    Attributes:
        shard_id: Ordinal position in the configured shard list
        dsn: SQLAlchemy connection string, opaque to everything but the
            shard connection
    """
    shard_id: int
    dsn: str = field(repr=False)

    def __repr__(self) -> str:
        return f"ShardSource(shard_id={self.shard_id}, dsn={mask_dsn(self.dsn)!r})"


def shard_sources(dsns: Sequence[str]) -> list[ShardSource]:
    """Build ShardSources from an ordered list of connection strings."""
    return [ShardSource(shard_id=i, dsn=dsn) for i, dsn in enumerate(dsns)]


# ---------------------------------------------------------------------------
# Row decoding
# ---------------------------------------------------------------------------


def _expect_arity(row: Sequence[Any], columns: Sequence[str], shard_id: int) -> None:
    if len(row) != len(columns):
        raise QueryError(
            f"expected {len(columns)} columns ({', '.join(columns)}), got {len(row)}",
            shard_id=shard_id,
        )


def _decode_int(value: Any, column: str, shard_id: int) -> int:
    if value is None:
        raise QueryError(f"NULL in column {column}", shard_id=shard_id)
    if isinstance(value, bool):
        raise QueryError(f"boolean in integer column {column}", shard_id=shard_id)
    try:
        result = int(value)
    except (TypeError, ValueError, OverflowError):
        raise QueryError(f"cannot decode {value!r} in column {column} as integer", shard_id=shard_id)
    # int() truncates floats and Decimals
    if isinstance(value, numbers.Number) and result != value:
        raise QueryError(f"non-integral value {value!r} in column {column}", shard_id=shard_id)
    return result


def _decode_float(value: Any, column: str, shard_id: int) -> float:
    if value is None:
        raise QueryError(f"NULL in column {column}", shard_id=shard_id)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise QueryError(f"cannot decode {value!r} in column {column} as number", shard_id=shard_id)


def _decode_text(value: Any, column: str, shard_id: int) -> str:
    if value is None:
        raise QueryError(f"NULL in column {column}", shard_id=shard_id)
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            raise QueryError(f"column {column} is not valid UTF-8", shard_id=shard_id)
    return str(value)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserRecord:
    """A row of the users table."""
    COLUMNS: ClassVar[tuple[str, ...]] = ("user_id", "name")

    shard_id: int
    user_id: int
    name: str

    @classmethod
    def from_row(cls, shard_id: int, row: Sequence[Any]) -> "UserRecord":
        _expect_arity(row, cls.COLUMNS, shard_id)
        return cls(
            shard_id=shard_id,
            user_id=_decode_int(row[0], "user_id", shard_id),
            name=_decode_text(row[1], "name", shard_id),
        )

    def to_row(self) -> list[str]:
        return [str(self.shard_id), str(self.user_id), self.name]


@dataclass(frozen=True)
class OrderRecord:
    """A row of the sales table."""
    COLUMNS: ClassVar[tuple[str, ...]] = ("order_id", "user_id", "order_amount")

    shard_id: int
    order_id: int
    user_id: int
    amount: float

    @classmethod
    def from_row(cls, shard_id: int, row: Sequence[Any]) -> "OrderRecord":
        _expect_arity(row, cls.COLUMNS, shard_id)
        return cls(
            shard_id=shard_id,
            order_id=_decode_int(row[0], "order_id", shard_id),
            user_id=_decode_int(row[1], "user_id", shard_id),
            amount=_decode_float(row[2], "order_amount", shard_id),
        )

    def to_row(self) -> list[str]:
        return [
            str(self.shard_id),
            str(self.order_id),
            str(self.user_id),
            f"{self.amount:.6f}",
        ]


Record = Union[UserRecord, OrderRecord]


@dataclass(frozen=True)
class EntityQuery:
    """
    One entity kind to export from every shard.

    Attributes:
        kind: Entity name used for counters and logging ("users", "orders")
        sql: SELECT issued against each shard
        record_type: Record class that decodes one result row
        filename: Output file name inside the backup directory
    """
    kind: str
    sql: str
    record_type: type
    filename: str

    @property
    def columns(self) -> tuple[str, ...]:
        return self.record_type.COLUMNS

    def decode(self, shard_id: int, row: Sequence[Any]) -> Record:
        return self.record_type.from_row(shard_id, row)


USERS_QUERY = EntityQuery(
    kind="users",
    sql="SELECT user_id, name FROM users",
    record_type=UserRecord,
    filename="users.csv",
)

ORDERS_QUERY = EntityQuery(
    kind="orders",
    sql="SELECT order_id, user_id, order_amount FROM sales",
    record_type=OrderRecord,
    filename="sales.csv",
)

# Order fixes the archive manifest order
DEFAULT_ENTITIES: tuple[EntityQuery, ...] = (USERS_QUERY, ORDERS_QUERY)


# ---------------------------------------------------------------------------
# Counters, manifest, result
# ---------------------------------------------------------------------------


@dataclass
class ExportCounters:
    """Rows written by one export sink. Only the owning sink increments it."""
    kind: str
    written: int = 0

    def increment(self) -> None:
        self.written += 1


class ArchiveManifest:
    """
    Ordered list of output files to archive.

    Consumed exactly once: the archiver calls consume() and a second call
    raises ArchiveError.
    """

    def __init__(self, paths: Sequence[Union[str, Path]]):
        self._paths = tuple(Path(p) for p in paths)
        self._consumed = False
        self._lock = threading.Lock()

    @property
    def paths(self) -> tuple[Path, ...]:
        return self._paths

    def consume(self) -> tuple[Path, ...]:
        with self._lock:
            if self._consumed:
                raise ArchiveError("Archive manifest has already been consumed")
            self._consumed = True
        return self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def __repr__(self) -> str:
        return f"ArchiveManifest(paths={[str(p) for p in self._paths]})"


@dataclass
class ExportResult:
    """
    Result of a successful backup run.

    Attributes:
        counts: Rows written per entity kind
        archive_path: The .tar.gz holding every output file
        output_paths: Output files in manifest order
        duration_ms: Wall time of the run
    """
    counts: dict[str, int]
    archive_path: Path
    output_paths: list[Path] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def users_count(self) -> int:
        return self.counts.get(USERS_QUERY.kind, 0)

    @property
    def orders_count(self) -> int:
        return self.counts.get(ORDERS_QUERY.kind, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": dict(self.counts),
            "archive_path": str(self.archive_path),
            "output_paths": [str(p) for p in self.output_paths],
            "duration_ms": self.duration_ms,
        }
