"""
Error classes for shardback exports.

Every failure in a backup run is fatal. The error type tells the caller
which stage failed:
- ShardConnectionError: shard unreachable, bad DSN, missing driver, auth failure
- QueryError: malformed query or a row that cannot be decoded
- WriteError: output file or directory cannot be written
- ArchiveError: source file unreadable or archive cannot be created

Error handling contract:
- No retries, a transient shard failure is treated like a permanent one
- The first error raised aborts the whole run
- ExportAborted is raised by pipelines that were stopped because another
  pipeline failed first; it is never the error reported for a run
"""

from typing import Optional


class ShardbackError(Exception):
    """Base exception for shardback."""
    pass


class FetchError(ShardbackError):
    """
    Base for errors raised while reading from a shard.

    Carries the ordinal id of the shard that failed so that the
    orchestrator can report which connection string to look at.
    """

    def __init__(self, message: str, shard_id: Optional[int] = None):
        super().__init__(message)
        self.shard_id = shard_id

    def __str__(self) -> str:
        message = super().__str__()
        if self.shard_id is None:
            return message
        return f"shard {self.shard_id}: {message}"


class ShardConnectionError(FetchError):
    """
    Shard connection could not be opened.

    Examples:
    - Host unreachable or refused
    - Authentication failed
    - Malformed connection string
    - Database driver not installed
    """
    pass


class QueryError(FetchError):
    """
    Query failed or a result row could not be decoded.

    Examples:
    - Table or column missing on the shard
    - NULL where a value is required
    - Value that does not convert to the record's field type
    """
    pass


class WriteError(ShardbackError):
    """Output file could not be opened, written or flushed."""
    pass


class ArchiveError(ShardbackError):
    """Archive could not be created or a source file could not be read."""
    pass


class ExportAborted(ShardbackError):
    """Pipeline stopped because another part of the run failed."""
    pass
