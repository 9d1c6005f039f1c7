"""Backup pipeline - concurrent export of every entity kind, then archive.

One pipeline per entity kind runs on its own worker thread:

    shards -> FanInAggregator -> ExportSink -> <backup_path>/<kind file>

When every pipeline has drained, the output files are archived in entity
declaration order (users before orders) into <backup_path>/archive/.

Run states:
    IDLE -> FETCHING_AND_WRITING -> ARCHIVING -> DONE
    FETCHING_AND_WRITING | ARCHIVING -> FAILED

Any error ends the run. There are no retries; the first error raised by a
pipeline is the one the caller sees, and no archive is written.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from sqlalchemy.engine import Engine

from shardback.archiver import Archiver
from shardback.errors import ExportAborted, ShardbackError, WriteError
from shardback.fanin import POLL_INTERVAL, FanInAggregator
from shardback.models import (
    DEFAULT_ENTITIES,
    ArchiveManifest,
    EntityQuery,
    ExportResult,
    ShardSource,
    shard_sources,
)
from shardback.shard import default_engine_factory
from shardback.sink import ExportSink

logger = logging.getLogger(__name__)

ARCHIVE_DIRNAME = "archive"


class RunState(str, Enum):
    IDLE = "idle"
    FETCHING_AND_WRITING = "fetching_and_writing"
    ARCHIVING = "archiving"
    DONE = "done"
    FAILED = "failed"


class BackupRun:
    """
    A single backup run over a fixed shard list.

    Args:
        shards: Shards to export from
        backup_path: Directory for output files, created if absent
        entities: Entity kinds to export, in manifest order
        engine_factory: Builds the SQLAlchemy engine for a shard DSN
        clock: Local time source for the archive name
        poll_interval: Seconds between abort checks in the aggregators
    """

    def __init__(
        self,
        shards: Sequence[ShardSource],
        backup_path: Union[str, Path],
        entities: Sequence[EntityQuery] = DEFAULT_ENTITIES,
        engine_factory: Callable[[str], Engine] = default_engine_factory,
        clock: Callable[[], datetime] = datetime.now,
        poll_interval: float = POLL_INTERVAL,
    ):
        kinds = [entity.kind for entity in entities]
        if len(set(kinds)) != len(kinds):
            raise ValueError(f"Duplicate entity kinds: {kinds}")

        self.shards = list(shards)
        self.backup_path = Path(backup_path)
        self.entities = list(entities)
        self.engine_factory = engine_factory
        self.clock = clock
        self.poll_interval = poll_interval
        self.state = RunState.IDLE
        self.error: Optional[BaseException] = None
        self._abort = threading.Event()
        self._failure_lock = threading.Lock()
        self._first_failure: Optional[BaseException] = None

    def output_path(self, entity: EntityQuery) -> Path:
        return self.backup_path / entity.filename

    @property
    def archive_dir(self) -> Path:
        return self.backup_path / ARCHIVE_DIRNAME

    def run(self) -> ExportResult:
        """
        Export every entity kind and archive the results.

        Returns:
            ExportResult with per-kind counts and the archive path

        Raises:
            ShardbackError: The first error raised by any stage
        """
        if self.state is not RunState.IDLE:
            raise ShardbackError(f"Backup run already used (state: {self.state.value})")

        start_time = time.time()
        self._transition(RunState.FETCHING_AND_WRITING)
        logger.info("Backup started...")
        logger.info(f"  shards: {len(self.shards)}, entities: {', '.join(e.kind for e in self.entities)}")

        try:
            try:
                self.backup_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise WriteError(f"cannot create backup directory {self.backup_path}: {e}") from e

            counts = self._export_all()
            logger.info("Backup done.")
            logger.info(
                "Backed up " + " and ".join(f"{counts[e.kind]} {e.kind}" for e in self.entities) + "."
            )

            self._transition(RunState.ARCHIVING)
            logger.info("Archive started...")
            output_paths = [self.output_path(entity) for entity in self.entities]
            manifest = ArchiveManifest(output_paths)
            archive_path = Archiver(self.archive_dir, clock=self.clock).archive(manifest)
            logger.info("Archive done")
        except Exception as e:
            self.error = e
            self._abort.set()
            self._transition(RunState.FAILED)
            logger.error(f"Backup failed: {e}")
            raise

        self._transition(RunState.DONE)
        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Archive written to {archive_path} ({duration_ms}ms)")
        return ExportResult(
            counts=counts,
            archive_path=archive_path,
            output_paths=output_paths,
            duration_ms=duration_ms,
        )

    def _export_all(self) -> dict[str, int]:
        """Run one pipeline per entity kind concurrently and join them."""
        if not self.entities:
            return {}

        executor = ThreadPoolExecutor(
            max_workers=len(self.entities),
            thread_name_prefix="export",
        )
        futures: dict[Future, EntityQuery] = {
            executor.submit(self._export_entity, entity): entity
            for entity in self.entities
        }
        try:
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [f for f in done if f.exception() is not None]
            if failed:
                # Stop the rest, then report the root cause rather than an abort
                self._abort.set()
                wait(pending)
                raise self._first_error(futures)
            counts = {futures[f].kind: f.result() for f in done}
            return {entity.kind: counts[entity.kind] for entity in self.entities}
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _record_failure(self, error: BaseException) -> None:
        """Keep the earliest root-cause error and stop the other pipelines."""
        if isinstance(error, ExportAborted):
            return
        with self._failure_lock:
            if self._first_failure is None:
                self._first_failure = error
        self._abort.set()

    def _first_error(self, futures: dict[Future, EntityQuery]) -> BaseException:
        if self._first_failure is not None:
            return self._first_failure
        errors = [f.exception() for f in futures if f.done() and f.exception() is not None]
        for error in errors:
            if not isinstance(error, ExportAborted):
                return error
        return errors[0]

    def _export_entity(self, entity: EntityQuery) -> int:
        aggregator = FanInAggregator(
            self.shards,
            entity,
            abort=self._abort,
            engine_factory=self.engine_factory,
            poll_interval=self.poll_interval,
        )
        records = aggregator.stream()
        try:
            return ExportSink(self.output_path(entity), entity.kind).consume(records)
        except Exception as e:
            self._record_failure(e)
            raise
        finally:
            records.close()

    def _transition(self, state: RunState) -> None:
        logger.debug(f"Backup run: {self.state.value} -> {state.value}")
        self.state = state


def run_backup(
    dsns: Sequence[str],
    backup_path: Union[str, Path],
    entities: Sequence[EntityQuery] = DEFAULT_ENTITIES,
    **kwargs,
) -> ExportResult:
    """
    Back up every shard into backup_path and archive the result.

    Args:
        dsns: Shard connection strings; shard ids are their positions
        backup_path: Output directory, created if absent
        entities: Entity kinds to export, in manifest order
        **kwargs: Passed through to BackupRun (engine_factory, clock, ...)

    Returns:
        ExportResult with counts and archive path

    Raises:
        ShardbackError: On the first failure anywhere in the run
    """
    run = BackupRun(shard_sources(dsns), backup_path, entities=entities, **kwargs)
    return run.run()
