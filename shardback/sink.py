"""Export sink - write one entity kind's merged record stream to a CSV file."""

import csv
import logging
from pathlib import Path
from typing import Iterable, Union

from shardback.errors import WriteError
from shardback.models import ExportCounters, Record

logger = logging.getLogger(__name__)


class ExportSink:
    """
    Serialize records to one output file, one row per record, no header.

    The file is truncated on open and owned by this sink until consume()
    returns. Rows are written as records arrive; nothing is buffered beyond
    the file object's own buffer.
    """

    def __init__(self, path: Union[str, Path], kind: str):
        self.path = Path(path)
        self.kind = kind
        self.counters = ExportCounters(kind=kind)

    def consume(self, records: Iterable[Record]) -> int:
        """
        Drain the stream into the output file.

        Returns:
            Number of rows written

        Raises:
            WriteError: If the file cannot be opened, written or flushed.
            Errors raised by the stream itself propagate unchanged.
        """
        try:
            fh = open(self.path, "w", newline="", encoding="utf-8")
        except OSError as e:
            raise WriteError(f"cannot open {self.path} for writing: {e}") from e

        with fh:
            writer = csv.writer(fh, lineterminator="\n")
            for record in records:
                try:
                    writer.writerow(record.to_row())
                except OSError as e:
                    raise WriteError(f"write to {self.path} failed: {e}") from e
                self.counters.increment()
            try:
                fh.flush()
            except OSError as e:
                raise WriteError(f"flush of {self.path} failed: {e}") from e

        logger.info(f"{self.kind}: wrote {self.counters.written} rows to {self.path}")
        return self.counters.written

    @property
    def written(self) -> int:
        return self.counters.written
