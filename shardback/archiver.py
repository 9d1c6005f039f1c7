"""
Archiver - bundle finished output files into one timestamped .tar.gz.

Each manifest entry becomes one tar member named with the literal path
the archiver was given. Size, permission bits and modification time are
copied from the source file as it is read.
"""

import logging
import os
import stat
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Union

from shardback.errors import ArchiveError
from shardback.models import ArchiveManifest

logger = logging.getLogger(__name__)

ARCHIVE_NAME_FORMAT = "backup-%Y-%m-%d-%H-%M-%S.tar.gz"


def archive_name(now: datetime) -> str:
    """Archive file name for a given local time, second resolution."""
    return now.strftime(ARCHIVE_NAME_FORMAT)


class Archiver:
    """
    Write a gzip-compressed tar archive of the manifest's files.

    Args:
        destination: Directory the archive is written to, created if absent
        clock: Returns the local time used for the archive name
    """

    def __init__(self, destination: Union[str, Path], clock: Callable[[], datetime] = datetime.now):
        self.destination = Path(destination)
        self.clock = clock

    def archive(self, manifest: ArchiveManifest) -> Path:
        """
        Create the archive and return its path.

        Raises:
            ArchiveError: If a source file cannot be read or the archive
                cannot be written. A partially written archive is removed.
        """
        paths = manifest.consume()

        try:
            self.destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveError(f"cannot create archive directory {self.destination}: {e}") from e

        archive_path = self.destination / archive_name(self.clock())
        logger.info(f"Writing {len(paths)} files to {archive_path}")

        try:
            with tarfile.open(archive_path, "w:gz") as tf:
                for path in paths:
                    self._add_file(tf, path)
        except (OSError, tarfile.TarError) as e:
            archive_path.unlink(missing_ok=True)
            raise ArchiveError(f"cannot write archive {archive_path}: {e}") from e
        except ArchiveError:
            archive_path.unlink(missing_ok=True)
            raise

        return archive_path

    def _add_file(self, tf: tarfile.TarFile, path: Path) -> None:
        try:
            fh = open(path, "rb")
        except OSError as e:
            raise ArchiveError(f"cannot read {path}: {e}") from e

        with fh:
            st = os.fstat(fh.fileno())
            if not stat.S_ISREG(st.st_mode):
                raise ArchiveError(f"not a regular file: {path}")

            info = tarfile.TarInfo(name=str(path))
            info.size = st.st_size
            info.mode = stat.S_IMODE(st.st_mode)
            info.mtime = int(st.st_mtime)
            tf.addfile(info, fh)

        logger.debug(f"Archived {path} ({info.size} bytes)")
