"""
shardback - Sharded database backup

Reads users and sales from every shard in parallel, merges them into one
CSV file per entity kind, and archives the files into a timestamped
.tar.gz.
"""

__version__ = "0.1.0"


__all__ = ["run_backup", "BackupRun", "ExportResult", "ShardbackError"]

from .errors import ShardbackError
from .models import ExportResult
from .pipeline import BackupRun, run_backup
