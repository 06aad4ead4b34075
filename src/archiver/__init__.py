"""
CinePi5 Incremental Backup

Verified full/incremental archiving of the installed application:
- Structural chain linkage recorded in every archive
- Crash-safe publication (temp, read-back, rename, then state commit)
- Count and age based retention that never orphans an incremental
- Optional off-device copies over SFTP, S3 or MinIO
"""

from .archiver import Archiver
from .chain import BackupChain
from .records import ArchiveKind, ArchiveRecord
from .retention import RetentionPolicy
from .service import BackupReport, BackupService
from .state import SnapshotState, SnapshotStateStore

__all__ = [
    "Archiver",
    "ArchiveKind",
    "ArchiveRecord",
    "BackupChain",
    "BackupReport",
    "BackupService",
    "RetentionPolicy",
    "SnapshotState",
    "SnapshotStateStore",
]
