"""
Scheduled Backup Job

What the backup timer runs: take the target-set lock, archive, copy the
archive off-device when configured, then prune.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from common.config import BackupConfig
from common.exceptions import TransferError
from common.locking import TargetLock
from common.logging_config import LogContext

from .archiver import Archiver
from .chain import BackupChain
from .records import ArchiveRecord
from .remote import RemoteUploader, make_uploader
from .retention import RetentionPolicy
from .state import SnapshotStateStore

logger = logging.getLogger(__name__)


@dataclass
class BackupReport:
    """Outcome of one scheduled backup run."""
    record: ArchiveRecord
    pruned: List[ArchiveRecord] = field(default_factory=list)
    uploaded: bool = False
    transfer_error: Optional[str] = None


class BackupService:
    """
    One backup run for a target set, under the target-set lock.

    Args:
        config: Backup section of the engine configuration
        state_path: SnapshotState location for this target set
        lock_path: Advisory lock shared with the update controller
        uploader: Remote uploader (default: built from ``config.remote``)
        wait_for_lock: Block until the lock frees up instead of failing
    """

    def __init__(
        self,
        config: BackupConfig,
        state_path: Union[str, Path],
        lock_path: Union[str, Path],
        uploader: Optional[RemoteUploader] = None,
        wait_for_lock: bool = False,
    ):
        self.config = config
        self.state_store = SnapshotStateStore(state_path)
        self.archiver = Archiver(config.backup_dir, self.state_store, config.min_free_bytes)
        self.policy = RetentionPolicy()
        self.lock = TargetLock(lock_path, blocking=wait_for_lock)
        if uploader is None and config.remote is not None:
            uploader = make_uploader(config.remote)
        self.uploader = uploader

    def chain(self) -> BackupChain:
        return BackupChain.load(self.config.backup_dir)

    def run_once(self, force_full: bool = False) -> BackupReport:
        """
        Archive, upload and prune.

        Raises:
            LockUnavailableError: An update transaction or another backup
                holds the lock.
            ConfigError, ResourceError, IntegrityError: From the archiver;
                nothing was published.
        """
        self.config.retention.validate()

        with self.lock, LogContext(operation="backup", backup_dir=str(self.config.backup_dir)):
            logger.info("Starting backup run")
            record = self.archiver.run(
                self.config.targets,
                self.config.exclude_patterns,
                self.state_store.load(),
                optional_targets=self.config.optional_targets,
                force_full=force_full,
            )
            report = BackupReport(record=record)

            if self.uploader is not None:
                try:
                    self.uploader.upload(record)
                    report.uploaded = True
                except TransferError as e:
                    # Local archive stays valid; next run retries
                    logger.error(f"Remote backup failed: {e}")
                    report.transfer_error = str(e)

            report.pruned = self.policy.apply(self.chain(), self.config.retention)
            logger.info(
                f"Backup process finished: {record.name}, pruned {len(report.pruned)}"
            )
            return report

    def prune(self) -> List[ArchiveRecord]:
        """Apply retention only."""
        with self.lock:
            return self.policy.apply(self.chain(), self.config.retention)

    def reset(self) -> bool:
        """Force the next run to start a new chain with a full archive."""
        with self.lock:
            return self.state_store.reset()
