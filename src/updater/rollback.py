#!/usr/bin/env python3
"""
CinePi5 Rollback Manager

Creates the pre-update rollback point for an update transaction, restores
it when the transaction fails, and keeps a short history of used points.
Rollback archives are written with the same integrity-verified primitive
as scheduled backups.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Sequence, Tuple, Union

from archiver import tarball
from archiver.records import (
    ARCHIVE_SUFFIX,
    HEADER_FORMAT,
    archive_name,
    checksum_path_for,
    read_checksum,
    sha256_file,
    utcnow,
)
from common.decorators import handle_errors
from common.exceptions import ArchiveIntegrityError, ChecksumError
from utils.atomic_write import fsync_dir

logger = logging.getLogger(__name__)

ROLLBACK_PREFIX = "rollback"


@dataclass
class RollbackPoint:
    """A pre-update archive of the install targets."""
    archive_path: Path
    target_paths: Tuple[str, ...]
    created_at: datetime

    @property
    def name(self) -> str:
        return self.archive_path.name

    def to_dict(self) -> dict:
        return {
            "archive_path": str(self.archive_path),
            "target_paths": list(self.target_paths),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_archive(cls, path: Path) -> "RollbackPoint":
        header = tarball.read_header(path)
        return cls(
            archive_path=path,
            target_paths=tuple(header.get("targets", ())),
            created_at=datetime.fromisoformat(header["created_at"]),
        )


class RollbackManager:
    """
    Manages rollback points for update transactions.

    Layout:
        <rollback_dir>/rollback_<ts>.archive     point of the running transaction
        <rollback_dir>/history/                   points of finished transactions

    Args:
        rollback_dir: Working directory for rollback archives
        history_keep: Number of used rollback points kept in history
        min_free_bytes: Headroom required beyond the archive estimate
        root: Filesystem root the targets are restored under
    """

    def __init__(
        self,
        rollback_dir: Union[str, Path],
        history_keep: int = 5,
        min_free_bytes: int = 0,
        root: Union[str, Path] = "/",
    ):
        self.rollback_dir = Path(rollback_dir)
        self.history_dir = self.rollback_dir / "history"
        self.history_keep = history_keep
        self.min_free_bytes = min_free_bytes
        self.root = Path(root)

    def estimate(self, targets: Sequence[Union[str, Path]]) -> int:
        """Bytes needed to snapshot ``targets`` right now."""
        entries = tarball.scan_targets((), (), targets)
        return tarball.estimate_size(entries, entries) + self.min_free_bytes

    def create(self, targets: Sequence[Union[str, Path]]) -> RollbackPoint:
        """
        Archive the current install targets.

        Targets that do not exist are recorded in the header but not
        archived, so a clean restore removes whatever appeared there later.

        Raises:
            InsufficientSpaceError: Not enough room in the rollback dir.
            ArchiveIntegrityError: Read-back failed; nothing was published.
        """
        targets = [os.path.normpath(str(t)) for t in targets]
        entries = tarball.scan_targets((), (), targets)
        paths = sorted(entries)

        tarball.check_free_space(
            self.rollback_dir, tarball.estimate_size(entries, paths) + self.min_free_bytes
        )
        self.rollback_dir.mkdir(parents=True, exist_ok=True)

        created_at = utcnow()
        name = archive_name(ROLLBACK_PREFIX, created_at)
        header = {
            "format": HEADER_FORMAT,
            "name": name,
            "kind": "full",
            "created_at": created_at.isoformat(),
            "parent": None,
            "root": name,
            "targets": targets,
            "changed": paths,
            "deleted": [],
        }

        path = self.rollback_dir / name
        logger.info(f"Creating rollback archive {name} ({len(paths)} entries)")
        tarball.write_archive(path, header, paths)
        return RollbackPoint(archive_path=path, target_paths=tuple(targets), created_at=created_at)

    def restore(self, point: RollbackPoint) -> int:
        """
        Put the targets back exactly as archived.

        Raises:
            ChecksumError: The rollback archive no longer matches its sidecar.
            ArchiveIntegrityError: The archive cannot be read.
        """
        expected = read_checksum(point.archive_path)
        actual = sha256_file(point.archive_path)
        if expected is not None and actual != expected:
            raise ChecksumError(point.name, expected, actual)

        logger.warning(f"Restoring rollback point {point.name}")
        count = tarball.restore_archives([point.archive_path], root=self.root, clean=True)
        logger.info(f"Rollback restored {count} entries")
        return count

    def archive(self, point: RollbackPoint) -> RollbackPoint:
        """Move a used rollback point into the history directory."""
        self.history_dir.mkdir(parents=True, exist_ok=True)
        target = self.history_dir / point.name
        sidecar = checksum_path_for(point.archive_path)

        os.replace(point.archive_path, target)
        if sidecar.exists():
            os.replace(sidecar, checksum_path_for(target))
        fsync_dir(self.history_dir)

        logger.info(f"Rollback archive moved to {self.history_dir}")
        moved = RollbackPoint(target, point.target_paths, point.created_at)
        self.trim_history()
        return moved

    def pending(self) -> List[Path]:
        """Rollback archives not yet moved to history (interrupted transactions)."""
        return sorted(self.rollback_dir.glob(f"{ROLLBACK_PREFIX}_*{ARCHIVE_SUFFIX}"))

    def _history_files(self) -> List[Path]:
        if not self.history_dir.exists():
            return []
        return sorted(self.history_dir.glob(f"{ROLLBACK_PREFIX}_*{ARCHIVE_SUFFIX}"))

    def history(self) -> List[RollbackPoint]:
        """Used rollback points, oldest first."""
        points = []
        for path in self._history_files():
            try:
                points.append(RollbackPoint.from_archive(path))
            except (ArchiveIntegrityError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable rollback archive {path.name}: {e}")
        return points

    @handle_errors(OSError, default=0, log_level=logging.WARNING,
                   message="Failed to trim rollback history")
    def trim_history(self) -> int:
        """Keep only the newest ``history_keep`` points. Returns the count removed."""
        files = self._history_files()
        doomed = files[:-self.history_keep] if self.history_keep > 0 else files
        for path in doomed:
            path.unlink()
            sidecar = checksum_path_for(path)
            if sidecar.exists():
                sidecar.unlink()
            logger.info(f"Removed old rollback archive {path.name}")
        return len(doomed)
