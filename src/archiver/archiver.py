#!/usr/bin/env python3
"""
CinePi5 Archiver

Produces verified full or incremental archives of the target set and
commits the matching SnapshotState only after the archive is published.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from common.decorators import handle_errors, timed
from common.exceptions import ChecksumError

from . import tarball
from .records import (
    ARCHIVE_SUFFIX,
    HEADER_FORMAT,
    TEMP_SUFFIX,
    ArchiveKind,
    ArchiveRecord,
    archive_name,
    read_checksum,
    sha256_file,
    utcnow,
    write_checksum,
)
from .state import SnapshotState, SnapshotStateStore

logger = logging.getLogger(__name__)


class Archiver:
    """
    Incremental archiver for one target set.

    Workflow of :meth:`run`:
    1. Decide full vs incremental from the given state
    2. Fingerprint targets and select changed entries
    3. Check free space (no filesystem changes if short)
    4. Write temp archive, read it back, rename, write checksum
    5. Commit the new SnapshotState

    A crash after step 4 but before step 5 only means the next run redoes
    the same incremental against the old basis.
    """

    def __init__(
        self,
        backup_dir: Union[str, Path],
        state_store: SnapshotStateStore,
        min_free_bytes: int = 0,
    ):
        self.backup_dir = Path(backup_dir)
        self.state_store = state_store
        self.min_free_bytes = min_free_bytes

    def _usable_basis(self, state: Optional[SnapshotState]) -> Optional[SnapshotState]:
        if state is None:
            logger.info("No snapshot state found. Performing full backup.")
            return None
        if not (self.backup_dir / state.archive).exists():
            logger.warning(
                f"Basis archive {state.archive} is missing. Forcing full backup."
            )
            return None
        if not (self.backup_dir / state.root).exists():
            logger.warning(
                f"Chain root {state.root} is missing. Forcing full backup."
            )
            return None
        return state

    @handle_errors(OSError, log_level=logging.WARNING, message="Housekeeping failed")
    def _housekeeping(self) -> None:
        """Remove temp files of killed runs and repair missing sidecars."""
        for stale in self.backup_dir.glob(f".*{ARCHIVE_SUFFIX}{TEMP_SUFFIX}"):
            logger.warning(f"Removing stale temp archive: {stale.name}")
            stale.unlink()
        for archive in self.backup_dir.glob(f"*{ARCHIVE_SUFFIX}"):
            if read_checksum(archive) is None:
                logger.warning(f"Regenerating missing checksum for {archive.name}")
                write_checksum(archive, sha256_file(archive))

    @timed
    def run(
        self,
        targets: Iterable[Union[str, Path]],
        exclude_patterns: Iterable[str] = (),
        current_state: Optional[SnapshotState] = None,
        optional_targets: Iterable[Union[str, Path]] = (),
        force_full: bool = False,
    ) -> ArchiveRecord:
        """
        Create and publish one archive.

        Args:
            targets: Absolute paths that must exist
            exclude_patterns: Glob or path exclusions
            current_state: Basis of the previous committed archive, or None
            optional_targets: Absolute paths archived only when present
            force_full: Ignore ``current_state`` and start a new chain

        Returns:
            The published ArchiveRecord.

        Raises:
            ConfigError: Invalid or missing targets.
            InsufficientSpaceError: Not enough space at the destination.
            ArchiveIntegrityError: Read-back failed; nothing was published.
        """
        targets = [os.path.normpath(str(t)) for t in targets]
        optional_targets = [os.path.normpath(str(t)) for t in optional_targets]
        patterns = list(exclude_patterns) + [str(self.backup_dir)]

        basis = None if force_full else self._usable_basis(current_state)
        kind = ArchiveKind.INCREMENTAL if basis else ArchiveKind.FULL

        entries = tarball.scan_targets(targets, patterns, optional_targets)

        if basis is None:
            changed = sorted(entries)
            deleted: List[str] = []
        else:
            changed = sorted(p for p, fp in entries.items() if basis.entries.get(p) != fp)
            deleted = sorted(p for p in basis.entries if p not in entries)

        required = tarball.estimate_size(entries, changed) + self.min_free_bytes
        tarball.check_free_space(self.backup_dir, required)

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self._housekeeping()

        created_at = utcnow()
        name = archive_name(kind, created_at)
        root = basis.root if basis else name
        header = {
            "format": HEADER_FORMAT,
            "name": name,
            "kind": kind.value,
            "created_at": created_at.isoformat(),
            "parent": basis.archive if basis else None,
            "root": root,
            "targets": targets + optional_targets,
            "changed": changed,
            "deleted": deleted,
        }

        logger.info(
            f"Creating {kind.value} backup {name} "
            f"({len(changed)} changed, {len(deleted)} deleted)"
        )
        final_path = self.backup_dir / name
        digest, size = tarball.write_archive(final_path, header, changed)

        # Only now may the basis move forward
        self.state_store.save(SnapshotState(
            archive=name,
            root=root,
            committed_at=created_at.isoformat(),
            entries=entries,
        ))

        record = ArchiveRecord(
            path=final_path,
            kind=kind,
            created_at=created_at,
            checksum=digest,
            size_bytes=size,
            parent=header["parent"],
            root=root,
            changed=tuple(changed),
            deleted=tuple(deleted),
        )
        logger.info(f"Local backup completed: {name} ({record.size_str})")
        return record

    def verify(self, record: ArchiveRecord) -> None:
        """
        Re-check a published archive against its sidecar and read it back.

        Raises:
            ChecksumError: Digest differs from the sidecar.
            ArchiveIntegrityError: Archive cannot be read completely.
        """
        expected = read_checksum(record.path) or record.checksum
        actual = sha256_file(record.path)
        if actual != expected:
            raise ChecksumError(record.name, expected, actual)
        tarball.verify_archive(record.path)

    def restore(
        self,
        records: Sequence[ArchiveRecord],
        root: Union[str, Path] = "/",
        clean: bool = False,
    ) -> int:
        """
        Restore a full record plus its incrementals, oldest first.

        Every archive is checksum-verified before anything is extracted.

        Returns:
            Number of entries extracted.
        """
        if not records:
            return 0
        if not records[0].is_full:
            raise ValueError(f"Restore must start from a full archive, got {records[0].name}")
        for record in records:
            self.verify(record)
        return tarball.restore_archives([r.path for r in records], root=root, clean=clean)
