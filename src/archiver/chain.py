"""
Backup Chain Discovery

Rebuilds the ordered BackupChain for a target set from the published
``*.archive`` files and the lineage recorded in their headers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from common.exceptions import ArchiveIntegrityError

from .records import ARCHIVE_SUFFIX, ArchiveRecord, read_checksum, sha256_file
from .tarball import read_header

logger = logging.getLogger(__name__)


class BackupChain:
    """
    Ordered sequence of ArchiveRecords for one target set.

    Records are sorted oldest first by their recorded creation time.
    """

    def __init__(self, records: List[ArchiveRecord]):
        self.records = sorted(records, key=lambda r: (r.created_at, r.name))
        self._by_name: Dict[str, ArchiveRecord] = {r.name: r for r in self.records}

    @classmethod
    def load(cls, backup_dir: Union[str, Path]) -> "BackupChain":
        """
        Discover records by directory listing.

        Unreadable archives are logged and left out; they cannot anchor a
        restore. Hidden temp files never match the listing.
        """
        backup_dir = Path(backup_dir)
        records = []
        if not backup_dir.is_dir():
            return cls(records)

        for path in sorted(backup_dir.glob(f"*{ARCHIVE_SUFFIX}")):
            try:
                header = read_header(path)
                checksum = read_checksum(path) or sha256_file(path)
                records.append(ArchiveRecord.from_header(path, header, checksum))
            except (ArchiveIntegrityError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable archive {path.name}: {e}")
        return cls(records)

    def __iter__(self) -> Iterator[ArchiveRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, record: ArchiveRecord) -> bool:
        return record.name in self._by_name

    def get(self, name: str) -> Optional[ArchiveRecord]:
        return self._by_name.get(name)

    @property
    def fulls(self) -> List[ArchiveRecord]:
        return [r for r in self.records if r.is_full]

    @property
    def latest(self) -> Optional[ArchiveRecord]:
        return self.records[-1] if self.records else None

    def children(self) -> Dict[str, List[ArchiveRecord]]:
        """Map of archive name to the records whose parent it is."""
        result: Dict[str, List[ArchiveRecord]] = {}
        for record in self.records:
            if record.parent:
                result.setdefault(record.parent, []).append(record)
        return result

    def descendants(self, record: ArchiveRecord) -> List[ArchiveRecord]:
        """All records that depend on ``record`` through parent linkage."""
        children = self.children()
        result = []
        stack = list(children.get(record.name, []))
        while stack:
            child = stack.pop()
            result.append(child)
            stack.extend(children.get(child.name, []))
        return result

    def lineage(self, record: ArchiveRecord) -> List[ArchiveRecord]:
        """
        Records needed to restore ``record``: its full first, then each
        incremental in order.

        Raises:
            ValueError: If a parent in the lineage is missing.
        """
        lineage = [record]
        current = record
        while current.parent:
            parent = self._by_name.get(current.parent)
            if parent is None:
                raise ValueError(
                    f"Broken chain: {current.name} references missing {current.parent}"
                )
            lineage.append(parent)
            current = parent
        if not current.is_full:
            raise ValueError(f"Chain of {record.name} does not start at a full archive")
        return list(reversed(lineage))

    def restorable_as_of(self, when) -> List[ArchiveRecord]:
        """Lineage of the newest record created at or before ``when``."""
        candidates = [r for r in self.records if r.created_at <= when]
        if not candidates:
            return []
        return self.lineage(candidates[-1])
