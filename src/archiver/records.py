"""
Archive Records

Naming convention and immutable records for published backup archives:

    {kind}_{timestamp}.archive      gzip tarball
    {kind}_{timestamp}.archive.checksum   sha256sum-format sidecar
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

from utils.atomic_write import atomic_write_text

ARCHIVE_SUFFIX = ".archive"
CHECKSUM_SUFFIX = ".checksum"
TEMP_SUFFIX = ".tmp"

# First member of every archive; carries the lineage recorded at creation
HEADER_NAME = ".chain.json"
HEADER_FORMAT = 1

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


class ArchiveKind(Enum):
    """Kind of backup archive."""
    FULL = "full"
    INCREMENTAL = "incremental"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def archive_name(kind: Union[ArchiveKind, str], created_at: datetime) -> str:
    """Build the published file name for an archive."""
    prefix = kind.value if isinstance(kind, ArchiveKind) else kind
    return f"{prefix}_{created_at.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def temp_path_for(final_path: Path) -> Path:
    """Hidden temp name used while an archive is written and read back."""
    return final_path.parent / f".{final_path.name}{TEMP_SUFFIX}"


def checksum_path_for(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name + CHECKSUM_SUFFIX)


def sha256_file(path: Union[str, Path], chunk_size: int = 1024 * 1024) -> str:
    """Compute the sha256 hex digest of a file without loading it whole."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def write_checksum(archive_path: Path, digest: str) -> Path:
    """Write the sha256sum-compatible sidecar for an archive."""
    sidecar = checksum_path_for(archive_path)
    atomic_write_text(sidecar, f"{digest}  {archive_path.name}\n")
    return sidecar


def read_checksum(archive_path: Path) -> Optional[str]:
    """Read the digest from an archive's sidecar, or None if absent."""
    sidecar = checksum_path_for(archive_path)
    try:
        text = sidecar.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not text:
        return None
    return text.split()[0].lower()


@dataclass(frozen=True)
class ArchiveRecord:
    """
    One published backup artifact.

    ``parent`` and ``root`` are the structural chain linkage written into
    the archive header when it was created; retention relies on them and
    never on file timestamps.
    """
    path: Path
    kind: ArchiveKind
    created_at: datetime
    checksum: str
    size_bytes: int
    parent: Optional[str] = None
    root: Optional[str] = None
    changed: Tuple[str, ...] = ()
    deleted: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def is_full(self) -> bool:
        return self.kind == ArchiveKind.FULL

    @property
    def checksum_path(self) -> Path:
        return checksum_path_for(self.path)

    @property
    def size_str(self) -> str:
        """Get human-readable size."""
        if self.size_bytes >= 1024 * 1024:
            return f"{self.size_bytes / (1024 * 1024):.1f} MB"
        elif self.size_bytes >= 1024:
            return f"{self.size_bytes / 1024:.1f} KB"
        return f"{self.size_bytes} B"

    @classmethod
    def from_header(cls, path: Path, header: dict, checksum: str) -> "ArchiveRecord":
        kind = ArchiveKind(header["kind"])
        name = header.get("name") or path.name
        return cls(
            path=path,
            kind=kind,
            created_at=datetime.fromisoformat(header["created_at"]),
            checksum=checksum,
            size_bytes=path.stat().st_size,
            parent=header.get("parent"),
            root=header.get("root") or (name if kind == ArchiveKind.FULL else None),
            changed=tuple(header.get("changed", ())),
            deleted=tuple(header.get("deleted", ())),
        )
