"""
Archive Primitive

Integrity-verified tar archiving shared by scheduled backups and
pre-update rollback points:

1. scan the target set into per-entry fingerprints
2. write the selected entries to a hidden temp file
3. read everything back (full listing and decompression pass)
4. atomically rename into the final name, then write the checksum sidecar

Nothing becomes visible under an ``*.archive`` name until step 4, so a
crash at any point leaves the published listing untouched.
"""

from __future__ import annotations

import errno
import fnmatch
import io
import json
import logging
import os
import shutil
import stat
import tarfile
import zlib
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from common.exceptions import (
    ArchiveIntegrityError,
    InsufficientSpaceError,
    InvalidConfigError,
    MissingTargetError,
)
from utils.atomic_write import publish

from .records import HEADER_NAME, sha256_file, temp_path_for, write_checksum

logger = logging.getLogger(__name__)

# Fingerprint: [type, size, mtime_ns, mode, link target]
Fingerprint = List
GLOB_CHARS = set("*?[")

# Per-entry tar header plus end-of-archive blocks
TAR_ENTRY_OVERHEAD = 1024
TAR_FIXED_OVERHEAD = 64 * 1024


def arcname(path: str) -> str:
    """Member name for an absolute path (archives are rooted at /)."""
    return path.lstrip("/")


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    """
    Check a path against tar-style exclusion patterns.

    Glob patterns match either the absolute path or the basename
    (``*.tmp``); plain paths exclude themselves and everything below.
    """
    name = os.path.basename(path)
    for pattern in patterns:
        if GLOB_CHARS & set(pattern):
            if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(name, pattern):
                return True
        else:
            prefix = pattern.rstrip("/")
            if path == prefix or path.startswith(prefix + "/"):
                return True
    return False


def fingerprint(st: os.stat_result, path: str) -> Optional[Fingerprint]:
    """
    Summarise an lstat result for change detection.

    Directory mtimes are left out: they move whenever a child is added,
    and the child itself already shows up as a change.
    """
    mode = stat.S_IMODE(st.st_mode)
    if stat.S_ISREG(st.st_mode):
        return ["f", st.st_size, st.st_mtime_ns, mode, ""]
    if stat.S_ISDIR(st.st_mode):
        return ["d", 0, 0, mode, ""]
    if stat.S_ISLNK(st.st_mode):
        return ["l", 0, 0, 0, os.readlink(path)]
    return None


def _record(path: str, entries: Dict[str, Fingerprint]) -> None:
    fp = fingerprint(os.lstat(path), path)
    if fp is None:
        logger.debug(f"Skipping special file: {path}")
        return
    entries[path] = fp


def _scan_path(path: str, patterns: Sequence[str], entries: Dict[str, Fingerprint]) -> None:
    if is_excluded(path, patterns):
        return
    _record(path, entries)
    if not os.path.isdir(path) or os.path.islink(path):
        return

    for dirpath, dirnames, filenames in os.walk(path):
        dirnames[:] = sorted(
            d for d in dirnames
            if not is_excluded(os.path.join(dirpath, d), patterns)
        )
        for name in dirnames + sorted(filenames):
            full = os.path.join(dirpath, name)
            if name in filenames and is_excluded(full, patterns):
                continue
            _record(full, entries)


def scan_targets(
    targets: Iterable[Union[str, Path]],
    exclude_patterns: Iterable[str] = (),
    optional_targets: Iterable[Union[str, Path]] = (),
) -> Dict[str, Fingerprint]:
    """
    Fingerprint every entry of a target set.

    Args:
        targets: Absolute paths that must exist
        exclude_patterns: Glob or path exclusions
        optional_targets: Absolute paths archived only when present

    Returns:
        Mapping of absolute path to fingerprint.

    Raises:
        InvalidConfigError: If a target is not absolute.
        MissingTargetError: If a required target does not exist.
    """
    patterns = list(exclude_patterns)
    entries: Dict[str, Fingerprint] = {}

    for target, required in [(t, True) for t in targets] + [(t, False) for t in optional_targets]:
        target = os.path.normpath(str(target))
        if not os.path.isabs(target):
            raise InvalidConfigError("targets", target, "must be an absolute path")
        if not os.path.lexists(target):
            if required:
                raise MissingTargetError(target)
            logger.debug(f"Optional target not present: {target}")
            continue
        _scan_path(target, patterns, entries)

    return entries


def estimate_size(entries: Dict[str, Fingerprint], paths: Iterable[str]) -> int:
    """Upper bound of the uncompressed tar size for the given entries."""
    total = TAR_FIXED_OVERHEAD
    for path in paths:
        fp = entries[path]
        total += TAR_ENTRY_OVERHEAD + (fp[1] if fp[0] == "f" else 0)
    return total


def free_space(path: Union[str, Path]) -> int:
    """Free bytes on the filesystem holding ``path`` or its nearest ancestor."""
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free


def check_free_space(path: Union[str, Path], required: int) -> int:
    """
    Raise InsufficientSpaceError unless ``required`` bytes are free.

    Returns:
        The available byte count.
    """
    available = free_space(path)
    if available < required:
        raise InsufficientSpaceError(str(path), required, available)
    return available


def _add_header(tar: tarfile.TarFile, header: dict) -> None:
    data = json.dumps(header, indent=2, sort_keys=True).encode("utf-8")
    info = tarfile.TarInfo(HEADER_NAME)
    info.size = len(data)
    info.mtime = 0
    info.mode = 0o644
    tar.addfile(info, io.BytesIO(data))


def _add_entry(tar: tarfile.TarFile, path: str) -> Optional[tarfile.TarInfo]:
    info = tar.gettarinfo(path, arcname=arcname(path))
    if info is None:
        return None
    if info.islnk():
        # Hard-link members would dangle in an incremental that lacks the
        # first link; store the data instead
        info.type = tarfile.REGTYPE
        info.linkname = ""
        info.size = os.stat(path).st_size
    if info.isreg():
        with open(path, "rb") as f:
            tar.addfile(info, f)
    else:
        tar.addfile(info)
    return info


def write_archive(
    final_path: Union[str, Path],
    header: dict,
    paths: Sequence[str],
) -> Tuple[str, int]:
    """
    Write, verify and publish an archive.

    Args:
        final_path: Published ``*.archive`` path
        header: Lineage header stored as the first member
        paths: Absolute paths to store, in order

    Returns:
        Tuple of (sha256 digest, size in bytes)

    Raises:
        ArchiveIntegrityError: Read-back mismatch or a target changed
            while it was being read. The temp file is removed.
        InsufficientSpaceError: The disk filled up while writing.
    """
    final_path = Path(final_path)
    temp_path = temp_path_for(final_path)
    expected: Dict[str, int] = {}

    try:
        try:
            with tarfile.open(temp_path, "w:gz") as tar:
                _add_header(tar, header)
                for path in paths:
                    info = _add_entry(tar, path)
                    if info is not None:
                        expected[info.name] = info.size if info.isreg() else 0
        except OSError as e:
            if e.errno == errno.ENOSPC:
                raise InsufficientSpaceError(str(final_path.parent), 0, 0) from e
            raise ArchiveIntegrityError(
                final_path.name, f"target changed while archiving: {e}", cause=e
            ) from e

        verify_archive(temp_path, expected)
        digest = sha256_file(temp_path)
        publish(temp_path, final_path)
    except BaseException:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise

    write_checksum(final_path, digest)
    return digest, final_path.stat().st_size


def _drain(fileobj) -> int:
    size = 0
    for chunk in iter(lambda: fileobj.read(1024 * 1024), b""):
        size += len(chunk)
    return size


def verify_archive(
    path: Union[str, Path],
    expected: Optional[Dict[str, int]] = None,
) -> dict:
    """
    Read an archive end to end.

    Every member is listed and every regular file fully decompressed. When
    ``expected`` is given, the member names and sizes must match it exactly.

    Returns:
        The archive's lineage header.

    Raises:
        ArchiveIntegrityError: On any read or comparison failure.
    """
    path = Path(path)
    seen: Dict[str, int] = {}
    header = None

    try:
        with tarfile.open(path, "r:gz") as tar:
            for index, member in enumerate(tar):
                if index == 0:
                    if member.name != HEADER_NAME:
                        raise ArchiveIntegrityError(path.name, "missing chain header")
                    header = json.loads(tar.extractfile(member).read())
                    continue
                if member.isreg():
                    size = _drain(tar.extractfile(member))
                    if size != member.size:
                        raise ArchiveIntegrityError(
                            path.name, f"short read for {member.name}"
                        )
                seen[member.name] = member.size if member.isreg() else 0
    except ArchiveIntegrityError:
        raise
    except (tarfile.TarError, OSError, EOFError, zlib.error, ValueError) as e:
        raise ArchiveIntegrityError(path.name, str(e), cause=e) from e

    if header is None:
        raise ArchiveIntegrityError(path.name, "archive is empty")
    if expected is not None and seen != expected:
        missing = sorted(set(expected) - set(seen))
        extra = sorted(set(seen) - set(expected))
        raise ArchiveIntegrityError(
            path.name,
            f"member listing differs from what was written "
            f"(missing={missing[:5]}, unexpected={extra[:5]})",
        )
    return header


def read_header(path: Union[str, Path]) -> dict:
    """Read only the lineage header (first member) of an archive."""
    path = Path(path)
    try:
        with tarfile.open(path, "r:gz") as tar:
            first = tar.next()
            if first is None or first.name != HEADER_NAME:
                raise ArchiveIntegrityError(path.name, "missing chain header")
            return json.loads(tar.extractfile(first).read())
    except ArchiveIntegrityError:
        raise
    except (tarfile.TarError, OSError, EOFError, zlib.error, ValueError) as e:
        raise ArchiveIntegrityError(path.name, str(e), cause=e) from e


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""
    if path.is_symlink() or (path.exists() and not path.is_dir()):
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def _clear_conflict(target: Path, member: tarfile.TarInfo) -> None:
    if not os.path.lexists(target):
        return
    is_real_dir = target.is_dir() and not target.is_symlink()
    # Never write a regular file through an existing symlink
    if target.is_symlink() or is_real_dir != member.isdir():
        remove_path(target)


def restore_archives(
    archives: Sequence[Union[str, Path]],
    root: Union[str, Path] = "/",
    clean: bool = False,
) -> int:
    """
    Replay archives over ``root``: a full first, then incrementals in order.

    Deletions recorded in each header are applied before its members are
    extracted. With ``clean`` the targets named by the first archive are
    removed beforehand, so the result is exactly the archived tree.

    Only archives written by :func:`write_archive` are accepted; callers
    verify checksums first.

    Returns:
        Number of members extracted.
    """
    root = Path(root)
    extracted = 0

    for index, archive in enumerate(archives):
        archive = Path(archive)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                members = tar.getmembers()
                if not members or members[0].name != HEADER_NAME:
                    raise ArchiveIntegrityError(archive.name, "missing chain header")
                header = json.loads(tar.extractfile(members[0]).read())
                members = members[1:]

                if clean and index == 0:
                    for target in header.get("targets", []):
                        remove_path(root / arcname(target))
                for deleted in sorted(header.get("deleted", []), reverse=True):
                    remove_path(root / arcname(deleted))
                for member in members:
                    _clear_conflict(root / member.name, member)

                tar.extractall(root, members=members, filter="fully_trusted")
                extracted += len(members)
        except ArchiveIntegrityError:
            raise
        except (tarfile.TarError, EOFError, zlib.error, ValueError) as e:
            raise ArchiveIntegrityError(archive.name, str(e), cause=e) from e

        logger.debug(f"Restored {archive.name} ({len(members)} entries)")

    return extracted
