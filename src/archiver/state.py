"""
Snapshot State Store

Persists the incremental basis: the fingerprints of the last fully
committed archive. Only the archiver interprets the blob; everyone else
treats it as opaque.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from utils.atomic_write import atomic_write_json

logger = logging.getLogger(__name__)

STATE_FORMAT = 1


@dataclass
class SnapshotState:
    """Basis for the next incremental archive."""
    archive: str
    root: str
    committed_at: str
    entries: Dict[str, List] = field(default_factory=dict)

    def to_blob(self) -> dict:
        return {
            "format": STATE_FORMAT,
            "archive": self.archive,
            "root": self.root,
            "committed_at": self.committed_at,
            "entries": self.entries,
        }

    @classmethod
    def from_blob(cls, blob: dict) -> "SnapshotState":
        if blob.get("format") != STATE_FORMAT:
            raise ValueError(f"unsupported state format: {blob.get('format')}")
        return cls(
            archive=blob["archive"],
            root=blob["root"],
            committed_at=blob["committed_at"],
            entries={k: list(v) for k, v in blob["entries"].items()},
        )


class SnapshotStateStore:
    """
    Single live copy of the SnapshotState for one target set.

    Writes go through write-temp-then-rename, so readers see either the
    previous blob or the new one.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[SnapshotState]:
        """
        Load the current basis.

        Returns:
            The state, or None when absent or unreadable (which forces
            the next archive to be a full one).
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return SnapshotState.from_blob(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Snapshot state {self.path} is unreadable, ignoring it: {e}")
            return None

    def save(self, state: SnapshotState) -> None:
        atomic_write_json(self.path, state.to_blob(), indent=None, mode=0o600)
        logger.debug(f"Snapshot state committed: basis={state.archive}")

    def reset(self) -> bool:
        """
        Drop the basis so the next run produces a full archive.

        Returns:
            True if a state file was removed.
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Snapshot state reset: {self.path}")
        return True
