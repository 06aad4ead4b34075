"""
Retention Policy

Decides which archives to prune. Chain membership comes from the parent
linkage recorded at creation time, never from file modification times,
so clock skew or out-of-order retries cannot orphan an incremental.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Set

from common.config import RetentionWindow

from .chain import BackupChain
from .records import ArchiveRecord, utcnow

logger = logging.getLogger(__name__)


class RetentionPolicy:
    """
    Count- and age-based pruning for a BackupChain.

    Rules:
    - keep the newest ``max_full_count`` full archives; older fulls go
      together with everything chained to them
    - anything older than ``max_age_days`` goes together with its
      dependents, except the chain rooted at the newest full
    - incrementals whose lineage is broken can never be restored and go
    """

    def prune(
        self,
        chain: BackupChain,
        window: RetentionWindow,
        now: Optional[datetime] = None,
    ) -> Set[ArchiveRecord]:
        """
        Compute the records to delete.

        Args:
            chain: Current backup chain
            window: Retention thresholds
            now: Reference time for age checks (default: current UTC time)

        Returns:
            Set of records to delete. Callers should delete them in
            :meth:`deletion_order`.

        Raises:
            InvalidConfigError: If the window is invalid.
        """
        window.validate()
        now = now or utcnow()
        doomed: Set[str] = set()

        def doom(record: ArchiveRecord, reason: str) -> None:
            if record.name not in doomed:
                logger.debug(f"Prune {record.name}: {reason}")
            doomed.add(record.name)
            for dependent in chain.descendants(record):
                doomed.add(dependent.name)

        fulls = sorted(chain.fulls, key=lambda r: (r.created_at, r.name), reverse=True)
        for full in fulls[window.max_full_count:]:
            doom(full, f"exceeds max_full_count={window.max_full_count}")

        for record in chain:
            if record.is_full:
                continue
            try:
                chain.lineage(record)
            except ValueError as e:
                doom(record, f"orphaned ({e})")

        protected: Set[str] = set()
        if fulls:
            newest = fulls[0]
            protected = {newest.name} | {r.name for r in chain.descendants(newest)}

        cutoff = now - timedelta(days=window.max_age_days)
        for record in chain:
            if record.created_at < cutoff and record.name not in protected:
                doom(record, f"older than {window.max_age_days} days")

        return {chain.get(name) for name in doomed}

    @staticmethod
    def deletion_order(records: Iterable[ArchiveRecord]) -> List[ArchiveRecord]:
        """
        Order records so no incremental outlives its basis.

        Incrementals come first, newest first; a dependent is always
        created after its parent, so children precede parents. Fulls last.
        """
        return sorted(
            records,
            key=lambda r: (r.is_full, -r.created_at.timestamp(), r.name),
        )

    def apply(
        self,
        chain: BackupChain,
        window: RetentionWindow,
        now: Optional[datetime] = None,
    ) -> List[ArchiveRecord]:
        """
        Prune archives and their checksum sidecars from disk.

        Returns:
            The deleted records, in deletion order.
        """
        ordered = self.deletion_order(self.prune(chain, window, now))
        for record in ordered:
            logger.info(f"Pruning {record.kind.value} backup: {record.name}")
            record.path.unlink(missing_ok=True)
            record.checksum_path.unlink(missing_ok=True)
        return ordered
