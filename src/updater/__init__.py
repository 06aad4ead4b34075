"""
CinePi5 Update and Rollback

Transactional over-the-air updates:
- Verified staging of release assets against the release checksum manifest
- Pre-update rollback archive of the install tree and unit files
- Health-checked apply with automatic restore on any failure
"""

from .controller import (
    ApplyRollbackController,
    StateTransitionError,
    TransactionResult,
    TransactionState,
    TransactionStatus,
)
from .fetcher import (
    CandidateState,
    ReleaseCandidate,
    ReleaseFetcher,
)
from .health import HealthCheck, HttpHealthCheck, ServiceHealthCheck
from .rollback import RollbackManager, RollbackPoint
from .supervisor import ProcessSupervisorAdapter, SystemdSupervisor

__all__ = [
    "ApplyRollbackController",
    "StateTransitionError",
    "TransactionResult",
    "TransactionState",
    "TransactionStatus",
    "CandidateState",
    "ReleaseCandidate",
    "ReleaseFetcher",
    "HealthCheck",
    "HttpHealthCheck",
    "ServiceHealthCheck",
    "RollbackManager",
    "RollbackPoint",
    "ProcessSupervisorAdapter",
    "SystemdSupervisor",
]
