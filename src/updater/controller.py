#!/usr/bin/env python3
"""
CinePi5 Apply/Rollback Controller

Applies a staged release as one transaction:

    idle -> precheck -> snapshotting -> stopping -> applying
         -> restarting -> verifying -> committed

Any failure from stopping through verifying restores the pre-update
rollback point, restarts the services and re-checks health
(rolling_back -> rolled_back). If that recovery fails too, the
transaction ends in ``failed`` and a CriticalError is raised. Precheck and
snapshot failures end in ``aborted`` before anything was touched.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import tarfile
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Union

from archiver import tarball
from archiver.records import utcnow
from common.config import UpdateConfig
from common.decorators import handle_errors
from common.exceptions import CinePiError, CriticalError, TransactionError
from common.locking import TargetLock
from common.logging_config import LogContext
from utils.atomic_write import atomic_write_json

from .fetcher import ReleaseCandidate, ReleaseFetcher
from .health import HealthCheck
from .rollback import RollbackManager, RollbackPoint
from .supervisor import ProcessSupervisorAdapter

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """States of an update transaction."""
    IDLE = "idle"
    PRECHECK = "precheck"
    SNAPSHOTTING = "snapshotting"
    STOPPING = "stopping"
    APPLYING = "applying"
    RESTARTING = "restarting"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    ABORTED = "aborted"


# Format: {current_state: {allowed next states}}
VALID_TRANSITIONS: Dict[TransactionState, Set[TransactionState]] = {
    TransactionState.IDLE: {TransactionState.PRECHECK},
    TransactionState.PRECHECK: {TransactionState.SNAPSHOTTING, TransactionState.ABORTED},
    TransactionState.SNAPSHOTTING: {TransactionState.STOPPING, TransactionState.ABORTED},
    TransactionState.STOPPING: {TransactionState.APPLYING, TransactionState.ROLLING_BACK},
    TransactionState.APPLYING: {TransactionState.RESTARTING, TransactionState.ROLLING_BACK},
    TransactionState.RESTARTING: {TransactionState.VERIFYING, TransactionState.ROLLING_BACK},
    TransactionState.VERIFYING: {TransactionState.COMMITTED, TransactionState.ROLLING_BACK},
    TransactionState.ROLLING_BACK: {TransactionState.ROLLED_BACK, TransactionState.FAILED},
}

TERMINAL_STATES = frozenset({
    TransactionState.COMMITTED,
    TransactionState.ROLLED_BACK,
    TransactionState.FAILED,
    TransactionState.ABORTED,
})

# States in which the installed tree may already differ from the rollback point
MUTATING_STATES = frozenset({
    TransactionState.STOPPING,
    TransactionState.APPLYING,
    TransactionState.RESTARTING,
    TransactionState.VERIFYING,
    TransactionState.ROLLING_BACK,
})


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


@dataclass
class TransactionStatus:
    """Persisted progress of the current or last update transaction."""
    state: TransactionState = TransactionState.IDLE
    transaction_id: Optional[str] = None
    version: Optional[str] = None
    rollback_point: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    steps: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "transaction_id": self.transaction_id,
            "version": self.version,
            "rollback_point": self.rollback_point,
            "last_error": self.last_error,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "steps": self.steps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionStatus":
        return cls(
            state=TransactionState(data.get("state", "idle")),
            transaction_id=data.get("transaction_id"),
            version=data.get("version"),
            rollback_point=data.get("rollback_point"),
            last_error=data.get("last_error"),
            started_at=data.get("started_at"),
            updated_at=data.get("updated_at"),
            steps=list(data.get("steps", [])),
        )


@dataclass
class TransactionResult:
    """Result of one trigger() call."""
    success: bool
    state: TransactionState
    message: str
    version: Optional[str] = None
    error: Optional[CinePiError] = None


class ApplyRollbackController:
    """
    Drives update transactions for one target set.

    The target-set lock is held for the whole transaction, so a scheduled
    backup never archives a half-applied tree.

    Args:
        config: Update section of the engine configuration
        fetcher: Provides the staged Ready candidate
        supervisor: Starts and stops the managed units
        health: Post-restart health check
        lock_path: Advisory lock shared with the backup job
        status_path: Where TransactionStatus is persisted
        rollback: Rollback point manager (default: built from ``config``)
        wait_for_lock: Block until the lock frees up instead of failing
    """

    def __init__(
        self,
        config: UpdateConfig,
        fetcher: ReleaseFetcher,
        supervisor: ProcessSupervisorAdapter,
        health: HealthCheck,
        lock_path: Union[str, Path],
        status_path: Union[str, Path],
        rollback: Optional[RollbackManager] = None,
        wait_for_lock: bool = False,
    ):
        self.config = config
        self.fetcher = fetcher
        self.supervisor = supervisor
        self.health = health
        self.lock = TargetLock(lock_path, blocking=wait_for_lock)
        self.status_path = Path(status_path)
        self.rollback = rollback or RollbackManager(
            config.rollback_dir, history_keep=config.history_keep
        )
        self._txn: Optional[TransactionStatus] = None
        self._progress_callback: Optional[Callable[[TransactionState, str], None]] = None

    def set_progress_callback(
        self,
        callback: Callable[[TransactionState, str], None],
    ):
        """Set callback for state changes."""
        self._progress_callback = callback

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> TransactionStatus:
        """Current or last transaction status (survives restarts)."""
        if self._txn is not None:
            return self._txn
        try:
            data = json.loads(self.status_path.read_text(encoding="utf-8"))
            return TransactionStatus.from_dict(data)
        except FileNotFoundError:
            return TransactionStatus()
        except (ValueError, KeyError) as e:
            logger.warning(f"Unreadable transaction status {self.status_path}: {e}")
            return TransactionStatus()

    def _persist(self) -> None:
        self._txn.updated_at = utcnow().isoformat()
        atomic_write_json(self.status_path, self._txn.to_dict(), mode=0o600)

    def _transition(self, new_state: TransactionState, message: str = "") -> None:
        txn = self._txn
        if new_state not in VALID_TRANSITIONS.get(txn.state, set()):
            raise StateTransitionError(
                f"Cannot move from {txn.state.value} to {new_state.value} "
                f"in transaction {txn.transaction_id}"
            )
        logger.info(f"Transaction {txn.transaction_id}: {txn.state.value} -> {new_state.value}")
        txn.state = new_state
        txn.steps.append(new_state.value)
        self._persist()
        if self._progress_callback:
            self._progress_callback(new_state, message or new_state.value)

    def _settle(self, new_state: TransactionState, message: str = "") -> None:
        """Transition on the rollback path; a failed status write must not stop recovery."""
        try:
            self._transition(new_state, message)
        except OSError as e:
            logger.error(f"Could not persist transaction state {new_state.value}: {e}")

    def _force_state(self, state: TransactionState) -> None:
        """Set state without validation (resuming a persisted transaction)."""
        logger.debug(f"Transaction {self._txn.transaction_id}: state forced to {state.value}")
        self._txn.state = state

    def _record_error(self, error: Exception) -> CinePiError:
        if not isinstance(error, CinePiError):
            error = TransactionError(
                self._txn.state.value, f"{type(error).__name__}: {error}", cause=error
            )
        self._txn.last_error = error.to_dict()
        return error

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _precheck(self) -> None:
        self.fetcher.ready_candidate(verify=True)
        required = max(self.rollback.estimate(self.config.rollback_targets),
                       self.config.min_free_bytes)
        tarball.check_free_space(self.config.rollback_dir, required)

    def _stop_services(self) -> None:
        for unit in self.config.services:
            self.supervisor.stop(unit)

    def _start_services(self) -> None:
        self.supervisor.daemon_reload()
        for unit in self.config.services:
            self.supervisor.start(unit)

    def _apply(self, candidate: ReleaseCandidate) -> None:
        """Extract next to the install dir and swap it in."""
        install = self.config.install_dir
        new_tree = install.parent / f".{install.name}.new"
        old_tree = install.parent / f".{install.name}.old"
        for leftover in (new_tree, old_tree):
            tarball.remove_path(leftover)

        new_tree.mkdir(parents=True)
        try:
            with tarfile.open(candidate.package_path, "r:*") as tar:
                tar.extractall(new_tree, filter="data")
        except (tarfile.TarError, OSError) as e:
            tarball.remove_path(new_tree)
            raise TransactionError("applying", f"cannot extract package: {e}", cause=e) from e

        if install.exists() or install.is_symlink():
            os.replace(install, old_tree)
        os.replace(new_tree, install)
        shutil.rmtree(old_tree, ignore_errors=True)
        logger.info(f"Installed {candidate.version} into {install}")

        if candidate.hook_path is not None:
            self._run_hook(candidate)

    def _run_hook(self, candidate: ReleaseCandidate) -> None:
        logger.info("Executing post-update script...")
        env = dict(os.environ)
        env.update({
            "CINEPI5_INSTALL_DIR": str(self.config.install_dir),
            "CINEPI5_VERSION": candidate.version,
        })
        try:
            result = subprocess.run(
                [str(candidate.hook_path)],
                cwd=str(self.config.install_dir),
                env=env,
                capture_output=True,
                text=True,
                timeout=self.config.hook_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransactionError(
                "post-update hook", f"timed out after {self.config.hook_timeout}s", cause=e
            ) from e
        except OSError as e:
            raise TransactionError("post-update hook", str(e), cause=e) from e

        if result.returncode != 0:
            raise TransactionError(
                "post-update hook",
                result.stderr.strip() or f"exit code {result.returncode}",
            )

    def _probe(self) -> bool:
        """Run the health probe on a worker thread, bounded by the same timeout."""
        timeout_ms = self.config.health_timeout_ms
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="health-probe")
        try:
            future = pool.submit(self.health.probe, timeout_ms)
            return bool(future.result(timeout=timeout_ms / 1000.0 + 1.0))
        except FutureTimeout:
            logger.error(f"Health probe did not return within {timeout_ms}ms")
            return False
        except Exception as e:
            logger.error(f"Health probe raised: {e}")
            return False
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _roll_back(self, point: RollbackPoint, error: Exception) -> TransactionResult:
        error = self._record_error(error)
        logger.error(f"Update failed! Initiating rollback from {point.name}: {error}")
        self._settle(TransactionState.ROLLING_BACK, "Rolling back...")

        for unit in self.config.services:
            try:
                self.supervisor.stop(unit)
            except (CinePiError, OSError) as e:
                # Unit may never have started
                logger.warning(f"Could not stop {unit} before rollback: {e}")

        try:
            self.rollback.restore(point)
            self._start_services()
            healthy = self._probe()
        except Exception as e:
            return self._critical(CriticalError(f"rollback of {point.name} failed: {e}", cause=e))

        if not healthy:
            return self._critical(CriticalError("services unhealthy after rollback"))

        self._settle(TransactionState.ROLLED_BACK, "Rollback completed")
        logger.warning(f"Rollback completed; {self._txn.version} was not installed")
        return TransactionResult(
            success=False,
            state=TransactionState.ROLLED_BACK,
            message=f"Update failed and was rolled back: {error.message}",
            version=self._txn.version,
            error=error,
        )

    def _critical(self, error: CriticalError) -> TransactionResult:
        logger.critical(str(error))
        self._txn.last_error = error.to_dict()
        self._settle(TransactionState.FAILED, error.message)
        raise error

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    @handle_errors(OSError, message="Failed to clean up update staging")
    def _discard_staging(self) -> None:
        self.fetcher.discard()

    def _cleanup(self, point: Optional[RollbackPoint]) -> None:
        """Terminal-state cleanup; an unfinished transaction keeps everything for recover()."""
        state = self._txn.state
        if state not in TERMINAL_STATES:
            logger.error(
                f"Transaction {self._txn.transaction_id} stopped in {state.value}; "
                f"keeping staging and rollback archive for recovery"
            )
            return
        if state != TransactionState.ABORTED:
            self._discard_staging()
        if point is not None:
            self._retire_rollback_point(point)

    @handle_errors(OSError, CinePiError, message="Failed to move rollback archive to history")
    def _retire_rollback_point(self, point: RollbackPoint) -> None:
        self.rollback.archive(point)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _find_rollback_archive(self, recorded: Optional[str]) -> Optional[Path]:
        """Recorded rollback archive, or its copy already moved to history."""
        if not recorded:
            return None
        for candidate in (Path(recorded), self.rollback.history_dir / Path(recorded).name):
            if candidate.exists():
                return candidate
        return None

    def recover(self) -> Optional[TransactionResult]:
        """
        Finish a transaction interrupted by a crash or power loss.

        A transaction that died after services were stopped is rolled back
        from its recorded rollback point. One that died earlier is marked
        aborted. Returns None when there was nothing to recover.
        """
        previous = self.status()
        self._txn = None
        if previous.is_terminal or previous.state == TransactionState.IDLE:
            return None

        logger.warning(
            f"Transaction {previous.transaction_id} was interrupted in {previous.state.value}"
        )
        self._txn = previous
        point = None
        archive = self._find_rollback_archive(previous.rollback_point)
        if archive is not None:
            try:
                point = RollbackPoint.from_archive(archive)
            except CinePiError as e:
                logger.error(f"Rollback archive of interrupted transaction unreadable: {e}")

        try:
            if previous.state in MUTATING_STATES:
                if point is None:
                    self._force_state(TransactionState.ROLLING_BACK)
                    return self._critical(
                        CriticalError("interrupted transaction has no rollback archive")
                    )
                # Re-enter through the normal failure path
                self._force_state(TransactionState.VERIFYING)
                return self._roll_back(
                    point, TransactionError(previous.state.value, "interrupted")
                )

            self._force_state(TransactionState.PRECHECK)
            self._transition(TransactionState.ABORTED, "Interrupted before any change")
            return TransactionResult(
                success=False,
                state=TransactionState.ABORTED,
                message="Interrupted transaction aborted before any change",
                version=previous.version,
            )
        finally:
            self._cleanup(point)
            self._txn = None

    def trigger(self) -> TransactionResult:
        """
        Apply the staged Ready candidate.

        Returns:
            TransactionResult for committed, rolled back or aborted
            transactions (and when no update is pending).

        Raises:
            LockUnavailableError: Another backup or update holds the lock.
            CriticalError: Rollback failed; manual intervention required.
        """
        with self.lock, LogContext(operation="update"):
            recovered = self.recover()
            if recovered is not None:
                return recovered

            candidate = self.fetcher.ready_candidate()
            if candidate is None:
                logger.info("No update pending.")
                return TransactionResult(
                    success=False, state=TransactionState.IDLE, message="No update pending"
                )

            self._txn = TransactionStatus(
                transaction_id=uuid.uuid4().hex[:12],
                version=candidate.version,
                started_at=utcnow().isoformat(),
                steps=[TransactionState.IDLE.value],
            )
            point: Optional[RollbackPoint] = None
            try:
                with LogContext(operation="update", version=candidate.version,
                                transaction=self._txn.transaction_id):
                    logger.info(f"Starting CinePi5 update to {candidate.version}")
                    try:
                        self._transition(TransactionState.PRECHECK, "Checking prerequisites...")
                        self._precheck()
                        self._transition(TransactionState.SNAPSHOTTING, "Creating rollback snapshot...")
                        point = self.rollback.create(self.config.rollback_targets)
                        self._txn.rollback_point = str(point.archive_path)
                    except (CinePiError, OSError) as e:
                        error = self._record_error(e)
                        self._settle(TransactionState.ABORTED, error.message)
                        logger.error(f"Update aborted before any change: {error}")
                        return TransactionResult(
                            success=False,
                            state=TransactionState.ABORTED,
                            message=f"Update aborted: {error.message}",
                            version=candidate.version,
                            error=error,
                        )

                    try:
                        self._transition(TransactionState.STOPPING, "Stopping services...")
                        self._stop_services()
                        self._transition(TransactionState.APPLYING, "Applying update package...")
                        self._apply(candidate)
                        self._transition(TransactionState.RESTARTING, "Restarting services...")
                        self._start_services()
                        self._transition(TransactionState.VERIFYING, "Verifying health...")
                        if not self._probe():
                            raise TransactionError("verifying", "health check failed")
                    except Exception as e:
                        return self._roll_back(point, e)

                    self._transition(TransactionState.COMMITTED, "Update applied")
                    logger.info(f"CinePi5 update {candidate.version} applied successfully.")
                    return TransactionResult(
                        success=True,
                        state=TransactionState.COMMITTED,
                        message=f"Updated to {candidate.version}",
                        version=candidate.version,
                    )
            finally:
                self._cleanup(point)
                self._txn = None
