"""
Process Supervisor Adapter

Thin seam between the update controller and the init system, so the
transaction logic can be driven by a fake in tests.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from typing import List

from common.exceptions import TransactionError

logger = logging.getLogger(__name__)


class ProcessSupervisorAdapter(ABC):
    """Start, stop and query managed units."""

    @abstractmethod
    def stop(self, unit: str) -> None:
        """Stop a unit. Raises TransactionError on failure."""

    @abstractmethod
    def start(self, unit: str) -> None:
        """Start a unit. Raises TransactionError on failure."""

    @abstractmethod
    def is_active(self, unit: str) -> bool:
        """Whether the unit is currently running."""

    def daemon_reload(self) -> None:
        """Re-read unit definitions after they changed on disk."""


class SystemdSupervisor(ProcessSupervisorAdapter):
    """
    systemd implementation using ``systemctl``.

    Args:
        timeout: Seconds allowed for each systemctl call
    """

    def __init__(self, timeout: int = 60):
        self.timeout = timeout

    def _systemctl(self, *args: str) -> subprocess.CompletedProcess:
        cmd: List[str] = ["systemctl", *args]
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransactionError(" ".join(args), "systemctl timed out", cause=e) from e
        except FileNotFoundError as e:
            raise TransactionError(" ".join(args), "systemctl not found", cause=e) from e

    def _checked(self, action: str, unit: str) -> None:
        result = self._systemctl(action, unit)
        if result.returncode != 0:
            raise TransactionError(
                f"{action} {unit}", result.stderr.strip() or f"exit code {result.returncode}"
            )
        logger.info(f"systemctl {action} {unit}: ok")

    def stop(self, unit: str) -> None:
        self._checked("stop", unit)

    def start(self, unit: str) -> None:
        self._checked("start", unit)

    def is_active(self, unit: str) -> bool:
        result = self._systemctl("is-active", unit)
        status = result.stdout.strip()
        if result.returncode != 0:
            logger.debug(f"Service {unit} is {status or 'unknown'}")
        return result.returncode == 0

    def daemon_reload(self) -> None:
        result = self._systemctl("daemon-reload")
        if result.returncode != 0:
            raise TransactionError("daemon-reload", result.stderr.strip() or "failed")
