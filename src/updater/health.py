"""
Post-Update Health Checks

Verifies the application came back up after an update or a rollback.
A probe returns True for healthy; the controller bounds every probe with
its own timeout as well, so a hung check cannot stall the transaction.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import requests

from .supervisor import ProcessSupervisorAdapter

logger = logging.getLogger(__name__)


class HealthCheck(ABC):
    """Observes whether the application is healthy."""

    @abstractmethod
    def probe(self, timeout_ms: int) -> bool:
        """Return True once healthy, False if not healthy within ``timeout_ms``."""


class ServiceHealthCheck(HealthCheck):
    """
    Healthy when every managed unit reports active.

    Units are polled because systemd may report ``activating`` for a short
    while after ``start`` returns.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisorAdapter,
        units: Sequence[str],
        poll_interval: float = 0.5,
    ):
        self.supervisor = supervisor
        self.units = list(units)
        self.poll_interval = poll_interval
        self.issues: List[str] = []

    def probe(self, timeout_ms: int) -> bool:
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            self.issues = [u for u in self.units if not self.supervisor.is_active(u)]
            if not self.issues:
                return True
            if time.monotonic() >= deadline:
                logger.warning(f"Services not active: {', '.join(self.issues)}")
                return False
            time.sleep(self.poll_interval)


class HttpHealthCheck(HealthCheck):
    """
    Service check plus an HTTP endpoint that must answer 2xx.

    Args:
        url: Health endpoint of the application
        services: Optional service check that must pass first
    """

    def __init__(
        self,
        url: str,
        services: Optional[ServiceHealthCheck] = None,
        poll_interval: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.services = services
        self.poll_interval = poll_interval
        self.session = session or requests.Session()

    def probe(self, timeout_ms: int) -> bool:
        start = time.monotonic()
        if self.services is not None and not self.services.probe(timeout_ms):
            return False

        deadline = start + timeout_ms / 1000.0
        while True:
            remaining = max(deadline - time.monotonic(), 0.1)
            try:
                response = self.session.get(self.url, timeout=remaining)
                if response.ok:
                    return True
                logger.debug(f"Health endpoint returned {response.status_code}")
            except requests.RequestException as e:
                logger.debug(f"Health endpoint not reachable: {e}")
            if time.monotonic() >= deadline:
                logger.warning(f"Health endpoint {self.url} did not become healthy")
                return False
            time.sleep(self.poll_interval)
