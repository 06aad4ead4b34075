"""
Pytest configuration and shared fixtures for CinePi5 maintenance tests.

Provides throwaway target trees, engine configs rooted in tmp_path and
fakes for the init system and health checks.
"""

import hashlib
import io
import json
import os
import tarfile
import pytest
from unittest.mock import MagicMock, patch
from pathlib import Path
from typing import Dict, Optional
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


# ============ Tree Helpers ============

def snapshot_tree(*roots: Path) -> Dict[str, tuple]:
    """Describe every entry below ``roots``: file content, link target or dir mode."""
    result = {}
    for root in roots:
        if not os.path.lexists(root):
            continue
        paths = [root]
        if root.is_dir() and not root.is_symlink():
            paths += sorted(root.rglob("*"))
        for path in paths:
            if path.is_symlink():
                result[str(path)] = ("l", os.readlink(path))
            elif path.is_dir():
                result[str(path)] = ("d", path.stat().st_mode & 0o777)
            else:
                result[str(path)] = ("f", path.read_bytes(), path.stat().st_mode & 0o777)
    return result


def make_package(files: Dict[str, bytes]) -> bytes:
    """Build an update package (tar.gz) in memory."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def stage_release(
    staging_dir: Path,
    files: Dict[str, bytes],
    version: str = "v5.2.0",
    hook: Optional[bytes] = None,
) -> None:
    """Write a verified candidate and ready marker the way the fetcher leaves them."""
    candidate = staging_dir / "candidate"
    candidate.mkdir(parents=True)
    package = make_package(files)
    (candidate / "cinepi5_pkg.tar.gz").write_bytes(package)
    digests = {"cinepi5_pkg.tar.gz": sha256_bytes(package)}
    if hook is not None:
        (candidate / "post_update.sh").write_bytes(hook)
        (candidate / "post_update.sh").chmod(0o755)
        digests["post_update.sh"] = sha256_bytes(hook)
    marker = {
        "version": version,
        "asset_uris": {},
        "checksum_manifest_uri": "",
        "package_asset": "cinepi5_pkg.tar.gz",
        "digests": digests,
        "hook": "post_update.sh" if hook is not None else None,
        "fetched_at": None,
    }
    (staging_dir / "update_ready").write_text(json.dumps(marker))


# ============ Environment Fixtures ============

@pytest.fixture
def target_tree(tmp_path: Path) -> Path:
    """A small installed application tree."""
    root = tmp_path / "opt" / "cinepi5"
    (root / "lib").mkdir(parents=True)
    (root / "app.py").write_text("print('cinepi5')\n")
    (root / "lib" / "camera.py").write_text("ISO = 100\n")
    (root / "config.yaml").write_text("resolution: 4k\n")
    (root / "scratch.tmp").write_text("ignored\n")
    os.symlink("app.py", root / "current")
    return root


@pytest.fixture
def unit_file(tmp_path: Path) -> Path:
    unit = tmp_path / "etc" / "systemd" / "system" / "cinepi5.service"
    unit.parent.mkdir(parents=True)
    unit.write_text("[Service]\nExecStart=/opt/cinepi5/app.py\n")
    return unit


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def state_store(tmp_path: Path):
    from archiver.state import SnapshotStateStore
    return SnapshotStateStore(tmp_path / "state" / "cinepi5.state")


@pytest.fixture
def backup_archiver(backup_dir, state_store):
    from archiver.archiver import Archiver
    return Archiver(backup_dir, state_store)


@pytest.fixture
def engine_yaml(tmp_path: Path, target_tree: Path, backup_dir: Path) -> Path:
    """deployment.conf with every path inside tmp_path."""
    config = {
        "target_set": "test",
        "state_dir": str(tmp_path / "state"),
        "lock_dir": str(tmp_path / "lock"),
        "log_dir": str(tmp_path / "log"),
        "backup": {
            "backup_dir": str(backup_dir),
            "targets": [str(target_tree)],
            "optional_targets": [str(tmp_path / "missing-optional")],
            "exclude_patterns": ["*.tmp"],
            "max_full_backups": 2,
            "retention_days": 30,
            "min_free_mb": 0,
        },
        "update": {
            "install_dir": str(target_tree),
            "staging_dir": str(tmp_path / "ota"),
            "rollback_dir": str(tmp_path / "rollback"),
            "unit_paths": [],
            "services": ["cinepi5"],
            "credential_file": "",
            "min_free_gb": 0,
        },
    }
    import yaml
    path = tmp_path / "deployment.conf"
    path.write_text(yaml.safe_dump(config))
    return path


# ============ Supervisor / Health Fakes ============

class FakeSupervisor:
    """In-memory init system that records every call."""

    def __init__(self, units=("cinepi5",), fail=None):
        self.active = set(units)
        self.calls = []
        # {(action, unit): remaining failures}
        self.fail = dict(fail or {})

    def _maybe_fail(self, action, unit):
        from common.exceptions import TransactionError
        remaining = self.fail.get((action, unit), 0)
        if remaining:
            self.fail[(action, unit)] = remaining - 1
            raise TransactionError(f"{action} {unit}", "injected failure")

    def stop(self, unit):
        self.calls.append(("stop", unit))
        self._maybe_fail("stop", unit)
        self.active.discard(unit)

    def start(self, unit):
        self.calls.append(("start", unit))
        self._maybe_fail("start", unit)
        self.active.add(unit)

    def is_active(self, unit):
        return unit in self.active

    def daemon_reload(self):
        self.calls.append(("daemon-reload", None))


class FakeHealth:
    """Returns queued probe results; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results) or [True]
        self.probes = 0

    def probe(self, timeout_ms):
        self.probes += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()


# ============ Subprocess Fixtures ============

@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for tests."""
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout="",
            stderr="",
        )
        yield mock_run


@pytest.fixture
def no_sleep():
    """Make retry backoff instant."""
    with patch("common.decorators.time.sleep") as mock_sleep:
        yield mock_sleep


# ============ Marker Configuration ============

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "integration: tests that build and restore real archives on disk"
    )
