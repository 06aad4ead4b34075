"""
Engine Configuration

Loads ``/etc/cinepi5/deployment.conf`` (YAML), validates every key against
a typed schema and produces immutable config values. Components receive
these values through their constructors and never read the environment
or the config file themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .exceptions import InvalidConfigError, MissingConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/cinepi5/deployment.conf")

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


# =============================================================================
# Value types shared by the archiver and updater packages
# =============================================================================

@dataclass(frozen=True)
class RetentionWindow:
    """Count and age thresholds governing backup pruning."""
    max_full_count: int = 3
    max_age_days: int = 30

    def validate(self) -> "RetentionWindow":
        if not isinstance(self.max_full_count, int) or self.max_full_count < 1:
            raise InvalidConfigError(
                "max_full_count", self.max_full_count, "must be an integer >= 1"
            )
        if not isinstance(self.max_age_days, int) or self.max_age_days < 1:
            raise InvalidConfigError(
                "max_age_days", self.max_age_days, "must be an integer >= 1"
            )
        return self


@dataclass(frozen=True)
class RemoteTarget:
    """Off-device copy destination for published archives."""
    protocol: str
    endpoint: str
    credential_file: Optional[Path] = None

    PROTOCOLS = ("sftp", "s3", "minio")

    def validate(self) -> "RemoteTarget":
        if self.protocol not in self.PROTOCOLS:
            raise InvalidConfigError(
                "remote.protocol", self.protocol, f"must be one of {list(self.PROTOCOLS)}"
            )
        if not self.endpoint:
            raise MissingConfigError("remote.endpoint")
        return self


@dataclass(frozen=True)
class ReleaseChannel:
    """Where release descriptors come from and which assets matter."""
    name: str
    descriptor_url: str
    package_asset: str = "cinepi5_pkg.tar.gz"
    checksum_asset: str = "checksums.sha256"
    hook_asset: Optional[str] = "post_update.sh"
    credential_file: Optional[Path] = None


# =============================================================================
# Engine configuration
# =============================================================================

DEFAULT_TARGETS = [
    "/opt/cinepi5",
    "/etc/cinepi5",
    "/etc/systemd/system/cinepi5.service",
]

DEFAULT_OPTIONAL_TARGETS = [
    "/usr/local/bin/cinepi5",
    "/etc/systemd/system/cinepi5-backup.timer",
    "/etc/systemd/system/cinepi5-backup.service",
    "/etc/systemd/system/cinepi5-ota.timer",
    "/etc/systemd/system/cinepi5-ota.service",
    "/etc/logrotate.d/cinepi5",
    "/etc/modules-load.d/cinepi5.conf",
    "/usr/src/cinepi5-kmods",
    "/etc/cinepi5/sftp_id_rsa",
    "/etc/cinepi5/cloud_api_token",
]

DEFAULT_EXCLUDES = [
    "/opt/cinepi5/venv",
    "*.tmp",
    "*.temp",
    "*~",
    "/var/log/cinepi5",
]

DEFAULT_UNIT_PATHS = [
    "/etc/systemd/system/cinepi5.service",
    "/etc/systemd/system/cinepi5-backup.timer",
    "/etc/systemd/system/cinepi5-backup.service",
    "/etc/systemd/system/cinepi5-ota.timer",
    "/etc/systemd/system/cinepi5-ota.service",
]


@dataclass(frozen=True)
class BackupConfig:
    backup_dir: Path
    targets: Tuple[Path, ...]
    optional_targets: Tuple[Path, ...] = ()
    exclude_patterns: Tuple[str, ...] = ()
    retention: RetentionWindow = field(default_factory=RetentionWindow)
    min_free_bytes: int = 256 * MIB
    remote: Optional[RemoteTarget] = None


@dataclass(frozen=True)
class UpdateConfig:
    channel: ReleaseChannel
    install_dir: Path
    staging_dir: Path
    rollback_dir: Path
    unit_paths: Tuple[Path, ...] = ()
    services: Tuple[str, ...] = ("cinepi5",)
    history_keep: int = 5
    health_timeout_ms: int = 30000
    health_url: Optional[str] = None
    hook_timeout: int = 300
    request_timeout: int = 30
    min_free_bytes: int = 2 * GIB

    @property
    def history_dir(self) -> Path:
        return self.rollback_dir / "history"

    @property
    def rollback_targets(self) -> Tuple[Path, ...]:
        return (self.install_dir,) + tuple(self.unit_paths)


@dataclass(frozen=True)
class EngineConfig:
    """Top-level configuration for one target set."""
    target_set: str
    state_dir: Path
    lock_dir: Path
    log_dir: Path
    backup: BackupConfig
    update: UpdateConfig
    json_logs: bool = False

    @property
    def lock_path(self) -> Path:
        return self.lock_dir / f"{self.target_set}.lock"

    @property
    def snapshot_state_path(self) -> Path:
        return self.state_dir / f"{self.target_set}.state"

    @property
    def transaction_path(self) -> Path:
        return self.state_dir / f"{self.target_set}.transaction.json"


# =============================================================================
# Schema validation
# =============================================================================

# Format: {key: {type, default, min, max, enum}}
TOP_SCHEMA: Dict[str, Dict[str, Any]] = {
    "target_set": {"type": str, "default": "cinepi5"},
    "state_dir": {"type": str, "default": "/var/lib/cinepi5"},
    "lock_dir": {"type": str, "default": "/run/lock/cinepi5"},
    "log_dir": {"type": str, "default": "/var/log/cinepi5"},
    "json_logs": {"type": bool, "default": False},
}

BACKUP_SCHEMA: Dict[str, Dict[str, Any]] = {
    "backup_dir": {"type": str, "default": "/media/cinepi/backups"},
    "targets": {"type": list, "default": DEFAULT_TARGETS},
    "optional_targets": {"type": list, "default": DEFAULT_OPTIONAL_TARGETS},
    "exclude_patterns": {"type": list, "default": DEFAULT_EXCLUDES},
    "max_full_backups": {"type": int, "default": 3, "min": 1},
    "retention_days": {"type": int, "default": 30, "min": 1},
    "min_free_mb": {"type": int, "default": 256, "min": 0},
}

REMOTE_SCHEMA: Dict[str, Dict[str, Any]] = {
    "enabled": {"type": bool, "default": False},
    "protocol": {"type": str, "default": "sftp", "enum": ["sftp", "s3", "minio"]},
    "endpoint": {"type": str, "default": ""},
    "credential_file": {"type": str, "default": "/etc/cinepi5/sftp_id_rsa"},
}

UPDATE_SCHEMA: Dict[str, Dict[str, Any]] = {
    "repo_owner": {"type": str, "default": "YourOrg"},
    "repo_name": {"type": str, "default": "CinePi5"},
    "descriptor_url": {"type": str, "default": ""},
    "package_asset": {"type": str, "default": "cinepi5_pkg.tar.gz"},
    "checksum_asset": {"type": str, "default": "checksums.sha256"},
    "hook_asset": {"type": str, "default": "post_update.sh"},
    "credential_file": {"type": str, "default": "/etc/cinepi5/github_token"},
    "install_dir": {"type": str, "default": "/opt/cinepi5"},
    "staging_dir": {"type": str, "default": "/var/lib/cinepi5/ota"},
    "rollback_dir": {"type": str, "default": "/var/backups/cinepi5_rollback"},
    "unit_paths": {"type": list, "default": DEFAULT_UNIT_PATHS},
    "services": {"type": list, "default": ["cinepi5", "prometheus-node-exporter"]},
    "history_keep": {"type": int, "default": 5, "min": 1},
    "health_timeout_ms": {"type": int, "default": 30000, "min": 100},
    "health_url": {"type": str, "default": ""},
    "hook_timeout": {"type": int, "default": 300, "min": 1},
    "request_timeout": {"type": int, "default": 30, "min": 1, "max": 600},
    "min_free_gb": {"type": int, "default": 2, "min": 0},
}


def _coerce(section: str, key: str, value: Any, props: Dict[str, Any]) -> Any:
    expected = props["type"]
    name = f"{section}.{key}" if section else key

    if expected is bool and isinstance(value, str):
        if value.lower() == "true":
            return True
        if value.lower() == "false":
            return False
        raise InvalidConfigError(name, value, "must be 'true' or 'false'")

    # bool is an int subclass; reject it where a number is expected
    if expected is int and isinstance(value, bool):
        raise InvalidConfigError(name, value, "expected int, got bool")

    if not isinstance(value, expected):
        raise InvalidConfigError(
            name, value, f"expected {expected.__name__}, got {type(value).__name__}"
        )

    if "min" in props and value < props["min"]:
        raise InvalidConfigError(name, value, f"below minimum {props['min']}")
    if "max" in props and value > props["max"]:
        raise InvalidConfigError(name, value, f"above maximum {props['max']}")
    if "enum" in props and value not in props["enum"]:
        raise InvalidConfigError(name, value, f"not in allowed values {props['enum']}")
    if expected is list and not all(isinstance(item, str) for item in value):
        raise InvalidConfigError(name, value, "list entries must be strings")

    return value


def validate_section(
    section: str,
    raw: Optional[Dict[str, Any]],
    schema: Dict[str, Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Validate one config section against its schema.

    Missing keys take their schema default; unknown keys are logged and
    ignored.

    Returns:
        Dictionary of validated values for every schema key.
    """
    raw = raw or {}
    if not isinstance(raw, dict):
        raise InvalidConfigError(section or "<root>", raw, "must be a mapping")

    for key in raw:
        if key not in schema and key not in ("backup", "update", "remote"):
            logger.warning(f"Ignoring unknown config key: {section + '.' if section else ''}{key}")

    values = {}
    for key, props in schema.items():
        value = raw.get(key, props.get("default"))
        values[key] = _coerce(section, key, value, props)
    return values


def _paths(items: List[str]) -> Tuple[Path, ...]:
    return tuple(Path(item) for item in items)


def build_config(raw: Optional[Dict[str, Any]]) -> EngineConfig:
    """
    Build an EngineConfig from a parsed YAML mapping.

    Raises:
        InvalidConfigError: On any type, range or enum violation.
        MissingConfigError: When an enabled feature lacks a required value.
    """
    raw = raw or {}
    top = validate_section("", raw, TOP_SCHEMA)
    backup_raw = raw.get("backup") or {}
    backup = validate_section("backup", backup_raw, BACKUP_SCHEMA)
    remote = validate_section(
        "backup.remote",
        backup_raw.get("remote") if isinstance(backup_raw, dict) else None,
        REMOTE_SCHEMA,
    )
    update = validate_section("update", raw.get("update"), UPDATE_SCHEMA)

    if not backup["targets"]:
        raise MissingConfigError("backup.targets")

    remote_target = None
    if remote["enabled"]:
        remote_target = RemoteTarget(
            protocol=remote["protocol"],
            endpoint=remote["endpoint"],
            credential_file=Path(remote["credential_file"]) if remote["credential_file"] else None,
        ).validate()

    retention = RetentionWindow(
        max_full_count=backup["max_full_backups"],
        max_age_days=backup["retention_days"],
    ).validate()

    descriptor_url = update["descriptor_url"] or (
        f"https://api.github.com/repos/{update['repo_owner']}/"
        f"{update['repo_name']}/releases/latest"
    )
    channel = ReleaseChannel(
        name=f"{update['repo_owner']}/{update['repo_name']}",
        descriptor_url=descriptor_url,
        package_asset=update["package_asset"],
        checksum_asset=update["checksum_asset"],
        hook_asset=update["hook_asset"] or None,
        credential_file=Path(update["credential_file"]) if update["credential_file"] else None,
    )

    return EngineConfig(
        target_set=top["target_set"],
        state_dir=Path(top["state_dir"]),
        lock_dir=Path(top["lock_dir"]),
        log_dir=Path(top["log_dir"]),
        json_logs=top["json_logs"],
        backup=BackupConfig(
            backup_dir=Path(backup["backup_dir"]),
            targets=_paths(backup["targets"]),
            optional_targets=_paths(backup["optional_targets"]),
            exclude_patterns=tuple(backup["exclude_patterns"]),
            retention=retention,
            min_free_bytes=backup["min_free_mb"] * MIB,
            remote=remote_target,
        ),
        update=UpdateConfig(
            channel=channel,
            install_dir=Path(update["install_dir"]),
            staging_dir=Path(update["staging_dir"]),
            rollback_dir=Path(update["rollback_dir"]),
            unit_paths=_paths(update["unit_paths"]),
            services=tuple(update["services"]),
            history_keep=update["history_keep"],
            health_timeout_ms=update["health_timeout_ms"],
            health_url=update["health_url"] or None,
            hook_timeout=update["hook_timeout"],
            request_timeout=update["request_timeout"],
            min_free_bytes=update["min_free_gb"] * GIB,
        ),
    )


def load_config(path: Union[str, Path, None] = None) -> EngineConfig:
    """
    Load and validate the deployment configuration.

    A missing file yields the built-in defaults, matching how the appliance
    behaves before an operator customises it.

    Args:
        path: YAML file path (default: /etc/cinepi5/deployment.conf)
    """
    path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.warning(f"Configuration file {path} not found, using defaults")
        return build_config({})

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise InvalidConfigError(str(path), "<unparseable>", str(e)) from e

    config = build_config(raw)
    logger.debug(f"Configuration loaded from {path}")
    return config
