"""
CinePi5 Common Utilities

Shared configuration, error handling, logging and locking for the backup
and update tools.
"""

from .exceptions import (
    CinePiError, ConfigError, InvalidConfigError, MissingConfigError,
    MissingTargetError, ResourceError, InsufficientSpaceError,
    LockUnavailableError, IntegrityError, ChecksumError, ArchiveIntegrityError,
    VerificationFailedError, TransferError, DownloadError, UploadError,
    ReleaseNotFoundError, TransactionError, CriticalError,
)
from .decorators import handle_errors, retry, timed
from .logging_config import setup_logging, get_logger, LogContext
from .locking import TargetLock
from .config import (
    EngineConfig, BackupConfig, UpdateConfig, RetentionWindow, RemoteTarget,
    ReleaseChannel, load_config, build_config,
)

__all__ = [
    # Exceptions
    "CinePiError", "ConfigError", "InvalidConfigError", "MissingConfigError",
    "MissingTargetError", "ResourceError", "InsufficientSpaceError",
    "LockUnavailableError", "IntegrityError", "ChecksumError", "ArchiveIntegrityError",
    "VerificationFailedError", "TransferError", "DownloadError", "UploadError",
    "ReleaseNotFoundError", "TransactionError", "CriticalError",
    # Decorators
    "handle_errors", "retry", "timed",
    # Logging
    "setup_logging", "get_logger", "LogContext",
    # Locking
    "TargetLock",
    # Configuration
    "EngineConfig", "BackupConfig", "UpdateConfig", "RetentionWindow", "RemoteTarget",
    "ReleaseChannel", "load_config", "build_config",
]
