"""
CinePi5 Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, operator feedback, and programmatic error handling.

The top-level families map onto how the engine reacts:

- ConfigError: rejected before any mutation
- ResourceError: precondition failure, nothing written
- IntegrityError: offending artifact discarded, prior state kept
- TransferError: network failure, local state still valid
- TransactionError: triggers automatic rollback
- CriticalError: rollback failed, operator intervention required
"""

from typing import Optional, Dict, Any


class CinePiError(Exception):
    """
    Base exception for all CinePi5 maintenance errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the error is recoverable
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigError(CinePiError):
    """Base for configuration errors."""
    pass


class InvalidConfigError(ConfigError):
    """Invalid configuration."""
    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid configuration: {field}={value}: {reason}",
            code="INVALID_CONFIG",
            details={"field": field, "value": str(value), "reason": reason},
            recoverable=False,
        )


class MissingConfigError(ConfigError):
    """Required configuration missing."""
    def __init__(self, field: str):
        super().__init__(
            f"Missing required configuration: {field}",
            code="MISSING_CONFIG",
            details={"field": field},
            recoverable=False,
        )


class MissingTargetError(ConfigError):
    """A required backup target does not exist."""
    def __init__(self, path: str):
        super().__init__(
            f"Backup target does not exist: {path}",
            code="MISSING_TARGET",
            details={"path": path},
            recoverable=False,
        )


# =============================================================================
# Resource errors
# =============================================================================

class ResourceError(CinePiError):
    """Base for resource precondition failures."""
    pass


class InsufficientSpaceError(ResourceError):
    """Not enough free space at the destination."""
    def __init__(self, path: str, required: int, available: int):
        super().__init__(
            f"Insufficient disk space at {path}: "
            f"{required} bytes required, {available} available",
            code="INSUFFICIENT_SPACE",
            details={"path": path, "required": required, "available": available},
        )


class LockUnavailableError(ResourceError):
    """Another run holds the target-set lock."""
    def __init__(self, lock_path: str):
        super().__init__(
            f"Target set is locked by another run: {lock_path}",
            code="LOCK_UNAVAILABLE",
            details={"lock_path": lock_path},
        )


# =============================================================================
# Integrity errors
# =============================================================================

class IntegrityError(CinePiError):
    """Base for checksum and read-back failures."""
    pass


class ChecksumError(IntegrityError):
    """Checksum verification failed."""
    def __init__(self, filename: str, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {filename}",
            code="CHECKSUM_MISMATCH",
            details={
                "filename": filename,
                "expected": expected,
                "actual": actual,
            },
            recoverable=False,
        )


class ArchiveIntegrityError(IntegrityError):
    """Archive read-back did not match what was written."""
    def __init__(self, archive: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Archive integrity check failed for {archive}: {reason}",
            code="ARCHIVE_CORRUPT",
            details={"archive": archive, "reason": reason},
            cause=cause,
        )


class VerificationFailedError(IntegrityError):
    """Staged release payload does not match its manifest."""
    def __init__(self, version: str, asset: str, reason: str):
        super().__init__(
            f"Release {version} failed verification: {asset}: {reason}",
            code="VERIFICATION_FAILED",
            details={"version": version, "asset": asset, "reason": reason},
        )


# =============================================================================
# Transfer errors
# =============================================================================

class TransferError(CinePiError):
    """Base for network transfer errors."""
    pass


class DownloadError(TransferError):
    """Download failed."""
    def __init__(self, url: str, reason: str, cause: Optional[Exception] = None,
                 recoverable: bool = True):
        super().__init__(
            f"Failed to download: {reason}",
            code="DOWNLOAD_FAILED",
            details={"url": url, "reason": reason},
            cause=cause,
            recoverable=recoverable,
        )


class UploadError(TransferError):
    """Remote upload failed."""
    def __init__(self, destination: str, reason: str, cause: Optional[Exception] = None,
                 recoverable: bool = True):
        super().__init__(
            f"Failed to upload to {destination}: {reason}",
            code="UPLOAD_FAILED",
            details={"destination": destination, "reason": reason},
            cause=cause,
            recoverable=recoverable,
        )


class ReleaseNotFoundError(TransferError):
    """Release descriptor is missing required assets."""
    def __init__(self, channel: str, reason: str):
        super().__init__(
            f"No usable release on {channel}: {reason}",
            code="RELEASE_NOT_FOUND",
            details={"channel": channel, "reason": reason},
        )


# =============================================================================
# Transaction errors
# =============================================================================

class TransactionError(CinePiError):
    """A step of an update transaction failed; rollback follows."""
    def __init__(self, step: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Update step '{step}' failed: {reason}",
            code="TRANSACTION_FAILED",
            details={"step": step, "reason": reason},
            cause=cause,
        )


class CriticalError(CinePiError):
    """Rollback failed. The installed tree needs manual repair."""
    def __init__(self, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Rollback failed, manual intervention required: {reason}",
            code="ROLLBACK_FAILED",
            details={"reason": reason},
            cause=cause,
            recoverable=False,
        )
