"""
Retry and best-effort wrappers shared by the backup and update tools.

Network transfers (release downloads, off-device uploads) go through
``retry``; housekeeping that must never mask the outcome of the main
operation goes through ``handle_errors``.
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Type, Tuple, Callable, Any, Optional

from .exceptions import CinePiError, TransferError

logger = logging.getLogger(__name__)


def _describe(error: Exception) -> str:
    if isinstance(error, CinePiError):
        return f"{error.code}: {error.message}"
    return f"{type(error).__name__}: {error}"


def handle_errors(
    *exception_types: Type[Exception],
    default: Any = None,
    log_level: int = logging.ERROR,
    reraise: bool = False,
    message: Optional[str] = None,
):
    """
    Log and absorb the listed exception types, returning ``default``.

    Only the types named are caught; anything else propagates. A
    traceback is attached when logging at ERROR or above.

    Example:
        @handle_errors(OSError, default=0, log_level=logging.WARNING)
        def trim_history(path):
            ...
    """
    caught = exception_types or (Exception,)

    def decorator(func: Callable) -> Callable:
        label = message or f"{func.__name__} failed"

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except caught as e:
                logger.log(log_level, f"{label}: {_describe(e)}",
                           exc_info=log_level >= logging.ERROR)
                if reraise:
                    raise
                return default
        return wrapper
    return decorator


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (TransferError, OSError),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
):
    """
    Retry a transfer with exponential backoff.

    The wait starts at ``delay`` and is multiplied by ``backoff`` after
    every failed attempt, never exceeding ``max_delay``. A CinePiError
    flagged ``recoverable=False`` (bad credentials, a release that does
    not exist) is raised at once. After the last attempt the final
    exception propagates unchanged.

    Args:
        max_attempts: Total attempts, including the first
        delay: Seconds to wait before the second attempt
        backoff: Delay multiplier
        max_delay: Upper bound for a single wait
        exceptions: Exception types that trigger another attempt
        on_retry: Called with (exception, attempt) before each wait

    Example:
        @retry(max_attempts=3, delay=2.0, exceptions=(DownloadError,))
        def _download(self, url, dest):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            wait = delay
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if isinstance(e, CinePiError) and not e.recoverable:
                        logger.error(f"{func.__name__} failed permanently: {_describe(e)}")
                        raise
                    if attempt >= max_attempts:
                        logger.error(
                            f"{func.__name__} gave up after {max_attempts} attempts: {_describe(e)}"
                        )
                        raise
                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed, "
                        f"retrying in {wait:.1f}s: {_describe(e)}"
                    )
                    if on_retry:
                        on_retry(e, attempt)
                    time.sleep(wait)
                    wait = min(wait * backoff, max_delay)
                    attempt += 1

        return wrapper
    return decorator


def timed(func: Callable) -> Callable:
    """Log how long ``func`` took, at DEBUG."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            logger.debug(f"{func.__name__} completed in {time.perf_counter() - start:.3f}s")
    return wrapper
