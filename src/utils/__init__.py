"""
CinePi5 Utility Modules

Common utilities for crash-safe file operations.
"""

from .atomic_write import (
    atomic_write_text,
    atomic_write_json,
    atomic_write_bytes,
    fsync_dir,
    publish,
)

__all__ = [
    "atomic_write_text",
    "atomic_write_json",
    "atomic_write_bytes",
    "fsync_dir",
    "publish",
]
