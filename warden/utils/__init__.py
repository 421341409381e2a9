"""
Utility modules for Generation Warden.

Provides common utilities including:
- Contained-error logging and retry with exponential backoff
- Atomic file writes
- UTC timestamps
"""

from .error_handling import (
    ErrorCategory,
    ErrorContext,
    RecentErrors,
    get_recent_errors,
    handle_error,
    log_filesystem_error,
    retry_call,
)
from .atomic import atomic_write_bytes, atomic_write_json, fsync_directory
from .clock import utc_now

__all__ = [
    # Error handling
    'ErrorCategory',
    'ErrorContext',
    'RecentErrors',
    'get_recent_errors',
    'handle_error',
    'log_filesystem_error',
    'retry_call',
    # Atomic writes
    'atomic_write_bytes',
    'atomic_write_json',
    'fsync_directory',
    'utc_now',
]
