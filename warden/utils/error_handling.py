"""
Error handling helpers shared by the activator and the integrity monitor.

Two things live here:

1. handle_error() - log a failure that must NOT propagate (reload hooks,
   tampering callbacks, a crashed monitor cycle) with enough context to
   diagnose it later, and remember it for `wardenctl status`.
2. retry_call() - bounded retry with exponential backoff, used for live
   verification so a single EIO does not trigger a rollback.

Failures that change warden state are never routed through here; they
are raised as WardenError subclasses and recorded in the ledger.
"""

import logging
import threading
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Type, TypeVar

from .clock import utc_now

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ErrorCategory(Enum):
    """Where a contained failure came from."""
    SECURITY = "security"          # monitor cycle / rollback path
    FILESYSTEM = "filesystem"      # generation trees, state files
    EXTERNAL = "external"          # reload hook, operator callbacks


_LEVELS = {
    ErrorCategory.SECURITY: logging.CRITICAL,
    ErrorCategory.FILESYSTEM: logging.ERROR,
    ErrorCategory.EXTERNAL: logging.WARNING,
}


@dataclass
class ErrorContext:
    """A contained failure with the operation it interrupted."""
    error: Exception
    category: ErrorCategory
    operation: str
    timestamp: str = field(default_factory=utc_now)
    thread_name: str = field(default_factory=lambda: threading.current_thread().name)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'category': self.category.value,
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'timestamp': self.timestamp,
            'thread_name': self.thread_name,
            'details': self.details,
        }

    def format_log_message(self) -> str:
        lines = [
            f"{self.operation} failed ({self.category.value}): "
            f"{type(self.error).__name__}: {self.error}",
        ]
        for key, value in self.details.items():
            lines.append(f"  {key}: {value}")
        if self.category == ErrorCategory.SECURITY:
            trace = ''.join(traceback.format_exception(
                type(self.error), self.error, self.error.__traceback__,
            ))
            lines.extend(f"  {line}" for line in trace.splitlines() if line.strip())
        return '\n'.join(lines)


class RecentErrors:
    """Bounded, thread-safe record of contained failures for status output."""

    def __init__(self, max_errors: int = 50):
        self._errors: Deque[ErrorContext] = deque(maxlen=max_errors)
        self._lock = threading.Lock()

    def add(self, context: ErrorContext) -> None:
        with self._lock:
            self._errors.append(context)

    def recent(self, count: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in list(self._errors)[-count:]]

    def clear(self) -> None:
        with self._lock:
            self._errors.clear()


_recent_errors = RecentErrors()


def get_recent_errors() -> RecentErrors:
    return _recent_errors


def handle_error(
    error: Exception,
    operation: str,
    category: ErrorCategory = ErrorCategory.FILESYSTEM,
    **details,
) -> ErrorContext:
    """Log and remember a failure the caller has decided to contain."""
    context = ErrorContext(
        error=error,
        category=category,
        operation=operation,
        details=details,
    )
    _recent_errors.add(context)
    logger.log(_LEVELS[category], context.format_log_message())
    return context


def log_filesystem_error(error: Exception, operation: str, **details) -> ErrorContext:
    return handle_error(error, operation, category=ErrorCategory.FILESYSTEM, **details)


def retry_call(
    func: Callable[..., T],
    *args,
    retry_count: int = 2,
    retry_delay: float = 0.5,
    retry_backoff: float = 2.0,
    retry_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Any] = time.sleep,
    operation: Optional[str] = None,
    **kwargs,
) -> T:
    """
    Call func, retrying on retry_exceptions with exponential backoff.

    The last exception propagates once retry_count retries are exhausted.
    Exceptions outside retry_exceptions propagate immediately.
    """
    op_name = operation or getattr(func, '__name__', 'call')
    attempts = 0
    current_delay = retry_delay

    while True:
        try:
            return func(*args, **kwargs)
        except retry_exceptions as e:
            attempts += 1
            if attempts > retry_count:
                logger.warning(f"{op_name} failed after {attempts} attempts: {e}")
                raise
            logger.info(
                f"Retrying {op_name} in {current_delay:.1f}s "
                f"(attempt {attempts}/{retry_count + 1}): {e}"
            )
            sleep(current_delay)
            current_delay *= retry_backoff


__all__ = [
    'ErrorCategory',
    'ErrorContext',
    'RecentErrors',
    'get_recent_errors',
    'handle_error',
    'log_filesystem_error',
    'retry_call',
]
