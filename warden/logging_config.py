"""
Logging Configuration for Generation Warden.

All warden modules log through get_logger(); the CLI calls
configure_from_environment() once at startup. Logs go to stderr (and
optionally a file) so command output on stdout stays parseable.

Levels beyond the standard ones:
    VERBOSE  (15) - per-artifact detail, shown with --verbose
    NOTICE   (25) - operator-relevant transitions (activation, update done)
    SECURITY (55) - tampering and ledger corruption; never filtered out

Usage:
    from warden.logging_config import get_logger

    logger = get_logger(__name__)
    logger.security("Tampering detected", extra={'version': '1.1.0', 'path': 'app.bin'})
"""

import os
import sys
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


VERBOSE = 15
NOTICE = 25
SECURITY = 55

logging.addLevelName(VERBOSE, 'VERBOSE')
logging.addLevelName(NOTICE, 'NOTICE')
logging.addLevelName(SECURITY, 'SECURITY')

# Record attributes callers attach with extra= and the formatter shows
CONTEXT_FIELDS = ('version', 'path', 'reason')

_setup_lock = threading.Lock()


class WardenFormatter(logging.Formatter):
    """Text (optionally colored) or JSON-lines output."""

    COLORS = {
        'VERBOSE': '\033[94m',    # Light blue
        'INFO': '\033[32m',       # Green
        'NOTICE': '\033[36m',     # Cyan
        'WARNING': '\033[33;1m',  # Bold yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[31;1m', # Bold red
        'SECURITY': '\033[35;1m', # Bold magenta
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = False, json_format: bool = False):
        super().__init__()
        self.use_colors = use_colors
        self.json_format = json_format

    @staticmethod
    def component(logger_name: str) -> str:
        """'warden.generations.activator' -> 'generations'."""
        parts = logger_name.split('.')
        if len(parts) > 1 and parts[0] == 'warden':
            return parts[1]
        return parts[0]

    @staticmethod
    def context(record: logging.LogRecord) -> dict:
        return {
            name: getattr(record, name)
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        }

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            data = {
                'timestamp': datetime.fromtimestamp(record.created).isoformat(),
                'level': record.levelname,
                'component': self.component(record.name),
                'message': record.getMessage(),
            }
            data.update(self.context(record))
            if record.exc_info:
                data['exception'] = self.formatException(record.exc_info)
            return json.dumps(data, default=str)

        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        level = f"{record.levelname:8}"
        if self.use_colors:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        line = f"{timestamp} {level} [{self.component(record.name)}] {record.getMessage()}"
        context = self.context(record)
        if context:
            line += " | " + ", ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class WardenLogger(logging.Logger):
    """Logger with verbose/notice/security helpers."""

    def verbose(self, msg: str, *args, **kwargs):
        if self.isEnabledFor(VERBOSE):
            self._log(VERBOSE, msg, args, **kwargs)

    def notice(self, msg: str, *args, **kwargs):
        if self.isEnabledFor(NOTICE):
            self._log(NOTICE, msg, args, **kwargs)

    def security(self, msg: str, *args, **kwargs):
        """Always logged, regardless of level."""
        self._log(SECURITY, msg, args, **kwargs)


logging.setLoggerClass(WardenLogger)


def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
) -> None:
    """
    Replace the root handlers with warden handlers.

    Args:
        verbose: Show VERBOSE records
        log_file: Also append to this file (never colored)
        console: Log to stderr
        json_format: One JSON object per line
    """
    level = VERBOSE if verbose else logging.INFO

    with _setup_lock:
        root = logging.getLogger()
        root.setLevel(level)
        for handler in root.handlers[:]:
            root.removeHandler(handler)

        if console:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(WardenFormatter(
                use_colors=not json_format and sys.stderr.isatty(),
                json_format=json_format,
            ))
            root.addHandler(handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_file)
            handler.setFormatter(WardenFormatter(json_format=json_format))
            root.addHandler(handler)


def get_logger(name: str) -> WardenLogger:
    """
    Get a warden logger.

    Loggers created before this module was imported are plain
    logging.Logger instances; those are not upgraded in place.
    """
    logger = logging.getLogger(name)
    if not isinstance(logger, WardenLogger):
        logging.setLoggerClass(WardenLogger)
        logger = logging.getLogger(name)
    return logger


def configure_from_environment(verbose: bool = False, json_format: bool = False,
                               log_file: Optional[str] = None) -> None:
    """Configure logging, letting WARDEN_* environment variables win."""
    truthy = ('1', 'true', 'yes')
    verbose = verbose or os.environ.get('WARDEN_VERBOSE', '').lower() in truthy
    json_format = json_format or os.environ.get('WARDEN_LOG_JSON', '').lower() in truthy
    log_file = os.environ.get('WARDEN_LOG_FILE') or log_file
    no_console = os.environ.get('WARDEN_LOG_NO_CONSOLE', '').lower() in truthy

    setup_logging(
        verbose=verbose,
        log_file=log_file,
        console=not no_console,
        json_format=json_format,
    )


__all__ = [
    'VERBOSE',
    'NOTICE',
    'SECURITY',
    'CONTEXT_FIELDS',
    'WardenFormatter',
    'WardenLogger',
    'setup_logging',
    'configure_from_environment',
    'get_logger',
]
