"""
Centralized Constants Module for Generation Warden.

This module consolidates the magic values, thresholds, file names and exit
codes used throughout the warden so they stay consistent between the
verifier, the activator, the monitor and the CLI.

SECURITY: Intervals, retry bounds and file permissions are security
relevant. Too aggressive a retry budget hides real tampering; too loose a
permission lets the service rewrite its own artifacts.

Usage:
    from warden.constants import Timeouts, Permissions, Paths, ExitCode

    monitor = IntegrityMonitor(..., interval=Timeouts.MONITOR_INTERVAL)
    os.chmod(path, Permissions.SECURE_FILE)
"""

import os
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT VARIABLE OVERRIDE UTILITIES
# =============================================================================

T = TypeVar('T')

ENV_PREFIX = "WARDEN_"


def _env_override(
    env_var: str,
    default: T,
    converter: Callable[[str], T] = str,
    validator: Optional[Callable[[T], bool]] = None,
    min_value: Optional[T] = None,
    max_value: Optional[T] = None,
) -> T:
    """Get a configuration value with environment variable override.

    SECURITY: Allows runtime configuration of security-critical values while
    maintaining safe defaults. Out-of-range or unparsable values fall back to
    the default instead of weakening the monitor.

    Args:
        env_var: Environment variable name (will be prefixed with WARDEN_)
        default: Default value if env var not set
        converter: Function to convert string to target type
        validator: Optional validation function
        min_value: Optional minimum allowed value
        max_value: Optional maximum allowed value

    Returns:
        Configured value (from env var if valid, otherwise default)
    """
    full_env_var = f"{ENV_PREFIX}{env_var}"
    env_value = os.environ.get(full_env_var)

    if env_value is None:
        return default

    try:
        converted = converter(env_value)

        if min_value is not None and converted < min_value:
            logger.warning(
                f"SECURITY: {full_env_var}={env_value} below minimum {min_value}, using default"
            )
            return default
        if max_value is not None and converted > max_value:
            logger.warning(
                f"SECURITY: {full_env_var}={env_value} above maximum {max_value}, using default"
            )
            return default

        if validator is not None and not validator(converted):
            logger.warning(
                f"SECURITY: {full_env_var}={env_value} failed validation, using default"
            )
            return default

        logger.info(f"Using {full_env_var}={converted} (override)")
        return converted

    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid value for {full_env_var}: {e}, using default")
        return default


def _parse_bool(value: str) -> bool:
    """Parse a boolean environment value."""
    lowered = value.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# =============================================================================
# TIMEOUT CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Timeouts:
    """
    Centralized timeout and interval values in seconds.

    SECURITY: The monitor interval bounds how long tampering can go
    unnoticed. The retry budget bounds how long a flaky read can delay a
    rollback.
    """
    # Integrity monitor
    MONITOR_INTERVAL: float = 60.0          # Manifest-driven spot check
    DEEP_SCAN_INTERVAL: float = 3600.0      # Full-tree baseline scan
    TRANSIENT_RETRY_DELAY: float = 0.5      # First backoff delay
    TRANSIENT_RETRY_BACKOFF: float = 2.0    # Backoff multiplier

    # Thread join
    MONITOR_STOP: float = 30.0              # Wait for an in-flight cycle

    # Reload hook
    RELOAD_COMMAND: float = 10.0


@dataclass(frozen=True)
class Limits:
    """Bounded counts used by the monitor and the ledger."""
    TRANSIENT_RETRY_ATTEMPTS: int = 3       # Attempts before a read counts as failure
    QUARANTINE_CYCLES: int = 10             # Clean cycles before a rollback target retires
    LEDGER_SHOW_DEFAULT: int = 20


@dataclass(frozen=True)
class BufferSizes:
    """Buffer and chunk sizes in bytes."""
    FILE_CHUNK: int = 65536                 # Hashing read chunk (64KB)
    LEDGER_TAIL_CHUNK: int = 8192           # Backwards read when locating the ledger tail


@dataclass(frozen=True)
class Permissions:
    """
    File permission modes.

    SECURITY: Sealed generations are read-only for everyone; private keys and
    state records are owner-only.
    """
    SECURE_FILE: int = 0o600
    SECURE_DIR: int = 0o700
    STATE_FILE: int = 0o644
    READ_ONLY_FILE: int = 0o444
    READ_ONLY_DIR: int = 0o555
    WRITABLE_FILE: int = 0o644
    WRITABLE_DIR: int = 0o755


@dataclass(frozen=True)
class Paths:
    """Default locations and well-known file names."""
    DEFAULT_STATE_DIR: str = "/var/lib/generation-warden"
    DEFAULT_CONFIG: str = "/etc/generation-warden/warden.yaml"

    # Bundle layout
    MANIFEST_FILE: str = "manifest.json"
    SIGNATURE_FILE: str = "manifest.json.sig"

    # State directory layout
    GENERATIONS_DIR: str = "generations"
    GENERATION_TREE: str = "tree"
    GENERATION_RECORD: str = "generation.json"
    CURRENT_LINK: str = "current"
    POINTER_FILE: str = "pointer.json"
    LEDGER_FILE: str = "ledger.jsonl"
    QUARANTINE_FILE: str = "quarantine.json"
    ACTIVATION_LOCK: str = "activation.lock"


RESERVED_BUNDLE_NAMES = frozenset({Paths.MANIFEST_FILE, Paths.SIGNATURE_FILE})

GENESIS_HASH = "0" * 64

MANIFEST_FORMAT = "1.0"


class ExitCode(IntEnum):
    """Distinct CLI outcomes; automation branches on these."""
    SUCCESS = 0
    ERROR = 1
    VERIFICATION_FAILED = 2
    ACTIVATION_CONFLICT = 3
    ROLLBACK_UNAVAILABLE = 4
    LEDGER_CORRUPT = 5
    ACTIVATION_FAILED = 6
    AUTHORIZATION_DENIED = 7
    STAGE_CONFLICT = 8


# =============================================================================
# ENVIRONMENT-RESOLVED DEFAULTS
# =============================================================================

def default_state_dir() -> str:
    """State directory, honouring WARDEN_STATE_DIR."""
    return _env_override('STATE_DIR', Paths.DEFAULT_STATE_DIR)


def default_config_path() -> str:
    """Config file path, honouring WARDEN_CONFIG."""
    return _env_override('CONFIG', Paths.DEFAULT_CONFIG)
