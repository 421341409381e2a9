"""
Generation Warden - Core Components

Verifies signed release bundles, stages them as isolated generations,
activates them atomically and keeps watching the active generation,
rolling back on tampering. Every transition lands in a hash-chained ledger.
"""

__version__ = "1.0.0"

# Installs the WardenLogger class before any module logger is created
from .logging_config import setup_logging, get_logger

from .constants import (
    Timeouts,
    Limits,
    BufferSizes,
    Permissions,
    Paths,
    ExitCode,
)

from .exceptions import (
    FailureReason,
    WardenError,
    VerificationError,
    SignatureInvalid,
    HashMismatch,
    UnlistedArtifact,
    ManifestCorrupt,
    UnverifiedBundle,
    TransientIOError,
    ActivationConflict,
    ActivationFailed,
    RollbackUnavailable,
    LedgerCorrupt,
    StageConflict,
    AuthorizationDenied,
    ConfigurationError,
)

from .integrity import Bundle, BundleVerifier, Manifest, VerificationResult
from .generations import Activator, Generation, GenerationStatus, StageManager
from .ledger import EventKind, Ledger, LedgerEntry
from .monitor import IntegrityMonitor, CycleOutcome
from .config import WardenConfig, load_config
from .service import Warden, UpdateReport

__all__ = [
    '__version__',
    'setup_logging',
    'get_logger',
    'Timeouts',
    'Limits',
    'BufferSizes',
    'Permissions',
    'Paths',
    'ExitCode',
    'FailureReason',
    'WardenError',
    'VerificationError',
    'SignatureInvalid',
    'HashMismatch',
    'UnlistedArtifact',
    'ManifestCorrupt',
    'UnverifiedBundle',
    'TransientIOError',
    'ActivationConflict',
    'ActivationFailed',
    'RollbackUnavailable',
    'LedgerCorrupt',
    'StageConflict',
    'AuthorizationDenied',
    'ConfigurationError',
    'Bundle',
    'BundleVerifier',
    'Manifest',
    'VerificationResult',
    'Activator',
    'Generation',
    'GenerationStatus',
    'StageManager',
    'EventKind',
    'Ledger',
    'LedgerEntry',
    'IntegrityMonitor',
    'CycleOutcome',
    'WardenConfig',
    'load_config',
    'Warden',
    'UpdateReport',
]
