"""
Error taxonomy for Generation Warden.

Every failure the warden can report maps to exactly one exception class,
one FailureReason and one CLI exit code, so a failing stage is never
reported as a generic error.
"""

from enum import Enum
from typing import Optional

from .constants import ExitCode


class FailureReason(Enum):
    """Machine-readable failure reasons, as recorded in the ledger."""
    SIGNATURE_INVALID = "SignatureInvalid"
    HASH_MISMATCH = "HashMismatch"
    UNLISTED_ARTIFACT = "UnlistedArtifact"
    MANIFEST_CORRUPT = "ManifestCorrupt"
    UNVERIFIED_BUNDLE = "UnverifiedBundle"
    ACTIVATION_CONFLICT = "ActivationConflict"
    ACTIVATION_FAILED = "ActivationFailed"
    ROLLBACK_UNAVAILABLE = "RollbackUnavailable"
    LEDGER_CORRUPT = "LedgerCorrupt"
    TRANSIENT_IO = "TransientIOError"
    STAGE_CONFLICT = "StageConflict"
    AUTHORIZATION_DENIED = "AuthorizationDenied"
    CONFIGURATION = "ConfigurationError"


class WardenError(Exception):
    """Base class for all warden failures."""

    reason: FailureReason = FailureReason.ACTIVATION_FAILED
    exit_code: ExitCode = ExitCode.ERROR

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.path = path
        self.index = index

    def to_dict(self):
        return {
            'reason': self.reason.value,
            'message': self.message,
            'path': self.path,
            'index': self.index,
        }


class VerificationError(WardenError):
    """A bundle or live generation failed verification."""
    exit_code = ExitCode.VERIFICATION_FAILED


class SignatureInvalid(VerificationError):
    reason = FailureReason.SIGNATURE_INVALID


class HashMismatch(VerificationError):
    reason = FailureReason.HASH_MISMATCH


class UnlistedArtifact(HashMismatch):
    """An artifact exists on disk that the manifest does not list."""
    reason = FailureReason.UNLISTED_ARTIFACT


class ManifestCorrupt(VerificationError):
    reason = FailureReason.MANIFEST_CORRUPT


class UnverifiedBundle(VerificationError):
    reason = FailureReason.UNVERIFIED_BUNDLE


class TransientIOError(VerificationError):
    """A read failed for a reason that may clear on retry."""
    reason = FailureReason.TRANSIENT_IO


class ActivationConflict(WardenError):
    """Another activation or rollback holds the activation lock."""
    reason = FailureReason.ACTIVATION_CONFLICT
    exit_code = ExitCode.ACTIVATION_CONFLICT


class ActivationFailed(WardenError):
    reason = FailureReason.ACTIVATION_FAILED
    exit_code = ExitCode.ACTIVATION_FAILED


class RollbackUnavailable(WardenError):
    reason = FailureReason.ROLLBACK_UNAVAILABLE
    exit_code = ExitCode.ROLLBACK_UNAVAILABLE


class LedgerCorrupt(WardenError):
    reason = FailureReason.LEDGER_CORRUPT
    exit_code = ExitCode.LEDGER_CORRUPT


class StageConflict(WardenError):
    """The version is in use and cannot be re-staged."""
    reason = FailureReason.STAGE_CONFLICT
    exit_code = ExitCode.STAGE_CONFLICT


class AuthorizationDenied(WardenError):
    reason = FailureReason.AUTHORIZATION_DENIED
    exit_code = ExitCode.AUTHORIZATION_DENIED


class ConfigurationError(WardenError):
    reason = FailureReason.CONFIGURATION
    exit_code = ExitCode.ERROR


_BY_REASON = {
    cls.reason: cls
    for cls in (
        SignatureInvalid, HashMismatch, UnlistedArtifact, ManifestCorrupt,
        UnverifiedBundle, TransientIOError, ActivationConflict,
        ActivationFailed, RollbackUnavailable, LedgerCorrupt, StageConflict,
        AuthorizationDenied, ConfigurationError,
    )
}


def exception_for(reason: FailureReason):
    """Map a FailureReason back to its exception class."""
    return _BY_REASON[reason]


__all__ = [
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
    'exception_for',
]
