"""
Bundle Verifier - authenticity and content checks for bundles and live
generations.

Architecture:
    ┌─────────────────────────────────────────────────────────────────┐
    │                         VERIFICATION                            │
    ├─────────────────────────────────────────────────────────────────┤
    │                                                                 │
    │  verify(bundle)                                                 │
    │  ┌────────────────────────────────────────────────────────────┐│
    │  │ 1. Check detached signature over raw manifest bytes        ││
    │  │    (SignatureInvalid, before anything is parsed or hashed) ││
    │  │ 2. Parse + validate manifest          (ManifestCorrupt)    ││
    │  │ 3. Hash every listed artifact in order                     ││
    │  │    absent -> ManifestCorrupt, differs -> HashMismatch      ││
    │  └────────────────────────────────────────────────────────────┘│
    │                                                                 │
    │  verify_live(generation)                                        │
    │  ┌────────────────────────────────────────────────────────────┐│
    │  │ Re-hash the deployed tree against the manifest that was    ││
    │  │ authenticated at staging. Unreadable (not missing) files   ││
    │  │ raise TransientIOError so the monitor can retry.           ││
    │  └────────────────────────────────────────────────────────────┘│
    │                                                                 │
    │  deep_scan(generation)                                          │
    │  ┌────────────────────────────────────────────────────────────┐│
    │  │ Walk the whole tree; anything not listed is reported as    ││
    │  │ UnlistedArtifact. Manifest completeness is not assumed.    ││
    │  └────────────────────────────────────────────────────────────┘│
    └─────────────────────────────────────────────────────────────────┘

All three are pure checks: no ledger writes, no state changes.
"""

import errno
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TYPE_CHECKING

from ..exceptions import (
    FailureReason,
    HashMismatch,
    ManifestCorrupt,
    SignatureInvalid,
    TransientIOError,
    UnlistedArtifact,
    WardenError,
    exception_for,
)
from .backends import VerificationBackend
from .bundle import Bundle
from .manifest import Manifest

if TYPE_CHECKING:
    from ..generations.model import Generation

logger = logging.getLogger(__name__)

# errno values that indicate a missing or wrong-typed artifact rather than a
# read that may succeed later
_PERMANENT_ERRNOS = {errno.ENOENT, errno.ENOTDIR, errno.EISDIR, errno.ELOOP}


@dataclass
class VerificationResult:
    """Outcome of checking a bundle, a live generation or the ledger."""
    valid: bool
    reason: Optional[FailureReason] = None
    path: Optional[str] = None
    message: str = ""
    index: Optional[int] = None
    version: Optional[str] = None
    manifest_hash: Optional[str] = None
    checked: int = 0
    verified_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        compare=False,
    )
    duration_ms: float = field(default=0.0, compare=False)
    manifest: Optional[Manifest] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_error(cls, error: WardenError, **kwargs) -> 'VerificationResult':
        return cls(
            valid=False,
            reason=error.reason,
            path=error.path,
            index=error.index,
            message=error.message,
            **kwargs,
        )

    def to_error(self) -> Optional[WardenError]:
        """The taxonomy exception matching this failure, or None if valid."""
        if self.valid or self.reason is None:
            return None
        error_cls = exception_for(self.reason)
        return error_cls(self.message, path=self.path, index=self.index)

    def raise_for_failure(self) -> None:
        error = self.to_error()
        if error is not None:
            raise error

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'reason': self.reason.value if self.reason else None,
            'path': self.path,
            'message': self.message,
            'index': self.index,
            'version': self.version,
            'manifest_hash': self.manifest_hash,
            'checked': self.checked,
            'verified_at': self.verified_at,
            'duration_ms': self.duration_ms,
        }


class BundleVerifier:
    """
    Verifies bundles before staging and live generations afterwards.

    Usage:
        verifier = BundleVerifier(VerificationBackend(
            signature=Ed25519SignatureBackend.from_hex(trusted_key),
        ))
        result = verifier.verify(Bundle.open('/srv/incoming/1.1.0'))
        if not result.valid:
            # refuse to stage
    """

    def __init__(self, backend: VerificationBackend):
        self.backend = backend

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------

    def verify(self, bundle: Bundle) -> VerificationResult:
        """Check signature, manifest structure and every listed artifact."""
        start_time = time.monotonic()
        manifest: Optional[Manifest] = None
        checked = 0

        try:
            raw = bundle.read_manifest_bytes()
            self._check_signature(raw, bundle.read_signature())
            manifest = Manifest.from_bytes(raw)

            for artifact in manifest:
                path = bundle.artifact_path(artifact.path)
                try:
                    sha256, size = self.backend.content.digest(path)
                except OSError as e:
                    if e.errno in _PERMANENT_ERRNOS:
                        raise ManifestCorrupt(
                            f"Artifact {artifact.path!r} is listed but absent from the bundle",
                            path=artifact.path,
                        )
                    raise TransientIOError(
                        f"Cannot read {artifact.path!r}: {e}", path=artifact.path,
                    )
                checked += 1
                self._compare(artifact, sha256, size)

        except WardenError as e:
            result = VerificationResult.from_error(
                e,
                version=manifest.version if manifest else None,
                manifest_hash=manifest.manifest_hash if manifest else None,
                checked=checked,
                duration_ms=(time.monotonic() - start_time) * 1000,
            )
            logger.error(f"Bundle verification FAILED ({e.reason.value}): {e.message}")
            return result

        logger.info(
            f"Bundle {manifest.version} verified: {checked} artifacts OK "
            f"({(time.monotonic() - start_time) * 1000:.1f}ms)"
        )
        return VerificationResult(
            valid=True,
            version=manifest.version,
            manifest_hash=manifest.manifest_hash,
            checked=checked,
            duration_ms=(time.monotonic() - start_time) * 1000,
            manifest=manifest,
        )

    def _check_signature(self, raw: bytes, signature: Optional[bytes]) -> None:
        if signature is None:
            raise SignatureInvalid("Manifest signature is missing or undecodable")
        if self.backend.signature is None:
            logger.error("No trusted public key available for verification")
            raise SignatureInvalid("No trusted public key configured")
        if not self.backend.signature.verify(raw, signature):
            raise SignatureInvalid("Manifest signature does not match the trusted key")

    @staticmethod
    def _compare(artifact, sha256: str, size: int) -> None:
        if size != artifact.size or sha256 != artifact.sha256:
            raise HashMismatch(
                f"Hash mismatch for {artifact.path}: "
                f"expected {artifact.sha256[:16]}... ({artifact.size} bytes), "
                f"got {sha256[:16]}... ({size} bytes)",
                path=artifact.path,
            )

    # ------------------------------------------------------------------
    # Live generations
    # ------------------------------------------------------------------

    def verify_live(self, generation: 'Generation') -> VerificationResult:
        """
        Re-hash a deployed generation in place.

        Raises:
            TransientIOError: if an artifact exists but could not be read
        """
        start_time = time.monotonic()
        manifest = self._manifest_of(generation)
        root = Path(generation.location)
        checked = 0

        try:
            for artifact in manifest:
                try:
                    sha256, size = self.backend.content.digest(root / artifact.path)
                except OSError as e:
                    if e.errno in _PERMANENT_ERRNOS:
                        raise HashMismatch(
                            f"Artifact {artifact.path} is missing from the live tree",
                            path=artifact.path,
                        )
                    raise TransientIOError(
                        f"Cannot read {artifact.path}: {e}", path=artifact.path,
                    )
                checked += 1
                self._compare(artifact, sha256, size)

        except HashMismatch as e:
            logger.error(
                f"Live verification of {generation.version} FAILED: {e.message}"
            )
            return VerificationResult.from_error(
                e,
                version=generation.version,
                manifest_hash=manifest.manifest_hash,
                checked=checked,
                duration_ms=(time.monotonic() - start_time) * 1000,
            )

        logger.debug(
            f"Live generation {generation.version} verified: {checked} artifacts"
        )
        return VerificationResult(
            valid=True,
            version=generation.version,
            manifest_hash=manifest.manifest_hash,
            checked=checked,
            duration_ms=(time.monotonic() - start_time) * 1000,
        )

    def deep_scan(self, generation: 'Generation') -> VerificationResult:
        """Report the first artifact present on disk but not in the manifest."""
        start_time = time.monotonic()
        manifest = self._manifest_of(generation)
        listed = set(manifest.paths)

        try:
            present = self.backend.baseline.scan(Path(generation.location))
        except OSError as e:
            raise TransientIOError(f"Baseline scan of {generation.version} failed: {e}")

        for rel_path in present:
            if rel_path not in listed:
                error = UnlistedArtifact(
                    f"Unlisted artifact in {generation.version}: {rel_path}",
                    path=rel_path,
                )
                logger.error(error.message)
                return VerificationResult.from_error(
                    error,
                    version=generation.version,
                    manifest_hash=manifest.manifest_hash,
                    checked=len(present),
                    duration_ms=(time.monotonic() - start_time) * 1000,
                )

        return VerificationResult(
            valid=True,
            version=generation.version,
            manifest_hash=manifest.manifest_hash,
            checked=len(present),
            duration_ms=(time.monotonic() - start_time) * 1000,
        )

    @staticmethod
    def _manifest_of(generation: 'Generation') -> Manifest:
        if generation.manifest is None:
            raise ManifestCorrupt(
                f"Generation {generation.version} has no loaded manifest"
            )
        return generation.manifest
