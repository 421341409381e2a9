"""
Integrity module for Generation Warden.

Manifest parsing, detached-signature checks and content hashing for
incoming bundles and for the live generation.

Features:
- Ed25519 signature check before anything touches disk
- Ordered per-artifact SHA-256 + size verification
- In-place re-verification of the deployed tree
- Deep baseline scan for artifacts the manifest does not list
"""

from .manifest import (
    ArtifactEntry,
    Manifest,
    validate_artifact_path,
)

from .bundle import Bundle, decode_signature

from .backends import (
    SignatureBackend,
    Ed25519SignatureBackend,
    ContentHashBackend,
    Sha256ContentBackend,
    BaselineScanBackend,
    FilesystemBaselineScanner,
    VerificationBackend,
)

from .verifier import (
    BundleVerifier,
    VerificationResult,
)

__all__ = [
    # Manifest
    'ArtifactEntry',
    'Manifest',
    'validate_artifact_path',
    'Bundle',
    'decode_signature',

    # Backends
    'SignatureBackend',
    'Ed25519SignatureBackend',
    'ContentHashBackend',
    'Sha256ContentBackend',
    'BaselineScanBackend',
    'FilesystemBaselineScanner',
    'VerificationBackend',

    # Verification
    'BundleVerifier',
    'VerificationResult',
]
