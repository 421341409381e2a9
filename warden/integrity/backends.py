"""
Verification backends.

The verifier never talks to a crypto library or the filesystem walker
directly; it goes through three capabilities:

    SignatureBackend      - is this signature valid for these bytes?
    ContentHashBackend    - what is the (sha256, size) of this file?
    BaselineScanBackend   - which files exist under this tree?

Defaults are Ed25519 via PyNaCl, chunked SHA-256 and an os.walk scan.
Tests substitute fakes returning scripted results.
"""

import hashlib
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from ..constants import BufferSizes
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class SignatureBackend(ABC):
    """Checks detached signatures against trusted public-key material."""

    @abstractmethod
    def verify(self, message: bytes, signature: bytes) -> bool:
        """Return True only if signature is valid for message."""


class Ed25519SignatureBackend(SignatureBackend):
    """
    Ed25519 signature checks using PyNaCl.

    Usage:
        backend = Ed25519SignatureBackend.from_hex('ab12...')
        backend.verify(manifest_bytes, signature)
    """

    def __init__(self, public_key: bytes):
        try:
            self._verify_key = VerifyKey(public_key)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid Ed25519 public key: {e}")

    @classmethod
    def from_hex(cls, public_key_hex: str) -> 'Ed25519SignatureBackend':
        try:
            return cls(bytes.fromhex(public_key_hex.strip()))
        except ValueError as e:
            raise ConfigurationError(f"Public key is not valid hex: {e}")

    @classmethod
    def from_file(cls, key_path: Union[str, Path]) -> 'Ed25519SignatureBackend':
        """Load a public key file holding raw 32 bytes or hex text."""
        try:
            with open(key_path, 'rb') as f:
                key_data = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read public key {key_path}: {e}")
        if len(key_data) == 32:
            return cls(key_data)
        return cls.from_hex(key_data.decode('ascii', errors='replace'))

    @property
    def public_key_hex(self) -> str:
        return bytes(self._verify_key).hex()

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            self._verify_key.verify(message, signature)
            return True
        except BadSignatureError:
            logger.warning("Signature verification failed: bad signature")
            return False
        except (TypeError, ValueError) as e:
            logger.warning(f"Signature verification failed: {e}")
            return False


class ContentHashBackend(ABC):
    """Computes the content digest of a single file."""

    @abstractmethod
    def digest(self, path: Path) -> Tuple[str, int]:
        """
        Return (sha256 hex, size in bytes).

        OSErrors propagate unchanged; the verifier classifies them.
        """


class Sha256ContentBackend(ContentHashBackend):
    """Streaming SHA-256 in fixed-size chunks."""

    def __init__(self, chunk_size: int = BufferSizes.FILE_CHUNK):
        self.chunk_size = chunk_size

    def digest(self, path: Path) -> Tuple[str, int]:
        sha256 = hashlib.sha256()
        size = 0
        with open(path, 'rb') as f:
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    break
                sha256.update(chunk)
                size += len(chunk)
        return sha256.hexdigest(), size


class BaselineScanBackend(ABC):
    """Enumerates everything present under a deployed tree."""

    @abstractmethod
    def scan(self, root: Path) -> List[str]:
        """Return sorted relative POSIX paths of all non-directory entries."""


class FilesystemBaselineScanner(BaselineScanBackend):
    """os.walk based scan; symlinks are reported, never followed."""

    def scan(self, root: Path) -> List[str]:
        found = []
        for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
            base = Path(dirpath)
            for name in filenames:
                found.append((base / name).relative_to(root).as_posix())
            # Symlinked directories show up in dirnames and are not descended
            for name in dirnames:
                if (base / name).is_symlink():
                    found.append((base / name).relative_to(root).as_posix())
        found.sort()
        return found


@dataclass
class VerificationBackend:
    """The three verification capabilities the verifier depends on."""
    signature: Optional[SignatureBackend] = None
    content: ContentHashBackend = field(default_factory=Sha256ContentBackend)
    baseline: BaselineScanBackend = field(default_factory=FilesystemBaselineScanner)
