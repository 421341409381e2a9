"""
Bundle - an externally produced, signed package of artifacts.

Layout:
    <bundle>/manifest.json        manifest (see manifest.py)
    <bundle>/manifest.json.sig    detached Ed25519 signature (raw or hex)
    <bundle>/<artifact paths>     the listed artifacts

Bundles are read-only input; nothing here writes into them.
"""

import binascii
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..constants import Paths
from ..exceptions import ManifestCorrupt

SIGNATURE_LENGTH = 64


def decode_signature(raw: bytes) -> Optional[bytes]:
    """
    Decode a detached signature file.

    Accepts the raw 64 signature bytes or their hex encoding (surrounding
    whitespace allowed). Returns None when the content is neither.
    """
    if len(raw) == SIGNATURE_LENGTH:
        return raw
    text = raw.strip()
    if len(text) == SIGNATURE_LENGTH * 2:
        try:
            return binascii.unhexlify(text)
        except (binascii.Error, ValueError):
            return None
    return None


@dataclass(frozen=True)
class Bundle:
    """A bundle directory on disk."""
    root: Path

    @classmethod
    def open(cls, path: Union[str, Path]) -> 'Bundle':
        root = Path(path)
        if not root.is_dir():
            raise ManifestCorrupt(f"Bundle directory not found: {root}")
        return cls(root=root)

    @property
    def manifest_path(self) -> Path:
        return self.root / Paths.MANIFEST_FILE

    @property
    def signature_path(self) -> Path:
        return self.root / Paths.SIGNATURE_FILE

    def read_manifest_bytes(self) -> bytes:
        try:
            return self.manifest_path.read_bytes()
        except FileNotFoundError:
            raise ManifestCorrupt(f"Bundle has no {Paths.MANIFEST_FILE}: {self.root}")
        except IsADirectoryError:
            raise ManifestCorrupt(f"{self.manifest_path} is not a file")

    def read_signature(self) -> Optional[bytes]:
        """Return the decoded signature, or None if absent or undecodable."""
        try:
            raw = self.signature_path.read_bytes()
        except (FileNotFoundError, IsADirectoryError):
            return None
        return decode_signature(raw)

    def artifact_path(self, relative: str) -> Path:
        """Resolve an artifact path, refusing anything outside the bundle."""
        candidate = self.root / relative
        root = self.root.resolve()
        resolved = candidate.resolve()
        if resolved != root and root not in resolved.parents:
            raise ManifestCorrupt(
                f"Artifact {relative!r} resolves outside the bundle", path=relative,
            )
        return candidate
