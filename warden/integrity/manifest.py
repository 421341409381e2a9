"""
Manifest - authenticated mapping of artifact path to expected hash/size.

A manifest is produced and signed by the release pipeline (outside the
warden). The warden only parses and validates it:

    {
      "format": "1.0",
      "version": "1.1.0",
      "created_at": "...",
      "signer_id": "release-build",
      "artifacts": [
        {"path": "app.bin", "sha256": "<64 hex>", "size": 1234},
        ...
      ],
      "metadata": {}
    }

Security Properties:
- SHA-256 of each artifact plus its exact byte size
- The detached Ed25519 signature covers the raw manifest bytes
- Paths are relative and confined to the generation tree
- Artifact order is preserved; "first mismatch" is well defined
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..constants import MANIFEST_FORMAT, RESERVED_BUNDLE_NAMES
from ..exceptions import ManifestCorrupt

_SHA256_RE = re.compile(r'^[0-9a-f]{64}$')


@dataclass(frozen=True)
class ArtifactEntry:
    """Expected content of a single artifact."""
    path: str                    # Relative POSIX path inside the tree
    sha256: str                  # SHA-256 hash (lowercase hex)
    size: int                    # Size in bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'sha256': self.sha256,
            'size': self.size,
        }

    @classmethod
    def from_dict(cls, data: Any, position: int) -> 'ArtifactEntry':
        """Create from a manifest entry, validating every field."""
        if not isinstance(data, dict):
            raise ManifestCorrupt(f"Artifact entry {position} is not an object")

        path = data.get('path')
        sha256 = data.get('sha256')
        size = data.get('size')

        validate_artifact_path(path, position)

        if not isinstance(sha256, str) or not _SHA256_RE.match(sha256):
            raise ManifestCorrupt(
                f"Artifact {path!r} has an invalid sha256", path=path,
            )
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise ManifestCorrupt(
                f"Artifact {path!r} has an invalid size", path=path,
            )

        return cls(path=path, sha256=sha256, size=size)


def validate_artifact_path(path: Any, position: int = 0) -> str:
    """
    Check that a manifest path stays inside the generation tree.

    Raises:
        ManifestCorrupt: on absolute paths, '..' components, backslashes,
            empty components or reserved bundle file names.
    """
    if not isinstance(path, str) or not path:
        raise ManifestCorrupt(f"Artifact entry {position} has no path")
    if '\\' in path or '\x00' in path:
        raise ManifestCorrupt(f"Artifact path {path!r} contains illegal characters", path=path)

    pure = PurePosixPath(path)
    if pure.is_absolute():
        raise ManifestCorrupt(f"Artifact path {path!r} is absolute", path=path)
    parts = path.split('/')
    if any(part in ('', '.', '..') for part in parts):
        raise ManifestCorrupt(f"Artifact path {path!r} is not normalized", path=path)
    if path in RESERVED_BUNDLE_NAMES:
        raise ManifestCorrupt(f"Artifact path {path!r} is reserved", path=path)
    return path


@dataclass(frozen=True)
class Manifest:
    """Immutable, ordered manifest of a single bundle/generation."""
    version: str
    artifacts: Tuple[ArtifactEntry, ...]
    manifest_hash: str                      # SHA-256 of the raw manifest bytes
    format: str = MANIFEST_FORMAT
    created_at: Optional[str] = None
    signer_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __iter__(self) -> Iterator[ArtifactEntry]:
        return iter(self.artifacts)

    def __len__(self) -> int:
        return len(self.artifacts)

    @property
    def paths(self) -> List[str]:
        return [a.path for a in self.artifacts]

    def get(self, path: str) -> Optional[ArtifactEntry]:
        for artifact in self.artifacts:
            if artifact.path == path:
                return artifact
        return None

    @property
    def total_size(self) -> int:
        return sum(a.size for a in self.artifacts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'format': self.format,
            'version': self.version,
            'created_at': self.created_at,
            'signer_id': self.signer_id,
            'artifacts': [a.to_dict() for a in self.artifacts],
            'metadata': self.metadata,
        }

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'Manifest':
        """
        Parse and validate raw manifest bytes.

        Raises:
            ManifestCorrupt: if the manifest is malformed
        """
        try:
            data = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestCorrupt(f"Manifest is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise ManifestCorrupt("Manifest is not a JSON object")

        version = data.get('version')
        if not isinstance(version, str) or not version.strip():
            raise ManifestCorrupt("Manifest has no version")
        if '/' in version or version in ('.', '..') or version.startswith('.'):
            raise ManifestCorrupt(f"Manifest version {version!r} is not a valid identifier")

        fmt = data.get('format', MANIFEST_FORMAT)
        if fmt != MANIFEST_FORMAT:
            raise ManifestCorrupt(f"Unsupported manifest format {fmt!r}")

        raw_artifacts = data.get('artifacts')
        if not isinstance(raw_artifacts, list):
            raise ManifestCorrupt("Manifest artifacts must be a list")

        artifacts = []
        seen = set()
        for position, entry in enumerate(raw_artifacts):
            artifact = ArtifactEntry.from_dict(entry, position)
            if artifact.path in seen:
                raise ManifestCorrupt(
                    f"Artifact {artifact.path!r} listed twice", path=artifact.path,
                )
            seen.add(artifact.path)
            artifacts.append(artifact)

        metadata = data.get('metadata') or {}
        if not isinstance(metadata, dict):
            raise ManifestCorrupt("Manifest metadata must be an object")

        return cls(
            version=version,
            artifacts=tuple(artifacts),
            manifest_hash=hashlib.sha256(raw).hexdigest(),
            format=fmt,
            created_at=data.get('created_at'),
            signer_id=data.get('signer_id'),
            metadata=metadata,
        )
