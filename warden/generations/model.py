"""
Generation model.

A generation is one staged-or-activated snapshot of the artifact tree,
keyed by its version string. Status transitions:

    Staged -> Activating -> Active -> RollbackTarget -> Retired
                              |             |
                              |             +--(rollback)--> Active
                              +--(rolled back)--> Quarantined
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from ..integrity.manifest import Manifest
from ..utils.clock import utc_now


class GenerationStatus(Enum):
    """Lifecycle status of a generation."""
    STAGED = "Staged"
    ACTIVATING = "Activating"
    ACTIVE = "Active"
    ROLLBACK_TARGET = "RollbackTarget"
    QUARANTINED = "Quarantined"
    RETIRED = "Retired"


# Statuses whose files are still kept and may be promoted by recover
RETAINED_STATUSES = frozenset({
    GenerationStatus.STAGED,
    GenerationStatus.ROLLBACK_TARGET,
    GenerationStatus.QUARANTINED,
})


@dataclass
class Generation:
    """A single generation and where it lives on disk."""
    version: str
    sequence: int                          # Monotonic, assigned at staging
    manifest_hash: str                     # SHA-256 of the authenticated manifest bytes
    location: Path                         # Artifact tree
    status: GenerationStatus = GenerationStatus.STAGED
    staged_at: str = field(default_factory=utc_now)
    activated_at: Optional[str] = None
    status_changed_at: Optional[str] = None
    manifest: Optional[Manifest] = field(default=None, repr=False, compare=False)

    @property
    def is_retained(self) -> bool:
        """True if the files are still on disk and the status allows promotion."""
        return self.status in RETAINED_STATUSES and self.location.is_dir()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'sequence': self.sequence,
            'manifest_hash': self.manifest_hash,
            'location': str(self.location),
            'status': self.status.value,
            'staged_at': self.staged_at,
            'activated_at': self.activated_at,
            'status_changed_at': self.status_changed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Generation':
        return cls(
            version=data['version'],
            sequence=int(data['sequence']),
            manifest_hash=data['manifest_hash'],
            location=Path(data['location']),
            status=GenerationStatus(data['status']),
            staged_at=data.get('staged_at') or utc_now(),
            activated_at=data.get('activated_at'),
            status_changed_at=data.get('status_changed_at'),
        )
