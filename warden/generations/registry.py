"""
Generation registry - per-generation records and stored manifests.

    <state>/generations/<version>/generation.json     status record
    <state>/generations/<version>/manifest.json       authenticated manifest
    <state>/generations/<version>/manifest.json.sig   its signature, for forensics
    <state>/generations/<version>/tree/               artifacts

The pointer record is authoritative for which generation is Active and
which is the RollbackTarget; reconcile() brings the per-generation records
back in line with it after a crash.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import List, Optional

from ..constants import Paths
from ..exceptions import ManifestCorrupt
from ..integrity.manifest import Manifest
from ..utils.atomic import atomic_write_bytes, atomic_write_json
from ..utils.clock import utc_now
from .model import Generation, GenerationStatus

logger = logging.getLogger(__name__)


class GenerationRegistry:
    """Reads and writes generation records under the state directory."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.generations_dir = self.state_dir / Paths.GENERATIONS_DIR

    def _entries(self) -> List[Path]:
        # Nothing staged yet; the directory appears with the first stage
        if not self.generations_dir.is_dir():
            return []
        return list(self.generations_dir.iterdir())

    def generation_dir(self, version: str) -> Path:
        return self.generations_dir / version

    def tree_path(self, version: str) -> Path:
        return self.generation_dir(version) / Paths.GENERATION_TREE

    def _record_path(self, version: str) -> Path:
        return self.generation_dir(version) / Paths.GENERATION_RECORD

    def _manifest_path(self, version: str) -> Path:
        return self.generation_dir(version) / Paths.MANIFEST_FILE

    def exists(self, version: str) -> bool:
        return self._record_path(version).is_file()

    def load(self, version: Optional[str]) -> Optional[Generation]:
        """
        Load a generation with its manifest, or None if it was never staged.

        Raises:
            ManifestCorrupt: if the stored manifest no longer hashes to the
                value recorded at staging, or a record is unreadable
        """
        if not version:
            return None
        record_path = self._record_path(version)
        if not record_path.is_file():
            return None

        try:
            with open(record_path, 'r') as f:
                generation = Generation.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise ManifestCorrupt(f"Generation record for {version} is unreadable: {e}")

        try:
            raw = self._manifest_path(version).read_bytes()
        except OSError as e:
            raise ManifestCorrupt(f"Stored manifest for {version} is unreadable: {e}")

        if hashlib.sha256(raw).hexdigest() != generation.manifest_hash:
            raise ManifestCorrupt(
                f"Stored manifest for {version} does not match the manifest "
                f"authenticated at staging"
            )

        generation.manifest = Manifest.from_bytes(raw)
        # The location is derived, never trusted from the record
        generation.location = self.tree_path(version)
        return generation

    def list(self) -> List[Generation]:
        """All loadable generations ordered by staging sequence."""
        generations = []
        for entry in sorted(self._entries()):
            if not entry.is_dir() or entry.name.startswith('.'):
                continue
            try:
                generation = self.load(entry.name)
            except ManifestCorrupt as e:
                logger.error(f"Skipping generation {entry.name}: {e}")
                continue
            if generation is not None:
                generations.append(generation)
        generations.sort(key=lambda g: g.sequence)
        return generations

    def next_sequence(self) -> int:
        highest = 0
        for entry in self._entries():
            record_path = entry / Paths.GENERATION_RECORD
            if not record_path.is_file():
                continue
            try:
                with open(record_path, 'r') as f:
                    highest = max(highest, int(json.load(f).get('sequence', 0)))
            except (OSError, ValueError, TypeError):
                continue
        return highest + 1

    def save(self, generation: Generation) -> None:
        atomic_write_json(self._record_path(generation.version), generation.to_dict())

    def save_manifest(self, version: str, raw_manifest: bytes, raw_signature: Optional[bytes]) -> None:
        generation_dir = self.generation_dir(version)
        atomic_write_bytes(generation_dir / Paths.MANIFEST_FILE, raw_manifest)
        if raw_signature is not None:
            atomic_write_bytes(generation_dir / Paths.SIGNATURE_FILE, raw_signature)

    def set_status(
        self,
        generation: Generation,
        status: GenerationStatus,
        activated: bool = False,
    ) -> Generation:
        """Persist a status change on the given generation object."""
        now = utc_now()
        generation.status = status
        generation.status_changed_at = now
        if activated:
            generation.activated_at = now
        self.save(generation)
        logger.debug(f"Generation {generation.version} -> {status.value}")
        return generation
