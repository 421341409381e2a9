"""
Stage Manager - turns a verified bundle into a Staged generation.

Staging never touches the serving tree. It runs in two phases:

    1. Without any lock, the deployment substrate copies the listed
       artifacts into a private location and the copy is re-hashed against
       the authenticated manifest.
    2. Under the activation lock, the version's status is checked again,
       the copy is installed under its final name and the generation
       record is written.

Holding the activation lock in phase 2 means an activation of the same
version cannot land between the conflict check and the install.
"""

import hashlib
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

from ..constants import Paths
from ..exceptions import (
    ActivationConflict,
    StageConflict,
    UnverifiedBundle,
    VerificationError,
)
from ..integrity.bundle import Bundle
from ..integrity.manifest import Manifest
from ..integrity.verifier import BundleVerifier, VerificationResult
from ..ledger.event_ledger import EventKind, Ledger
from .lock import ActivationLock
from .model import Generation, GenerationStatus
from .registry import GenerationRegistry
from .substrate import DeploymentSubstrate

logger = logging.getLogger(__name__)

# A re-stage may replace these; anything else is serving or retained for
# forensics and must not be overwritten
REPLACEABLE_STATUSES = frozenset({GenerationStatus.STAGED, GenerationStatus.RETIRED})


class StageManager:
    """
    Materializes verified bundles as Staged generations.

    Usage:
        result = verifier.verify(bundle)
        generation = stage_manager.stage(bundle, result)
    """

    def __init__(
        self,
        registry: GenerationRegistry,
        substrate: DeploymentSubstrate,
        ledger: Ledger,
        verifier: BundleVerifier,
        lock: Optional[ActivationLock] = None,
    ):
        self.registry = registry
        self.substrate = substrate
        self.ledger = ledger
        self.verifier = verifier
        self.lock = lock or ActivationLock(registry.state_dir / Paths.ACTIVATION_LOCK)

    def stage(self, bundle: Bundle, verification: Optional[VerificationResult]) -> Generation:
        """
        Stage a bundle that passed verification.

        Raises:
            UnverifiedBundle: no valid verification for this bundle's manifest
            StageConflict: the version exists and is not Staged or Retired
            ActivationConflict: the activation lock is held
            VerificationError: the copied tree does not match the manifest
        """
        try:
            return self._stage(bundle, verification)
        except (UnverifiedBundle, StageConflict, ActivationConflict) as e:
            self.ledger.append(EventKind.STAGE_FAILED, {
                'bundle': str(bundle.root),
                'reason': e.reason.value,
                'error': e.message,
            })
            raise

    def _stage(self, bundle: Bundle, verification: Optional[VerificationResult]) -> Generation:
        if verification is None or not verification.valid or verification.manifest is None:
            raise UnverifiedBundle(f"Bundle {bundle.root} has no successful verification")

        manifest = verification.manifest
        raw_manifest = bundle.read_manifest_bytes()
        if hashlib.sha256(raw_manifest).hexdigest() != verification.manifest_hash:
            raise UnverifiedBundle(
                f"Manifest of {bundle.root} changed since it was verified"
            )

        version = manifest.version
        # Fail early; checked again under the lock
        self._check_replaceable(version)

        prepared = self._prepare(version, bundle, manifest)

        signature_path = bundle.signature_path
        raw_signature = signature_path.read_bytes() if signature_path.is_file() else None

        if not self.lock.try_acquire():
            self.substrate.discard(prepared.location)
            raise ActivationConflict(
                f"Another activation is in progress; staging {version} rejected"
            )
        try:
            try:
                existing = self._check_replaceable(version)
            except StageConflict:
                self.substrate.discard(prepared.location)
                raise

            try:
                location = self.substrate.install(version, prepared.location)
            except BaseException:
                self.substrate.discard(prepared.location)
                raise
            generation = replace(
                prepared,
                sequence=self.registry.next_sequence(),
                location=location,
            )
            self.registry.save_manifest(version, raw_manifest, raw_signature)
            self.registry.save(generation)
        finally:
            self.lock.release()

        self.ledger.append(EventKind.STAGED, {
            'version': version,
            'sequence': generation.sequence,
            'manifest_hash': manifest.manifest_hash,
            'artifacts': len(manifest),
            'replaced': existing.status.value if existing else None,
        })
        logger.info(
            f"Staged generation {version} (sequence {generation.sequence}) at {location}"
        )
        return generation

    def _check_replaceable(self, version: str) -> Optional[Generation]:
        existing = self.registry.load(version)
        if existing is not None and existing.status not in REPLACEABLE_STATUSES:
            raise StageConflict(
                f"Generation {version} is {existing.status.value} and cannot be re-staged"
            )
        return existing

    def _prepare(self, version: str, bundle: Bundle, manifest: Manifest) -> Generation:
        """Copy the bundle to a private location and re-hash the copy."""
        location = Path(self.substrate.materialize(version, bundle, manifest))
        candidate = Generation(
            version=version,
            sequence=0,
            manifest_hash=manifest.manifest_hash,
            location=location,
            status=GenerationStatus.STAGED,
            manifest=manifest,
        )

        # The bundle may have changed between verification and the copy
        try:
            check = self.verifier.verify_live(candidate)
        except VerificationError:
            self.substrate.discard(location)
            raise
        if not check.valid:
            self.substrate.discard(location)
            self.ledger.append(EventKind.VERIFICATION_FAILED, {
                'operation': 'stage',
                'version': version,
                'reason': check.reason.value,
                'path': check.path,
                'message': check.message,
            })
            check.raise_for_failure()
        return candidate
