"""
Generation Activator - atomic switch between generations.

Every transition that changes which generation serves goes through here and
holds the activation lock for its whole duration:

    activate(version)        Staged -> Active, old Active -> RollbackTarget
    rollback(reason, path)   Active -> Quarantined, RollbackTarget -> Active
    recover(version)         any retained generation -> Active
    record_clean_cycle()     retention countdown for the RollbackTarget
    retire_rollback_target() RollbackTarget -> Retired

The lock is non-blocking: an in-process threading.Lock plus an exclusive
flock on <state>/activation.lock so separate CLI invocations and the daemon
exclude each other. Contention is reported, never waited on.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..constants import Limits, Paths
from ..exceptions import (
    ActivationConflict,
    ActivationFailed,
    ManifestCorrupt,
    RollbackUnavailable,
    TransientIOError,
)
from ..integrity.verifier import BundleVerifier
from ..ledger.event_ledger import EventKind, Ledger
from ..logging_config import get_logger
from ..utils.error_handling import ErrorCategory, handle_error, log_filesystem_error
from .lock import ActivationLock
from .model import Generation, GenerationStatus
from .pointer import PointerRecord, PointerStore
from .registry import GenerationRegistry
from .substrate import DeploymentSubstrate

logger = get_logger(__name__)


@dataclass
class ActivationOutcome:
    """What an activator operation changed."""
    action: str                          # activated, rolled_back, recovered, retired, noop
    active: Optional[str]
    rollback_target: Optional[str]
    previous: Optional[str] = None
    retired: Optional[str] = None
    ledger_sequence: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'active': self.active,
            'rollback_target': self.rollback_target,
            'previous': self.previous,
            'retired': self.retired,
            'ledger_sequence': self.ledger_sequence,
        }


class ActivationSession:
    """
    Operations available while the activation lock is already held.

    Handed out by Activator.try_session() so the integrity monitor can
    verify and roll back under one lock acquisition.
    """

    def __init__(self, activator: 'Activator'):
        self._activator = activator

    def pointer(self) -> PointerRecord:
        return self._activator.pointer_store.load()

    def active_generation(self) -> Optional[Generation]:
        return self._activator.active_generation()

    def rollback(self, reason: str, path: Optional[str] = None,
                 detail: Optional[str] = None) -> ActivationOutcome:
        return self._activator._rollback_locked(reason, path, detail)

    def record_clean_cycle(self) -> Optional[int]:
        return self._activator._record_clean_cycle_locked()


class Activator:
    """
    Moves generations through Active / RollbackTarget / Quarantined / Retired.

    Usage:
        activator = Activator(registry, pointer_store, substrate, ledger, verifier)
        activator.activate('1.1.0')
        activator.rollback('HashMismatch', path='app.bin')
    """

    def __init__(
        self,
        registry: GenerationRegistry,
        pointer_store: PointerStore,
        substrate: DeploymentSubstrate,
        ledger: Ledger,
        verifier: BundleVerifier,
        lock: Optional[ActivationLock] = None,
        reload_notifier=None,
        quarantine_cycles: int = Limits.QUARANTINE_CYCLES,
    ):
        self.registry = registry
        self.pointer_store = pointer_store
        self.substrate = substrate
        self.ledger = ledger
        self.verifier = verifier
        self.lock = lock or ActivationLock(registry.state_dir / Paths.ACTIVATION_LOCK)
        self.reload_notifier = reload_notifier
        self.quarantine_cycles = quarantine_cycles

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self, operation: str, version: Optional[str] = None) -> Iterator[None]:
        if not self.lock.try_acquire():
            self.ledger.append(EventKind.ACTIVATION_REJECTED, {
                'operation': operation,
                'version': version,
                'reason': 'activation lock held',
            })
            raise ActivationConflict(
                f"Another activation is in progress; {operation} rejected"
            )
        try:
            yield
        finally:
            self.lock.release()

    @contextmanager
    def try_session(self) -> Iterator[Optional[ActivationSession]]:
        """Yield a session if the lock is free right now, else None."""
        if not self.lock.try_acquire():
            yield None
            return
        try:
            yield ActivationSession(self)
        finally:
            self.lock.release()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_generation(self) -> Optional[Generation]:
        return self.registry.load(self.pointer_store.load().current)

    def rollback_target(self) -> Optional[Generation]:
        return self.registry.load(self.pointer_store.load().rollback_target)

    # ------------------------------------------------------------------
    # Activate
    # ------------------------------------------------------------------

    def activate(self, version: str) -> ActivationOutcome:
        """
        Make a Staged generation Active.

        Raises:
            ActivationConflict: the activation lock is held
            ActivationFailed: unknown or non-Staged target, or the switch failed
            VerificationError: the staged tree no longer matches its manifest
        """
        with self._exclusive('activate', version):
            return self._activate_locked(version)

    def _activate_locked(self, version: str) -> ActivationOutcome:
        generation = self.registry.load(version)
        if generation is None:
            raise self._failed(f"Generation {version} was never staged", version)
        if generation.status != GenerationStatus.STAGED:
            raise self._failed(
                f"Generation {version} is {generation.status.value}, not Staged", version,
            )

        self._reverify(generation, 'activate')

        pointer = self.pointer_store.load()
        previous = self.registry.load(pointer.current)
        displaced = self.registry.load(pointer.rollback_target)

        try:
            self.registry.set_status(generation, GenerationStatus.ACTIVATING)
        except OSError as e:
            raise self._failed(f"Cannot mark {version} Activating: {e}", version)

        new_pointer = pointer.advance(
            current=version,
            rollback_target=previous.version if previous else None,
            retention_remaining=self.quarantine_cycles if previous else None,
        )
        try:
            self.pointer_store.commit(new_pointer, generation.location)
        except OSError as e:
            try:
                self.registry.set_status(generation, GenerationStatus.STAGED)
            except OSError as restore_error:
                log_filesystem_error(restore_error, 'restore_staged_status', version=version)
            raise self._failed(f"Atomic switch to {version} failed: {e}", version)

        self._settle('activate', version, self._promotion_steps(generation, previous))

        retired = None
        if displaced is not None and displaced.version not in (version, getattr(previous, 'version', None)):
            self._retire(displaced, 'displaced by activation')
            retired = displaced.version

        entry = self.ledger.append(EventKind.ACTIVATED, {
            'version': version,
            'sequence': generation.sequence,
            'manifest_hash': generation.manifest_hash,
            'previous': previous.version if previous else None,
            'rollback_target': new_pointer.rollback_target,
            'revision': new_pointer.revision,
        })
        logger.info(f"Activated generation {version} (previous: {previous.version if previous else None})")
        self._notify_reload()

        return ActivationOutcome(
            action='activated',
            active=version,
            rollback_target=new_pointer.rollback_target,
            previous=previous.version if previous else None,
            retired=retired,
            ledger_sequence=entry.sequence,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(self, reason: str, path: Optional[str] = None,
                 detail: Optional[str] = None) -> ActivationOutcome:
        """
        Swap back to the RollbackTarget and quarantine the failed generation.

        Raises:
            ActivationConflict: the activation lock is held
            RollbackUnavailable: no usable RollbackTarget
            ActivationFailed: the switch failed
        """
        with self._exclusive('rollback'):
            return self._rollback_locked(reason, path, detail)

    def _rollback_locked(self, reason: str, path: Optional[str],
                         detail: Optional[str]) -> ActivationOutcome:
        pointer = self.pointer_store.load()
        try:
            target = self.registry.load(pointer.rollback_target)
        except ManifestCorrupt as e:
            raise self._rollback_failed(
                f"Rollback target record is corrupt: {e.message}", reason, path, pointer.current,
            )
        if target is None or not target.location.is_dir():
            raise self._rollback_failed(
                "No rollback target is retained", reason, path, pointer.current,
            )

        try:
            check = self.verifier.verify_live(target)
        except TransientIOError as e:
            raise self._rollback_failed(
                f"Rollback target {target.version} could not be read: {e.message}",
                reason, path, pointer.current,
            )
        if not check.valid:
            raise self._rollback_failed(
                f"Rollback target {target.version} failed verification: {check.message}",
                reason, path, pointer.current,
            )

        try:
            failed = self.registry.load(pointer.current)
        except ManifestCorrupt as e:
            # The failing generation may be the one whose record was tampered
            logger.error(f"Cannot load failing generation {pointer.current}: {e.message}")
            failed = None

        new_pointer = pointer.advance(
            current=target.version,
            rollback_target=None,
            retention_remaining=None,
        )
        try:
            self.pointer_store.commit(new_pointer, target.location)
        except OSError as e:
            self.ledger.append(EventKind.ROLLBACK_FAILED, {
                'from': pointer.current, 'to': target.version,
                'reason': reason, 'path': path, 'error': str(e),
            })
            raise ActivationFailed(f"Atomic switch back to {target.version} failed: {e}")

        steps = [partial(self.registry.set_status, target, GenerationStatus.ACTIVE, activated=True)]
        if failed is not None:
            # Left exactly as found for forensics
            steps.append(partial(self.registry.set_status, failed, GenerationStatus.QUARANTINED))
        self._settle('rollback', target.version, steps)

        entry = self.ledger.append(EventKind.ROLLED_BACK, {
            'from': pointer.current,
            'to': target.version,
            'reason': reason,
            'path': path,
            'detail': detail,
            'revision': new_pointer.revision,
        })
        logger.security(
            f"Rolled back from {pointer.current} to {target.version} "
            f"({reason}{' on ' + path if path else ''})"
        )
        self._notify_reload()

        return ActivationOutcome(
            action='rolled_back',
            active=target.version,
            rollback_target=None,
            previous=pointer.current,
            ledger_sequence=entry.sequence,
        )

    def _rollback_failed(self, message: str, reason: str, path: Optional[str],
                         current: Optional[str]) -> RollbackUnavailable:
        self.ledger.append(EventKind.ROLLBACK_FAILED, {
            'from': current, 'reason': reason, 'path': path, 'error': message,
        })
        logger.critical(message)
        return RollbackUnavailable(message, path=path)

    # ------------------------------------------------------------------
    # Recover
    # ------------------------------------------------------------------

    def recover(self, version: str) -> ActivationOutcome:
        """
        Promote any retained generation, after re-verifying it in place.

        Raises:
            ActivationConflict: the activation lock is held
            RollbackUnavailable: target unknown, Retired or removed from disk
            VerificationError: target no longer matches its manifest
            ActivationFailed: the switch failed
        """
        with self._exclusive('recover', version):
            pointer = self.pointer_store.load()
            if pointer.current == version:
                logger.info(f"Generation {version} is already active")
                return ActivationOutcome(
                    action='noop', active=version,
                    rollback_target=pointer.rollback_target,
                )

            target = self.registry.load(version)
            if target is None or not target.is_retained:
                status = target.status.value if target else 'unknown'
                message = f"Generation {version} is not retained ({status})"
                self.ledger.append(EventKind.ROLLBACK_FAILED, {
                    'operation': 'recover', 'to': version, 'error': message,
                })
                raise RollbackUnavailable(message)

            self._reverify(target, 'recover')

            previous = self.registry.load(pointer.current)
            displaced = self.registry.load(pointer.rollback_target)
            new_pointer = pointer.advance(
                current=version,
                rollback_target=previous.version if previous else None,
                retention_remaining=self.quarantine_cycles if previous else None,
            )
            try:
                self.pointer_store.commit(new_pointer, target.location)
            except OSError as e:
                raise self._failed(f"Atomic switch to {version} failed: {e}", version)

            from_status = target.status.value
            self._settle('recover', version, self._promotion_steps(target, previous))

            retired = None
            if displaced is not None and displaced.version not in (version, getattr(previous, 'version', None)):
                self._retire(displaced, 'displaced by recover')
                retired = displaced.version

            entry = self.ledger.append(EventKind.RECOVERED, {
                'version': version,
                'from_status': from_status,
                'previous': previous.version if previous else None,
                'revision': new_pointer.revision,
            })
            logger.notice(f"Recovered generation {version} from {from_status}")
            self._notify_reload()

            return ActivationOutcome(
                action='recovered',
                active=version,
                rollback_target=new_pointer.rollback_target,
                previous=previous.version if previous else None,
                retired=retired,
                ledger_sequence=entry.sequence,
            )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def record_clean_cycle(self) -> Optional[int]:
        """Count one clean monitor cycle. Returns cycles left, or None."""
        with self._exclusive('record_clean_cycle'):
            return self._record_clean_cycle_locked()

    def _record_clean_cycle_locked(self) -> Optional[int]:
        pointer = self.pointer_store.load()
        if pointer.rollback_target is None or pointer.retention_remaining is None:
            return None

        remaining = pointer.retention_remaining - 1
        if remaining <= 0:
            self._retire_rollback_target_locked(pointer, 'retention window elapsed')
            return 0

        self.pointer_store.commit(pointer.advance(retention_remaining=remaining))
        return remaining

    def retire_rollback_target(self, reason: str = 'operator request') -> Optional[ActivationOutcome]:
        with self._exclusive('retire'):
            return self._retire_rollback_target_locked(self.pointer_store.load(), reason)

    def _retire_rollback_target_locked(self, pointer: PointerRecord,
                                       reason: str) -> Optional[ActivationOutcome]:
        if pointer.rollback_target is None:
            return None
        target = self.registry.load(pointer.rollback_target)
        self.pointer_store.commit(pointer.advance(rollback_target=None, retention_remaining=None))
        if target is not None:
            self._retire(target, reason)
        return ActivationOutcome(
            action='retired', active=pointer.current, rollback_target=None,
            retired=pointer.rollback_target,
        )

    def _promotion_steps(self, promoted: Generation,
                         previous: Optional[Generation]) -> List[Callable[[], Any]]:
        steps = [partial(self.registry.set_status, promoted, GenerationStatus.ACTIVE, activated=True)]
        if previous is not None:
            steps.append(partial(self.substrate.seal, previous.location))
            steps.append(partial(self.registry.set_status, previous, GenerationStatus.ROLLBACK_TARGET))
        return steps

    def _settle(self, operation: str, version: str, steps: List[Callable[[], Any]]) -> None:
        """
        Run the record updates that follow a committed pointer switch.

        The pointer is authoritative once committed, so a failed step is
        logged and left for reconcile(); the transition is still ledgered
        and the service still reloaded.
        """
        for step in steps:
            try:
                step()
            except OSError as e:
                log_filesystem_error(e, f"{operation}_records", version=version)

    def _retire(self, generation: Generation, reason: str) -> None:
        self._settle('retire', generation.version, [
            partial(self.registry.set_status, generation, GenerationStatus.RETIRED),
        ])
        try:
            self.substrate.retire(generation)
        except OSError as e:
            log_filesystem_error(e, 'retire_generation', version=generation.version)
        self.ledger.append(EventKind.RETIRED, {
            'version': generation.version,
            'reason': reason,
        })
        logger.info(f"Retired generation {generation.version}: {reason}")

    # ------------------------------------------------------------------
    # Startup reconciliation
    # ------------------------------------------------------------------

    def reconcile(self) -> int:
        """
        Bring generation records and the current symlink in line with the
        pointer record after an interrupted transition. Returns the number
        of records repaired; skipped if another process holds the lock.
        """
        with self.try_session() as session:
            if session is None:
                logger.info("Activation in progress elsewhere; skipping reconciliation")
                return 0

            pointer = self.pointer_store.load()
            repaired = 0
            for generation in self.registry.list():
                wanted = self._reconciled_status(generation, pointer)
                if wanted is None or wanted == generation.status:
                    continue
                logger.warning(
                    f"Reconciling {generation.version}: "
                    f"{generation.status.value} -> {wanted.value}"
                )
                if wanted == GenerationStatus.RETIRED:
                    self._retire(generation, 'reconciled after interruption')
                else:
                    self.registry.set_status(generation, wanted)
                repaired += 1

            current = self.registry.load(pointer.current)
            self.pointer_store.repair_link(current.location if current else None)
            return repaired

    @staticmethod
    def _reconciled_status(generation: Generation,
                           pointer: PointerRecord) -> Optional[GenerationStatus]:
        if generation.version == pointer.current:
            return GenerationStatus.ACTIVE
        if generation.version == pointer.rollback_target:
            return GenerationStatus.ROLLBACK_TARGET
        if generation.status == GenerationStatus.ACTIVATING:
            return GenerationStatus.STAGED
        if generation.status == GenerationStatus.ACTIVE:
            return GenerationStatus.QUARANTINED
        if generation.status == GenerationStatus.ROLLBACK_TARGET:
            return GenerationStatus.RETIRED
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reverify(self, generation: Generation, operation: str) -> None:
        result = self.verifier.verify_live(generation)
        if not result.valid:
            self.ledger.append(EventKind.VERIFICATION_FAILED, {
                'operation': operation,
                'version': generation.version,
                'reason': result.reason.value,
                'path': result.path,
                'message': result.message,
            })
            result.raise_for_failure()

    def _failed(self, message: str, version: Optional[str]) -> ActivationFailed:
        self.ledger.append(EventKind.ACTIVATION_FAILED, {
            'version': version,
            'error': message,
        })
        logger.error(message)
        return ActivationFailed(message)

    def _notify_reload(self) -> None:
        if self.reload_notifier is None:
            return
        try:
            self.reload_notifier.notify()
        except Exception as e:
            handle_error(e, 'reload_notification', category=ErrorCategory.EXTERNAL)
