"""
Warden service - wires the components together behind one facade.

    bundle -> BundleVerifier -> StageManager -> Activator
                                                   ^
                   IntegrityMonitor ---------------+ (rollback)
                          |
                          v
                        Ledger  <- every transition

The CLI and the daemon entry point both go through Warden; nothing else
constructs the components directly.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import nacl.exceptions
import nacl.signing

from .auth import COMMAND_SCOPES, OperatorAuthorizer, Scope
from .config.settings import WardenConfig
from .constants import Limits, Paths
from .exceptions import (
    AuthorizationDenied,
    ConfigurationError,
    ManifestCorrupt,
    TransientIOError,
)
from .generations import (
    ActivationLock,
    ActivationOutcome,
    Activator,
    DeploymentSubstrate,
    DirectorySubstrate,
    Generation,
    GenerationRegistry,
    PointerStore,
    StageManager,
)
from .integrity import (
    Bundle,
    BundleVerifier,
    ContentHashBackend,
    Ed25519SignatureBackend,
    SignatureBackend,
    VerificationBackend,
    VerificationResult,
)
from .ledger import EventKind, Ledger, LedgerEntry, load_signing_key
from .logging_config import get_logger
from .monitor import IntegrityMonitor, QuarantineState, QuarantineStore
from .reload import ReloadNotifier, build_reload_notifier
from .utils.clock import utc_now
from .utils.error_handling import retry_call

logger = get_logger(__name__)


@dataclass
class UpdateReport:
    """Result of a full verify -> stage -> activate update."""
    verification: VerificationResult
    generation: Generation
    activation: ActivationOutcome

    def to_dict(self) -> Dict[str, Any]:
        return {
            'verification': self.verification.to_dict(),
            'generation': self.generation.to_dict(),
            'activation': self.activation.to_dict(),
        }


def load_signature_backend(config: WardenConfig) -> Optional[SignatureBackend]:
    """Trusted release key from config; None if none is configured."""
    if config.trusted_public_key:
        return Ed25519SignatureBackend.from_hex(config.trusted_public_key)
    if config.trusted_public_key_file:
        return Ed25519SignatureBackend.from_file(config.trusted_public_key_file)
    logger.warning("No trusted public key configured; every bundle will be rejected")
    return None


def build_ledger(config: WardenConfig, state_dir: Path,
                 clock: Callable[[], str] = utc_now) -> Ledger:
    signing_key = None
    verify_key = None
    if config.ledger.signing_key_file:
        signing_key = load_signing_key(config.ledger.signing_key_file)
    if config.ledger.verify_key:
        try:
            verify_key = nacl.signing.VerifyKey(bytes.fromhex(config.ledger.verify_key))
        except (ValueError, nacl.exceptions.CryptoError) as e:
            raise ConfigurationError(f"Invalid ledger verify key: {e}")
    return Ledger(
        state_dir / Paths.LEDGER_FILE,
        signing_key=signing_key,
        verify_key=verify_key,
        clock=clock,
    )


class Warden:
    """
    Facade over verification, staging, activation, monitoring and the ledger.

    Usage:
        warden = Warden.from_config(load_config('/etc/generation-warden/warden.yaml'))
        warden.update('/srv/incoming/1.1.0', token=token)
        warden.run_monitor()
    """

    def __init__(
        self,
        config: WardenConfig,
        signature_backend: Optional[SignatureBackend] = None,
        content_backend: Optional[ContentHashBackend] = None,
        substrate: Optional[DeploymentSubstrate] = None,
        reload_notifier: Optional[ReloadNotifier] = None,
        ledger_clock: Callable[[], str] = utc_now,
        monitor_clock: Callable[[], float] = time.monotonic,
        monitor_sleep: Callable[[float], Any] = time.sleep,
        monitor_wait: Optional[Callable[[float], bool]] = None,
        reconcile: bool = True,
    ):
        self.config = config
        # Created by the first write; read-only commands leave it alone
        self.state_dir = Path(config.state_dir)

        if signature_backend is None:
            signature_backend = load_signature_backend(config)
        backend = VerificationBackend(signature=signature_backend)
        if content_backend is not None:
            backend.content = content_backend
        self.verifier = BundleVerifier(backend)

        self.ledger = build_ledger(config, self.state_dir, clock=ledger_clock)
        self.registry = GenerationRegistry(self.state_dir)
        self.pointer_store = PointerStore(self.state_dir)
        self.substrate = substrate or DirectorySubstrate(
            self.registry.generations_dir,
            read_only=config.retention.read_only,
            remove_retired=config.retention.remove_retired,
        )
        self.reload_notifier = reload_notifier or build_reload_notifier(
            command=config.reload.command,
            pid_file=config.reload.pid_file,
            sig=config.reload.signal,
            timeout=config.reload.timeout,
        )

        # One lock: staging and activation exclude each other
        self.activation_lock = ActivationLock(self.state_dir / Paths.ACTIVATION_LOCK)
        self.stage_manager = StageManager(
            self.registry, self.substrate, self.ledger, self.verifier,
            lock=self.activation_lock,
        )
        self.activator = Activator(
            self.registry,
            self.pointer_store,
            self.substrate,
            self.ledger,
            self.verifier,
            lock=self.activation_lock,
            reload_notifier=self.reload_notifier,
            quarantine_cycles=config.retention.quarantine_cycles,
        )
        self.quarantine = QuarantineStore(self.state_dir)
        self.authorizer = OperatorAuthorizer({
            Scope.UPDATE: config.authorization.update_token_sha256,
            Scope.QUARANTINE: config.authorization.quarantine_token_sha256,
        })
        self.monitor = IntegrityMonitor(
            self.activator,
            self.verifier,
            self.ledger,
            self.quarantine,
            interval=config.monitor.interval,
            deep_scan_interval=config.monitor.deep_scan_interval,
            retry_attempts=config.monitor.retry_attempts,
            retry_delay=config.monitor.retry_delay,
            retry_backoff=config.monitor.retry_backoff,
            clock=monitor_clock,
            sleep=monitor_sleep,
            wait=monitor_wait,
        )
        self._sleep = monitor_sleep

        if reconcile:
            repaired = self.activator.reconcile()
            if repaired:
                logger.warning(f"Reconciled {repaired} generation record(s) with the pointer")

    @classmethod
    def from_config(cls, config: WardenConfig, **kwargs) -> 'Warden':
        return cls(config, **kwargs)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def _authorize(self, operation: str, token: Optional[str]) -> None:
        try:
            self.authorizer.authorize_command(operation, token)
        except AuthorizationDenied as e:
            self.ledger.append(EventKind.AUTHORIZATION_DENIED, {
                'operation': operation,
                'scope': COMMAND_SCOPES[operation].value,
                'error': e.message,
            })
            raise

    # ------------------------------------------------------------------
    # Update path
    # ------------------------------------------------------------------

    def verify_bundle(self, bundle_path) -> VerificationResult:
        """Verify a bundle and record the outcome in the ledger."""
        try:
            bundle = Bundle.open(bundle_path)
        except ManifestCorrupt as e:
            result = VerificationResult.from_error(e)
        else:
            result = self.verifier.verify(bundle)

        if result.valid:
            self.ledger.append(EventKind.VERIFIED, {
                'bundle': str(bundle_path),
                'version': result.version,
                'manifest_hash': result.manifest_hash,
                'artifacts': result.checked,
            })
        else:
            self.ledger.append(EventKind.VERIFICATION_FAILED, {
                'bundle': str(bundle_path),
                'version': result.version,
                'reason': result.reason.value,
                'path': result.path,
                'message': result.message,
            })
        return result

    def stage(self, bundle_path, token: Optional[str] = None) -> Generation:
        """Verify and stage without activating."""
        self._authorize('stage', token)
        result = self.verify_bundle(bundle_path)
        result.raise_for_failure()
        return self.stage_manager.stage(Bundle.open(bundle_path), result)

    def activate(self, version: str, token: Optional[str] = None) -> ActivationOutcome:
        self._authorize('activate', token)
        return self.activator.activate(version)

    def update(self, bundle_path, token: Optional[str] = None) -> UpdateReport:
        """
        verify -> stage -> activate, stopping at the first failing step.

        Raises:
            AuthorizationDenied, VerificationError, StageConflict,
            ActivationConflict, ActivationFailed
        """
        self._authorize('update', token)

        result = self.verify_bundle(bundle_path)
        result.raise_for_failure()

        generation = self.stage_manager.stage(Bundle.open(bundle_path), result)
        outcome = self.activator.activate(generation.version)
        logger.notice(f"Update to {generation.version} complete")
        return UpdateReport(verification=result, generation=generation, activation=outcome)

    def rollback(self, reason: str = 'operator request', token: Optional[str] = None) -> ActivationOutcome:
        self._authorize('rollback', token)
        return self.activator.rollback(reason)

    def recover(self, version: str, token: Optional[str] = None) -> ActivationOutcome:
        """Manually restore any retained generation."""
        self._authorize('recover', token)
        return self.activator.recover(version)

    # ------------------------------------------------------------------
    # Read-only checks
    # ------------------------------------------------------------------

    def verify(self, deep: bool = False) -> VerificationResult:
        """On-demand live check of the Active generation. No side effects."""
        pointer = self.pointer_store.load()
        if pointer.current is None:
            return VerificationResult(valid=True, message="No active generation")

        try:
            active = self.registry.load(pointer.current)
        except ManifestCorrupt as e:
            return VerificationResult.from_error(e, version=pointer.current)
        if active is None:
            return VerificationResult.from_error(
                ManifestCorrupt(f"Active generation {pointer.current} has no record"),
                version=pointer.current,
            )

        checks = [self.verifier.verify_live]
        if deep:
            checks.append(self.verifier.deep_scan)

        result = None
        for check in checks:
            try:
                result = retry_call(
                    check, active,
                    retry_count=self.config.monitor.retry_attempts - 1,
                    retry_delay=self.config.monitor.retry_delay,
                    retry_backoff=self.config.monitor.retry_backoff,
                    retry_exceptions=(TransientIOError,),
                    sleep=self._sleep,
                )
            except TransientIOError as e:
                return VerificationResult.from_error(e, version=active.version)
            if not result.valid:
                return result
        return result

    def verify_ledger(self) -> VerificationResult:
        return self.ledger.verify_chain()

    def ledger_entries(self, count: int = Limits.LEDGER_SHOW_DEFAULT,
                       kind: Optional[EventKind] = None) -> List[LedgerEntry]:
        if kind is not None:
            return self.ledger.entries_by_kind(kind, limit=count)
        return self.ledger.tail(count)

    def status(self) -> Dict[str, Any]:
        """Snapshot for `wardenctl status`."""
        pointer = self.pointer_store.load()
        ledger_check = self.ledger.verify_chain()

        generations = []
        for generation in self.registry.list():
            generations.append({
                'version': generation.version,
                'sequence': generation.sequence,
                'status': generation.status.value,
                'retained': generation.is_retained,
                'staged_at': generation.staged_at,
                'activated_at': generation.activated_at,
            })

        current_link = self.pointer_store.resolve_current()
        return {
            'active': pointer.current,
            'rollback_target': pointer.rollback_target,
            'retention_remaining': pointer.retention_remaining,
            'pointer_revision': pointer.revision,
            'pointer_updated_at': pointer.updated_at,
            'current_link': str(current_link) if current_link else None,
            'generations': generations,
            'quarantine': self.quarantine.load().to_dict(),
            'ledger': {
                'path': str(self.ledger.path),
                'entries': ledger_check.checked if ledger_check.valid else self.ledger.count(),
                'valid': ledger_check.valid,
                'signed': self.ledger.signed,
                'corrupt_index': ledger_check.index,
                'message': ledger_check.message,
            },
            'monitor': self.monitor.get_status(),
        }

    # ------------------------------------------------------------------
    # Quarantine
    # ------------------------------------------------------------------

    def clear_quarantine(self, operator: str, token: Optional[str] = None) -> QuarantineState:
        """Operator acknowledgment; re-arms automatic rollback."""
        self._authorize('quarantine_clear', token)

        before = self.quarantine.load()
        if not before.active:
            logger.info("Monitor is not quarantined; nothing to clear")
            return before

        state = self.quarantine.clear(operator)
        self.ledger.append(EventKind.QUARANTINE_CLEARED, {
            'operator': state.cleared_by,
            'entered_at': before.entered_at,
            'reason': before.reason,
            'path': before.path,
            'version': before.version,
        })
        logger.notice(f"Quarantine cleared by {state.cleared_by}")
        return state

    # ------------------------------------------------------------------
    # Daemon
    # ------------------------------------------------------------------

    def run_monitor(self, stop_after: Optional[float] = None) -> None:
        """
        Run the integrity monitor until stop_monitor() is called.

        A corrupt ledger is reported but does not stop the monitor from
        protecting the live generation.
        """
        chain = self.ledger.verify_chain()
        if not chain.valid:
            logger.security(f"LEDGER CORRUPT at entry {chain.index}: {chain.message}")

        self.monitor.start()
        try:
            self.monitor.wait_until_stopped(stop_after)
        finally:
            self.monitor.stop()

    def stop_monitor(self) -> None:
        """Ask run_monitor() to return; safe to call from a signal handler."""
        self.monitor.request_stop()


__all__ = [
    'UpdateReport',
    'Warden',
    'build_ledger',
    'load_signature_backend',
]
