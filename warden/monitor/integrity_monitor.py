"""
Integrity Monitor - continuously re-verifies the Active generation.

Runs as an explicit scheduled task on a background thread. Each cycle:

    1. try the activation lock without blocking     busy -> DEFERRED
    2. verify_live(active), retrying transient reads
    3. deep_scan(active) when the deep-scan interval has elapsed
    4. valid   -> count a clean cycle (retention countdown)
       invalid -> roll back, record the failure, enter quarantine
       invalid while quarantined -> record only

The wait between cycles, the backoff sleep and the clock are injectable so
tests can drive cycles deterministically with run_cycle().
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..constants import Limits, Timeouts
from ..exceptions import (
    ActivationFailed,
    FailureReason,
    ManifestCorrupt,
    RollbackUnavailable,
    TransientIOError,
)
from ..generations.activator import ActivationSession, Activator
from ..generations.model import Generation
from ..integrity.verifier import BundleVerifier, VerificationResult
from ..ledger.event_ledger import EventKind, Ledger
from ..logging_config import get_logger
from ..utils.error_handling import ErrorCategory, get_recent_errors, handle_error, retry_call
from .quarantine import QuarantineStore

logger = get_logger(__name__)


class CycleOutcome(Enum):
    """Result of one monitor cycle."""
    CLEAN = "clean"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_UNAVAILABLE = "rollback_unavailable"
    QUARANTINED_FAILURE = "quarantined_failure"   # failure observed, no action taken
    DEFERRED = "deferred"                         # activation lock busy
    IDLE = "idle"                                 # nothing active yet
    ERROR = "error"


@dataclass
class CycleReport:
    """What one cycle saw and did."""
    outcome: CycleOutcome
    result: Optional[VerificationResult] = None
    version: Optional[str] = None
    deep_scan: bool = False
    retention_remaining: Optional[int] = None
    rolled_back_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome.value,
            'result': self.result.to_dict() if self.result else None,
            'version': self.version,
            'deep_scan': self.deep_scan,
            'retention_remaining': self.retention_remaining,
            'rolled_back_to': self.rolled_back_to,
        }


class IntegrityMonitor:
    """
    Runtime Integrity Monitor - watches the Active generation for tampering.

    Usage:
        monitor = IntegrityMonitor(activator, verifier, ledger, quarantine_store)
        monitor.start()
        ...
        monitor.stop()
    """

    def __init__(
        self,
        activator: Activator,
        verifier: BundleVerifier,
        ledger: Ledger,
        quarantine: QuarantineStore,
        interval: float = Timeouts.MONITOR_INTERVAL,
        deep_scan_interval: Optional[float] = Timeouts.DEEP_SCAN_INTERVAL,
        retry_attempts: int = Limits.TRANSIENT_RETRY_ATTEMPTS,
        retry_delay: float = Timeouts.TRANSIENT_RETRY_DELAY,
        retry_backoff: float = Timeouts.TRANSIENT_RETRY_BACKOFF,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
        wait: Optional[Callable[[float], bool]] = None,
        on_tampering: Optional[Callable[[CycleReport], None]] = None,
    ):
        """
        Args:
            interval: Seconds between cycles
            deep_scan_interval: Seconds between full-tree scans (None disables)
            retry_attempts: Total attempts for a read that fails transiently
            clock: Monotonic clock used to schedule deep scans
            sleep: Backoff sleep between retries
            wait: Called with the interval between cycles; returns True to stop.
                Defaults to waiting on the stop event.
            on_tampering: Callback after a failure has been handled
        """
        self.activator = activator
        self.verifier = verifier
        self.ledger = ledger
        self.quarantine = quarantine
        self.interval = interval
        self.deep_scan_interval = deep_scan_interval
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.on_tampering = on_tampering

        self._clock = clock
        self._sleep = sleep
        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self._cycle_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._running = False

        self._cycle_count = 0
        self._last_deep_scan: Optional[float] = None
        self._last_report: Optional[CycleReport] = None

        logger.info(
            f"IntegrityMonitor initialized (interval={interval}s, "
            f"deep_scan_interval={deep_scan_interval}s)"
        )

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the monitoring thread."""
        if self._running:
            return

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(
            target=self._monitor_loop, name='integrity-monitor', daemon=True,
        )
        self._thread.start()
        self.ledger.append(EventKind.MONITOR_STARTED, {
            'interval': self.interval,
            'deep_scan_interval': self.deep_scan_interval,
            'quarantined': self.quarantine.is_active(),
        })
        logger.info("IntegrityMonitor started")

    def stop(self, timeout: float = Timeouts.MONITOR_STOP) -> None:
        """
        Stop after the cycle in progress, if any, has finished.

        A cycle may be mid-rollback, so the wait has no upper bound; timeout
        only controls how often a warning is logged while waiting.
        """
        if not self._running:
            return
        self._stop_event.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            while thread.is_alive():
                logger.warning(
                    f"IntegrityMonitor cycle still running after {timeout}s; waiting for it"
                )
                thread.join(timeout=timeout)
        self._running = False
        self.ledger.append(EventKind.MONITOR_STOPPED, {'cycles': self._cycle_count})
        logger.info("IntegrityMonitor stopped")

    def request_stop(self) -> None:
        """Signal the loop to exit without waiting for it."""
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    def wait_until_stopped(self, timeout: Optional[float] = None) -> bool:
        return self._stop_event.wait(timeout)

    def _monitor_loop(self) -> None:
        """Background monitoring loop."""
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                handle_error(e, 'integrity_monitor_cycle', category=ErrorCategory.SECURITY)

            if self._wait(self.interval) or self._stop_event.is_set():
                break

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        """Run exactly one verification cycle."""
        with self._cycle_lock:
            with self.activator.try_session() as session:
                if session is None:
                    logger.debug("Activation in progress; monitor cycle deferred")
                    report = CycleReport(outcome=CycleOutcome.DEFERRED)
                else:
                    report = self._run_locked(session)

            self._cycle_count += 1
            self._last_report = report
            return report

    def _run_locked(self, session: ActivationSession) -> CycleReport:
        pointer = session.pointer()
        if pointer.current is None:
            return CycleReport(outcome=CycleOutcome.IDLE)

        try:
            active = session.active_generation()
        except ManifestCorrupt as e:
            result = VerificationResult.from_error(e, version=pointer.current)
            return self._handle_failure(session, pointer.current, result, deep=False)

        if active is None:
            result = VerificationResult.from_error(
                ManifestCorrupt(f"Active generation {pointer.current} has no record"),
                version=pointer.current,
            )
            return self._handle_failure(session, pointer.current, result, deep=False)

        result, deep = self._check(active)
        if not result.valid:
            return self._handle_failure(session, active.version, result, deep)

        remaining = session.record_clean_cycle()
        logger.verbose(f"Generation {active.version} verified ({result.checked} artifacts)")
        return CycleReport(
            outcome=CycleOutcome.CLEAN,
            result=result,
            version=active.version,
            deep_scan=deep,
            retention_remaining=remaining,
        )

    def _check(self, active: Generation):
        """verify_live plus a deep scan when due. Returns (result, deep)."""
        result = self._with_retries(self.verifier.verify_live, active, 'verify_live')
        if not result.valid or not self._deep_scan_due():
            return result, False

        scan = self._with_retries(self.verifier.deep_scan, active, 'deep_scan')
        self._last_deep_scan = self._clock()
        return scan, True

    def _with_retries(self, check, active: Generation, operation: str) -> VerificationResult:
        try:
            return retry_call(
                check, active,
                retry_count=self.retry_attempts - 1,
                retry_delay=self.retry_delay,
                retry_backoff=self.retry_backoff,
                retry_exceptions=(TransientIOError,),
                sleep=self._sleep,
                operation=operation,
            )
        except TransientIOError as e:
            # Persistent unreadability is indistinguishable from tampering
            logger.error(f"{operation} kept failing for {active.version}: {e.message}")
            return VerificationResult.from_error(e, version=active.version)

    def _deep_scan_due(self) -> bool:
        if self.deep_scan_interval is None:
            return False
        if self._last_deep_scan is None:
            return True
        return self._clock() - self._last_deep_scan >= self.deep_scan_interval

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _handle_failure(
        self,
        session: ActivationSession,
        version: str,
        result: VerificationResult,
        deep: bool,
    ) -> CycleReport:
        reason = result.reason.value if result.reason else FailureReason.HASH_MISMATCH.value
        details = {
            'version': version,
            'reason': reason,
            'path': result.path,
            'message': result.message,
            'deep_scan': deep,
        }

        if self.quarantine.is_active():
            self.ledger.append(EventKind.INTEGRITY_FAILURE, dict(details, action='none (quarantined)'))
            logger.security(
                f"Integrity failure on {version} while quarantined ({reason}: {result.path}); "
                "no automatic action"
            )
            report = CycleReport(
                outcome=CycleOutcome.QUARANTINED_FAILURE,
                result=result, version=version, deep_scan=deep,
            )
            self._notify(report)
            return report

        self.ledger.append(EventKind.INTEGRITY_FAILURE, dict(details, action='rollback'))
        logger.security(
            f"TAMPERING DETECTED in {version}: {reason} on {result.path}",
            extra={'version': version, 'path': result.path, 'reason': reason},
        )

        rolled_back_to = None
        outcome = CycleOutcome.ROLLBACK_UNAVAILABLE
        try:
            rollback = session.rollback(reason, path=result.path, detail=result.message)
            rolled_back_to = rollback.active
            outcome = CycleOutcome.ROLLED_BACK
        except RollbackUnavailable as e:
            logger.critical(
                f"Generation {version} failed verification and cannot be rolled back: {e.message}"
            )
        except ActivationFailed as e:
            handle_error(e, 'monitor_rollback', category=ErrorCategory.SECURITY)

        self.quarantine.enter(reason, path=result.path, version=version,
                              rolled_back_to=rolled_back_to)
        self.ledger.append(EventKind.QUARANTINE_ENTERED, {
            'version': version,
            'reason': reason,
            'path': result.path,
            'rolled_back_to': rolled_back_to,
        })

        report = CycleReport(
            outcome=outcome, result=result, version=version,
            deep_scan=deep, rolled_back_to=rolled_back_to,
        )
        self._notify(report)
        return report

    def _notify(self, report: CycleReport) -> None:
        if self.on_tampering is None:
            return
        try:
            self.on_tampering(report)
        except Exception as e:
            handle_error(e, 'on_tampering_callback', category=ErrorCategory.EXTERNAL)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Get monitor status."""
        return {
            'running': self._running,
            'cycle_count': self._cycle_count,
            'interval': self.interval,
            'deep_scan_interval': self.deep_scan_interval,
            'quarantine': self.quarantine.load().to_dict(),
            'last_cycle': self._last_report.to_dict() if self._last_report else None,
            'recent_errors': get_recent_errors().recent(5),
        }
