"""
Tests for warden/monitor/ - Runtime integrity monitor and quarantine

Tests cover:
- Tampering with the active tree triggers exactly one rollback
- Quarantine suppresses further automatic action until cleared
- Transient read errors are retried with backoff before counting
- Deep scans on schedule
- Cycles defer while an activation holds the lock
- Retention countdown driven by clean cycles
- Stopping waits for the cycle in progress
"""

import errno
import os
import threading
from unittest.mock import MagicMock

import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.exceptions import ConfigurationError
from warden.generations import GenerationStatus
from warden.integrity.backends import Sha256ContentBackend
from warden.ledger.event_ledger import EventKind
from warden.monitor import CycleOutcome, QuarantineStore


V1 = {'app.bin': b'release 1.0.0 binary', 'lib/helper.so': b'helper 1.0.0'}
V2 = {'app.bin': b'release 1.1.0 binary', 'lib/helper.so': b'helper 1.1.0'}


class FlakyContentBackend(Sha256ContentBackend):
    """Raises EIO for the next `failures` digests once armed."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    def digest(self, path):
        if self.failures > 0:
            self.failures -= 1
            raise OSError(errno.EIO, 'Input/output error')
        return super().digest(path)


class GatedContentBackend(Sha256ContentBackend):
    """Blocks the first digest after arm() until the gate opens."""

    def __init__(self):
        super().__init__()
        self.armed = False
        self.entered = threading.Event()
        self.gate = threading.Event()

    def arm(self):
        self.armed = True

    def digest(self, path):
        if self.armed:
            self.armed = False
            self.entered.set()
            self.gate.wait(10)
        return super().digest(path)


@pytest.fixture
def deployed(warden, make_bundle):
    """1.0.0 as rollback target, 1.1.0 active."""
    warden.update(make_bundle('1.0.0', V1))
    warden.update(make_bundle('1.1.0', V2))
    return warden


def _active_tree(warden):
    return warden.registry.tree_path(warden.pointer_store.load().current)


class TestTamperingResponse:
    """Automatic rollback on a failed live check."""

    @pytest.mark.security
    def test_flipped_byte_rolls_back(self, deployed, tamper_file, read_tree):
        warden = deployed
        tamper_file(_active_tree(warden) / 'app.bin')

        report = warden.monitor.run_cycle()

        assert report.outcome == CycleOutcome.ROLLED_BACK
        assert report.version == '1.1.0'
        assert report.rolled_back_to == '1.0.0'
        assert warden.pointer_store.load().current == '1.0.0'
        assert read_tree(warden.pointer_store.current_link) == V1

        rolled_back = warden.ledger.entries_by_kind(EventKind.ROLLED_BACK)
        assert len(rolled_back) == 1
        assert rolled_back[0].payload['reason'] == 'HashMismatch'
        assert rolled_back[0].payload['path'] == 'app.bin'
        assert rolled_back[0].payload['from'] == '1.1.0'

        failure = warden.ledger.entries_by_kind(EventKind.INTEGRITY_FAILURE)[-1]
        assert failure.payload['action'] == 'rollback'
        assert warden.registry.load('1.1.0').status == GenerationStatus.QUARANTINED
        assert warden.ledger.verify_chain().valid

    @pytest.mark.security
    def test_quarantine_entered(self, deployed, tamper_file):
        warden = deployed
        tamper_file(_active_tree(warden) / 'lib' / 'helper.so')

        warden.monitor.run_cycle()

        state = warden.quarantine.load()
        assert state.active
        assert state.reason == 'HashMismatch'
        assert state.path == 'lib/helper.so'
        assert state.version == '1.1.0'
        assert state.rolled_back_to == '1.0.0'
        assert warden.ledger.entries_by_kind(EventKind.QUARANTINE_ENTERED)

    @pytest.mark.security
    def test_deleted_artifact_rolls_back(self, deployed):
        warden = deployed
        tree = _active_tree(warden)
        os.chmod(tree, 0o755)
        os.remove(tree / 'app.bin')

        report = warden.monitor.run_cycle()

        assert report.outcome == CycleOutcome.ROLLED_BACK
        assert report.result.path == 'app.bin'

    @pytest.mark.security
    def test_no_rollback_target(self, warden, make_bundle, tamper_file):
        """Without a target the failure is recorded and quarantine still entered."""
        warden.update(make_bundle('1.0.0', V1))
        tamper_file(_active_tree(warden) / 'app.bin')

        report = warden.monitor.run_cycle()

        assert report.outcome == CycleOutcome.ROLLBACK_UNAVAILABLE
        assert warden.pointer_store.load().current == '1.0.0'
        assert warden.quarantine.is_active()
        assert warden.ledger.entries_by_kind(EventKind.ROLLBACK_FAILED)
        assert warden.ledger.entries_by_kind(EventKind.ROLLED_BACK) == []

    @pytest.mark.security
    def test_corrupt_stored_manifest_counts_as_failure(self, deployed):
        warden = deployed
        manifest_path = warden.registry.generation_dir('1.1.0') / 'manifest.json'
        manifest_path.write_bytes(manifest_path.read_bytes() + b' ')

        report = warden.monitor.run_cycle()

        assert report.outcome == CycleOutcome.ROLLED_BACK
        assert report.result.reason.value == 'ManifestCorrupt'
        assert warden.pointer_store.load().current == '1.0.0'

    @pytest.mark.unit
    def test_on_tampering_callback(self, deployed, tamper_file):
        warden = deployed
        callback = MagicMock()
        warden.monitor.on_tampering = callback
        tamper_file(_active_tree(warden) / 'app.bin')

        warden.monitor.run_cycle()

        callback.assert_called_once()
        assert callback.call_args.args[0].outcome == CycleOutcome.ROLLED_BACK

    @pytest.mark.unit
    def test_failing_callback_is_contained(self, deployed, tamper_file):
        warden = deployed

        def explode(report):
            raise RuntimeError("pager down")

        warden.monitor.on_tampering = explode
        tamper_file(_active_tree(warden) / 'app.bin')

        assert warden.monitor.run_cycle().outcome == CycleOutcome.ROLLED_BACK
        recent = warden.monitor.get_status()['recent_errors']
        assert recent[-1]['operation'] == 'on_tampering_callback'
        assert recent[-1]['error_message'] == 'pager down'


class TestQuarantine:
    """While quarantined the monitor observes but does not act."""

    @pytest.mark.security
    def test_failure_while_quarantined_is_recorded_only(self, deployed, tamper_file):
        warden = deployed
        tamper_file(_active_tree(warden) / 'app.bin')
        warden.monitor.run_cycle()
        revision = warden.pointer_store.load().revision

        # Now the restored 1.0.0 is tampered too
        tamper_file(_active_tree(warden) / 'app.bin')
        report = warden.monitor.run_cycle()

        assert report.outcome == CycleOutcome.QUARANTINED_FAILURE
        assert warden.pointer_store.load().revision == revision
        assert warden.pointer_store.load().current == '1.0.0'
        assert len(warden.ledger.entries_by_kind(EventKind.ROLLED_BACK)) == 1
        failure = warden.ledger.entries_by_kind(EventKind.INTEGRITY_FAILURE)[-1]
        assert failure.payload['action'] == 'none (quarantined)'

    @pytest.mark.unit
    def test_clean_cycles_continue_while_quarantined(self, deployed, tamper_file):
        warden = deployed
        tamper_file(_active_tree(warden) / 'app.bin')
        warden.monitor.run_cycle()

        assert warden.monitor.run_cycle().outcome == CycleOutcome.CLEAN

    @pytest.mark.security
    def test_clear_rearms_rollback(self, deployed, make_bundle, tamper_file):
        warden = deployed
        tamper_file(_active_tree(warden) / 'app.bin')
        warden.monitor.run_cycle()

        state = warden.clear_quarantine('alice')
        assert not state.active
        assert state.cleared_by == 'alice'
        cleared = warden.ledger.entries_by_kind(EventKind.QUARANTINE_CLEARED)[-1]
        assert cleared.payload['operator'] == 'alice'
        assert cleared.payload['path'] == 'app.bin'

        warden.update(make_bundle('1.2.0', V2))
        tamper_file(_active_tree(warden) / 'app.bin')
        assert warden.monitor.run_cycle().outcome == CycleOutcome.ROLLED_BACK
        assert warden.pointer_store.load().current == '1.0.0'

    @pytest.mark.unit
    def test_clear_requires_operator(self, deployed, tamper_file):
        warden = deployed
        tamper_file(_active_tree(warden) / 'app.bin')
        warden.monitor.run_cycle()

        with pytest.raises(ConfigurationError):
            warden.clear_quarantine('  ')
        assert warden.quarantine.is_active()

    @pytest.mark.unit
    def test_clear_when_not_quarantined(self, warden):
        state = warden.clear_quarantine('alice')
        assert not state.active
        assert warden.ledger.entries_by_kind(EventKind.QUARANTINE_CLEARED) == []

    @pytest.mark.security
    def test_unreadable_state_counts_as_quarantined(self, state_dir):
        store = QuarantineStore(state_dir)
        state_dir.mkdir(parents=True, exist_ok=True)
        store.path.write_text('{not json')
        assert store.is_active()

    @pytest.mark.unit
    def test_quarantine_survives_restart(self, deployed, make_warden, tamper_file):
        tamper_file(_active_tree(deployed) / 'app.bin')
        deployed.monitor.run_cycle()

        assert make_warden().quarantine.is_active()


class TestTransientErrors:
    """Unreadable files are retried before they count as tampering."""

    @pytest.mark.unit
    def test_retry_then_clean(self, make_warden, make_bundle, sleeps):
        content = FlakyContentBackend()
        warden = make_warden(content_backend=content)
        warden.update(make_bundle('1.0.0', V1))

        content.failures = 2
        report = warden.monitor.run_cycle()

        assert report.outcome == CycleOutcome.CLEAN
        assert sleeps == [0.5, 1.0]
        assert warden.ledger.entries_by_kind(EventKind.INTEGRITY_FAILURE) == []

    @pytest.mark.security
    def test_persistent_failure_counts(self, make_warden, make_bundle, sleeps):
        content = FlakyContentBackend()
        warden = make_warden(content_backend=content)
        warden.update(make_bundle('1.0.0', V1))
        warden.update(make_bundle('1.1.0', V2))

        # Fail all three attempts on 1.1.0; rollback verification of 1.0.0 then reads normally
        content.failures = 3
        report = warden.monitor.run_cycle()

        assert report.outcome == CycleOutcome.ROLLED_BACK
        assert report.result.reason.value == 'TransientIOError'
        assert len(sleeps) == 2


class TestScheduling:
    """Deep scans, deferral and idle cycles."""

    @pytest.mark.unit
    def test_idle_without_active_generation(self, warden):
        assert warden.monitor.run_cycle().outcome == CycleOutcome.IDLE

    @pytest.mark.unit
    def test_deferred_while_activation_runs(self, deployed):
        warden = deployed
        with warden.activator.try_session():
            report = warden.monitor.run_cycle()
        assert report.outcome == CycleOutcome.DEFERRED

    @pytest.mark.unit
    def test_deep_scan_schedule(self, deployed, monotonic):
        warden = deployed

        assert warden.monitor.run_cycle().deep_scan is True
        assert warden.monitor.run_cycle().deep_scan is False

        monotonic.advance(3600)
        assert warden.monitor.run_cycle().deep_scan is True

    @pytest.mark.security
    def test_deep_scan_finds_unlisted_file(self, deployed):
        warden = deployed
        tree = _active_tree(warden)
        os.chmod(tree / 'lib', 0o755)
        (tree / 'lib' / 'inject.so').write_bytes(b'payload')

        report = warden.monitor.run_cycle()

        assert report.outcome == CycleOutcome.ROLLED_BACK
        assert report.result.reason.value == 'UnlistedArtifact'
        assert report.result.path == 'lib/inject.so'

    @pytest.mark.unit
    def test_unlisted_file_missed_between_deep_scans(self, deployed):
        """Spot checks only cover listed artifacts."""
        warden = deployed
        warden.monitor.run_cycle()
        tree = _active_tree(warden)
        os.chmod(tree, 0o755)
        (tree / 'extra').write_bytes(b'x')

        assert warden.monitor.run_cycle().outcome == CycleOutcome.CLEAN


class TestRetentionCycles:
    """Clean cycles retire the rollback target."""

    @pytest.mark.unit
    def test_target_retired_after_clean_cycles(self, deployed):
        warden = deployed
        remaining = [warden.monitor.run_cycle().retention_remaining for _ in range(3)]

        assert remaining == [2, 1, 0]
        assert warden.pointer_store.load().rollback_target is None
        assert warden.registry.load('1.0.0').status == GenerationStatus.RETIRED

    @pytest.mark.unit
    def test_failed_cycle_does_not_count(self, deployed, tamper_file):
        warden = deployed
        warden.monitor.run_cycle()
        tamper_file(_active_tree(warden) / 'app.bin')
        warden.monitor.run_cycle()

        # Rolled back: no target left to count down
        assert warden.pointer_store.load().retention_remaining is None
        assert warden.registry.load('1.0.0').status == GenerationStatus.ACTIVE


class TestMonitorThread:
    """Background thread lifecycle."""

    @pytest.mark.unit
    def test_start_and_stop(self, warden):
        warden.monitor.start()
        assert warden.monitor.is_running
        warden.monitor.stop(timeout=5)

        assert not warden.monitor.is_running
        kinds = [e.kind for e in warden.ledger.entries()]
        assert EventKind.MONITOR_STARTED in kinds
        assert kinds[-1] == EventKind.MONITOR_STOPPED

    @pytest.mark.unit
    def test_run_monitor_returns_after_stop_after(self, deployed):
        deployed.run_monitor(stop_after=0.05)
        assert not deployed.monitor.is_running
        assert deployed.ledger.entries()[-1].kind == EventKind.MONITOR_STOPPED

    @pytest.mark.unit
    def test_stop_monitor_from_another_thread(self, deployed):
        timer = threading.Timer(0.05, deployed.stop_monitor)
        timer.start()
        deployed.run_monitor(stop_after=10)
        timer.join()
        assert not deployed.monitor.is_running

    @pytest.mark.integration
    def test_stop_waits_for_rollback_in_progress(self, make_warden, make_bundle, tamper_file):
        """MonitorStopped is written only after the running cycle has finished."""
        gated = GatedContentBackend()
        warden = make_warden(content_backend=gated)
        warden.update(make_bundle('1.0.0', V1))
        warden.update(make_bundle('1.1.0', V2))
        tamper_file(_active_tree(warden) / 'app.bin')

        gated.arm()
        warden.monitor.start()
        assert gated.entered.wait(5)

        stopper = threading.Thread(target=warden.monitor.stop, kwargs={'timeout': 0.05})
        stopper.start()
        stopper.join(0.3)
        assert stopper.is_alive()
        assert warden.ledger.entries()[-1].kind != EventKind.MONITOR_STOPPED

        gated.gate.set()
        stopper.join(10)
        assert not stopper.is_alive()
        assert not warden.monitor.is_running

        kinds = [e.kind for e in warden.ledger.entries()]
        assert kinds[-1] == EventKind.MONITOR_STOPPED
        assert kinds.index(EventKind.ROLLED_BACK) < kinds.index(EventKind.MONITOR_STOPPED)
        assert warden.pointer_store.load().current == '1.0.0'

    @pytest.mark.unit
    def test_status(self, deployed):
        deployed.monitor.run_cycle()
        status = deployed.monitor.get_status()

        assert status['cycle_count'] == 1
        assert status['last_cycle']['outcome'] == 'clean'
        assert status['quarantine']['active'] is False
