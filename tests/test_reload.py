"""
Tests for warden/reload.py - Service reload notification
"""

import os
import signal
import subprocess
from unittest.mock import patch

import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.exceptions import ConfigurationError
from warden.reload import (
    CommandReloadNotifier,
    NullReloadNotifier,
    SignalReloadNotifier,
    build_reload_notifier,
    parse_signal,
)


class TestCommandReloadNotifier:
    """Tests for CommandReloadNotifier."""

    @pytest.mark.unit
    def test_runs_command(self, temp_dir):
        marker = temp_dir / 'reloaded'
        notifier = CommandReloadNotifier(
            [sys.executable, '-c', f"open({str(marker)!r}, 'w').write('ok')"],
            background=False,
        )
        notifier.notify()
        assert marker.read_text() == 'ok'

    @pytest.mark.unit
    def test_background_join(self, temp_dir):
        marker = temp_dir / 'reloaded'
        notifier = CommandReloadNotifier(
            [sys.executable, '-c', f"open({str(marker)!r}, 'w').write('ok')"],
        )
        notifier.notify()
        notifier.join(30)
        assert marker.exists()

    @pytest.mark.unit
    def test_string_command_is_split(self):
        notifier = CommandReloadNotifier('systemctl reload "my service"')
        assert notifier.command == ['systemctl', 'reload', 'my service']

    @pytest.mark.unit
    def test_failures_are_logged_not_raised(self, temp_dir):
        CommandReloadNotifier([sys.executable, '-c', 'raise SystemExit(3)'], background=False).notify()
        CommandReloadNotifier([str(temp_dir / 'missing-binary')], background=False).notify()

    @pytest.mark.unit
    def test_timeout_is_contained(self):
        notifier = CommandReloadNotifier(['reload-app'], timeout=2.5, background=False)
        with patch('warden.reload.subprocess.run',
                   side_effect=subprocess.TimeoutExpired('reload-app', 2.5)) as run:
            notifier.notify()
        assert run.call_args.kwargs['timeout'] == 2.5
        assert run.call_args.args[0] == ['reload-app']

    @pytest.mark.unit
    def test_empty_command(self):
        with pytest.raises(ConfigurationError):
            CommandReloadNotifier('')


class TestSignalReloadNotifier:
    """Tests for SignalReloadNotifier."""

    @pytest.mark.unit
    def test_signals_pid_from_file(self, temp_dir):
        received = []
        previous = signal.signal(signal.SIGUSR1, lambda signum, frame: received.append(signum))
        try:
            pid_file = temp_dir / 'service.pid'
            pid_file.write_text(f"{os.getpid()}\n")
            SignalReloadNotifier(pid_file, 'USR1').notify()
        finally:
            signal.signal(signal.SIGUSR1, previous)
        assert received == [signal.SIGUSR1]

    @pytest.mark.security
    def test_refuses_init(self, temp_dir):
        pid_file = temp_dir / 'service.pid'
        pid_file.write_text('1')
        with patch('warden.reload.os.kill') as kill:
            SignalReloadNotifier(pid_file, 'TERM').notify()
        kill.assert_not_called()

    @pytest.mark.unit
    def test_dead_process_is_logged(self, temp_dir):
        pid_file = temp_dir / 'service.pid'
        pid_file.write_text('99999')
        with patch('warden.reload.os.kill', side_effect=ProcessLookupError) as kill:
            SignalReloadNotifier(pid_file).notify()
        kill.assert_called_once_with(99999, signal.SIGHUP)

    @pytest.mark.unit
    def test_missing_pid_file(self, temp_dir):
        SignalReloadNotifier(temp_dir / 'absent.pid').notify()


class TestBuild:
    """Tests for parse_signal and build_reload_notifier."""

    @pytest.mark.unit
    @pytest.mark.parametrize('value', ['HUP', 'sighup', 'SIGHUP', signal.SIGHUP, 1])
    def test_parse_signal(self, value):
        assert parse_signal(value) == signal.SIGHUP

    @pytest.mark.unit
    def test_unknown_signal(self):
        with pytest.raises(ConfigurationError):
            parse_signal('NOPE')

    @pytest.mark.unit
    def test_variant_selection(self, temp_dir):
        assert isinstance(build_reload_notifier(), NullReloadNotifier)
        assert isinstance(
            build_reload_notifier(pid_file=str(temp_dir / 'pid')), SignalReloadNotifier,
        )
        assert isinstance(
            build_reload_notifier(command='true', pid_file=str(temp_dir / 'pid')),
            CommandReloadNotifier,
        )
