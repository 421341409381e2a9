"""
Reload notification - tells the served application that `current` moved.

The warden only knows how to poke the service; how the service reloads is
its own concern. Notification failures are logged and never undo an
activation or rollback.
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

from .constants import Timeouts
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class ReloadNotifier(ABC):
    """Collaborator invoked after every successful switch of `current`."""

    @abstractmethod
    def notify(self) -> None:
        ...


class NullReloadNotifier(ReloadNotifier):
    """Does nothing. The service is expected to follow the symlink itself."""

    def notify(self) -> None:
        logger.debug("No reload notifier configured")


class CommandReloadNotifier(ReloadNotifier):
    """
    Runs a configured command on a background thread.

    The command is not run through a shell. It gets `timeout` seconds
    before it is killed; its exit status is logged.
    """

    def __init__(
        self,
        command: Union[str, List[str]],
        timeout: float = Timeouts.RELOAD_COMMAND,
        background: bool = True,
    ):
        if isinstance(command, str):
            command = shlex.split(command)
        if not command:
            raise ConfigurationError("Reload command is empty")
        self.command = list(command)
        self.timeout = timeout
        self.background = background
        self._last_thread: Optional[threading.Thread] = None

    def notify(self) -> None:
        if not self.background:
            self._run()
            return
        thread = threading.Thread(target=self._run, name='reload-notifier', daemon=True)
        thread.start()
        self._last_thread = thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._last_thread is not None:
            self._last_thread.join(timeout)

    def _run(self) -> None:
        try:
            result = subprocess.run(
                self.command,
                check=False,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Reload command timed out after {self.timeout}s: {self.command[0]}")
            return
        except OSError as e:
            logger.error(f"Reload command could not be started: {e}")
            return

        if result.returncode != 0:
            logger.error(
                f"Reload command exited {result.returncode}: "
                f"{result.stderr.decode('utf-8', errors='replace').strip()[:200]}"
            )
        else:
            logger.info("Reload command completed")


class SignalReloadNotifier(ReloadNotifier):
    """Sends a signal (SIGHUP by default) to the pid in a pid file."""

    def __init__(self, pid_file: Union[str, Path], sig: Union[int, str] = signal.SIGHUP):
        self.pid_file = Path(pid_file)
        self.signal = parse_signal(sig)

    def notify(self) -> None:
        try:
            pid = int(self.pid_file.read_text().strip())
        except (OSError, ValueError) as e:
            logger.error(f"Cannot read service pid from {self.pid_file}: {e}")
            return
        if pid <= 1:
            logger.error(f"Refusing to signal pid {pid} from {self.pid_file}")
            return
        try:
            os.kill(pid, self.signal)
            logger.info(f"Sent {signal.Signals(self.signal).name} to pid {pid}")
        except OSError as e:
            logger.error(f"Cannot signal pid {pid}: {e}")


def parse_signal(sig: Union[int, str]) -> int:
    """Accept 'HUP', 'SIGHUP', 1 or signal.SIGHUP."""
    if isinstance(sig, int):
        return int(sig)
    name = sig.strip().upper()
    if not name.startswith('SIG'):
        name = 'SIG' + name
    try:
        return int(signal.Signals[name])
    except KeyError:
        raise ConfigurationError(f"Unknown signal: {sig}")


def build_reload_notifier(
    command: Optional[Union[str, List[str]]] = None,
    pid_file: Optional[str] = None,
    sig: Union[int, str] = 'HUP',
    timeout: float = Timeouts.RELOAD_COMMAND,
) -> ReloadNotifier:
    """Pick the notifier variant from configuration. Command wins over pid file."""
    if command:
        return CommandReloadNotifier(command, timeout=timeout)
    if pid_file:
        return SignalReloadNotifier(pid_file, sig)
    return NullReloadNotifier()
