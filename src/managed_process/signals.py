"""Signal delivery to a tracked process id.

POSIX hosts deliver signals directly with ``os.kill``. In sigchild
compatibility mode the target is the real command behind a wrapper shell,
and delivery goes through the external ``kill`` utility, whose silence on
stderr means success. Windows has no signals to speak of: every request
becomes a forceful kill of the whole process tree.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import TYPE_CHECKING, Protocol

from managed_process.errors import SignalDeliveryError
from managed_process.process_utils import kill_process_tree

if TYPE_CHECKING:
    from managed_process.capabilities import PlatformCapabilities

logger = logging.getLogger(__name__)

SIGTERM = int(getattr(signal, "SIGTERM", 15))
SIGKILL = int(getattr(signal, "SIGKILL", 9))


class SignalDispatcher(Protocol):
    def send(self, pid: int, signum: int) -> None:
        """Deliver ``signum`` to ``pid``; raise SignalDeliveryError on failure."""
        ...


class DirectSignalDispatcher:
    """Deliver signals with ``os.kill``."""

    def send(self, pid: int, signum: int) -> None:
        try:
            os.kill(pid, signum)
        except OSError as e:
            msg = f"Error while sending signal `{signum}` to {pid}: {e}"
            raise SignalDeliveryError(msg) from e
        logger.debug("Sent signal %s to %s", signum, pid)


class KillCommandDispatcher:
    """Deliver signals by running ``kill -<signum> <pid>``."""

    def __init__(self, kill_command: str = "kill") -> None:
        self._kill_command = kill_command

    def send(self, pid: int, signum: int) -> None:
        try:
            result = subprocess.run(  # noqa: S603
                [self._kill_command, f"-{signum}", str(pid)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                check=False,
            )
        except OSError as e:
            msg = f"Error while sending signal `{signum}`: {e}"
            raise SignalDeliveryError(msg) from e
        if result.stderr:
            msg = f"Error while sending signal `{signum}`: {result.stderr.decode(errors='replace').strip()}"
            raise SignalDeliveryError(msg)
        logger.debug("Sent signal %s to %s through %s", signum, pid, self._kill_command)


class WindowsSignalDispatcher:
    """Forcefully kill the process tree whatever signal was asked for."""

    def __init__(self, timeout: float = 3.0) -> None:
        self._timeout = timeout

    def send(self, pid: int, signum: int) -> None:
        alive = kill_process_tree(pid, timeout=self._timeout)
        if alive:
            survivors = " ".join(str(proc.pid) for proc in alive)
            msg = f"Unable to kill the process tree of {pid} (still alive: {survivors})."
            raise SignalDeliveryError(msg)
        logger.debug("Killed process tree of %s (requested signal %s)", pid, signum)


def create_signal_dispatcher(capabilities: PlatformCapabilities, sigchild_compatibility: bool) -> SignalDispatcher:
    if capabilities.windows:
        return WindowsSignalDispatcher()
    if sigchild_compatibility:
        return KillCommandDispatcher()
    return DirectSignalDispatcher()
