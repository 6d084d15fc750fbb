"""Process status snapshots and the OS-level status poller."""

from __future__ import annotations

import dataclasses
import logging
import os
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

UNKNOWN_EXIT_CODE = -1


@dataclass
class ProcessInformation:
    """Live view of a child as the OS (or the side channel) reports it."""

    pid: int
    running: bool = True
    signaled: bool = False
    stopped: bool = False
    exitcode: int = UNKNOWN_EXIT_CODE
    termsig: int = 0
    stopsig: int = 0

    def merged_with(self, fallback: FallbackStatus) -> ProcessInformation:
        return dataclasses.replace(self, **fallback.overrides())


@dataclass
class FallbackStatus:
    """Side-channel and signal-derived fields that override the OS view.

    Only meaningful in sigchild compatibility mode, where the OS reports on a
    wrapper shell rather than on the real command.
    """

    pid: int | None = None
    exitcode: int | None = None
    signaled: bool | None = None
    termsig: int | None = None

    def overrides(self) -> dict[str, int | bool]:
        return {key: value for key, value in dataclasses.asdict(self).items() if value is not None}

    def __bool__(self) -> bool:
        return bool(self.overrides())


@dataclass(frozen=True)
class ExitStatus:
    """Final status, fixed once the process is terminated."""

    exit_code: int
    signaled: bool
    term_signal: int
    stopped: bool
    stop_signal: int

    @classmethod
    def from_information(cls, exit_code: int, info: ProcessInformation) -> ExitStatus:
        return cls(
            exit_code=exit_code,
            signaled=info.signaled,
            term_signal=info.termsig,
            stopped=info.stopped,
            stop_signal=info.stopsig,
        )


class StatusPoller:
    """Query a child's status without reaping it twice.

    On POSIX the child is reaped with ``os.waitpid`` so stop signals are
    visible too; ``popen.returncode`` is kept in sync so ``subprocess`` never
    waits on it again. Windows falls back to ``Popen.poll``.
    """

    def __init__(self, popen: subprocess.Popen[bytes], windows: bool) -> None:
        self._popen = popen
        self._windows = windows
        self._info = ProcessInformation(pid=popen.pid)

    def poll(self) -> ProcessInformation:
        if self._info.running:
            if self._windows:
                self._apply_returncode(self._popen.poll(), exited=False)
            else:
                self._waitpid(os.WNOHANG | os.WUNTRACED)
        return dataclasses.replace(self._info)

    def reap(self) -> ProcessInformation:
        """Block until the child is gone."""
        if self._windows:
            self._apply_returncode(self._popen.wait(), exited=True)
        else:
            while self._info.running:
                self._waitpid(0)
        return dataclasses.replace(self._info)

    def _waitpid(self, options: int) -> None:
        try:
            pid, status = os.waitpid(self._popen.pid, options)
        except ChildProcessError:
            logger.debug("Process %s was reaped elsewhere", self._popen.pid)
            self._apply_returncode(self._popen.returncode, exited=True)
            return
        if pid == 0:
            return

        if os.WIFSTOPPED(status):
            self._info.stopped = True
            self._info.stopsig = os.WSTOPSIG(status)
        elif os.WIFSIGNALED(status):
            self._info.running = False
            self._info.signaled = True
            self._info.termsig = os.WTERMSIG(status)
            self._popen.returncode = -self._info.termsig
        elif os.WIFEXITED(status):
            self._info.running = False
            self._info.exitcode = os.WEXITSTATUS(status)
            self._popen.returncode = self._info.exitcode

    def _apply_returncode(self, returncode: int | None, exited: bool) -> None:
        if returncode is None:
            if exited:
                self._info.running = False
            return
        self._info.running = False
        if returncode < 0 and not self._windows:
            self._info.signaled = True
            self._info.termsig = -returncode
        else:
            self._info.exitcode = returncode
