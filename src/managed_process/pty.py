"""Terminal device helpers for the POSIX strategy.

Two terminal flavours can back a child's standard streams:

- tty mode hands the caller's controlling terminal (``/dev/tty``) to the
  child; the terminal owns all I/O and nothing is captured.
- pty mode allocates a fresh pseudo-terminal pair; the child sees a terminal
  on all three streams and the parent reads the merged output from the
  master side.
"""

import logging
import os
import sys

logger = logging.getLogger(__name__)

TTY_DEVICE = "/dev/tty"


class PtyNotAvailableError(Exception):
    """Raised when pseudo-terminals can not be allocated on this platform."""


class Pty:
    """A pseudo-terminal pair allocated with :func:`pty.openpty`."""

    def __init__(self) -> None:
        if sys.platform == "win32":
            msg = f"PTY not available on {sys.platform}"
            raise PtyNotAvailableError(msg)
        import pty  # noqa: PLC0415

        try:
            self.master_fd, self.slave_fd = pty.openpty()
        except OSError as e:
            msg = f"Unable to allocate a pseudo-terminal: {e}"
            raise PtyNotAvailableError(msg) from e
        self._slave_open = True

    @classmethod
    def is_available(cls) -> bool:
        """Check that a pseudo-terminal can actually be allocated."""
        try:
            probe = cls()
        except PtyNotAvailableError as e:
            logger.debug("PTY probe failed: %s", e)
            return False
        probe.close_slave()
        os.close(probe.master_fd)
        return True

    def master_dup(self) -> int:
        """Independent descriptor on the master side, closable on its own."""
        return os.dup(self.master_fd)

    def close_slave(self) -> None:
        """Close the parent's copy of the slave once the child holds it."""
        if self._slave_open:
            os.close(self.slave_fd)
            self._slave_open = False


def is_tty_available() -> bool:
    """Check that the controlling terminal is readable and writable."""
    if sys.platform == "win32":
        return False
    try:
        with open(TTY_DEVICE, "r+b", buffering=0):
            return True
    except OSError as e:
        logger.debug("TTY probe failed: %s", e)
        return False
