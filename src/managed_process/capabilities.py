"""Platform capability descriptor, probed once and passed around explicitly."""

from __future__ import annotations

import functools
import sys
from dataclasses import dataclass

from managed_process.pty import Pty, is_tty_available


@dataclass(frozen=True)
class PlatformCapabilities:
    """What the host can do for process supervision.

    ``windows`` selects the file-tailing pipe strategy and tree-kill signal
    delivery. ``pty_supported`` and ``tty_supported`` gate the terminal modes.
    """

    windows: bool
    pty_supported: bool
    tty_supported: bool

    @classmethod
    def probe(cls) -> PlatformCapabilities:
        windows = sys.platform == "win32"
        return cls(
            windows=windows,
            pty_supported=not windows and Pty.is_available(),
            tty_supported=not windows and is_tty_available(),
        )


@functools.lru_cache(maxsize=1)
def detect_capabilities() -> PlatformCapabilities:
    """Probe the current host once; later calls return the same immutable value."""
    return PlatformCapabilities.probe()
