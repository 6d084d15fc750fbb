"""Observers notified of every chunk of child output."""

from __future__ import annotations

import sys
from collections.abc import Callable
from typing import BinaryIO, Protocol

OUT = "out"
ERR = "err"


class OutputSink(Protocol):
    """Receives ``(stream, data)`` where stream is ``OUT`` or ``ERR``."""

    def __call__(self, stream: str, data: bytes) -> None: ...


OutputCallback = Callable[[str, bytes], None]


class NullOutputSink:
    """Null object implementation of OutputSink that discards all output."""

    def __call__(self, stream: str, data: bytes) -> None:
        """Discard the chunk without doing anything."""


class EchoOutputSink:
    """Mirror child output to this process's stdout/stderr as it arrives."""

    def __init__(self, stdout: BinaryIO | None = None, stderr: BinaryIO | None = None) -> None:
        self._targets = {
            OUT: stdout if stdout is not None else sys.stdout.buffer,
            ERR: stderr if stderr is not None else sys.stderr.buffer,
        }

    def __call__(self, stream: str, data: bytes) -> None:
        target = self._targets[stream]
        target.write(data)
        target.flush()


def normalize_callback(callback: bool | OutputCallback | None) -> OutputCallback | None:
    """Turn the user's callback argument into a sink.

    True echoes to the console, False and None mean no user sink.
    """
    if callback is None or callback is False:
        return None
    if callback is True:
        return EchoOutputSink()
    if callable(callback):
        return callback

    error_msg = f"callback must be bool or callable, got {type(callback).__name__}"
    raise TypeError(error_msg)
