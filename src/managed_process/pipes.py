"""Pipe multiplexing capability shared by the platform strategies.

A strategy owns the parent-side ends of a child's standard streams and
performs one non-blocking I/O pass per ``read_and_write()`` call. Pending
input is always pushed before output is drained: a child blocked on a full
stdout pipe while we block on a full stdin pipe would otherwise deadlock.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import IO, Any

from managed_process.launch_spec import InputSource

logger = logging.getLogger(__name__)

STDIN = 0
STDOUT = 1
STDERR = 2
SIDE_CHANNEL = 3

CHUNK_SIZE = 16384
TIMEOUT_PRECISION = 0.2


class DescriptorKind(enum.Enum):
    PIPE = "pipe"
    DEVICE = "device"
    PTY = "pty"


@dataclass(frozen=True)
class Descriptor:
    """How one child stream is wired: an anonymous pipe, a device file, or a pty."""

    kind: DescriptorKind
    path: str | None = None
    mode: str = "rb"


PIPE = Descriptor(DescriptorKind.PIPE)
PTY = Descriptor(DescriptorKind.PTY)


@dataclass(frozen=True)
class DescriptorPlan:
    stdin: Descriptor
    stdout: Descriptor
    stderr: Descriptor


class AbstractPipes(ABC):
    """Base class for the POSIX and Windows strategies.

    ``pipes`` maps stream numbers (``STDIN``, ``STDOUT``, ``STDERR``,
    ``SIDE_CHANNEL``) to unbuffered binary file objects.
    """

    def __init__(self, input_source: InputSource, encoding: str = "utf-8") -> None:
        self.pipes: dict[int, IO[bytes]] = {}
        self._input: Any = None
        self._input_buffer = b""
        self._blocked = True
        if isinstance(input_source, str):
            self._input_buffer = input_source.encode(encoding)
        elif isinstance(input_source, bytes):
            self._input_buffer = input_source
        elif input_source is not None:
            self._input = input_source

    @abstractmethod
    def descriptor_plan(self) -> DescriptorPlan:
        """Declare how each standard stream of the child is wired."""

    def backing_files(self) -> dict[int, str]:
        """Files the child output is redirected to, keyed by stream number."""
        return {}

    @abstractmethod
    def popen_streams(self) -> dict[str, Any]:
        """Realize the descriptor plan as ``subprocess.Popen`` keyword arguments."""

    @abstractmethod
    def bind(self, popen: subprocess.Popen[bytes]) -> None:
        """Adopt the parent-side stream ends once the child is spawned."""

    @abstractmethod
    def read_and_write(self, blocking: bool, close: bool = False) -> dict[int, bytes]:
        """Push pending input, then return newly read output keyed by stream number."""

    @abstractmethod
    def are_open(self) -> bool:
        """Whether any stream is still open."""

    def close(self) -> None:
        for pipe in self.pipes.values():
            with contextlib.suppress(OSError):
                pipe.close()
        self.pipes = {}

    def _stdin_writable(self, stdin: IO[bytes]) -> bool:
        return True

    def _unblock(self) -> None:
        if not self._blocked:
            return
        for pipe in self.pipes.values():
            self._set_non_blocking(pipe)
        if self._input is not None:
            self._set_non_blocking(self._input)
        self._blocked = False

    @staticmethod
    def _set_non_blocking(stream: Any) -> None:
        try:
            os.set_blocking(stream.fileno(), False)
        except (AttributeError, OSError, ValueError) as e:
            # In-memory streams have no descriptor, old Windows runtimes can not unblock pipes
            logger.debug("Stream %r stays blocking: %s", stream, e)

    @staticmethod
    def _write_chunk(stdin: IO[bytes], data: bytes) -> int:
        try:
            return os.write(stdin.fileno(), data)
        except BlockingIOError:
            return 0

    @staticmethod
    def _read_chunk(pipe: IO[bytes]) -> bytes | None:
        """Read up to ``CHUNK_SIZE`` bytes; None means nothing available yet, b"" is EOF."""
        try:
            return os.read(pipe.fileno(), CHUNK_SIZE)
        except BlockingIOError:
            return None

    def _read_input(self) -> bytes | None:
        try:
            data = self._input.read(CHUNK_SIZE)
        except BlockingIOError:
            return None
        if isinstance(data, str):
            data = data.encode()
        return data

    def _close_stdin(self) -> None:
        stdin = self.pipes.pop(STDIN, None)
        if stdin is not None:
            with contextlib.suppress(OSError):
                stdin.close()

    def _write(self) -> list[IO[bytes]] | None:
        """Feed pending input to the child.

        Returns the stdin pipe when it still wants to be written to (a partial
        write happened or the pipe was not writable), None otherwise.
        """
        stdin = self.pipes.get(STDIN)
        if stdin is None:
            return None

        writable = self._stdin_writable(stdin)
        try:
            if writable:
                if self._input_buffer:
                    written = self._write_chunk(stdin, self._input_buffer)
                    self._input_buffer = self._input_buffer[written:]
                    if self._input_buffer:
                        return [stdin]

                while self._input is not None:
                    data = self._read_input()
                    if data is None:
                        break
                    if not data:
                        self._input = None
                        break
                    written = self._write_chunk(stdin, data)
                    data = data[written:]
                    if data:
                        self._input_buffer = data
                        return [stdin]
        except BrokenPipeError:
            logger.debug("Child closed its stdin, discarding %d pending input bytes", len(self._input_buffer))
            self._input = None
            self._input_buffer = b""

        if self._input is None and not self._input_buffer:
            self._close_stdin()
            return None
        # A source with nothing to read right now is retried on the next pass
        return None if writable else [stdin]
