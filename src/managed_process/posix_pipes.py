"""POSIX strategy: real non-blocking pipes multiplexed with a selector."""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import selectors
import subprocess
from collections.abc import Callable
from typing import IO, TYPE_CHECKING, Any

from managed_process.pipes import (
    CHUNK_SIZE,
    PIPE,
    PTY,
    SIDE_CHANNEL,
    STDERR,
    STDIN,
    STDOUT,
    TIMEOUT_PRECISION,
    AbstractPipes,
    Descriptor,
    DescriptorKind,
    DescriptorPlan,
)
from managed_process.pty import TTY_DEVICE, Pty

if TYPE_CHECKING:
    from managed_process.capabilities import PlatformCapabilities
    from managed_process.launch_spec import InputSource, LaunchSpec

logger = logging.getLogger(__name__)


class PosixPipes(AbstractPipes):
    """Anonymous pipes (or a pseudo-terminal) driven by ``selectors.DefaultSelector``.

    In pty mode the child's three streams share the slave side of one
    pseudo-terminal, so stderr arrives merged into stdout.
    """

    def __init__(
        self,
        input_source: InputSource,
        tty: bool = False,
        pty: bool = False,
        output_disabled: bool = False,
        pty_supported: bool = False,
        encoding: str = "utf-8",
    ) -> None:
        super().__init__(input_source, encoding)
        self._tty = tty
        self._pty_mode = pty
        self._output_disabled = output_disabled
        self._pty_supported = pty_supported
        self._pty: Pty | None = None
        self._child_ends: list[IO[bytes]] = []
        self._side_channel_fds: tuple[int, int] | None = None
        self._bound = False

    @classmethod
    def create(cls, spec: LaunchSpec, capabilities: PlatformCapabilities) -> PosixPipes:
        return cls(
            spec.input,
            tty=spec.tty,
            pty=spec.pty,
            output_disabled=spec.output_disabled,
            pty_supported=capabilities.pty_supported,
            encoding=spec.encoding,
        )

    def descriptor_plan(self) -> DescriptorPlan:
        if self._output_disabled:
            null = Descriptor(DescriptorKind.DEVICE, os.devnull, "wb")
            return DescriptorPlan(PIPE, null, null)

        if self._tty:
            return DescriptorPlan(
                Descriptor(DescriptorKind.DEVICE, TTY_DEVICE, "rb"),
                Descriptor(DescriptorKind.DEVICE, TTY_DEVICE, "wb"),
                Descriptor(DescriptorKind.DEVICE, TTY_DEVICE, "wb"),
            )

        if self._pty_mode and self._pty_supported:
            return DescriptorPlan(PTY, PTY, PTY)

        return DescriptorPlan(PIPE, PIPE, PIPE)

    def popen_streams(self) -> dict[str, Any]:
        plan = self.descriptor_plan()
        return {
            "stdin": self._open_child_end(plan.stdin),
            "stdout": self._open_child_end(plan.stdout),
            "stderr": self._open_child_end(plan.stderr),
        }

    def _open_child_end(self, descriptor: Descriptor) -> Any:
        if descriptor.kind is DescriptorKind.PIPE:
            return subprocess.PIPE
        if descriptor.kind is DescriptorKind.PTY:
            if self._pty is None:
                self._pty = Pty()
            return self._pty.slave_fd
        if descriptor.path == os.devnull:
            return subprocess.DEVNULL
        handle = open(descriptor.path, descriptor.mode, buffering=0)  # noqa: SIM115
        self._child_ends.append(handle)
        return handle

    def open_side_channel(self) -> Callable[[], None]:
        """Create the pid/exit-code side channel.

        Returns the ``preexec_fn`` that installs the write end as fd 3 in the
        child; pass ``pass_fds=(3,)`` alongside it.
        """
        read_fd, write_fd = os.pipe()
        self._side_channel_fds = (read_fd, write_fd)

        def _install_side_channel() -> None:
            if write_fd == SIDE_CHANNEL:
                os.set_inheritable(SIDE_CHANNEL, True)
            else:
                os.dup2(write_fd, SIDE_CHANNEL)

        return _install_side_channel

    def bind(self, popen: subprocess.Popen[bytes]) -> None:
        self._bound = True
        if self._pty is not None:
            self._pty.close_slave()
            self.pipes[STDIN] = open(self._pty.master_dup(), "wb", buffering=0)  # noqa: SIM115
            self.pipes[STDOUT] = open(self._pty.master_fd, "rb", buffering=0)  # noqa: SIM115
        else:
            for key, stream in ((STDIN, popen.stdin), (STDOUT, popen.stdout), (STDERR, popen.stderr)):
                if stream is not None:
                    self.pipes[key] = stream

        for handle in self._child_ends:
            handle.close()
        self._child_ends = []

        if self._side_channel_fds is not None:
            read_fd, write_fd = self._side_channel_fds
            os.close(write_fd)
            self._side_channel_fds = None
            self.pipes[SIDE_CHANNEL] = open(read_fd, "rb", buffering=0)  # noqa: SIM115

    def read_side_channel_line(self) -> bytes:
        """Blocking read of one line from the side channel, before unblocking."""
        pipe = self.pipes[SIDE_CHANNEL]
        line = b""
        while not line.endswith(b"\n"):
            byte = os.read(pipe.fileno(), 1)
            if not byte:
                break
            line += byte
        return line

    def _stdin_writable(self, stdin: IO[bytes]) -> bool:
        with selectors.DefaultSelector() as selector:
            selector.register(stdin, selectors.EVENT_WRITE)
            return bool(selector.select(0))

    @staticmethod
    def _read_chunk(pipe: IO[bytes]) -> bytes | None:
        try:
            return AbstractPipes._read_chunk(pipe)  # noqa: SLF001
        except OSError as e:
            # Linux reports EIO on the pty master once the slave side is gone
            if e.errno == errno.EIO:
                return b""
            raise

    def _wait_ready(self, wanted: list[IO[bytes]] | None, timeout: float) -> list[tuple[int, IO[bytes]]]:
        """Streams ready for reading as ``(key, pipe)``; epoll/poll based, so any descriptor number works."""
        with selectors.DefaultSelector() as selector:
            for key, pipe in self.pipes.items():
                if key != STDIN:
                    selector.register(pipe, selectors.EVENT_READ, key)
            for pipe in wanted or []:
                selector.register(pipe, selectors.EVENT_WRITE, STDIN)
            events = selector.select(timeout)
        return [(key.data, key.fileobj) for key, mask in events if mask & selectors.EVENT_READ]

    def read_and_write(self, blocking: bool, close: bool = False) -> dict[int, bytes]:
        self._unblock()
        wanted = self._write()

        read: dict[int, bytes] = {}
        if not wanted and all(key == STDIN for key in self.pipes):
            return read

        try:
            ready = self._wait_ready(wanted, TIMEOUT_PRECISION if blocking else 0)
        except InterruptedError:
            return read
        except OSError as e:
            logger.debug("Waiting on the pipes failed, dropping all of them: %s", e)
            self.close()
            return read

        for key, pipe in ready:
            chunks: list[bytes] = []
            while True:
                data = self._read_chunk(pipe)
                if data:
                    chunks.append(data)
                # Keep going while chunks come back full, or until EOF when closing
                if not data or not (close or len(data) == CHUNK_SIZE):
                    break

            if chunks:
                read[key] = b"".join(chunks)

            if close and data == b"":
                pipe.close()
                del self.pipes[key]

        return read

    def are_open(self) -> bool:
        return bool(self.pipes)

    def close(self) -> None:
        super().close()
        for handle in self._child_ends:
            with contextlib.suppress(OSError):
                handle.close()
        self._child_ends = []
        if self._side_channel_fds is not None:
            for fd in self._side_channel_fds:
                with contextlib.suppress(OSError):
                    os.close(fd)
            self._side_channel_fds = None
        if self._pty is not None:
            with contextlib.suppress(OSError):
                self._pty.close_slave()
                if not self._bound:
                    os.close(self._pty.master_fd)
