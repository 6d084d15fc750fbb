"""Windows strategy: child output goes to temporary files that are tailed.

Anonymous pipes can not be polled without blocking on Windows, so stdout and
stderr are redirected to two exclusively created files in the temp directory
and read back from a tracked offset on every pass. Only stdin is a real pipe.
"""

from __future__ import annotations

import contextlib
import logging
import os
import subprocess
import tempfile
import time
from typing import IO, TYPE_CHECKING, Any

from managed_process.errors import LaunchError
from managed_process.pipes import (
    PIPE,
    STDERR,
    STDIN,
    STDOUT,
    TIMEOUT_PRECISION,
    AbstractPipes,
    Descriptor,
    DescriptorKind,
    DescriptorPlan,
)

if TYPE_CHECKING:
    from managed_process.capabilities import PlatformCapabilities
    from managed_process.launch_spec import InputSource, LaunchSpec

logger = logging.getLogger(__name__)

FILE_PREFIX = "mp_proc_"
MAX_FILE_INDEX = 0xFF
STREAM_SUFFIXES = {STDOUT: "out", STDERR: "err"}


class WindowsPipes(AbstractPipes):
    """Tails per-process output files; stdin stays a pipe.

    With ``redirect_in_command`` the controller appends ``1>file 2>file`` to a
    ``cmd`` command line and the child's own handles point at ``NUL``;
    otherwise the files are handed to the child directly.
    """

    def __init__(
        self,
        input_source: InputSource,
        output_disabled: bool = False,
        redirect_in_command: bool = True,
        encoding: str = "utf-8",
        temp_dir: str | None = None,
    ) -> None:
        super().__init__(input_source, encoding)
        self._output_disabled = output_disabled
        self._redirect_in_command = redirect_in_command
        self._files: dict[int, str] = {}
        self._file_handles: dict[int, IO[bytes]] = {}
        self._read_bytes = {STDOUT: 0, STDERR: 0}
        self._child_ends: list[IO[bytes]] = []
        if not output_disabled:
            self._create_files(temp_dir or tempfile.gettempdir())

    @classmethod
    def create(cls, spec: LaunchSpec, capabilities: PlatformCapabilities) -> WindowsPipes:
        return cls(
            spec.input,
            output_disabled=spec.output_disabled,
            redirect_in_command=spec.windows_compatibility,
            encoding=spec.encoding,
        )

    def _create_files(self, temp_dir: str) -> None:
        last_error: OSError | None = None
        for index in range(MAX_FILE_INDEX + 1):
            files: dict[int, str] = {}
            handles: dict[int, IO[bytes]] = {}
            try:
                for key, suffix in STREAM_SUFFIXES.items():
                    path = os.path.join(temp_dir, f"{FILE_PREFIX}{index:02X}.{suffix}")
                    if os.path.exists(path):
                        # Left over from a dead process; taken if still open elsewhere
                        os.unlink(path)
                    with open(path, "xb"):
                        pass
                    files[key] = path
                    handles[key] = open(path, "rb", buffering=0)  # noqa: SIM115
            except OSError as e:
                last_error = e
                logger.debug("Temporary output file slot %02X unavailable: %s", index, e)
                for handle in handles.values():
                    handle.close()
                for path in files.values():
                    with contextlib.suppress(OSError):
                        os.unlink(path)
                continue
            self._files = files
            self._file_handles = handles
            return

        msg = f"A temporary file could not be opened to write the process output: {last_error}"
        raise LaunchError(msg)

    def descriptor_plan(self) -> DescriptorPlan:
        null = Descriptor(DescriptorKind.DEVICE, os.devnull, "wb")
        if self._output_disabled or self._redirect_in_command:
            return DescriptorPlan(PIPE, null, null)
        return DescriptorPlan(
            PIPE,
            Descriptor(DescriptorKind.DEVICE, self._files[STDOUT], "ab"),
            Descriptor(DescriptorKind.DEVICE, self._files[STDERR], "ab"),
        )

    def backing_files(self) -> dict[int, str]:
        return dict(self._files)

    def popen_streams(self) -> dict[str, Any]:
        plan = self.descriptor_plan()
        return {
            "stdin": subprocess.PIPE,
            "stdout": self._open_child_end(plan.stdout),
            "stderr": self._open_child_end(plan.stderr),
        }

    def _open_child_end(self, descriptor: Descriptor) -> Any:
        if descriptor.path == os.devnull:
            return subprocess.DEVNULL
        handle = open(descriptor.path, descriptor.mode, buffering=0)  # noqa: SIM115
        self._child_ends.append(handle)
        return handle

    def bind(self, popen: subprocess.Popen[bytes]) -> None:
        if popen.stdin is not None:
            self.pipes[STDIN] = popen.stdin
        for handle in self._child_ends:
            handle.close()
        self._child_ends = []

    def read_and_write(self, blocking: bool, close: bool = False) -> dict[int, bytes]:
        self._unblock()
        wanted = self._write()

        # No readiness primitive for pipes or files here, so waiting is a plain sleep
        if blocking and (wanted or self._file_handles):
            time.sleep(TIMEOUT_PRECISION)

        read: dict[int, bytes] = {}
        for key, handle in list(self._file_handles.items()):
            handle.seek(self._read_bytes[key])
            data = handle.read()
            if data:
                self._read_bytes[key] += len(data)
                read[key] = data
            if close:
                handle.close()
                del self._file_handles[key]

        return read

    def are_open(self) -> bool:
        return bool(self.pipes) and bool(self._file_handles)

    def close(self) -> None:
        super().close()
        for handle in self._file_handles.values():
            handle.close()
        self._file_handles = {}
        for handle in self._child_ends:
            with contextlib.suppress(OSError):
                handle.close()
        self._child_ends = []
        self._remove_files()

    def _remove_files(self) -> None:
        for path in self._files.values():
            try:
                if os.path.exists(path):
                    os.unlink(path)
            except OSError as e:
                logger.warning("Could not remove temporary output file %s: %s", path, e)
        self._files = {}
