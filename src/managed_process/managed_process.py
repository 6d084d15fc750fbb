"""Supervised subprocess execution with stream control, deadlines and signal handling.

## Basic Usage

### Run and collect output
```python
process = ManagedProcess(["echo", "hello"])
exit_code = process.run()
print(process.get_output())  # "hello\\n"
print(process.is_successful())  # True
```

### Feed stdin
```python
process = ManagedProcess(["cat"], input=b"some bytes")
process.run()
assert process.get_output_bytes() == b"some bytes"

# Any readable binary stream works as well
with open("data.bin", "rb") as source:
    ManagedProcess(["md5sum"], input=source).must_run()
```

### Stream output as it arrives
```python
def on_output(stream: str, data: bytes) -> None:
    print(stream, data)

process = ManagedProcess(["make", "build"], timeout=300)
process.start(on_output)
while process.is_running():
    chunk = process.get_incremental_output()
    ...
process.wait()
```

### Deadlines
```python
# Overall deadline plus an idle deadline measured from the latest output
process = ManagedProcess(["pytest", "tests/"], timeout=600, idle_timeout=60)
try:
    process.run()
except ProcessTimeoutError as e:
    print(e.kind, e.timeout)  # the process has already been stopped
```

### Signals and stopping
```python
process = ManagedProcess([sys.executable, "server.py"], timeout=None)
process.start()
process.signal(signal.SIGHUP)
process.stop(timeout=5)  # SIGTERM, then SIGKILL after 5 seconds
```

## Key Features

- **Single threaded**: one selector-driven loop, no reader or watcher threads
- **Deadlock free I/O**: stdin is serviced before stdout/stderr on every pass
- **Two deadlines**: overall timeout and idle timeout, enforced while waiting
- **Escalating stop**: graceful signal, grace period, then a forceful kill
- **Exit status reconciliation**: signal/stop details and a sigchild
  compatibility mode that recovers exit codes through a side channel
- **Cross-platform**: real pipes on POSIX, tailed temporary files on Windows
"""

from __future__ import annotations

import enum
import logging
import os
import subprocess
import time
from collections.abc import Sequence
from typing import Any, cast

from managed_process.capabilities import PlatformCapabilities, detect_capabilities
from managed_process.errors import (
    ConfigurationError,
    LaunchError,
    LifecycleError,
    ProcessFailedError,
    ProcessTimeoutError,
    SignalDeliveryError,
    UnexpectedSignalError,
)
from managed_process.exit_codes import exit_code_text
from managed_process.launch_spec import LaunchSpec
from managed_process.output_buffer import OutputBuffer
from managed_process.output_sinks import ERR, OUT, OutputCallback, normalize_callback
from managed_process.pipes import SIDE_CHANNEL, STDOUT, AbstractPipes
from managed_process.posix_pipes import PosixPipes
from managed_process.process_utils import escape_cmd_argument, get_process_tree_info
from managed_process.signals import SIGKILL, SIGTERM, SignalDispatcher, create_signal_dispatcher
from managed_process.status import (
    UNKNOWN_EXIT_CODE,
    ExitStatus,
    FallbackStatus,
    ProcessInformation,
    StatusPoller,
)
from managed_process.timeout_guard import TimeoutGuard
from managed_process.windows_pipes import WindowsPipes

logger = logging.getLogger(__name__)

# The real command runs in the background so the shell learns its pid; fd 3 carries pid and exit code.
SIGCHILD_WRAPPER = (
    "{{ ({command}) <&3 3<&- 3>/dev/null & }} 3<&0;"
    "pid=$!; echo $pid >&3; wait $pid; code=$?; echo $code >&3; exit $code"
)

POLL_INTERVAL = 0.001


class ProcessState(str, enum.Enum):
    READY = "ready"
    STARTED = "started"
    TERMINATED = "terminated"


class ManagedProcess:
    """
    One launch of an external command, from start to reaped exit status.

    States only move forward: ``ready`` -> ``started`` -> ``terminated``. A
    terminated process is never reused; ``restart()`` builds a fresh
    ``ManagedProcess`` from the same ``LaunchSpec``.

    All I/O happens on the caller's thread inside ``wait()``, ``stop()`` and
    the status accessors, each of which first refreshes the process status.
    """

    def __init__(
        self,
        command: LaunchSpec | str | Sequence[str],
        capabilities: PlatformCapabilities | None = None,
        **options: Any,
    ) -> None:
        """
        Args:
            command: A ready ``LaunchSpec``, or the command to build one from.
            capabilities: Platform description; probed once per interpreter when omitted.
            **options: ``LaunchSpec`` fields (cwd, env, input, timeout, idle_timeout,
                tty, pty, output_disabled, shell, ...). Applied on top of a given spec.
        """
        if isinstance(command, LaunchSpec):
            spec = command.with_options(**options) if options else command
        else:
            spec = LaunchSpec(command, **options)
        self.spec = spec
        self.capabilities = capabilities if capabilities is not None else detect_capabilities()

        if spec.tty:
            if self.capabilities.windows:
                msg = "TTY mode is not supported on Windows platform."
                raise ConfigurationError(msg)
            if not self.capabilities.tty_supported:
                msg = "TTY mode requires /dev/tty to be read/writable."
                raise ConfigurationError(msg)

        self._state = ProcessState.READY
        self._popen: subprocess.Popen[bytes] | None = None
        self._pipes: AbstractPipes | None = None
        self._poller: StatusPoller | None = None
        self._dispatcher: SignalDispatcher | None = None
        self._reset_process_data()

    def _reset_process_data(self) -> None:
        self._stdout = OutputBuffer(self.spec.encoding)
        self._stderr = OutputBuffer(self.spec.encoding)
        self._sinks: list[OutputCallback] = []
        self._guard = TimeoutGuard(self.spec.timeout, self.spec.idle_timeout)
        self._info: ProcessInformation | None = None
        self._fallback = FallbackStatus()
        self._exit_code: int | None = None
        self._exit_status: ExitStatus | None = None
        self._latest_signal: int | None = None
        self._start_time: float | None = None
        self._end_time: float | None = None

    @property
    def command_line(self) -> str:
        return self.spec.command_line()

    @property
    def working_directory(self) -> str:
        return self.spec.cwd if self.spec.cwd is not None else os.getcwd()

    @property
    def uses_side_channel(self) -> bool:
        return self.spec.sigchild_compatibility and not self.capabilities.windows

    # Lifecycle

    def start(self, callback: bool | OutputCallback | None = None) -> None:
        """
        Spawn the process and return without waiting for it.

        Args:
            callback: Called with ``(stream, data)`` for every chunk of output,
                where stream is ``"out"`` or ``"err"``. True echoes to the console.

        Raises:
            LifecycleError: If the process was already started, or output is
                disabled and a callback was given.
            LaunchError: If the operating system could not create the process.
            ProcessTimeoutError: If a deadline is already exceeded after spawning.
        """
        if self.is_running():
            msg = "Process is already running"
            raise LifecycleError(msg)
        if self._state is not ProcessState.READY:
            msg = "A process can only be started once; use restart() to run it again."
            raise LifecycleError(msg)
        if self.spec.output_disabled and callback is not None:
            msg = "Output has been disabled, enable it to allow the use of a callback."
            raise LifecycleError(msg)

        self._reset_process_data()
        self._sinks = self._build_sinks(callback)
        self._pipes = self._create_pipes()

        command, shell, popen_options = self._prepare_command()
        popen_options.update(self._pipes.popen_streams())

        self._start_time = time.time()
        self._guard.start()
        try:
            self._popen = subprocess.Popen(  # noqa: S603
                command,
                shell=shell,
                cwd=self.spec.cwd,
                env=self.spec.build_env(),
                bufsize=0,
                **popen_options,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            self._pipes.close()
            msg = f"Unable to launch a new process: {e}"
            raise LaunchError(msg) from e

        self._pipes.bind(self._popen)
        self._state = ProcessState.STARTED
        self._poller = StatusPoller(self._popen, windows=self.capabilities.windows)
        self._dispatcher = create_signal_dispatcher(self.capabilities, self.spec.sigchild_compatibility)
        self._info = ProcessInformation(pid=self._popen.pid)
        logger.debug("Started process %s: %s", self._popen.pid, self.command_line)

        if self.uses_side_channel:
            pipes = cast(PosixPipes, self._pipes)
            self._fallback.pid = self._parse_side_channel(pipes.read_side_channel_line())

        if self.spec.tty:
            return

        self._update_status(blocking=False)
        self._check_timeout()

    def _create_pipes(self) -> AbstractPipes:
        if self.capabilities.windows:
            return WindowsPipes.create(self.spec, self.capabilities)
        if self.spec.pty and not self.capabilities.pty_supported:
            logger.warning("PTY requested but not available, falling back to pipes")
        return PosixPipes.create(self.spec, self.capabilities)

    def _prepare_command(self) -> tuple[str | list[str], bool, dict[str, Any]]:
        """Final command, shell flag and extra Popen options for this platform."""
        pipes = cast(AbstractPipes, self._pipes)
        options: dict[str, Any] = {}

        if self.capabilities.windows and self.spec.windows_compatibility:
            command_line = f'cmd /V:ON /E:ON /D /C "({self.command_line})'
            for key, path in pipes.backing_files().items():
                command_line += f" {key}>{escape_cmd_argument(path)}"
            command_line += '"'
            return command_line, False, options

        if self.uses_side_channel:
            options["preexec_fn"] = cast(PosixPipes, pipes).open_side_channel()
            options["pass_fds"] = (SIDE_CHANNEL,)
            return SIGCHILD_WRAPPER.format(command=self.command_line), True, options

        if self.spec.pty and self.capabilities.pty_supported and not self.capabilities.windows:
            # Own session, so the pty can become the child's controlling terminal
            options["start_new_session"] = True
        return self.spec.popen_command(), bool(self.spec.shell), options

    def _build_sinks(self, callback: bool | OutputCallback | None) -> list[OutputCallback]:
        sinks: list[OutputCallback] = [self._add_output]
        user_sink = normalize_callback(callback)
        if user_sink is not None:
            sinks.append(user_sink)
        return sinks

    def run(self, callback: bool | OutputCallback | None = None) -> int | None:
        """Start the process and wait for it; returns the exit code."""
        self.start(callback)
        return self.wait()

    def must_run(self, callback: bool | OutputCallback | None = None) -> ManagedProcess:
        """Like ``run()`` but raise ProcessFailedError on a non-zero exit code."""
        if self.run(callback) != 0:
            raise ProcessFailedError(self)
        return self

    def restart(self, callback: bool | OutputCallback | None = None) -> ManagedProcess:
        """Start a fresh process from the same spec and return it."""
        if self.is_running():
            msg = "Process is already running"
            raise LifecycleError(msg)
        process = ManagedProcess(self.spec, self.capabilities)
        process.start(callback)
        return process

    def wait(self, callback: bool | OutputCallback | None = None) -> int | None:
        """
        Drive the I/O loop until the process has exited and its pipes are drained.

        Args:
            callback: Replaces the streaming callback given to ``start()``.

        Returns:
            Process exit code.

        Raises:
            LifecycleError: If the process has not been started.
            ProcessTimeoutError: If a deadline expires; the process is stopped first.
            UnexpectedSignalError: If a signal nobody sent through this object
                terminated the process.
        """
        self._require_started("wait")
        self._update_status(blocking=False)

        if callback is not None:
            if self.spec.output_disabled:
                msg = "Output has been disabled, enable it to allow the use of a callback."
                raise LifecycleError(msg)
            if self._state is ProcessState.STARTED:
                self._sinks = self._build_sinks(callback)

        pipes = cast(AbstractPipes, self._pipes)
        windows = self.capabilities.windows
        while True:
            self._check_timeout()
            running = self.is_running() if windows else pipes.are_open()
            self._read_pipes(blocking=running, close=not windows or not running)
            if not running:
                break

        while self.is_running():
            time.sleep(POLL_INTERVAL)

        info = cast(ProcessInformation, self._info)
        if info.signaled and info.termsig != self._latest_signal:
            raise UnexpectedSignalError(self, info.termsig)

        return self._exit_code

    def stop(self, timeout: float = 10, signal: int | None = None) -> int | None:
        """
        Stop the process: SIGTERM, wait up to ``timeout`` seconds, then ``signal`` (SIGKILL).

        Safe to call on a process that never started or already terminated.

        Returns:
            The exit code, or None if the process was never started.
        """
        deadline = time.monotonic() + timeout

        if self.is_running():
            self._do_signal(SIGTERM, raise_on_error=False)
            while True:
                time.sleep(POLL_INTERVAL)
                if not self.is_running() or time.monotonic() >= deadline:
                    break

            if self.is_running():
                self._do_signal(signal or SIGKILL, raise_on_error=False)

        if self.is_running():
            if self._fallback.pid is not None:
                # The real command may be gone while its wrapper shell lingers
                self._fallback.pid = None
                return self.stop(0, signal)

            self._close()

        return self._exit_code

    def signal(self, signum: int) -> ManagedProcess:
        """
        Send ``signum`` to the running process.

        Raises:
            LifecycleError: If the process is not running.
            SignalDeliveryError: If the signal could not be delivered.
        """
        self._do_signal(signum, raise_on_error=True)
        return self

    def _do_signal(self, signum: int, raise_on_error: bool) -> bool:
        pid = self.get_pid()
        if pid is None:
            if raise_on_error:
                msg = "Can not send signal on a non running process."
                raise LifecycleError(msg)
            return False

        dispatcher = cast(SignalDispatcher, self._dispatcher)
        try:
            dispatcher.send(pid, signum)
        except SignalDeliveryError as e:
            if raise_on_error:
                raise
            logger.debug("Signal %s not delivered: %s", signum, e)
            return False

        self._latest_signal = int(signum)
        self._fallback.signaled = True
        self._fallback.exitcode = UNKNOWN_EXIT_CODE
        self._fallback.termsig = self._latest_signal
        return True

    def __enter__(self) -> ManagedProcess:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop(0)

    # Polling internals

    def _check_timeout(self) -> None:
        if self._state is not ProcessState.STARTED:
            return
        expired = self._guard.expired()
        if expired is None:
            return

        kind, limit = expired
        logger.warning("Killing process after %s of %s seconds: %s", kind, limit, self.command_line)
        if self._popen is not None and logger.isEnabledFor(logging.DEBUG):
            logger.debug("Process tree at timeout:\n%s", get_process_tree_info(self._popen.pid))
        self.stop(0)
        raise ProcessTimeoutError(self, kind, limit)

    def _update_status(self, blocking: bool) -> None:
        if self._state is not ProcessState.STARTED:
            return

        info = cast(StatusPoller, self._poller).poll()
        running = info.running
        self._read_pipes(blocking=running and blocking, close=not self.capabilities.windows or not running)

        if self._fallback and self.uses_side_channel:
            info = info.merged_with(self._fallback)
        self._info = info

        if not running:
            self._close()

    def _read_pipes(self, blocking: bool, close: bool) -> None:
        result = cast(AbstractPipes, self._pipes).read_and_write(blocking, close)
        for key, data in result.items():
            if key == SIDE_CHANNEL:
                if self._fallback.signaled is None:
                    exitcode = self._parse_side_channel(data)
                    if exitcode is not None:
                        self._fallback.exitcode = exitcode
                continue
            stream = OUT if key == STDOUT else ERR
            for sink in self._sinks:
                sink(stream, data)

    @staticmethod
    def _parse_side_channel(data: bytes) -> int | None:
        tokens = data.split()
        if not tokens:
            return None
        try:
            return int(tokens[-1])
        except ValueError:
            logger.warning("Unexpected data on the side channel: %r", data)
            return None

    def _add_output(self, stream: str, data: bytes) -> None:
        self._guard.touch()
        if stream == OUT:
            self._stdout.append(data)
        else:
            self._stderr.append(data)

    def _close(self) -> int | None:
        cast(AbstractPipes, self._pipes).close()

        info = cast(ProcessInformation, self._info)
        if info.running:
            info = cast(StatusPoller, self._poller).reap()
            if self._fallback and self.uses_side_channel:
                info = info.merged_with(self._fallback)

        exit_code = info.exitcode
        self._state = ProcessState.TERMINATED

        if exit_code == UNKNOWN_EXIT_CODE:
            if info.signaled and info.termsig > 0:
                exit_code = 128 + info.termsig
            elif self.uses_side_channel:
                info.signaled = True
                info.termsig = -1

        self._info = info
        self._exit_code = exit_code
        self._exit_status = ExitStatus.from_information(exit_code, info)
        self._sinks = []
        if self._end_time is None:
            self._end_time = time.time()
        logger.debug("Process %s terminated with exit code %s", info.pid, exit_code)
        return exit_code

    def _require_started(self, caller: str) -> None:
        if not self.is_started():
            msg = f"Process must be started before calling {caller}."
            raise LifecycleError(msg)

    def _require_terminated(self, caller: str) -> ExitStatus:
        if not self.is_terminated():
            msg = f"Process must be terminated before calling {caller}."
            raise LifecycleError(msg)
        return cast(ExitStatus, self._exit_status)

    # Output

    def _read_pipes_for_output(self, caller: str) -> None:
        if self.spec.output_disabled:
            msg = "Output has been disabled."
            raise LifecycleError(msg)
        self._require_started(caller)
        self._update_status(blocking=False)

    def get_output(self) -> str:
        """Everything the process wrote to stdout so far."""
        self._read_pipes_for_output("get_output")
        return self._stdout.text()

    def get_output_bytes(self) -> bytes:
        self._read_pipes_for_output("get_output_bytes")
        return self._stdout.getvalue()

    def get_incremental_output(self) -> str:
        """Stdout written since the previous call."""
        self._read_pipes_for_output("get_incremental_output")
        return self._stdout.read_incremental()

    def clear_output(self) -> ManagedProcess:
        self._stdout.clear()
        return self

    def get_error_output(self) -> str:
        """Everything the process wrote to stderr so far."""
        self._read_pipes_for_output("get_error_output")
        return self._stderr.text()

    def get_error_output_bytes(self) -> bytes:
        self._read_pipes_for_output("get_error_output_bytes")
        return self._stderr.getvalue()

    def get_incremental_error_output(self) -> str:
        """Stderr written since the previous call."""
        self._read_pipes_for_output("get_incremental_error_output")
        return self._stderr.read_incremental()

    def clear_error_output(self) -> ManagedProcess:
        self._stderr.clear()
        return self

    # Status

    def get_exit_code(self) -> int | None:
        """Exit code, or None while the process has not terminated."""
        self._update_status(blocking=False)
        return self._exit_code

    def get_exit_code_text(self) -> str | None:
        return exit_code_text(self.get_exit_code())

    def is_successful(self) -> bool:
        return self.get_exit_code() == 0

    def has_been_signaled(self) -> bool:
        return self._require_terminated("has_been_signaled").signaled

    def get_term_signal(self) -> int:
        status = self._require_terminated("get_term_signal")
        if self.uses_side_channel and status.term_signal == -1:
            msg = "The term signal can not be retrieved in sigchild compatibility mode."
            raise LifecycleError(msg)
        return status.term_signal

    def has_been_stopped(self) -> bool:
        return self._require_terminated("has_been_stopped").stopped

    def get_stop_signal(self) -> int:
        return self._require_terminated("get_stop_signal").stop_signal

    @property
    def exit_status(self) -> ExitStatus:
        return self._require_terminated("exit_status")

    def get_pid(self) -> int | None:
        """Pid of the running process (the real command in sigchild mode), else None."""
        if not self.is_running():
            return None
        return cast(ProcessInformation, self._info).pid

    def is_running(self) -> bool:
        if self._state is not ProcessState.STARTED:
            return False
        self._update_status(blocking=False)
        return self._state is ProcessState.STARTED and self._info is not None and self._info.running

    def is_started(self) -> bool:
        return self._state is not ProcessState.READY

    def is_terminated(self) -> bool:
        self._update_status(blocking=False)
        return self._state is ProcessState.TERMINATED

    def get_status(self) -> ProcessState:
        self._update_status(blocking=False)
        return self._state

    @property
    def start_time(self) -> float | None:
        """Get the process start time"""
        return self._start_time

    @property
    def end_time(self) -> float | None:
        """Get the process end time"""
        return self._end_time

    @property
    def duration(self) -> float | None:
        """Get the process duration in seconds, or None if not completed"""
        if self._start_time is None or self._end_time is None:
            return None
        return self._end_time - self._start_time
