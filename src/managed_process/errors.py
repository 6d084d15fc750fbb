"""Exceptions raised by managed_process.

Each error also derives from the builtin it refines, so callers that already
catch ``ValueError``, ``RuntimeError`` or ``TimeoutError`` keep working.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from managed_process.managed_process import ManagedProcess


class ProcessError(Exception):
    """Base class for all managed_process errors."""


class ConfigurationError(ProcessError, ValueError):
    """Invalid launch configuration or a feature the platform can not provide."""


class LifecycleError(ProcessError, RuntimeError):
    """Operation invoked while the process is in the wrong state."""


class LaunchError(ProcessError, RuntimeError):
    """The operating system refused to create the process."""


class SignalDeliveryError(ProcessError, RuntimeError):
    """A signal could not be delivered to the process."""


class ProcessTimeoutError(ProcessError, TimeoutError):
    """The process exceeded its overall or idle timeout and has been stopped."""

    def __init__(self, process: ManagedProcess, kind: str, timeout: float) -> None:
        self.process = process
        self.kind = kind
        self.timeout = timeout
        super().__init__(f"The process {process.command_line!r} exceeded the {kind} of {timeout} seconds.")


class UnexpectedSignalError(ProcessError, RuntimeError):
    """The process was terminated by a signal nobody asked for."""

    def __init__(self, process: ManagedProcess, signum: int) -> None:
        self.process = process
        self.signum = signum
        super().__init__(f'The process has been signaled with signal "{signum}".')


class ProcessFailedError(ProcessError, RuntimeError):
    """Raised by ``must_run`` when the process exits with a non-zero code."""

    def __init__(self, process: ManagedProcess) -> None:
        self.process = process
        message = (
            f'The command "{process.command_line}" failed.\n\n'
            f"Exit Code: {process.get_exit_code()}({process.get_exit_code_text()})\n\n"
            f"Working directory: {process.working_directory}"
        )
        if not process.spec.output_disabled:
            message += (
                f"\n\nOutput:\n================\n{process.get_output()}"
                f"\n\nError Output:\n================\n{process.get_error_output()}"
            )
        super().__init__(message)
