"""Private subprocess runner module.

This module contains a subprocess.run() replacement using ManagedProcess as
the backend.
"""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

from managed_process.errors import ProcessTimeoutError
from managed_process.launch_spec import InputSource
from managed_process.managed_process import ManagedProcess


def subprocess_run(
    command: str | Sequence[str],
    cwd: str | Path | None = None,
    check: bool = False,
    timeout: float | None = None,
    input: InputSource = None,  # noqa: A002
) -> subprocess.CompletedProcess[str]:
    """
    Execute a command with deadlock-free pipe handling, emulating subprocess.run().

    Args:
        command: Command to execute as string or list of arguments.
        cwd: Working directory for command execution.
        check: If True, raise CalledProcessError for non-zero exit codes.
        timeout: Maximum execution time in seconds, None for no limit.
        input: Bytes, text or a readable binary stream fed to stdin.

    Returns:
        CompletedProcess with the decoded stdout and stderr and the exit code.

    Raises:
        RuntimeError: If the process times out (wraps ProcessTimeoutError).
        CalledProcessError: If check=True and the process exits with a non-zero code.
    """
    proc = ManagedProcess(
        command,
        cwd=str(cwd) if cwd is not None else None,
        timeout=timeout,
        input=input,
    )

    try:
        return_code = proc.run()
    except ProcessTimeoutError as e:
        error_message = f"CRITICAL: Process timed out after {timeout} seconds: {proc.command_line}"
        raise RuntimeError(error_message) from e

    stdout = proc.get_output()
    stderr = proc.get_error_output()
    args = command if isinstance(command, str) else list(command)
    returncode = return_code if return_code is not None else -1

    if check and returncode != 0:
        raise subprocess.CalledProcessError(
            returncode=returncode,
            cmd=args,
            output=stdout,
            stderr=stderr,
        )

    return subprocess.CompletedProcess(
        args=args,
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
    )
