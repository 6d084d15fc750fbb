"""Run external commands under supervision: stream I/O, deadlines, signals and exit status."""

from __future__ import annotations

__version__ = "1.0.0"

from managed_process.errors import (
    ConfigurationError,
    LaunchError,
    LifecycleError,
    ProcessError,
    ProcessFailedError,
    ProcessTimeoutError,
    SignalDeliveryError,
    UnexpectedSignalError,
)
from managed_process.launch_spec import LaunchSpec
from managed_process.managed_process import ManagedProcess, ProcessState
from managed_process.output_sinks import EchoOutputSink, NullOutputSink, OutputSink
from managed_process.process_utils import get_process_tree_info, kill_process_tree
from managed_process.status import ExitStatus
from managed_process.subprocess_runner import subprocess_run

__all__ = [
    "ConfigurationError",
    "EchoOutputSink",
    "ExitStatus",
    "LaunchError",
    "LaunchSpec",
    "LifecycleError",
    "ManagedProcess",
    "NullOutputSink",
    "OutputSink",
    "ProcessError",
    "ProcessFailedError",
    "ProcessState",
    "ProcessTimeoutError",
    "SignalDeliveryError",
    "UnexpectedSignalError",
    "get_process_tree_info",
    "kill_process_tree",
    "subprocess_run",
]
