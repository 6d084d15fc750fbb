"""Command line front-end: run one command under supervision.

Example:
    managed-process --timeout 30 --idle-timeout 5 -- make test
"""

from __future__ import annotations

import argparse
import logging
import sys

from managed_process.errors import LaunchError, ProcessTimeoutError, UnexpectedSignalError
from managed_process.managed_process import ManagedProcess
from managed_process.output_sinks import EchoOutputSink, NullOutputSink

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_LAUNCH_FAILED = 127


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="managed-process",
        description="Run a command with deadlines, echoing its stdout and stderr.",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Overall deadline in seconds (default: none)")
    parser.add_argument(
        "--idle-timeout", type=float, default=None, help="Deadline in seconds since the latest output (default: none)"
    )
    parser.add_argument("--pty", action="store_true", help="Run the command attached to a pseudo-terminal")
    parser.add_argument("--shell", action="store_true", help="Join the command and run it through the shell")
    parser.add_argument("-q", "--quiet", action="store_true", help="Do not echo the command output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run, after --")
    args = parser.parse_args(argv)
    if args.command and args.command[0] == "--":
        args.command = args.command[1:]
    return args


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        print("managed-process: no command given, see --help", file=sys.stderr)
        return 0

    command: str | list[str] = " ".join(args.command) if args.shell else args.command
    process = ManagedProcess(
        command,
        timeout=args.timeout,
        idle_timeout=args.idle_timeout,
        pty=args.pty,
        shell=True if args.shell else None,
    )
    sink = NullOutputSink() if args.quiet else EchoOutputSink()

    try:
        exit_code = process.run(sink)
    except ProcessTimeoutError as e:
        print(f"managed-process: {e}", file=sys.stderr)
        return EXIT_TIMEOUT
    except LaunchError as e:
        print(f"managed-process: {e}", file=sys.stderr)
        return EXIT_LAUNCH_FAILED
    except UnexpectedSignalError as e:
        logger.debug("Child terminated by signal %s", e.signum)
        return 128 + e.signum

    logger.debug("Child finished with exit code %s in %.3fs", exit_code, process.duration or 0.0)
    return exit_code if exit_code is not None else 1


if __name__ == "__main__":
    sys.exit(main())
