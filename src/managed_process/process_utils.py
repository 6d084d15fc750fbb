#!/usr/bin/env python3
"""Process utilities for managing processes and process trees."""

from __future__ import annotations

import contextlib
import re
import warnings

import psutil


def get_process_tree_info(pid: int) -> str:
    """Get information about a process and its children."""
    try:
        process = psutil.Process(pid)
        info = [f"Process {pid} ({process.name()})"]
        info.append(f"Status: {process.status()}")
        info.append(f"CPU Times: {process.cpu_times()}")

        children = process.children(recursive=True)
        if children:
            info.append("\nChild processes:")
            for child in children:
                info.append(f"  Child {child.pid} ({child.name()})")
                info.append(f"    Status: {child.status()}")

        return "\n".join(info)
    except (OSError, psutil.Error):
        return f"Could not get process info for PID {pid}"


def kill_process_tree(pid: int, timeout: float = 3.0) -> list[psutil.Process]:
    """Forcefully kill a process and all its children.

    Returns the processes still alive after ``timeout`` seconds; an empty list
    means the whole tree is gone.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []

    try:
        children = parent.children(recursive=True)
    except psutil.Error as e:
        warnings.warn(f"Error listing children of {pid}: {e}", UserWarning, stacklevel=2)
        children = []

    # Children first so none of them gets re-parented out of reach
    for proc in [*children, parent]:
        with contextlib.suppress(psutil.NoSuchProcess):
            proc.kill()

    try:
        _, alive = psutil.wait_procs([*children, parent], timeout=timeout)
    except psutil.Error as e:
        warnings.warn(f"Error killing process tree: {e}", UserWarning, stacklevel=2)
        return [parent]
    return alive


def escape_cmd_argument(argument: str) -> str:
    """Quote one argument for a ``cmd.exe`` command line.

    Double quotes are backslash escaped, ``%VAR%`` references are kept out of
    the quoted part so delayed expansion can not touch them, and a trailing
    backslash is doubled so it does not escape the closing quote.
    """
    if argument == "":
        return '""'

    escaped = ""
    quote = False
    for part in re.split(r'(")', argument):
        if not part:
            continue
        if part == '"':
            escaped += '\\"'
        elif len(part) > 2 and part[0] == "%" and part[-1] == "%":
            escaped += f'^%"{part[1:-1]}"^%'
        else:
            if part.endswith("\\"):
                part += "\\"
            quote = True
            escaped += part

    if quote:
        escaped = f'"{escaped}"'
    return escaped
