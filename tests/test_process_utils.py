"""Tests for process tree helpers, exit code texts and cmd.exe quoting."""

import contextlib
import os
import subprocess
import sys
import unittest

import psutil

from managed_process import get_process_tree_info, kill_process_tree
from managed_process.exit_codes import UNKNOWN_ERROR, exit_code_text
from managed_process.process_utils import escape_cmd_argument

SPAWNS_CHILD = (
    "import subprocess, sys, time\n"
    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)"
)


class TestProcessTree(unittest.TestCase):
    def test_tree_info_for_current_process(self):
        info = get_process_tree_info(os.getpid())
        self.assertIn(f"Process {os.getpid()}", info)
        self.assertIn("Status:", info)

    def test_tree_info_for_missing_process(self):
        self.assertIn("Could not get process info", get_process_tree_info(2**22 + 12345))

    def test_kill_process_tree(self):
        proc = subprocess.Popen([sys.executable, "-c", SPAWNS_CHILD], stdout=subprocess.PIPE)  # noqa: S603
        self.assertEqual(proc.stdout.readline().strip(), b"ready")
        children = psutil.Process(proc.pid).children(recursive=True)
        self.assertTrue(children)

        alive = kill_process_tree(proc.pid, timeout=5)

        self.assertNotIn(proc.pid, [p.pid for p in alive])
        for child in children:
            # Orphans may linger as zombies until init reaps them
            with contextlib.suppress(psutil.NoSuchProcess):
                self.assertEqual(child.status(), psutil.STATUS_ZOMBIE)
        proc.wait(timeout=10)
        proc.stdout.close()

    def test_kill_missing_process(self):
        self.assertEqual(kill_process_tree(2**22 + 12345), [])


class TestExitCodes(unittest.TestCase):
    def test_known_codes(self):
        self.assertEqual(exit_code_text(0), "OK")
        self.assertEqual(exit_code_text(127), "Command not found")
        self.assertEqual(exit_code_text(137), "Kill (terminate immediately)")

    def test_unknown_code(self):
        self.assertEqual(exit_code_text(42), UNKNOWN_ERROR)

    def test_not_finished(self):
        self.assertIsNone(exit_code_text(None))


class TestCmdEscaping(unittest.TestCase):
    def test_empty(self):
        self.assertEqual(escape_cmd_argument(""), '""')

    def test_plain_argument_is_quoted(self):
        self.assertEqual(escape_cmd_argument("C:\\Temp\\out file.txt"), '"C:\\Temp\\out file.txt"')

    def test_double_quotes(self):
        self.assertEqual(escape_cmd_argument('say "hi"'), '"say \\"hi\\""')

    def test_trailing_backslash_is_doubled(self):
        self.assertEqual(escape_cmd_argument("dir\\"), '"dir\\\\"')

    def test_variable_reference_stays_unquoted(self):
        self.assertEqual(escape_cmd_argument("%PATH%"), '^%"PATH"^%')


if __name__ == "__main__":
    unittest.main()
