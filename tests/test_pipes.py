"""Tests for the pipe strategies, driven directly against real child processes."""

import os
import subprocess
import sys
import tempfile
import time
import unittest

from managed_process.pipes import PIPE, PTY, STDERR, STDOUT, DescriptorKind
from managed_process.posix_pipes import PosixPipes
from managed_process.windows_pipes import FILE_PREFIX, WindowsPipes

CAT = "import shutil, sys; shutil.copyfileobj(sys.stdin.buffer, sys.stdout.buffer)"


def drain(pipes, popen, timeout=30.0):
    """Run I/O passes until every stream is closed; returns the collected output."""
    collected = {STDOUT: b"", STDERR: b""}
    deadline = time.monotonic() + timeout
    while pipes.are_open():
        if time.monotonic() > deadline:
            raise AssertionError("pipes never closed")
        for key, data in pipes.read_and_write(blocking=True, close=True).items():
            collected[key] += data
    popen.wait(timeout=timeout)
    return collected


@unittest.skipIf(sys.platform == "win32", "POSIX pipes")
class TestPosixPipes(unittest.TestCase):
    def spawn(self, pipes, code):
        popen = subprocess.Popen([sys.executable, "-c", code], bufsize=0, **pipes.popen_streams())  # noqa: S603
        pipes.bind(popen)
        return popen

    def test_descriptor_plans(self):
        self.assertEqual(PosixPipes(None).descriptor_plan().stdout, PIPE)
        self.assertEqual(PosixPipes(None, pty=True, pty_supported=True).descriptor_plan().stdout, PTY)
        self.assertEqual(PosixPipes(None, pty=True, pty_supported=False).descriptor_plan().stdout, PIPE)

        disabled = PosixPipes(None, output_disabled=True).descriptor_plan()
        self.assertEqual(disabled.stdin, PIPE)
        self.assertIs(disabled.stdout.kind, DescriptorKind.DEVICE)
        self.assertEqual(disabled.stderr.path, os.devnull)

        tty = PosixPipes(None, tty=True).descriptor_plan()
        self.assertEqual(tty.stdin.path, "/dev/tty")

    def test_input_is_written_before_reading(self):
        payload = b"0123456789" * 50000
        pipes = PosixPipes(payload)
        popen = self.spawn(pipes, CAT)

        output = drain(pipes, popen)
        self.assertEqual(output[STDOUT], payload)
        self.assertEqual(popen.returncode, 0)

    def test_streams_are_kept_apart(self):
        pipes = PosixPipes(None)
        popen = self.spawn(pipes, "import sys; sys.stdout.write('a'); sys.stderr.write('b')")

        output = drain(pipes, popen)
        self.assertEqual(output, {STDOUT: b"a", STDERR: b"b"})

    def test_broken_pipe_discards_input(self):
        pipes = PosixPipes(b"x" * 1048576)
        popen = self.spawn(pipes, "import os; os.close(0); print('closed', flush=True)")

        output = drain(pipes, popen)
        self.assertEqual(output[STDOUT].strip(), b"closed")
        self.assertNotIn(0, pipes.pipes)

    def test_close_is_idempotent(self):
        pipes = PosixPipes(None)
        popen = self.spawn(pipes, "pass")
        popen.wait()
        pipes.close()
        pipes.close()
        self.assertFalse(pipes.are_open())


class TestWindowsPipesFileTailing(unittest.TestCase):
    """The file strategy only needs plain files, so it is exercised on every platform."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

    def test_output_files_are_tailed_and_removed(self):
        pipes = WindowsPipes(None, redirect_in_command=False, temp_dir=self._tmp.name)
        files = pipes.backing_files()
        self.assertEqual(sorted(files), [STDOUT, STDERR])
        for path in files.values():
            self.assertTrue(os.path.basename(path).startswith(FILE_PREFIX))
            self.assertTrue(os.path.exists(path))

        code = "import sys, time; print('first', flush=True); time.sleep(0.3); sys.stderr.write('second')"
        popen = subprocess.Popen([sys.executable, "-c", code], bufsize=0, **pipes.popen_streams())  # noqa: S603
        pipes.bind(popen)

        collected = {STDOUT: b"", STDERR: b""}
        while popen.poll() is None:
            for key, data in pipes.read_and_write(blocking=True).items():
                collected[key] += data
        for key, data in pipes.read_and_write(blocking=False, close=True).items():
            collected[key] += data

        self.assertEqual(collected[STDOUT].strip(), b"first")
        self.assertEqual(collected[STDERR], b"second")
        self.assertFalse(pipes.are_open())

        pipes.close()
        for path in files.values():
            self.assertFalse(os.path.exists(path))

    @unittest.skipUnless(sys.platform == "win32", "open files can only be unlinked elsewhere")
    def test_busy_slot_is_skipped(self):
        first = WindowsPipes(None, temp_dir=self._tmp.name)
        second = WindowsPipes(None, temp_dir=self._tmp.name)
        try:
            self.assertNotEqual(first.backing_files(), second.backing_files())
        finally:
            first.close()
            second.close()

    def test_stale_files_are_replaced(self):
        stale = os.path.join(self._tmp.name, f"{FILE_PREFIX}00.out")
        with open(stale, "wb") as f:
            f.write(b"left over")

        pipes = WindowsPipes(None, temp_dir=self._tmp.name)
        try:
            self.assertEqual(pipes.backing_files()[STDOUT], stale)
            self.assertEqual(os.path.getsize(stale), 0)
        finally:
            pipes.close()

    def test_output_disabled_creates_no_files(self):
        pipes = WindowsPipes(None, output_disabled=True, temp_dir=self._tmp.name)
        self.assertEqual(pipes.backing_files(), {})
        self.assertEqual(os.listdir(self._tmp.name), [])

    def test_redirect_in_command_points_child_at_null(self):
        pipes = WindowsPipes(None, redirect_in_command=True, temp_dir=self._tmp.name)
        try:
            self.assertEqual(pipes.descriptor_plan().stdout.path, os.devnull)
        finally:
            pipes.close()


if __name__ == "__main__":
    unittest.main()
