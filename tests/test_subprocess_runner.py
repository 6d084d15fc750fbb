"""Tests for the subprocess.run() replacement."""

import subprocess
import sys
import unittest

from managed_process import subprocess_run


class TestSubprocessRun(unittest.TestCase):
    def test_completed_process(self):
        code = "import sys; print('hello'); sys.stderr.write('warn')"
        result = subprocess_run([sys.executable, "-c", code], timeout=30)

        self.assertIsInstance(result, subprocess.CompletedProcess)
        self.assertEqual(result.returncode, 0)
        self.assertEqual(result.stdout.strip(), "hello")
        self.assertEqual(result.stderr, "warn")
        self.assertEqual(result.args, [sys.executable, "-c", code])

    def test_input(self):
        code = "import sys; print(sys.stdin.read().upper())"
        result = subprocess_run([sys.executable, "-c", code], input="quiet", timeout=30)
        self.assertEqual(result.stdout.strip(), "QUIET")

    def test_check_raises_called_process_error(self):
        code = "import sys; print('partial'); sys.exit(2)"
        with self.assertRaises(subprocess.CalledProcessError) as ctx:
            subprocess_run([sys.executable, "-c", code], check=True, timeout=30)

        self.assertEqual(ctx.exception.returncode, 2)
        self.assertIn("partial", ctx.exception.output)

    def test_no_check_returns_failure(self):
        result = subprocess_run([sys.executable, "-c", "import sys; sys.exit(2)"], timeout=30)
        self.assertEqual(result.returncode, 2)

    def test_timeout_raises_runtime_error(self):
        with self.assertRaises(RuntimeError) as ctx:
            subprocess_run([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.5)
        self.assertIn("timed out", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
