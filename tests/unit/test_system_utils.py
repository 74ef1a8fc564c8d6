"""
Unit tests for system_utils and interrupt_manager modules.

Tests tool detection, intermediate file handling, size formatting and the
interrupt-to-cancel wiring.
"""

import shutil
import signal
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

from target_encode.core.modules.errors import ErrorKind, ToolMissingError
from target_encode.core.modules.system import system_utils
from target_encode.core.modules.system.interrupt_manager import InterruptManager
from target_encode.core.modules.system.system_utils import (
    TEMP_FILES, check_required_tools, cleanup_temp_files, format_size,
    register_temp_path, remove_path, temp_path,
)


class TestSystemUtils(unittest.TestCase):
    """Test system utility functions."""

    def setUp(self):
        """Set up test environment."""
        self.test_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        """Clean up test environment."""
        if self.test_dir.exists():
            shutil.rmtree(self.test_dir)

    def test_format_size(self):
        self.assertEqual(format_size(0), "0 B")
        self.assertEqual(format_size(500), "500 B")
        self.assertEqual(format_size(1536), "1.50 KB")
        self.assertEqual(format_size(1572864), "1.50 MB")
        self.assertEqual(format_size(2147483648), "2.00 GB")
        self.assertEqual(format_size(-1536), "-1.50 KB")

    def test_temp_path_beside_source(self):
        self.assertEqual(temp_path(Path("/media/show/ep01.mkv"), "_enc_30.mkv"),
                         Path("/media/show/ep01.mkv_enc_30.mkv"))

    def test_temp_path_distinct_for_same_stem(self):
        self.assertNotEqual(temp_path(Path("/media/ep01.mkv"), "_enc_30.mkv"),
                            temp_path(Path("/media/ep01.mp4"), "_enc_30.mkv"))

    def test_check_required_tools_reports_all_missing(self):
        found = {"av1an": "/usr/bin/av1an", "mkvmerge": None, "grav1synth": None}
        with patch.object(system_utils.shutil, 'which', side_effect=found.get):
            with self.assertRaises(ToolMissingError) as ctx:
                check_required_tools(found)

        self.assertEqual(ctx.exception.tools, ["mkvmerge", "grav1synth"])
        self.assertEqual(ctx.exception.kind, ErrorKind.TOOL_MISSING)

    def test_check_required_tools_returns_paths(self):
        with patch.object(system_utils.shutil, 'which', side_effect=lambda t: f"/usr/bin/{t}"):
            self.assertEqual(check_required_tools(["av1an"]), {"av1an": "/usr/bin/av1an"})

    def test_remove_path_file_and_directory(self):
        f = self.test_dir / "ep01_trial_30.mkv"
        d = self.test_dir / "ep01_trial_30"
        f.write_bytes(b"x")
        (d / "split").mkdir(parents=True)

        self.assertTrue(remove_path(f))
        self.assertTrue(remove_path(d))
        self.assertFalse(remove_path(f))
        self.assertFalse(f.exists() or d.exists())

    def test_cleanup_temp_files(self):
        f = self.test_dir / "ep02_trial_40.mkv"
        f.write_bytes(b"x")
        register_temp_path(f)
        self.assertIn(str(f), TEMP_FILES)

        removed = cleanup_temp_files()

        self.assertIn(str(f), removed)
        self.assertFalse(f.exists())
        self.assertNotIn(str(f), TEMP_FILES)


class TestInterruptManager(unittest.TestCase):
    """Test interrupt handling without touching process signal handlers."""

    def test_first_interrupt_cancels(self):
        manager = InterruptManager(install=False)
        calls = []
        manager.register_callback(lambda: calls.append("stop"))

        manager._handle_interrupt(signal.SIGINT, None)

        self.assertTrue(manager.cancel_event.is_set())
        self.assertEqual(calls, ["stop"])

    def test_second_interrupt_exits(self):
        manager = InterruptManager(threading.Event(), install=False)
        manager._handle_interrupt(signal.SIGINT, None)

        with self.assertRaises(KeyboardInterrupt):
            manager._handle_interrupt(signal.SIGINT, None)

    def test_callbacks_run_once(self):
        manager = InterruptManager(install=False)
        calls = []
        manager.register_callback(lambda: calls.append(1))

        manager.request_cancel()
        manager.request_cancel()

        self.assertEqual(calls, [1])

    def test_install_and_restore_handlers(self):
        original = signal.getsignal(signal.SIGINT)
        manager = InterruptManager()
        try:
            self.assertNotEqual(signal.getsignal(signal.SIGINT), original)
        finally:
            manager.restore()
        self.assertEqual(signal.getsignal(signal.SIGINT), original)


if __name__ == '__main__':
    unittest.main()
