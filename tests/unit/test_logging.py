"""Unit tests for the logging utilities."""

import unittest
from unittest.mock import patch

from target_encode.utils import logging as log_module
from target_encode.utils.logging import format_duration, get_logger, set_debug_mode, set_quiet_mode


class TestLogger(unittest.TestCase):
    """Test level filtering for debug and quiet modes."""

    def setUp(self):
        self.addCleanup(set_debug_mode, False)
        self.addCleanup(set_quiet_mode, False)
        set_debug_mode(False)
        set_quiet_mode(False)
        self.logger = get_logger("test")

    def emitted(self, *calls):
        with patch.object(log_module, '_emit') as emit:
            for call in calls:
                call()
        return [c.args[0] for c in emit.call_args_list]

    def test_default_output(self):
        lines = self.emitted(lambda: self.logger.info("hello"),
                             lambda: self.logger.debug("hidden"),
                             lambda: self.logger.search("bracket"))

        self.assertEqual(lines, ["[INFO] [test] hello", "[SEARCH] bracket"])

    def test_debug_mode_shows_debug(self):
        set_debug_mode(True)
        lines = self.emitted(lambda: self.logger.debug("detail"),
                             lambda: self.logger.cmd("av1an -i ep01.mkv"))

        self.assertEqual(lines, ["[DEBUG] [test] detail", "[CMD] av1an -i ep01.mkv"])

    def test_quiet_mode_keeps_warnings_and_results(self):
        set_quiet_mode(True)
        lines = self.emitted(lambda: self.logger.info("hello"),
                             lambda: self.logger.trial("#1 parameter 30"),
                             lambda: self.logger.warn("careful"),
                             lambda: self.logger.error("broken"),
                             lambda: self.logger.result("ep01.mkv done"))

        self.assertEqual(lines, ["[WARN] [test] careful", "[ERROR] [test] broken",
                                 "[RESULT] [test] ep01.mkv done"])

    def test_format_duration(self):
        self.assertEqual(format_duration(12.34), "12.3s")
        self.assertEqual(format_duration(90), "1.5m")
        self.assertEqual(format_duration(3 * 3600 + 120), "3h 2m")


if __name__ == '__main__':
    unittest.main()
