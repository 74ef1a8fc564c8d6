"""Unit tests for metric_scorer module."""

import unittest
from pathlib import Path
from unittest.mock import MagicMock

from target_encode.core.modules.analysis.metric_scorer import MetricScorer, parse_score
from target_encode.core.modules.errors import ErrorKind, ScoreError
from target_encode.core.modules.processing.encoder_config import EncodeSettings
from target_encode.core.modules.system.process_supervisor import (
    Cancelled, Failure, SpawnError, Success, TimedOut,
)


class TestParseScore(unittest.TestCase):
    """Test score extraction from scorer output."""

    def test_mean_line(self):
        output = "Video Score for 240 frames\nMean: 81.2345\nMedian: 82.0\nStd Dev: 3.1\n"
        self.assertAlmostEqual(parse_score(output), 81.2345)

    def test_bare_number(self):
        self.assertAlmostEqual(parse_score("  74.5\n"), 74.5)

    def test_garbage_returns_none(self):
        self.assertIsNone(parse_score("error: could not decode frame"))
        self.assertIsNone(parse_score(""))

    def test_out_of_range_returns_none(self):
        self.assertIsNone(parse_score("Mean: 130.0"))
        self.assertIsNone(parse_score("Mean: -5"))

    def test_boundaries_accepted(self):
        self.assertEqual(parse_score("Mean: 0"), 0.0)
        self.assertEqual(parse_score("Mean: 100"), 100.0)


class TestMetricScorer(unittest.TestCase):
    """Test MetricScorer outcome handling."""

    def setUp(self):
        self.supervisor = MagicMock()
        self.scorer = MetricScorer(self.supervisor, EncodeSettings(metric_cycle=5))
        self.reference = Path("/media/ep01.mkv")
        self.candidate = Path("/media/ep01_trial_30.mkv")

    def test_score_success(self):
        self.supervisor.run.return_value = Success("Mean: 80.5\n")

        self.assertEqual(self.scorer.score(self.reference, self.candidate), 80.5)

        cmd, args = self.supervisor.run.call_args[0]
        self.assertEqual(cmd, "ssimulacra2_rs")
        self.assertEqual(args, ["video", str(self.reference), str(self.candidate), "--increment", "5"])

    def test_unparseable_output(self):
        self.supervisor.run.return_value = Success("nothing useful")

        with self.assertRaises(ScoreError) as ctx:
            self.scorer.score(self.reference, self.candidate)
        self.assertEqual(ctx.exception.kind, ErrorKind.SCORE_PARSE_ERROR)

    def test_outcome_kinds(self):
        cases = [
            (Failure(1, "segfault"), ErrorKind.TOOL_CRASHED),
            (TimedOut(60.0), ErrorKind.TOOL_TIMED_OUT),
            (SpawnError("not found"), ErrorKind.TOOL_MISSING),
            (Cancelled(), ErrorKind.CANCELLED),
        ]
        for outcome, kind in cases:
            with self.subTest(outcome=outcome):
                self.supervisor.run.return_value = outcome
                with self.assertRaises(ScoreError) as ctx:
                    self.scorer.score(self.reference, self.candidate)
                self.assertEqual(ctx.exception.kind, kind)


if __name__ == '__main__':
    unittest.main()
