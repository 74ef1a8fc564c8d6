"""
Perceptual metric scoring for target_encode.

Runs the external SSIMULACRA2 scorer on a (reference, candidate) pair through
the process supervisor and parses a single mean score from its output.
"""

import re
import threading
from pathlib import Path
from typing import Optional

from ..errors import ErrorKind, ScoreError
from ..processing.encoder_config import EncodeSettings, EncoderConfigBuilder
from ..system.process_supervisor import ProcessSupervisor, Success, describe_outcome, outcome_kind
from ....utils.logging import get_logger

logger = get_logger("metric_scorer")

_MEAN_PATTERN = re.compile(r"^\s*Mean\s*[:=]\s*(-?\d+(?:\.\d+)?)\s*$", re.IGNORECASE | re.MULTILINE)
_BARE_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*$")


def parse_score(output: str, score_range=(0.0, 100.0)) -> Optional[float]:
    """Extract the mean score from scorer output.

    Accepts either a ``Mean: 81.23`` line or output that is a single number.
    Returns None when no well-formed score inside ``score_range`` is found.
    """
    match = _MEAN_PATTERN.search(output or "")
    if match is None:
        match = _BARE_NUMBER.match(output or "")
    if match is None:
        return None

    score = float(match.group(1))
    low, high = score_range
    if not low <= score <= high:
        return None
    return score


class MetricScorer:
    """Scores a candidate encode against its reference."""

    def __init__(self, supervisor: ProcessSupervisor, settings: EncodeSettings):
        self.supervisor = supervisor
        self.settings = settings
        self.builder = EncoderConfigBuilder(settings)

    def score(self, reference: Path, candidate: Path,
              cancel_event: Optional[threading.Event] = None) -> float:
        cmd = self.builder.build_score_cmd(reference, candidate)
        outcome = self.supervisor.run(cmd[0], cmd[1:], timeout=self.settings.score_timeout,
                                      cancel_event=cancel_event)
        if not isinstance(outcome, Success):
            raise ScoreError(f"{cmd[0]} {describe_outcome(outcome)}", outcome_kind(outcome), outcome)

        score = parse_score(outcome.stdout, self.settings.score_range)
        if score is None:
            tail = (outcome.stdout or "").strip()[-120:]
            raise ScoreError(f"could not parse score from {cmd[0]} output: {tail!r}",
                             ErrorKind.SCORE_PARSE_ERROR, outcome)

        logger.debug(f"{candidate.name}: score {score:.3f}")
        return score
