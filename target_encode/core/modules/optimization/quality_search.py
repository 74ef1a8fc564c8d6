"""
Quality search for target_encode.

Finds, per job, the encoder parameter whose trial encode scores closest to the
target perceptual score. The search is a bounded bisection over the job's
parameter range, assuming score is monotonic in the parameter:

- the first trials bisect the bracket
- once trials exist on both sides of the target, the next candidate is a secant
  guess between the two bracketing trials, kept inside the inner 80% of the
  bracket
- a secant step that fails to halve the bracket is followed by a bisection,
  so a curved score response cannot creep along one side
- every candidate is snapped to the encoder's resolvable step; a snapped
  candidate that was already scored is replaced by the untried grid point
  nearest the bracket midpoint

The loop ends for exactly one ``TerminationReason``:
CONVERGED (score within tolerance), RANGE_EXHAUSTED (no untried grid point
left in the bracket, best trial returned) or ITERATION_CEILING (raised as
SearchError).

A finished search is written to ``<source>_search.json`` beside the source,
so a rerun of an interrupted batch reuses the parameter instead of repeating
the trials.
"""

import json
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set, Tuple

from ..errors import ErrorKind, JobCancelled, SearchError, ToolError
from ..processing.encoder_config import EncodeSettings, EncoderConfigBuilder
from ..processing.job import Job, SearchTrial
from ..system.process_supervisor import ProcessSupervisor, Success, require_success
from ..system.system_utils import (
    SCENES_SUFFIX, SEARCH_RECORD_SUFFIX, register_temp_path, remove_path, temp_path,
)
from ....utils.logging import get_logger

logger = get_logger("quality_search")

# Secant guesses are kept this far (as a bracket fraction) from either bound
INTERPOLATION_MARGIN = 0.1


class TerminationReason(Enum):
    CONVERGED = "converged"
    RANGE_EXHAUSTED = "range_exhausted"
    ITERATION_CEILING = "iteration_ceiling"


@dataclass
class SearchOutcome:
    """Parameter chosen for a job and how the search got there."""
    parameter: float
    score: float
    reason: TerminationReason
    trials: List[SearchTrial] = field(default_factory=list)
    out_of_range: bool = False
    resumed: bool = False  # restored from an earlier run instead of searched

    @property
    def converged(self) -> bool:
        return self.reason is TerminationReason.CONVERGED


class TrialEncoder:
    """Produces fast-preset trial encodes through av1an."""

    def __init__(self, supervisor: ProcessSupervisor, settings: EncodeSettings):
        self.supervisor = supervisor
        self.settings = settings
        self.builder = EncoderConfigBuilder(settings)

    def detect_scenes(self, job: Job, cancel_event: Optional[threading.Event] = None) -> Path:
        """Run av1an scene detection once per job; later calls reuse the scenes file."""
        scenes = temp_path(job.source, SCENES_SUFFIX)
        if scenes.exists():
            return scenes

        work_dir = temp_path(job.source, "_scenes")
        register_temp_path(work_dir)
        cmd = self.builder.build_scene_cmd(job.reference_media, scenes, work_dir)
        logger.search(f"{job.name}: detecting scenes")
        try:
            outcome = self.supervisor.run(cmd[0], cmd[1:], timeout=self.settings.trial_timeout,
                                          cancel_event=cancel_event)
            if not isinstance(outcome, Success):
                remove_path(scenes)
            require_success(outcome, cmd[0])
        finally:
            if not self.settings.keep_temp:
                remove_path(work_dir)
        if not scenes.exists():
            raise ToolError(f"{cmd[0]} produced no scenes file: {scenes.name}", ErrorKind.TOOL_CRASHED, outcome)
        return scenes

    def encode_trial(self, job: Job, parameter: float,
                     cancel_event: Optional[threading.Event] = None) -> Path:
        scenes = self.detect_scenes(job, cancel_event)
        tag = self.settings.profile.format_parameter(parameter)
        output = temp_path(job.source, f"_trial_{tag}.mkv")
        chunks = temp_path(job.source, f"_trial_{tag}")
        register_temp_path(output)
        register_temp_path(chunks)

        cmd = self.builder.build_trial_cmd(job.reference_media, output, chunks, parameter, scenes)
        outcome = self.supervisor.run(cmd[0], cmd[1:], timeout=self.settings.trial_timeout,
                                      cancel_event=cancel_event)
        require_success(outcome, cmd[0])
        if not output.exists():
            raise ToolError(f"{cmd[0]} produced no output file: {output.name}", ErrorKind.TOOL_CRASHED, outcome)
        return output

    def discard(self, job: Job, trial_output: Path):
        """Remove a trial encode and its av1an chunk directory."""
        if self.settings.keep_temp:
            return
        remove_path(trial_output)
        remove_path(trial_output.with_suffix(""))


class QualitySearchEngine:
    """Bisection search for the parameter hitting a job's target score."""

    def __init__(self, trial_encoder, scorer, settings: EncodeSettings, keep_records: bool = False):
        self.trial_encoder = trial_encoder
        self.scorer = scorer
        self.settings = settings
        self.keep_records = keep_records

    def search(self, job: Job, cancel_event: Optional[threading.Event] = None) -> SearchOutcome:
        """Find the job's parameter, reusing a matching record from an earlier run."""
        if self.keep_records:
            recorded = self.load_record(job)
            if recorded is not None:
                logger.search(f"{job.name}: reusing parameter {recorded.parameter:g} "
                              f"(score {recorded.score:.2f}) from an earlier run")
                return recorded

        outcome = self._search(job, cancel_event)
        if self.keep_records:
            self.save_record(job, outcome)
        return outcome

    def _record_key(self, job: Job) -> dict:
        return {
            "encoder": self.settings.encoder,
            "target_score": job.target_score,
            "tolerance": job.tolerance,
            "parameter_range": [job.parameter_min, job.parameter_max],
        }

    def load_record(self, job: Job) -> Optional[SearchOutcome]:
        path = temp_path(job.source, SEARCH_RECORD_SUFFIX)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if data.get("key") != self._record_key(job):
                logger.debug(f"{job.name}: search record is for other settings; searching again")
                return None
            return SearchOutcome(float(data["parameter"]), float(data["score"]),
                                 TerminationReason(data["reason"]),
                                 out_of_range=bool(data.get("out_of_range", False)), resumed=True)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warn(f"{job.name}: ignoring unreadable search record {path.name}: {e}")
            return None

    def save_record(self, job: Job, outcome: SearchOutcome):
        path = temp_path(job.source, SEARCH_RECORD_SUFFIX)
        data = {
            "key": self._record_key(job),
            "parameter": outcome.parameter,
            "score": outcome.score,
            "reason": outcome.reason.value,
            "out_of_range": outcome.out_of_range,
            "trials": len(outcome.trials),
        }
        try:
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warn(f"{job.name}: could not write search record {path.name}: {e}")

    def _search(self, job: Job, cancel_event: Optional[threading.Event] = None) -> SearchOutcome:
        target = job.target_score
        tolerance = job.tolerance
        decreasing = self.settings.score_decreases_with_parameter

        lo, hi = job.parameter_min, job.parameter_max
        trials: List[SearchTrial] = []
        tried = set()
        below: Optional[SearchTrial] = None  # latest trial scoring under target
        above: Optional[SearchTrial] = None  # latest trial scoring over target
        reason = TerminationReason.ITERATION_CEILING
        secant_from: Optional[float] = None  # bracket width before the last secant step

        logger.search(f"{job.name}: target {target:g} ±{tolerance:g}, range [{lo:g}, {hi:g}]")

        for iteration in range(1, self.settings.max_iterations + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled(f"search for {job.name} cancelled")

            # a secant step that did not halve the bracket is followed by a bisection
            stalled = secant_from is not None and hi - lo > secant_from / 2.0
            candidate, secant = self._propose(job, lo, hi, trials, below, above, bisect=stalled)
            if candidate in tried:
                candidate, secant = self._nearest_untried(job, lo, hi, tried), False
            if candidate is None:
                # every grid point inside the bracket has been scored
                reason = TerminationReason.RANGE_EXHAUSTED
                break
            secant_from = hi - lo if secant else None
            tried.add(candidate)

            trial = self._run_trial(job, iteration, candidate, trials, cancel_event)
            trials.append(trial)
            logger.trial(f"{job.name}: #{iteration} parameter {candidate:g} -> score {trial.score:.2f}")
            self._check_monotonicity(job, trials)

            if trial.distance(target) <= tolerance:
                logger.search(f"{job.name}: converged at {candidate:g} (score {trial.score:.2f}) "
                              f"after {iteration} trials")
                return SearchOutcome(candidate, trial.score, TerminationReason.CONVERGED, trials)

            too_good = trial.score > target
            if too_good:
                above = trial
            else:
                below = trial
            # Move toward cheaper settings when quality is to spare
            if too_good == decreasing:
                lo = candidate
            else:
                hi = candidate

        best = min(trials, key=lambda t: t.distance(target)) if trials else None
        if reason is TerminationReason.ITERATION_CEILING or best is None:
            raise SearchError(
                f"{job.name}: no parameter within ±{tolerance:g} of {target:g} after "
                f"{len(trials)} trials", ErrorKind.SEARCH_NOT_CONVERGED, best_trial=best, trials=len(trials))

        out_of_range = above is None or below is None
        if out_of_range:
            logger.warn(f"{job.name}: target {target:g} not reachable in [{job.parameter_min:g}, "
                        f"{job.parameter_max:g}]; using {best.parameter:g} (score {best.score:.2f})")
        else:
            logger.search(f"{job.name}: bracket exhausted, best {best.parameter:g} (score {best.score:.2f})")
        return SearchOutcome(best.parameter, best.score, TerminationReason.RANGE_EXHAUSTED, trials, out_of_range)

    def _propose(self, job: Job, lo: float, hi: float, trials: List[SearchTrial],
                 below: Optional[SearchTrial], above: Optional[SearchTrial],
                 bisect: bool = False) -> Tuple[float, bool]:
        """Next candidate and whether it came from the secant guess."""
        guess = (lo + hi) / 2.0
        if len(trials) >= 2 and (below is None or above is None):
            # Two trials on the same side: check the range end before bisecting further
            want_higher_score = above is None
            toward_min = want_higher_score == self.settings.score_decreases_with_parameter
            endpoint = job.parameter_min if toward_min else job.parameter_max
            bound = lo if toward_min else hi
            snapped_end = self._snap(endpoint, lo, hi, job)
            if bound == endpoint and all(t.parameter != snapped_end for t in trials):
                return snapped_end, False
        elif not bisect and below is not None and above is not None and above.score != below.score:
            slope = (above.parameter - below.parameter) / (above.score - below.score)
            secant = below.parameter + (job.target_score - below.score) * slope
            margin = (hi - lo) * INTERPOLATION_MARGIN
            if lo + margin <= hi - margin:
                guess = min(max(secant, lo + margin), hi - margin)
                return self._snap(guess, lo, hi, job), True
        return self._snap(guess, lo, hi, job), False

    def _nearest_untried(self, job: Job, lo: float, hi: float, tried: Set[float]) -> Optional[float]:
        """Untried grid point of [lo, hi] closest to its midpoint, or None when none is left."""
        step = self.settings.parameter_step
        first = math.ceil(lo / step - 1e-9)
        last = math.floor(hi / step + 1e-9)
        points = {round(k * step, 6) for k in range(first, last + 1)}
        points.update(self._snap(bound, lo, hi, job) for bound in (lo, hi))
        untried = [p for p in points if lo <= p <= hi and p not in tried]
        if not untried:
            return None
        middle = (lo + hi) / 2.0
        return min(untried, key=lambda p: (abs(p - middle), p))

    def _snap(self, value: float, lo: float, hi: float, job: Job) -> float:
        step = self.settings.parameter_step
        snapped = round(value / step) * step
        snapped = min(max(snapped, lo), hi)
        snapped = min(max(snapped, job.parameter_min), job.parameter_max)
        # avoid float noise like 21.750000000000004 in commands and the tried set
        return round(snapped, 6)

    def _run_trial(self, job: Job, iteration: int, candidate: float,
                   trials: List[SearchTrial], cancel_event: Optional[threading.Event]) -> SearchTrial:
        attempts = 0
        while True:
            attempts += 1
            try:
                output = self.trial_encoder.encode_trial(job, candidate, cancel_event)
                try:
                    score = self.scorer.score(job.reference_media, output, cancel_event)
                finally:
                    self.trial_encoder.discard(job, output)
                return SearchTrial(iteration, candidate, score, "ok", attempts)
            except ToolError as e:
                if e.kind is ErrorKind.CANCELLED:
                    raise JobCancelled(f"search for {job.name} cancelled") from e
                if e.kind.transient and attempts <= self.settings.max_retries:
                    logger.warn(f"{job.name}: trial at {candidate:g} failed ({e}); retrying")
                    continue
                best = min(trials, key=lambda t: t.distance(job.target_score)) if trials else None
                raise SearchError(f"{job.name}: trial at {candidate:g} failed: {e}", e.kind,
                                  best_trial=best, trials=len(trials) + 1) from e

    def _check_monotonicity(self, job: Job, trials: List[SearchTrial]):
        """Warn when the newest trial contradicts the assumed parameter/score direction.

        The search keeps going either way; the warning only flags a result that
        may not be the closest achievable one.
        """
        latest = trials[-1]
        sign = -1.0 if self.settings.score_decreases_with_parameter else 1.0
        for other in trials[:-1]:
            if other.parameter == latest.parameter:
                continue
            low, high = sorted((other, latest), key=lambda t: t.parameter)
            if sign * (high.score - low.score) < -job.tolerance:
                logger.warn(f"{job.name}: score is not monotonic between {low.parameter:g} "
                            f"({low.score:.2f}) and {high.parameter:g} ({high.score:.2f})")
                return
