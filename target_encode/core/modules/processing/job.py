"""
Job model for target_encode.

A Job is one source file moving through quality search, full encode, optional
grain re-synthesis and mux. State changes go through ``Job.transition`` so an
illegal jump (for example DONE back to SEARCHING) fails loudly.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from ..errors import ErrorKind


class JobState(Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    CONVERGED = "converged"
    ENCODING = "encoding"
    GRAIN_REAPPLYING = "grain_reapplying"
    MUXING = "muxing"
    MUXED = "muxed"
    DONE = "done"
    SEARCH_FAILED = "search_failed"
    ASSEMBLY_FAILED = "assembly_failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def in_progress(self) -> bool:
        return self not in TERMINAL_STATES and self is not JobState.PENDING


TERMINAL_STATES: FrozenSet[JobState] = frozenset({
    JobState.DONE, JobState.SEARCH_FAILED, JobState.ASSEMBLY_FAILED, JobState.CANCELLED,
})

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.SEARCHING, JobState.CANCELLED}),
    JobState.SEARCHING: frozenset({JobState.CONVERGED, JobState.SEARCH_FAILED, JobState.CANCELLED}),
    JobState.CONVERGED: frozenset({JobState.ENCODING, JobState.ASSEMBLY_FAILED, JobState.CANCELLED}),
    JobState.ENCODING: frozenset({JobState.GRAIN_REAPPLYING, JobState.MUXING,
                                  JobState.ASSEMBLY_FAILED, JobState.CANCELLED}),
    JobState.GRAIN_REAPPLYING: frozenset({JobState.MUXING, JobState.ASSEMBLY_FAILED, JobState.CANCELLED}),
    JobState.MUXING: frozenset({JobState.MUXED, JobState.ASSEMBLY_FAILED, JobState.CANCELLED}),
    JobState.MUXED: frozenset({JobState.DONE, JobState.ASSEMBLY_FAILED, JobState.CANCELLED}),
}


@dataclass
class Job:
    """One source file to encode."""
    index: int
    source: Path
    output_path: Path
    target_score: float
    tolerance: float
    parameter_min: float
    parameter_max: float
    reference: Optional[Path] = None  # scored against; defaults to the source
    state: JobState = JobState.PENDING
    final_parameter: Optional[float] = None
    final_score: Optional[float] = None
    out_of_range: bool = False

    def __post_init__(self):
        self.source = Path(self.source)
        self.output_path = Path(self.output_path)
        if self.reference is not None:
            self.reference = Path(self.reference)
        if not self.parameter_min <= self.parameter_max:
            raise ValueError(
                f"Empty parameter range [{self.parameter_min}, {self.parameter_max}] for {self.source.name}")
        if self.tolerance < 0:
            raise ValueError(f"Tolerance must be non-negative, got {self.tolerance}")

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def reference_media(self) -> Path:
        return self.reference or self.source

    def transition(self, new_state: JobState):
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise ValueError(f"Illegal job transition {self.state.value} -> {new_state.value} for {self.name}")
        self.state = new_state


@dataclass
class SearchTrial:
    """One trial encode + score during the quality search."""
    iteration: int
    parameter: float
    score: Optional[float] = None
    outcome: str = "ok"
    attempts: int = 1

    def distance(self, target: float) -> float:
        if self.score is None:
            return float("inf")
        return abs(self.score - target)


@dataclass
class JobResult:
    """Terminal outcome of one job, as stored in the BatchResult."""
    job_index: int
    source: str
    state: JobState
    output_path: Optional[str] = None
    parameter: Optional[float] = None
    score: Optional[float] = None
    trials: int = 0
    out_of_range: bool = False
    termination: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    slot_index: Optional[int] = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.DONE

    def to_dict(self) -> dict:
        return {
            'job_index': self.job_index,
            'source': self.source,
            'state': self.state.value,
            'output_path': self.output_path,
            'parameter': self.parameter,
            'score': self.score,
            'trials': self.trials,
            'out_of_range': self.out_of_range,
            'termination': self.termination,
            'error_kind': self.error_kind.value if self.error_kind else None,
            'error_message': self.error_message,
            'slot_index': self.slot_index,
            'duration': round(self.duration, 3),
        }


@dataclass
class ProgressEvent:
    """Emitted to the progress callback on every job state transition."""
    job_index: int
    source: str
    state: JobState
    slot_index: Optional[int] = None
    detail: Dict[str, object] = field(default_factory=dict)
