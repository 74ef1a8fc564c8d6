"""
Error classification and exception types for target_encode.

Every failure that reaches a job boundary carries an ``ErrorKind`` so the
batch report can say why a job failed. Only ``ToolMissingError`` raised
during preflight aborts a whole batch; everything else is recorded against
the job that hit it.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    TOOL_MISSING = "tool_missing"
    TOOL_CRASHED = "tool_crashed"
    TOOL_TIMED_OUT = "tool_timed_out"
    SCORE_PARSE_ERROR = "score_parse_error"
    SEARCH_NOT_CONVERGED = "search_not_converged"
    ASSEMBLY_FAILURE = "assembly_failure"
    CANCELLED = "cancelled"

    @property
    def transient(self) -> bool:
        """Whether a failed trial or step of this kind is worth retrying."""
        return self in (ErrorKind.TOOL_CRASHED, ErrorKind.TOOL_TIMED_OUT,
                        ErrorKind.SCORE_PARSE_ERROR)


class TargetEncodeError(Exception):
    """Base class for all target_encode errors."""

    kind: ErrorKind = ErrorKind.TOOL_CRASHED

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ToolMissingError(TargetEncodeError):
    """Raised when a required external binary cannot be found."""

    kind = ErrorKind.TOOL_MISSING

    def __init__(self, tools):
        self.tools = list(tools)
        super().__init__(f"Required tools not found on PATH: {', '.join(self.tools)}")


class ToolError(TargetEncodeError):
    """An external tool invocation did not succeed."""

    def __init__(self, message: str, kind: ErrorKind, outcome=None):
        super().__init__(message, kind)
        self.outcome = outcome


class ScoreError(ToolError):
    """The metric scorer failed or produced unparseable output."""


class SearchError(TargetEncodeError):
    """The quality search could not produce a usable parameter.

    ``best_trial`` holds the closest trial seen, when any trial scored.
    """

    def __init__(self, message: str, kind: ErrorKind, best_trial=None, trials: int = 0):
        super().__init__(message, kind)
        self.best_trial = best_trial
        self.trials = trials


class AssemblyError(TargetEncodeError):
    """Full encode, grain re-synthesis or mux failed for a job."""

    kind = ErrorKind.ASSEMBLY_FAILURE

    def __init__(self, message: str, stage: str, cause: Optional[ErrorKind] = None):
        super().__init__(message)
        self.stage = stage
        self.cause = cause


class JobCancelled(TargetEncodeError):
    """The batch stop signal interrupted a job."""

    kind = ErrorKind.CANCELLED
