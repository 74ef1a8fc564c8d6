"""
Process supervision for target_encode.

Every external tool (av1an, ssimulacra2, grav1synth, mkvmerge) is run through
``ProcessSupervisor.run``, which:
- spawns exactly one child process per call
- captures stdout/stderr and the exit status
- enforces an optional timeout
- watches a shared cancel event while waiting
- terminates and reaps the whole child process tree on timeout, cancellation
  or any unexpected exit path before returning

Failures are returned as outcome values, never retried here. Callers that want
an exception use ``require_success``.
"""

import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import psutil

from ..errors import ErrorKind, ToolError
from ....utils.logging import get_logger

logger = get_logger("process_supervisor")


@dataclass
class Success:
    stdout: str
    stderr: str = ""
    exit_code: int = 0


@dataclass
class Failure:
    exit_code: int
    stderr: str
    stdout: str = ""


@dataclass
class TimedOut:
    timeout: float
    stderr: str = ""


@dataclass
class SpawnError:
    reason: str


@dataclass
class Cancelled:
    reason: str = "cancelled"


Outcome = Union[Success, Failure, TimedOut, SpawnError, Cancelled]


def outcome_kind(outcome: Outcome) -> Optional[ErrorKind]:
    """Map a process outcome onto the batch error classification."""
    if isinstance(outcome, Success):
        return None
    if isinstance(outcome, Failure):
        return ErrorKind.TOOL_CRASHED
    if isinstance(outcome, TimedOut):
        return ErrorKind.TOOL_TIMED_OUT
    if isinstance(outcome, SpawnError):
        return ErrorKind.TOOL_MISSING
    return ErrorKind.CANCELLED


def describe_outcome(outcome: Outcome) -> str:
    if isinstance(outcome, Success):
        return "ok"
    if isinstance(outcome, Failure):
        tail = outcome.stderr.strip().splitlines()[-1:] if outcome.stderr else []
        detail = f": {tail[0][:200]}" if tail else ""
        return f"exit code {outcome.exit_code}{detail}"
    if isinstance(outcome, TimedOut):
        return f"timed out after {outcome.timeout:g}s"
    if isinstance(outcome, SpawnError):
        return f"could not start: {outcome.reason}"
    return outcome.reason


def require_success(outcome: Outcome, tool: str) -> Success:
    """Return the Success outcome or raise ToolError classified by outcome."""
    if isinstance(outcome, Success):
        return outcome
    kind = outcome_kind(outcome)
    raise ToolError(f"{tool} {describe_outcome(outcome)}", kind, outcome)


class ProcessSupervisor:
    """Runs external tools as scoped, always-reaped child processes."""

    def __init__(self, poll_interval: float = 0.1, terminate_grace: float = 5.0):
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace
        self._lock = threading.Lock()
        self._children: Dict[int, subprocess.Popen] = {}
        self._shutdown = threading.Event()

    def run(self, command: Union[str, Path], args: Sequence = (), timeout: Optional[float] = None,
            cancel_event: Optional[threading.Event] = None, cwd: Optional[Path] = None) -> Outcome:
        cmd = [str(command)] + [str(a) for a in args]
        logger.cmd(" ".join(shlex.quote(c) for c in cmd))

        if self._stop_requested(cancel_event):
            return Cancelled("cancelled before start")

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                cwd=str(cwd) if cwd else None,
            )
        except FileNotFoundError:
            return SpawnError(f"{cmd[0]}: binary not found")
        except PermissionError:
            return SpawnError(f"{cmd[0]}: permission denied")
        except OSError as e:
            return SpawnError(f"{cmd[0]}: {e}")

        with self._lock:
            self._children[proc.pid] = proc
        try:
            return self._supervise(proc, timeout, cancel_event)
        finally:
            if proc.poll() is None:
                self._terminate_tree(proc)
                self._drain(proc)
            with self._lock:
                self._children.pop(proc.pid, None)

    def _stop_requested(self, cancel_event: Optional[threading.Event]) -> bool:
        return self._shutdown.is_set() or (cancel_event is not None and cancel_event.is_set())

    def _supervise(self, proc: subprocess.Popen, timeout: Optional[float],
                   cancel_event: Optional[threading.Event]) -> Outcome:
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warn(f"{Path(proc.args[0]).name} timed out after {timeout:g}s, terminating")
                    self._terminate_tree(proc)
                    _, stderr = self._drain(proc)
                    return TimedOut(timeout, stderr)
                wait = min(wait, remaining)

            try:
                stdout, stderr = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if self._stop_requested(cancel_event):
                    logger.debug(f"Stop requested, terminating pid {proc.pid}")
                    self._terminate_tree(proc)
                    self._drain(proc)
                    return Cancelled()

        if proc.returncode == 0:
            return Success(stdout or "", stderr or "")
        # killed by terminate_all or a cancel between polls
        if self._stop_requested(cancel_event):
            return Cancelled()
        return Failure(proc.returncode, stderr or "", stdout or "")

    def _terminate_tree(self, proc: subprocess.Popen):
        """Terminate the child and all of its descendants, killing stragglers."""
        try:
            parent = psutil.Process(proc.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for p in procs:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.terminate_grace)
        for p in alive:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass
        if alive:
            psutil.wait_procs(alive, timeout=self.terminate_grace)

    def _drain(self, proc: subprocess.Popen):
        """Collect remaining output and reap the child."""
        try:
            stdout, stderr = proc.communicate(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
        return stdout or "", stderr or ""

    def active_count(self) -> int:
        """Number of child processes currently supervised."""
        with self._lock:
            return len(self._children)

    def terminate_all(self, wait: float = 30.0) -> bool:
        """Stop every supervised child and wait until all have been reaped.

        Returns True when no supervised child remains.
        """
        self._shutdown.set()
        with self._lock:
            children = list(self._children.values())
        for proc in children:
            if proc.poll() is None:
                self._terminate_tree(proc)

        deadline = time.monotonic() + wait
        while self.active_count() and time.monotonic() < deadline:
            time.sleep(self.poll_interval)
        return self.active_count() == 0
