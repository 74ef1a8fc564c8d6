"""
Worker pool scheduling for target_encode.

This module handles concurrent job processing including:
- WorkerSlot: one of W reusable execution contexts
- BatchResult: thread-safe, append-only record of terminal job outcomes
- WorkerPoolScheduler: FIFO dispatch of jobs onto slots, per-job pipeline
  (quality search, then assembly), progress events and cancellation
"""

import concurrent.futures
import json
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .job import Job, JobResult, JobState, ProgressEvent
from ..errors import AssemblyError, ErrorKind, JobCancelled, SearchError, TargetEncodeError
from ....utils.logging import get_logger, format_duration

logger = get_logger("scheduler")

ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class WorkerSlot:
    """One concurrent execution context; runs at most one job at a time."""
    index: int
    job: Optional[Job] = None
    jobs_run: int = 0


class BatchResult:
    """Outcome of a batch, written concurrently by every slot.

    Entries are append-only: a job index can be recorded once.
    """

    def __init__(self, total_jobs: int = 0):
        self.total_jobs = total_jobs
        self.started_at = time.time()
        self.finished_at: Optional[float] = None
        self._lock = threading.Lock()
        self._results: Dict[int, JobResult] = {}
        self._assignments: List[Tuple[int, int]] = []

    def record_assignment(self, job_index: int, slot_index: int):
        with self._lock:
            self._assignments.append((job_index, slot_index))

    def record(self, result: JobResult):
        if not result.state.terminal:
            raise ValueError(f"Job {result.job_index} recorded in non-terminal state {result.state.value}")
        with self._lock:
            if result.job_index in self._results:
                raise ValueError(f"Job {result.job_index} already has a recorded result")
            self._results[result.job_index] = result

    def get(self, job_index: int) -> Optional[JobResult]:
        with self._lock:
            return self._results.get(job_index)

    def results(self) -> List[JobResult]:
        """All recorded results ordered by job index."""
        with self._lock:
            return [self._results[i] for i in sorted(self._results)]

    @property
    def assignment_order(self) -> List[int]:
        with self._lock:
            return [job_index for job_index, _ in self._assignments]

    @property
    def assignments(self) -> List[Tuple[int, int]]:
        with self._lock:
            return list(self._assignments)

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for result in self.results():
            counts[result.state.value] = counts.get(result.state.value, 0) + 1
        return counts

    def failures(self) -> List[JobResult]:
        return [r for r in self.results() if not r.succeeded]

    @property
    def all_succeeded(self) -> bool:
        results = self.results()
        return len(results) == self.total_jobs and all(r.succeeded for r in results)

    def to_dict(self) -> dict:
        return {
            'total_jobs': self.total_jobs,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'summary': self.summary(),
            'assignment_order': self.assignment_order,
            'jobs': [r.to_dict() for r in self.results()],
        }

    def save(self, path: Path):
        """Write the batch report as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(path)


class WorkerPoolScheduler:
    """Runs each job's search and assembly on a bounded pool of worker slots."""

    def __init__(self, search_engine, assembly, supervisor=None,
                 progress_callback: Optional[ProgressCallback] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.search_engine = search_engine
        self.assembly = assembly
        self.supervisor = supervisor
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event or threading.Event()

        self._pending: "queue.Queue[Job]" = queue.Queue()
        self._claim_lock = threading.Lock()
        self._flight_lock = threading.Lock()
        self._in_flight = 0
        self.peak_in_flight = 0
        self.slots: List[WorkerSlot] = []
        self._notifier: Optional[concurrent.futures.ThreadPoolExecutor] = None

    def cancel(self):
        """Stop assigning jobs and terminate running tools; in-flight jobs end CANCELLED."""
        if not self.cancel_event.is_set():
            logger.warn("Cancellation requested")
        self.cancel_event.set()

    def run_batch(self, jobs: Sequence[Job], worker_count: int) -> BatchResult:
        if worker_count < 1:
            raise ValueError(f"worker_count must be at least 1, got {worker_count}")
        indices = [job.index for job in jobs]
        if len(set(indices)) != len(indices):
            raise ValueError("Job indices must be unique within a batch")
        for job in jobs:
            if job.state is not JobState.PENDING:
                raise ValueError(f"Job {job.index} ({job.name}) is {job.state.value}, not pending")

        result = BatchResult(total_jobs=len(jobs))
        for job in jobs:
            self._pending.put(job)

        self.slots = [WorkerSlot(i) for i in range(worker_count)]
        active_slots = self.slots[:max(1, min(worker_count, len(jobs)))]
        self._in_flight = 0
        self.peak_in_flight = 0

        logger.info(f"Starting batch: {len(jobs)} jobs on {worker_count} worker slots")
        started = time.monotonic()

        self._notifier = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="progress")
        try:
            with concurrent.futures.ThreadPoolExecutor(max_workers=len(active_slots),
                                                       thread_name_prefix="slot") as executor:
                futures = [executor.submit(self._slot_loop, slot, result) for slot in active_slots]
                for future in concurrent.futures.as_completed(futures):
                    exc = future.exception()
                    if exc is not None:
                        logger.error(f"Worker slot stopped unexpectedly: {exc}")

            self._cancel_remaining(result)
            if self.supervisor is not None and self.supervisor.active_count():
                self.supervisor.terminate_all()
        finally:
            self._notifier.shutdown(wait=True)
            self._notifier = None

        result.finished_at = time.time()
        counts = ", ".join(f"{k}={v}" for k, v in sorted(result.summary().items()))
        logger.result(f"Batch finished in {format_duration(time.monotonic() - started)}: {counts}")
        return result

    def _claim(self, slot: WorkerSlot, result: BatchResult) -> Optional[Job]:
        with self._claim_lock:
            if self.cancel_event.is_set():
                return None
            try:
                job = self._pending.get_nowait()
            except queue.Empty:
                return None
            result.record_assignment(job.index, slot.index)
            slot.job = job
            return job

    def _slot_loop(self, slot: WorkerSlot, result: BatchResult):
        while True:
            job = self._claim(slot, result)
            if job is None:
                return

            with self._flight_lock:
                self._in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            try:
                job_result = self._process(job, slot)
            finally:
                with self._flight_lock:
                    self._in_flight -= 1
                slot.job = None
                slot.jobs_run += 1
            result.record(job_result)

    def _process(self, job: Job, slot: WorkerSlot) -> JobResult:
        """Run one job end to end; never raises."""
        logger.worker(f"slot {slot.index}: starting {job.name}")
        started = time.monotonic()
        job_result = JobResult(job.index, str(job.source), JobState.PENDING, slot_index=slot.index)

        try:
            self._transition(job, JobState.SEARCHING, slot)
            outcome = self.search_engine.search(job, self.cancel_event)
            job.final_parameter = outcome.parameter
            job.final_score = outcome.score
            job.out_of_range = outcome.out_of_range
            job_result.parameter = outcome.parameter
            job_result.score = outcome.score
            job_result.trials = len(outcome.trials)
            job_result.out_of_range = outcome.out_of_range
            job_result.termination = outcome.reason.value
            self._transition(job, JobState.CONVERGED, slot,
                             parameter=outcome.parameter, score=outcome.score)

            output = self.assembly.assemble(
                job, outcome.parameter,
                lambda j, state: self._transition(j, state, slot),
                self.cancel_event,
            )
            job_result.output_path = str(output)
        except JobCancelled as e:
            self._fail(job, slot, job_result, JobState.CANCELLED, ErrorKind.CANCELLED, str(e))
        except SearchError as e:
            if e.best_trial is not None:
                job_result.parameter = e.best_trial.parameter
                job_result.score = e.best_trial.score
            job_result.trials = e.trials
            if e.kind is ErrorKind.SEARCH_NOT_CONVERGED:
                job_result.termination = "iteration_ceiling"
            self._fail(job, slot, job_result, JobState.SEARCH_FAILED, e.kind, str(e))
        except AssemblyError as e:
            message = str(e) if e.cause is None else f"{e} [{e.cause.value}]"
            self._fail(job, slot, job_result, JobState.ASSEMBLY_FAILED, ErrorKind.ASSEMBLY_FAILURE, message)
        except TargetEncodeError as e:
            self._fail(job, slot, job_result, self._failure_state(job), e.kind, str(e))
        except Exception as e:
            logger.error(f"{job.name}: unexpected error: {e!r}")
            self._fail(job, slot, job_result, self._failure_state(job), None, f"unexpected error: {e!r}")

        job_result.state = job.state
        job_result.duration = time.monotonic() - started
        logger.worker(f"slot {slot.index}: {job.name} {job.state.value} "
                      f"after {format_duration(job_result.duration)}")
        return job_result

    @staticmethod
    def _failure_state(job: Job) -> JobState:
        if job.state in (JobState.PENDING, JobState.SEARCHING):
            return JobState.SEARCH_FAILED
        return JobState.ASSEMBLY_FAILED

    def _fail(self, job: Job, slot: WorkerSlot, job_result: JobResult, state: JobState,
              kind: Optional[ErrorKind], message: str):
        job_result.error_kind = kind
        job_result.error_message = message
        if state is JobState.CANCELLED:
            logger.warn(message)
        else:
            logger.error(message)
        if not job.state.terminal:
            self._transition(job, state, slot, error_kind=kind.value if kind else None)

    def _transition(self, job: Job, state: JobState, slot: Optional[WorkerSlot], **detail):
        job.transition(state)
        self._notify(ProgressEvent(job.index, str(job.source), state,
                                   slot.index if slot else None, dict(detail)))

    def _notify(self, event: ProgressEvent):
        if self.progress_callback is None or self._notifier is None:
            return
        self._notifier.submit(self._deliver, event)

    def _deliver(self, event: ProgressEvent):
        try:
            self.progress_callback(event)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")

    def _cancel_remaining(self, result: BatchResult):
        """Record CANCELLED for jobs never claimed because of a stop signal."""
        while True:
            try:
                job = self._pending.get_nowait()
            except queue.Empty:
                return
            self._transition(job, JobState.CANCELLED, None)
            result.record(JobResult(job.index, str(job.source), JobState.CANCELLED,
                                    error_kind=ErrorKind.CANCELLED,
                                    error_message="cancelled before start"))
