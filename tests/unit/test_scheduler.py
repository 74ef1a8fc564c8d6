"""
Unit tests for the worker pool scheduler and BatchResult.

Search and assembly are replaced with in-memory fakes so the tests exercise
slot assignment, concurrency bounds, failure isolation and cancellation.
"""

import json
import shutil
import tempfile
import threading
import time
import unittest
from pathlib import Path

from target_encode.core.modules.errors import (
    AssemblyError, ErrorKind, JobCancelled, SearchError,
)
from target_encode.core.modules.optimization.quality_search import SearchOutcome, TerminationReason
from target_encode.core.modules.processing.job import Job, JobResult, JobState, SearchTrial
from target_encode.core.modules.processing.scheduler import BatchResult, WorkerPoolScheduler


def make_jobs(count):
    return [Job(index=i, source=Path(f"/media/ep{i:02d}.mkv"), output_path=Path(f"/out/ep{i:02d}.mkv"),
                target_score=80.0, tolerance=1.0, parameter_min=25.0, parameter_max=55.0)
            for i in range(count)]


class FakeSearchEngine:
    """Returns a converged outcome; per-job behaviour can be overridden."""

    def __init__(self, delay=0.0, behaviour=None):
        self.delay = delay
        self.behaviour = behaviour or {}
        self.lock = threading.Lock()
        self.running = 0
        self.max_running = 0

    def search(self, job, cancel_event=None):
        with self.lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                time.sleep(self.delay)
            action = self.behaviour.get(job.index)
            if action is not None:
                return action(job, cancel_event)
            trial = SearchTrial(1, 30.0, 80.2)
            return SearchOutcome(30.0, 80.2, TerminationReason.CONVERGED, [trial])
        finally:
            with self.lock:
                self.running -= 1


class FakeAssembly:
    def __init__(self, fail_indices=()):
        self.fail_indices = set(fail_indices)

    def assemble(self, job, parameter, transition, cancel_event=None):
        transition(job, JobState.ENCODING)
        if job.index in self.fail_indices:
            raise AssemblyError(f"{job.name}: encode failed: exit code 1", "encode", ErrorKind.TOOL_CRASHED)
        transition(job, JobState.MUXING)
        transition(job, JobState.MUXED)
        transition(job, JobState.DONE)
        return job.output_path


class TestWorkerPoolScheduler(unittest.TestCase):
    """Test batch execution on the worker pool."""

    def run_batch(self, jobs, workers, engine=None, assembly=None, **kwargs):
        self.scheduler = WorkerPoolScheduler(engine or FakeSearchEngine(), assembly or FakeAssembly(), **kwargs)
        return self.scheduler.run_batch(jobs, workers)

    def test_every_job_done(self):
        jobs = make_jobs(5)
        result = self.run_batch(jobs, 2)

        self.assertEqual(len(result), 5)
        self.assertTrue(result.all_succeeded)
        self.assertEqual(result.summary(), {"done": 5})
        self.assertEqual(result.get(2).output_path, "/out/ep02.mkv")
        self.assertEqual(result.get(2).parameter, 30.0)
        self.assertTrue(all(job.state is JobState.DONE for job in jobs))

    def test_assignment_is_fifo(self):
        result = self.run_batch(make_jobs(10), 4, FakeSearchEngine(delay=0.01))
        self.assertEqual(result.assignment_order, list(range(10)))

    def test_concurrency_bounded_by_worker_count(self):
        barrier = threading.Barrier(4, timeout=10)

        def wait_for_all_slots(job, cancel_event):
            barrier.wait()
            return SearchOutcome(30.0, 80.0, TerminationReason.CONVERGED, [SearchTrial(1, 30.0, 80.0)])

        engine = FakeSearchEngine(delay=0.02, behaviour={i: wait_for_all_slots for i in range(4)})
        result = self.run_batch(make_jobs(10), 4, engine)

        self.assertTrue(result.all_succeeded)
        self.assertEqual(engine.max_running, 4)
        self.assertEqual(self.scheduler.peak_in_flight, 4)
        self.assertEqual(len({slot for _, slot in result.assignments}), 4)

    def test_parse_error_for_every_job(self):
        def parse_error(job, cancel_event):
            raise SearchError(f"{job.name}: trial failed", ErrorKind.SCORE_PARSE_ERROR, trials=2)

        jobs = make_jobs(10)
        result = self.run_batch(jobs, 4, FakeSearchEngine(behaviour={i: parse_error for i in range(10)}))

        self.assertEqual(len(result), 10)
        for r in result.results():
            self.assertEqual(r.state, JobState.SEARCH_FAILED)
            self.assertEqual(r.error_kind, ErrorKind.SCORE_PARSE_ERROR)

    def test_not_converged_keeps_best_trial(self):
        def ceiling(job, cancel_event):
            raise SearchError("no parameter", ErrorKind.SEARCH_NOT_CONVERGED,
                              best_trial=SearchTrial(8, 33.5, 77.9), trials=8)

        result = self.run_batch(make_jobs(1), 1, FakeSearchEngine(behaviour={0: ceiling}))
        r = result.get(0)

        self.assertEqual(r.state, JobState.SEARCH_FAILED)
        self.assertEqual((r.parameter, r.score, r.trials), (33.5, 77.9, 8))
        self.assertEqual(r.termination, "iteration_ceiling")

    def test_unexpected_error_is_isolated(self):
        def crash(job, cancel_event):
            raise RuntimeError("bug in search")

        result = self.run_batch(make_jobs(6), 3, FakeSearchEngine(behaviour={3: crash}))

        self.assertEqual(len(result), 6)
        self.assertEqual(result.get(3).state, JobState.SEARCH_FAILED)
        self.assertIn("bug in search", result.get(3).error_message)
        self.assertEqual(result.summary(), {"done": 5, "search_failed": 1})

    def test_assembly_failure(self):
        result = self.run_batch(make_jobs(3), 2, assembly=FakeAssembly(fail_indices=[1]))
        r = result.get(1)

        self.assertEqual(r.state, JobState.ASSEMBLY_FAILED)
        self.assertEqual(r.error_kind, ErrorKind.ASSEMBLY_FAILURE)
        self.assertIn("tool_crashed", r.error_message)
        self.assertEqual(r.parameter, 30.0)
        self.assertFalse(result.all_succeeded)

    def test_out_of_range_reported(self):
        def unreachable(job, cancel_event):
            return SearchOutcome(25.0, 76.0, TerminationReason.RANGE_EXHAUSTED,
                                 [SearchTrial(1, 25.0, 76.0)], out_of_range=True)

        result = self.run_batch(make_jobs(1), 1, FakeSearchEngine(behaviour={0: unreachable}))

        self.assertEqual(result.get(0).state, JobState.DONE)
        self.assertTrue(result.get(0).out_of_range)
        self.assertEqual(result.get(0).termination, "range_exhausted")

    def test_cancel_marks_running_and_pending_jobs(self):
        started = threading.Semaphore(0)

        def wait_for_cancel(job, cancel_event):
            started.release()
            cancel_event.wait(10)
            raise JobCancelled(f"search for {job.name} cancelled")

        engine = FakeSearchEngine(behaviour={i: wait_for_cancel for i in range(6)})
        scheduler = WorkerPoolScheduler(engine, FakeAssembly())
        outcome = {}
        runner = threading.Thread(target=lambda: outcome.update(result=scheduler.run_batch(make_jobs(6), 2)))
        runner.start()

        self.assertTrue(started.acquire(timeout=10))
        self.assertTrue(started.acquire(timeout=10))
        scheduler.cancel()
        runner.join(timeout=20)

        self.assertFalse(runner.is_alive())
        result = outcome['result']
        self.assertEqual(len(result), 6)
        self.assertEqual(result.summary(), {"cancelled": 6})
        self.assertEqual(result.assignment_order, [0, 1])
        before_start = [r for r in result.results() if r.error_message == "cancelled before start"]
        self.assertEqual([r.job_index for r in before_start], [2, 3, 4, 5])
        self.assertTrue(all(r.error_kind is ErrorKind.CANCELLED for r in result.results()))

    def test_progress_events(self):
        events = []
        lock = threading.Lock()

        def on_progress(event):
            with lock:
                events.append(event)

        self.run_batch(make_jobs(2), 2, progress_callback=on_progress)

        states = [e.state for e in events if e.job_index == 1]
        self.assertEqual(states, [JobState.SEARCHING, JobState.CONVERGED, JobState.ENCODING,
                                  JobState.MUXING, JobState.MUXED, JobState.DONE])
        converged = next(e for e in events if e.state is JobState.CONVERGED)
        self.assertEqual(converged.detail, {"parameter": 30.0, "score": 80.2})

    def test_failing_progress_callback_does_not_affect_jobs(self):
        def broken(event):
            raise RuntimeError("display gone")

        result = self.run_batch(make_jobs(3), 2, progress_callback=broken)
        self.assertTrue(result.all_succeeded)

    def test_rejects_invalid_batches(self):
        scheduler = WorkerPoolScheduler(FakeSearchEngine(), FakeAssembly())
        with self.assertRaises(ValueError):
            scheduler.run_batch(make_jobs(2), 0)

        jobs = make_jobs(2)
        jobs[1].state = JobState.DONE
        with self.assertRaises(ValueError):
            scheduler.run_batch(jobs, 2)

    def test_empty_batch(self):
        result = self.run_batch([], 4)
        self.assertEqual(len(result), 0)
        self.assertTrue(result.all_succeeded)


class TestBatchResult(unittest.TestCase):
    """Test BatchResult bookkeeping."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_duplicate_record_rejected(self):
        result = BatchResult(total_jobs=1)
        result.record(JobResult(0, "/media/ep00.mkv", JobState.DONE))
        with self.assertRaises(ValueError):
            result.record(JobResult(0, "/media/ep00.mkv", JobState.CANCELLED))
        self.assertEqual(len(result), 1)

    def test_non_terminal_record_rejected(self):
        with self.assertRaises(ValueError):
            BatchResult().record(JobResult(0, "/media/ep00.mkv", JobState.MUXING))

    def test_results_sorted_by_index(self):
        result = BatchResult(total_jobs=3)
        for index in (2, 0, 1):
            result.record(JobResult(index, f"/media/ep{index:02d}.mkv", JobState.DONE))
        self.assertEqual([r.job_index for r in result.results()], [0, 1, 2])

    def test_save_writes_json_report(self):
        result = BatchResult(total_jobs=2)
        result.record_assignment(0, 0)
        result.record(JobResult(0, "/media/ep00.mkv", JobState.DONE, parameter=30.0, score=80.1))
        result.record(JobResult(1, "/media/ep01.mkv", JobState.CANCELLED, error_kind=ErrorKind.CANCELLED))

        path = self.temp_dir / "reports" / "batch.json"
        result.save(path)
        data = json.loads(path.read_text())

        self.assertEqual(data['total_jobs'], 2)
        self.assertEqual(data['summary'], {"done": 1, "cancelled": 1})
        self.assertEqual(data['jobs'][1]['error_kind'], "cancelled")
        self.assertEqual(data['assignment_order'], [0])


if __name__ == '__main__':
    unittest.main()
