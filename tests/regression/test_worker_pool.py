"""
Regression tests for queue workers: timeouts, outcomes and the thread pool.
"""

import threading
import time
from types import SimpleNamespace

import pytest

from backend.callqc.errors import Fatal, Retryable
from backend.callqc.job_queue import NOTIFY, JobQueue, QueueOptions
from backend.callqc.worker_pool import JobTimeout, StageHandler, WorkerPool, run_with_timeout


def _job(timeout_ms=50):
    return SimpleNamespace(queue=NOTIFY, id="job-00000001", timeout_ms=timeout_ms)


class FlakyHandler:
    """Fails the first `failures` calls with `error`, then succeeds."""

    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or Retryable("Telegram server error (502)")
        self.calls = 0
        self.dead_lettered = []

    def handle(self, job):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return {"delivered": job.payload["call_id"]}

    def on_failed(self, job, error):
        self.dead_lettered.append((job.id, str(error)))

    def stage(self):
        return StageHandler(self.handle, on_failed=self.on_failed)


@pytest.fixture
def pool_for(services):
    def _make(handler, poll_interval=1.0):
        return WorkerPool(services.job_queue, {NOTIFY: handler.stage()}, poll_interval=poll_interval)
    return _make


class TestRunWithTimeout:
    """Handlers are bounded by the job timeout."""

    def test_returns_handler_result(self):
        assert run_with_timeout(lambda job: {"ok": job.id}, _job()) == {"ok": "job-00000001"}

    def test_handler_error_is_reraised(self):
        def boom(job):
            raise Fatal("bad payload")
        with pytest.raises(Fatal):
            run_with_timeout(boom, _job())

    def test_slow_handler_times_out(self):
        with pytest.raises(JobTimeout) as exc_info:
            run_with_timeout(lambda job: time.sleep(0.5), _job(timeout_ms=50))
        assert exc_info.value.retryable is True

    def test_exit_hook_runs_when_abandoned_handler_finishes(self):
        finished = threading.Event()
        abandoned = []
        with pytest.raises(JobTimeout):
            run_with_timeout(
                lambda job: time.sleep(0.2), _job(timeout_ms=20),
                on_exit=finished.set, on_abandon=abandoned.append,
            )
        assert len(abandoned) == 1
        assert not finished.is_set()
        assert finished.wait(2)


class TestDrain:
    """Inline processing."""

    def test_completed_job_stores_result(self, services, pool_for):
        handler = FlakyHandler()
        job = services.job_queue.enqueue(NOTIFY, {"call_id": "c-1"})
        outcomes = pool_for(handler).drain()

        assert outcomes == {"completed": 1, "retrying": 0, "failed": 0}
        stored = services.job_queue.get_job(job.id)
        assert stored.status == "completed"
        assert stored.result == {"delivered": "c-1"}

    def test_retry_then_success(self, services, pool_for):
        handler = FlakyHandler(failures=2)
        services.job_queue.enqueue(NOTIFY, {"call_id": "c-1"})
        outcomes = pool_for(handler).drain()

        assert outcomes == {"completed": 1, "retrying": 2, "failed": 0}
        assert handler.dead_lettered == []

    def test_on_failed_runs_once_when_attempts_exhausted(self, services, pool_for):
        handler = FlakyHandler(failures=10)
        job = services.job_queue.enqueue(NOTIFY, {"call_id": "c-1"}, attempts=3)
        outcomes = pool_for(handler).drain()

        assert outcomes == {"completed": 0, "retrying": 2, "failed": 1}
        assert handler.calls == 3
        assert handler.dead_lettered == [(job.id, "Telegram server error (502)")]

    def test_fatal_error_skips_retries(self, services, pool_for):
        handler = FlakyHandler(failures=1, error=Fatal("Telegram chat ID is required"))
        services.job_queue.enqueue(NOTIFY, {"call_id": "c-1"})
        outcomes = pool_for(handler).drain()

        assert outcomes["failed"] == 1
        assert handler.calls == 1

    def test_delayed_retries_wait_unless_included(self, services, pool_for):
        handler = FlakyHandler(failures=1)
        services.job_queue.enqueue(NOTIFY, {"call_id": "c-1"})
        pool = pool_for(handler)

        assert pool.drain(include_delayed=False) == {"completed": 0, "retrying": 1, "failed": 0}
        assert services.job_queue.pending(NOTIFY) == 1
        assert pool.drain()["completed"] == 1


class TestWorkerThreads:
    """Background polling."""

    def test_threads_process_and_stop(self, services, pool_for):
        handler = FlakyHandler()
        pool = pool_for(handler, poll_interval=0.01)
        pool.start()
        try:
            assert pool.is_running()
            services.job_queue.enqueue(NOTIFY, {"call_id": "c-1"})
            deadline = time.monotonic() + 5
            while pool.workers[NOTIFY].processed < 1 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert pool.status()[NOTIFY]["processed"] == 1
            assert pool.status()[NOTIFY]["concurrency"] == 5
        finally:
            pool.stop()
        assert not pool.is_running()

    def test_start_recovers_stalled_jobs(self, services, pool_for):
        services.job_queue.enqueue(NOTIFY, {"call_id": "c-1"})
        stalled = services.job_queue.reserve(NOTIFY)
        assert stalled.status == "active"

        pool = pool_for(FlakyHandler(), poll_interval=0.01)
        pool.start()
        try:
            deadline = time.monotonic() + 5
            while services.job_queue.pending(NOTIFY) and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            pool.stop()
        assert services.job_queue.get_job(stalled.id).status == "completed"


class SlowHandler:
    """Sleeps past the job timeout and records how many runs overlap."""

    def __init__(self, seconds):
        self.seconds = seconds
        self.running = 0
        self.max_running = 0
        self.calls = 0
        self._lock = threading.Lock()

    def handle(self, job):
        with self._lock:
            self.calls += 1
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        time.sleep(self.seconds)
        with self._lock:
            self.running -= 1


class TestTimedOutRuns:
    """A timed-out handler keeps its slot until it really stops."""

    @pytest.fixture
    def slow_pool(self, services):
        def _make(handler, concurrency):
            queue = JobQueue(services.db, {
                NOTIFY: QueueOptions(attempts=2, backoff_ms=10, timeout_ms=100, concurrency=concurrency),
            })
            return queue, WorkerPool(queue, {NOTIFY: StageHandler(handler.handle)}, poll_interval=0.01)
        return _make

    def test_retry_does_not_overlap_abandoned_run(self, slow_pool):
        handler = SlowHandler(0.4)
        queue, pool = slow_pool(handler, concurrency=1)
        job = queue.enqueue(NOTIFY, {"call_id": "c-1"})

        outcomes = pool.drain()

        assert outcomes == {"completed": 0, "retrying": 1, "failed": 1}
        assert handler.calls == 2
        assert handler.max_running == 1
        assert queue.get_job(job.id).failure["code"] == "JOB_TIMEOUT"

    def test_same_job_waits_even_with_free_slots(self, slow_pool):
        handler = SlowHandler(0.4)
        queue, pool = slow_pool(handler, concurrency=3)
        queue.enqueue(NOTIFY, {"call_id": "c-1"})

        pool.drain()

        assert handler.calls == 2
        assert handler.max_running == 1

    def test_status_reports_runs_still_going(self, slow_pool):
        handler = SlowHandler(0.5)
        queue, pool = slow_pool(handler, concurrency=2)
        queue.enqueue(NOTIFY, {"call_id": "c-1"}, attempts=1)

        assert pool.drain() == {"completed": 0, "retrying": 0, "failed": 1}
        assert pool.status()[NOTIFY]["timed_out_running"] == 1

        deadline = time.monotonic() + 3
        while handler.running and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.05)
        assert pool.status()[NOTIFY]["timed_out_running"] == 0
