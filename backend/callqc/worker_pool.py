"""
Polling workers that drain the durable queues.

Each queue gets `concurrency` daemon threads. A worker claims one job,
runs its stage handler under the job's timeout, then acks, retries or
dead-letters it through the queue. `drain()` processes jobs inline and is
what tests and one-shot scripts use instead of threads.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import Retryable
from .job_queue import QUEUE_NAMES, JobQueue
from .logging_config import PerformanceMonitor, log_app_error
from .models import Job

logger = logging.getLogger('callqc.workers')


@dataclass
class StageHandler:
    """Work function for a queue plus the hook run when a job is dead-lettered."""

    handle: Callable[[Job], Optional[Dict[str, Any]]]
    on_failed: Optional[Callable[[Job, BaseException], None]] = None


class JobTimeout(Retryable):
    code = "JOB_TIMEOUT"


def run_with_timeout(
    func: Callable[[Job], Any],
    job: Job,
    on_exit: Optional[Callable[[], None]] = None,
    on_abandon: Optional[Callable[[threading.Thread], None]] = None,
) -> Any:
    """
    Run a handler in a helper thread and give up after the job's timeout.

    `on_exit` runs in the helper thread when the handler really returns,
    which for a timed-out handler is after this function has raised.
    `on_abandon` receives the still-running thread on timeout.
    """
    outcome: Dict[str, Any] = {}

    def target():
        try:
            outcome["result"] = func(job)
        except BaseException as e:  # re-raised in the caller's thread
            outcome["error"] = e
        finally:
            if on_exit is not None:
                on_exit()

    thread = threading.Thread(target=target, name=f"{job.queue}-{job.id[:8]}", daemon=True)
    thread.start()
    thread.join(job.timeout_ms / 1000.0)
    if thread.is_alive():
        if on_abandon is not None:
            on_abandon(thread)
        raise JobTimeout(f"Job exceeded timeout of {job.timeout_ms}ms", {"job_id": job.id, "queue": job.queue})
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


class QueueWorker:
    """
    Consumes one named queue.

    A handler holds one of `concurrency` slots until its thread really
    finishes, so a timed-out run still counts against the limit while it
    keeps going in the background.
    """

    def __init__(self, queue_name: str, job_queue: JobQueue, stage: StageHandler,
                 concurrency: int = 1, poll_interval: float = 1.0):
        self.queue_name = queue_name
        self.job_queue = job_queue
        self.stage = stage
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.processed = 0
        self.failed = 0
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self.concurrency)
        # job id -> handler thread still running after its timeout
        self._abandoned: Dict[str, threading.Thread] = {}

    def _abandon(self, job: Job, thread: threading.Thread) -> None:
        with self._lock:
            self._abandoned[job.id] = thread
        logger.warning(f"[{self.queue_name}] job {job.id} timed out; handler still running in {thread.name}")

    def _handler_exited(self, job: Job, slot_release: Optional[Callable[[], None]]) -> None:
        with self._lock:
            thread = self._abandoned.get(job.id)
            if thread is threading.current_thread():
                del self._abandoned[job.id]
        if slot_release is not None:
            slot_release()

    def _wait_for_abandoned(self, job: Job) -> None:
        with self._lock:
            thread = self._abandoned.pop(job.id, None)
        if thread is not None and thread.is_alive():
            logger.warning(f"[{self.queue_name}] job {job.id} waiting for its timed-out run to finish")
            thread.join()

    def execute(self, job: Job, slot_release: Optional[Callable[[], None]] = None) -> str:
        """
        Run one claimed job; returns "completed", "retrying" or "failed".

        `slot_release` is called once the handler thread has exited.
        """
        self._wait_for_abandoned(job)
        try:
            with PerformanceMonitor(f"{self.queue_name} job {job.id}", 'callqc.workers'):
                result = run_with_timeout(
                    self.stage.handle,
                    job,
                    on_exit=lambda: self._handler_exited(job, slot_release),
                    on_abandon=lambda thread: self._abandon(job, thread),
                )
        except Exception as e:
            outcome = self.job_queue.fail(job, e)
            with self._lock:
                if outcome == "failed":
                    self.failed += 1
            if outcome == "failed" and self.stage.on_failed is not None:
                self.stage.on_failed(job, e)
            return outcome

        self.job_queue.complete(job, result if isinstance(result, dict) else {"result": result})
        with self._lock:
            self.processed += 1
        return "completed"

    def process_one(self, include_delayed: bool = False, wait: Optional[float] = None) -> Optional[str]:
        """
        Claim and run the next ready job; None when the queue is empty.

        Blocks for a free slot first, at most `wait` seconds when given.
        """
        if not self._slots.acquire(timeout=wait):
            return None
        try:
            job = self.job_queue.reserve(self.queue_name, include_delayed=include_delayed)
        except Exception:
            self._slots.release()
            raise
        if job is None:
            self._slots.release()
            return None
        return self.execute(job, slot_release=self._slots.release)

    def _loop(self) -> None:
        logger.info(f"[{self.queue_name}] worker thread started")
        while not self._stop_event.is_set():
            try:
                outcome = self.process_one(wait=self.poll_interval)
            except Exception as e:
                log_app_error(logger, e, f"{self.queue_name} worker loop")
                outcome = None
            if outcome is None:
                self._stop_event.wait(self.poll_interval)
        logger.info(f"[{self.queue_name}] worker thread stopped")

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"worker-{self.queue_name}-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            abandoned = sum(1 for thread in self._abandoned.values() if thread.is_alive())
        return {
            "running": self.is_running(),
            "concurrency": self.concurrency,
            "processed": self.processed,
            "failed": self.failed,
            "timed_out_running": abandoned,
        }


class WorkerPool:
    """One QueueWorker per pipeline queue."""

    def __init__(self, job_queue: JobQueue, handlers: Dict[str, StageHandler], poll_interval: float = 1.0):
        self.job_queue = job_queue
        self.workers: Dict[str, QueueWorker] = {
            name: QueueWorker(
                name, job_queue, handlers[name],
                concurrency=job_queue.options[name].concurrency,
                poll_interval=poll_interval,
            )
            for name in QUEUE_NAMES if name in handlers
        }

    def start(self) -> None:
        self.job_queue.recover_stalled()
        for worker in self.workers.values():
            worker.start()
        logger.info(f"Worker pool started: {', '.join(f'{n}x{w.concurrency}' for n, w in self.workers.items())}")

    def stop(self) -> None:
        for worker in self.workers.values():
            worker.stop()
        logger.info("Worker pool stopped")

    def is_running(self) -> bool:
        return any(worker.is_running() for worker in self.workers.values())

    def status(self) -> Dict[str, Any]:
        return {name: worker.status() for name, worker in self.workers.items()}

    def drain(self, include_delayed: bool = True, max_jobs: int = 1000) -> Dict[str, int]:
        """
        Process jobs inline, stage by stage, until every queue is empty.

        With `include_delayed` retries run immediately instead of waiting
        out their backoff.
        """
        outcomes = {"completed": 0, "retrying": 0, "failed": 0}
        processed = 0
        while processed < max_jobs:
            progressed = False
            for worker in self.workers.values():
                outcome = worker.process_one(include_delayed=include_delayed)
                if outcome is not None:
                    outcomes[outcome] += 1
                    processed += 1
                    progressed = True
            if not progressed:
                break
        return outcomes
