"""
Durable job queue stored in the application database.

Four named queues carry the pipeline stages. Jobs are claimed with a
conditional update, retried with exponential backoff, and kept for
inspection (last 50 completed, last 100 failed per queue).
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session

from .database import Database
from .errors import AppError, ValidationError, is_retryable
from .models import Job, new_id, utcnow

logger = logging.getLogger('callqc.queue')

DOWNLOAD = "download"
TRANSCRIBE = "transcribe"
ANALYZE = "analyze"
NOTIFY = "notify"
QUEUE_NAMES = (DOWNLOAD, TRANSCRIBE, ANALYZE, NOTIFY)

COMPLETED_RETENTION = 50
FAILED_RETENTION = 100

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
JOB_STATUSES = (WAITING, ACTIVE, COMPLETED, FAILED)


@dataclass(frozen=True)
class QueueOptions:
    """Per-stage retry, timeout and concurrency policy."""

    attempts: int
    backoff_ms: int
    timeout_ms: int
    concurrency: int
    priority: int = 5


DEFAULT_QUEUE_OPTIONS = {
    DOWNLOAD: QueueOptions(attempts=5, backoff_ms=3000, timeout_ms=5 * 60 * 1000, concurrency=2),
    TRANSCRIBE: QueueOptions(attempts=3, backoff_ms=5000, timeout_ms=30 * 60 * 1000, concurrency=1),
    ANALYZE: QueueOptions(attempts=3, backoff_ms=5000, timeout_ms=10 * 60 * 1000, concurrency=1),
    NOTIFY: QueueOptions(attempts=5, backoff_ms=2000, timeout_ms=2 * 60 * 1000, concurrency=5),
}


def backoff_delay_ms(backoff_ms: int, attempts_made: int) -> int:
    """Exponential backoff: base, 2x base, 4x base, ..."""
    return int(backoff_ms * (2 ** max(0, attempts_made - 1)))


class JobQueue:
    """Named durable queues over the `jobs` table."""

    def __init__(
        self,
        database: Database,
        options: Optional[Dict[str, QueueOptions]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = database
        self.options = {**DEFAULT_QUEUE_OPTIONS, **(options or {})}
        self.clock = clock

    def _check_queue(self, queue: str) -> QueueOptions:
        if queue not in self.options:
            raise ValidationError(f"Unknown queue: {queue}", {"queues": list(self.options)})
        return self.options[queue]

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def enqueue(
        self,
        queue: str,
        payload: Dict[str, Any],
        *,
        name: Optional[str] = None,
        priority: Optional[int] = None,
        attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        delay_ms: int = 0,
        job_key: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Job:
        """
        Add a job. With `job_key`, an existing waiting, active or completed
        job carrying the same key is returned instead of a new one.
        """
        defaults = self._check_queue(queue)
        now = self.clock()
        with self.db.scope(session) as s:
            if job_key:
                existing = s.execute(
                    select(Job).where(
                        Job.queue == queue,
                        Job.job_key == job_key,
                        Job.status.in_((WAITING, ACTIVE, COMPLETED)),
                    ).order_by(Job.created_at.desc())
                ).scalars().first()
                if existing is not None:
                    logger.info(f"[{queue}] job with key {job_key} already {existing.status}: {existing.id}")
                    return existing

            job = Job(
                id=new_id(),
                queue=queue,
                name=name or queue,
                payload=payload,
                job_key=job_key,
                priority=defaults.priority if priority is None else priority,
                attempts=attempts or defaults.attempts,
                attempts_made=0,
                backoff_ms=defaults.backoff_ms if backoff_ms is None else backoff_ms,
                timeout_ms=timeout_ms or defaults.timeout_ms,
                status=WAITING,
                available_at=now + timedelta(milliseconds=delay_ms),
                created_at=now,
            )
            s.add(job)
            s.flush()

        logger.info(f"[{queue}] enqueued job {job.id} priority={job.priority} payload={payload}")
        return job

    def find_by_key(self, queue: str, job_key: str,
                    statuses: Iterable[str] = (WAITING, ACTIVE, COMPLETED),
                    session: Optional[Session] = None) -> Optional[Job]:
        with self.db.scope(session) as s:
            return s.execute(
                select(Job).where(Job.queue == queue, Job.job_key == job_key, Job.status.in_(tuple(statuses)))
                .order_by(Job.created_at.desc())
            ).scalars().first()

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.db.session() as s:
            return s.get(Job, job_id)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    def reserve(self, queue: str, include_delayed: bool = False) -> Optional[Job]:
        """
        Claim the most urgent ready job (lowest priority value, oldest first).

        `include_delayed` ignores backoff delays; used when draining in tests.
        """
        self._check_queue(queue)
        for _ in range(5):
            now = self.clock()
            with self.db.session() as s:
                conditions = [Job.queue == queue, Job.status == WAITING]
                if not include_delayed:
                    conditions.append(Job.available_at <= now)
                candidate_id = s.execute(
                    select(Job.id).where(*conditions)
                    .order_by(Job.priority.asc(), Job.available_at.asc(), Job.created_at.asc())
                    .limit(1)
                ).scalar_one_or_none()
                if candidate_id is None:
                    return None
                claimed = s.execute(
                    update(Job)
                    .where(and_(Job.id == candidate_id, Job.status == WAITING))
                    .values(status=ACTIVE, attempts_made=Job.attempts_made + 1, started_at=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed:
                    job = s.get(Job, candidate_id, populate_existing=True)
                    logger.debug(f"[{queue}] claimed job {job.id} attempt {job.attempts_made}/{job.attempts}")
                    return job
        return None

    def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> None:
        with self.db.session() as s:
            s.execute(
                update(Job).where(Job.id == job.id)
                .values(status=COMPLETED, finished_at=self.clock(), result=result or {})
                .execution_options(synchronize_session=False)
            )
        logger.info(f"[{job.queue}] job {job.id} completed")
        self.trim(job.queue)

    def fail(self, job: Job, error: BaseException, force_fatal: bool = False) -> str:
        """
        Record a failed attempt.

        Returns:
            "retrying" when the job was rescheduled with backoff, "failed"
            when it moved to the failed bin (fatal error or attempts exhausted)
        """
        message = str(error) or type(error).__name__
        retry = not force_fatal and is_retryable(error) and job.attempts_made < job.attempts
        now = self.clock()

        with self.db.session() as s:
            if retry:
                delay = backoff_delay_ms(job.backoff_ms, job.attempts_made)
                retry_after = getattr(error, "retry_after", None)
                if retry_after:
                    delay = max(delay, int(retry_after * 1000))
                s.execute(
                    update(Job).where(Job.id == job.id)
                    .values(status=WAITING, available_at=now + timedelta(milliseconds=delay), last_error=message)
                    .execution_options(synchronize_session=False)
                )
            else:
                failure = {
                    "code": error.code if isinstance(error, AppError) else type(error).__name__,
                    "message": message,
                    "attempts_made": job.attempts_made,
                    "retryable": is_retryable(error),
                    "failed_at": now.isoformat() + "Z",
                }
                s.execute(
                    update(Job).where(Job.id == job.id)
                    .values(status=FAILED, finished_at=now, last_error=message, failure=failure)
                    .execution_options(synchronize_session=False)
                )

        if retry:
            logger.warning(f"[{job.queue}] job {job.id} attempt {job.attempts_made}/{job.attempts} failed, retrying: {message}")
            return "retrying"
        logger.error(f"[{job.queue}] job {job.id} failed after {job.attempts_made} attempt(s): {message}")
        self.trim(job.queue)
        return "failed"

    def recover_stalled(self, queue: Optional[str] = None) -> int:
        """Return jobs left active by a crashed process to the waiting state."""
        conditions = [Job.status == ACTIVE]
        if queue:
            conditions.append(Job.queue == queue)
        with self.db.session() as s:
            recovered = s.execute(
                update(Job).where(*conditions)
                .values(status=WAITING, available_at=self.clock())
                .execution_options(synchronize_session=False)
            ).rowcount
        if recovered:
            logger.warning(f"Recovered {recovered} stalled job(s)")
        return recovered

    def trim(self, queue: str) -> None:
        """Keep only the newest completed and failed jobs of a queue."""
        with self.db.session() as s:
            for status, keep in ((COMPLETED, COMPLETED_RETENTION), (FAILED, FAILED_RETENTION)):
                keep_ids = select(Job.id).where(Job.queue == queue, Job.status == status) \
                    .order_by(Job.finished_at.desc()).limit(keep)
                s.execute(
                    delete(Job).where(Job.queue == queue, Job.status == status, Job.id.not_in(keep_ids))
                    .execution_options(synchronize_session=False)
                )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def counts(self, queue: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Job counts per queue and status."""
        conditions = [Job.queue == queue] if queue else []
        result = {name: {status: 0 for status in JOB_STATUSES} for name in ([queue] if queue else self.options)}
        with self.db.session() as s:
            rows = s.execute(
                select(Job.queue, Job.status, func.count(Job.id)).where(*conditions).group_by(Job.queue, Job.status)
            ).all()
        for name, status, count in rows:
            result.setdefault(name, {st: 0 for st in JOB_STATUSES})[status] = count
        return result

    def pending(self, queue: Optional[str] = None) -> int:
        conditions = [Job.status.in_((WAITING, ACTIVE))]
        if queue:
            conditions.append(Job.queue == queue)
        with self.db.session() as s:
            return s.execute(select(func.count(Job.id)).where(*conditions)).scalar_one()

    def list_jobs(self, queue: Optional[str] = None, status: Optional[str] = None,
                  call_id: Optional[str] = None, limit: int = 50) -> List[Job]:
        conditions = []
        if queue:
            conditions.append(Job.queue == queue)
        if status:
            conditions.append(Job.status == status)
        if call_id:
            conditions.append(func.json_extract(Job.payload, "$.call_id") == call_id)
        with self.db.session() as s:
            return list(s.execute(
                select(Job).where(*conditions).order_by(Job.created_at.desc()).limit(limit)
            ).scalars().all())
