# Work queue - enqueue reel jobs on Celery, track their runtime state, metrics and cleanup

import uuid
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from reelpipe.core.config import settings
from reelpipe.core.database import utcnow
from reelpipe.core.errors import EnqueueError, FailureKind, classify_failure
from reelpipe.models import ProcessingJob, JobState, TERMINAL_JOB_STATES

logger = logging.getLogger(__name__)

# Redis transport: 0 is served first, 9 last
DEFAULT_PRIORITY = 0
RETRY_PRIORITY = 5

REQUIRED_PAYLOAD_FIELDS = ("reel_id", "file_path", "file_name", "user_id")


def backoff_delay(attempts_made: int, base: Optional[float] = None, cap: Optional[float] = None) -> float:
    """Exponential backoff in seconds before redelivery number `attempts_made + 1`"""
    base = settings.retry_backoff_base if base is None else base
    cap = settings.retry_backoff_max if cap is None else cap
    return min(base * (2 ** attempts_made), cap)


def can_retry(kind: Optional[FailureKind], attempts_made: int, attempts_max: int) -> bool:
    """Whether a failed attempt will be redelivered; only fatal errors skip the attempt budget"""
    return kind != FailureKind.FATAL and attempts_made < attempts_max - 1


def should_retry(exc: BaseException, attempts_made: int, attempts_max: int) -> bool:
    return can_retry(classify_failure(exc), attempts_made, attempts_max)


def _publish_with_celery(job: ProcessingJob):
    from reelpipe.worker import process_reel_task

    process_reel_task.apply_async(
        kwargs={"payload": job.payload, "attempts_max": job.attempts_max},
        task_id=job.id,
        priority=job.priority,
    )


class ReelQueue:
    """
    Prioritized, retryable queue of reel processing jobs.

    Celery carries the jobs; the processing_jobs table records each job's state so
    the queue can report metrics and prune terminal records.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        publisher: Optional[Callable[[ProcessingJob], None]] = None,
    ):
        self.session_factory = session_factory
        self.publisher = publisher or _publish_with_celery

    def enqueue(
        self,
        payload: Dict[str, Any],
        priority: int = DEFAULT_PRIORITY,
        attempts_max: Optional[int] = None,
    ) -> ProcessingJob:
        """
        Add a job to the queue.

        Args:
            payload: {reel_id, file_path, file_name, user_id}
            priority: larger values are scheduled after smaller ones
            attempts_max: total execution attempts, including the first

        Returns:
            The persisted ProcessingJob (detached)

        Raises:
            EnqueueError: the broker rejected the job; nothing stays queued
        """
        attempts_max = attempts_max or settings.reel_job_attempts
        db = self.session_factory()
        try:
            job = ProcessingJob(
                id=uuid.uuid4().hex,
                reel_id=payload.get("reel_id"),
                payload=dict(payload),
                state=JobState.WAITING.value,
                priority=priority,
                attempts_max=attempts_max,
            )
            db.add(job)
            db.commit()
            db.refresh(job)

            try:
                self.publisher(job)
            except Exception as e:
                logger.error(f"Failed to enqueue job for reel {job.reel_id}: {e}")
                db.delete(job)
                db.commit()
                raise EnqueueError(f"Failed to enqueue reel {job.reel_id}: {e}") from e

            db.expunge(job)
            logger.info(
                f"[Job {job.id}] Enqueued reel {job.reel_id} "
                f"(priority={priority}, attempts={attempts_max})"
            )
            return job
        finally:
            db.close()

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        db = self.session_factory()
        try:
            job = db.get(ProcessingJob, job_id)
            if job is not None:
                db.expunge(job)
            return job
        finally:
            db.close()

    def metrics(self) -> Dict[str, int]:
        """Job counts per state: {waiting, active, completed, failed, delayed, total}"""
        db = self.session_factory()
        try:
            rows = db.execute(
                select(ProcessingJob.state, func.count(ProcessingJob.id)).group_by(ProcessingJob.state)
            ).all()
        finally:
            db.close()

        counts = {state.value: 0 for state in JobState}
        for state, count in rows:
            counts[state] = count

        return {
            "waiting": counts[JobState.WAITING.value],
            "active": counts[JobState.ACTIVE.value],
            "completed": counts[JobState.COMPLETED.value],
            "failed": counts[JobState.FAILED.value],
            "delayed": counts[JobState.DELAYED.value],
            "total": sum(counts.values()),
        }

    def cleanup(self, older_than_ms: int) -> Dict[str, int]:
        """
        Remove completed/failed job records that finished more than `older_than_ms` ago.

        Returns:
            Dict with the number of records removed per terminal state
        """
        cutoff = utcnow() - timedelta(milliseconds=older_than_ms)
        removed = {}
        db = self.session_factory()
        try:
            for state in TERMINAL_JOB_STATES:
                result = db.execute(
                    delete(ProcessingJob)
                    .where(ProcessingJob.state == state)
                    .where(ProcessingJob.finished_at < cutoff)
                )
                removed[state] = result.rowcount or 0
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        return removed

    # Runtime bookkeeping driven by the Celery task

    def mark_active(self, job_id: str, payload: Dict[str, Any], attempts_made: int, attempts_max: int):
        def apply(job):
            job.state = JobState.ACTIVE.value
            job.attempts_made = attempts_made
            job.progress = 0.0
            if job.started_at is None:
                job.started_at = utcnow()

        # Tasks sent without going through enqueue() get a record on first delivery
        self._update(job_id, apply, create=lambda: ProcessingJob(
            id=job_id,
            reel_id=payload.get("reel_id") if isinstance(payload, dict) else None,
            payload=payload if isinstance(payload, dict) else {},
            attempts_max=attempts_max,
        ))

    def update_progress(self, job_id: str, progress: float):
        def apply(job):
            job.progress = progress

        self._update(job_id, apply)

    def mark_delayed(self, job_id: str, attempts_made: int, reason: str):
        def apply(job):
            job.state = JobState.DELAYED.value
            job.attempts_made = attempts_made
            job.failed_reason = reason

        self._update(job_id, apply)

    def mark_completed(self, job_id: str, attempts_made: int, result: Optional[Dict[str, Any]] = None):
        def apply(job):
            job.state = JobState.COMPLETED.value
            job.attempts_made = attempts_made
            job.progress = 100.0
            job.result = result
            job.finished_at = utcnow()

        self._update(job_id, apply)

    def mark_failed(self, job_id: str, attempts_made: int, reason: str):
        def apply(job):
            job.state = JobState.FAILED.value
            job.attempts_made = attempts_made
            job.failed_reason = reason
            job.finished_at = utcnow()

        self._update(job_id, apply)

    def _update(self, job_id: str, apply: Callable[[ProcessingJob], None], create=None):
        db = self.session_factory()
        try:
            job = db.get(ProcessingJob, job_id)
            if job is None:
                if create is None:
                    logger.warning(f"[Job {job_id}] No queue record to update")
                    return
                job = create()
                db.add(job)
            apply(job)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
