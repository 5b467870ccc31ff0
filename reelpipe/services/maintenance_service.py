# Maintenance tasks - view sync, file/queue cleanup, queue alerting and failed-reel retry

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from reelpipe.core.config import settings
from reelpipe.core.database import utcnow
from reelpipe.core.errors import FailureKind, is_retryable_reason
from reelpipe.models import Reel, ReelStatus
from reelpipe.services.file_service import MediaStorage
from reelpipe.services.queue_service import ReelQueue
from reelpipe.services.view_service import ViewCounter

logger = logging.getLogger(__name__)

# name -> (schedule description, purpose); the beat schedule in reelpipe.worker uses the same names
MAINTENANCE_TASKS = {
    "sync_views": ("every 5 minutes", "Sync pending views from Redis to the database"),
    "clean_files": ("daily at 03:00", "Delete leftover original uploads past the retention window"),
    "clean_queue": ("every 6 hours", "Remove old completed/failed queue records"),
    "queue_metrics": ("every 10 minutes", "Log queue metrics and raise alerts"),
    "retry_failed": ("every 30 minutes", "Requeue reels that failed for transient reasons"),
}


def is_retryable_failure(reel: Reel) -> bool:
    """Branch on the stored failure tag; untagged rows fall back to the reason text"""
    if reel.failure_kind:
        return reel.failure_kind == FailureKind.RETRYABLE.value
    return is_retryable_reason(reel.failed_reason)


class MaintenanceScheduler:
    """
    Owner of the periodic maintenance tasks.

    Each task is a plain method with its collaborators injected here; Celery beat
    only decides when they run.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: ReelQueue,
        storage: MediaStorage,
        views: ViewCounter,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.storage = storage
        self.views = views

    def sync_views(self) -> Dict[str, int]:
        logger.info("[CRON] Starting view sync task...")
        result = self.views.sync_pending_views()
        if result["synced"] > 0:
            logger.info(f"[CRON] View sync completed: {result['synced']} reels updated")
        else:
            logger.debug("[CRON] No pending views to sync")
        return result

    def clean_files(self, days_old: Optional[int] = None) -> Dict[str, int]:
        days_old = days_old or settings.maintenance_file_retention_days
        logger.info(f"[CRON] Starting file cleanup task (older than {days_old} days)...")
        result = self.storage.clean_old_files(days_old)
        if result["deleted_count"] > 0:
            logger.info(
                f"[CRON] File cleanup completed: {result['deleted_count']} files deleted, "
                f"{result['freed_bytes'] / 1024 / 1024:.2f} MB freed"
            )
        else:
            logger.info("[CRON] No old files to clean")
        return result

    def clean_queue(self, older_than_ms: Optional[int] = None) -> Dict[str, int]:
        if older_than_ms is None:
            older_than_ms = settings.maintenance_queue_retention_hours * 3600 * 1000
        logger.info("[CRON] Starting queue cleanup task...")
        result = self.queue.cleanup(older_than_ms)
        logger.info(
            f"[CRON] Queue cleanup completed: {result['completed']} completed jobs, "
            f"{result['failed']} failed jobs removed"
        )
        return result

    def check_queue_metrics(self) -> Dict[str, Any]:
        """Log queue metrics; alerts are warnings, never exceptions"""
        metrics = self.queue.metrics()
        logger.info(
            f"[CRON] Queue metrics: waiting={metrics['waiting']} active={metrics['active']} "
            f"completed={metrics['completed']} failed={metrics['failed']} "
            f"delayed={metrics['delayed']} total={metrics['total']}"
        )

        alerts: List[str] = []
        if metrics["failed"] > settings.alert_failed_jobs_threshold:
            alerts.append(f"High number of failed jobs: {metrics['failed']}")
        if metrics["waiting"] > settings.alert_waiting_jobs_threshold:
            alerts.append(f"High number of waiting jobs: {metrics['waiting']}")
        for alert in alerts:
            logger.warning(f"[ALERT] {alert}")

        return {**metrics, "alerts": alerts}

    def retry_failed_reels(
        self,
        batch_size: Optional[int] = None,
        window_hours: Optional[int] = None,
    ) -> Dict[str, int]:
        """
        Requeue recently failed reels whose failure was transient.

        Candidates are failed within `window_hours`, newest first, and not tagged
        fatal. At most `batch_size` reels are requeued per run, each with a single
        attempt at retry priority and reset to pending.

        Returns:
            Dict with checked and requeued counts
        """
        batch_size = batch_size or settings.maintenance_retry_batch_size
        window_hours = window_hours or settings.maintenance_retry_window_hours
        cutoff = utcnow() - timedelta(hours=window_hours)

        logger.info("[CRON] Checking failed reels for retry...")
        checked = 0
        requeued = 0
        db = self.session_factory()
        try:
            candidates = db.scalars(
                select(Reel)
                .where(Reel.status == ReelStatus.FAILED.value)
                .where(Reel.updated_at >= cutoff)
                .where(or_(Reel.failure_kind.is_(None), Reel.failure_kind != FailureKind.FATAL.value))
                .order_by(Reel.updated_at.desc())
            ).all()

            for reel in candidates:
                if requeued >= batch_size:
                    break
                checked += 1
                if not is_retryable_failure(reel):
                    continue
                try:
                    self.requeue_reel(db, reel)
                    requeued += 1
                except Exception as e:
                    db.rollback()
                    logger.error(f"[CRON] Failed to retry reel {reel.id}: {e}")
        finally:
            db.close()

        if checked == 0:
            logger.debug("[CRON] No failed reels to retry")
        else:
            logger.info(f"[CRON] Retry check completed: {checked} reels checked, {requeued} requeued")
        return {"checked": checked, "requeued": requeued}

    def requeue_reel(self, db: Session, reel: Reel):
        """Submit a low-priority single-attempt job for `reel` and reset it to pending"""
        file_name = self.storage.file_name_from_url(reel.origin_url)
        previous = (reel.failed_reason, reel.failure_kind, reel.updated_at)

        # Reset before publishing so a fast worker never sees its processing state overwritten
        reel.status = ReelStatus.PENDING.value
        reel.processing_progress = 0
        reel.failed_reason = None
        reel.failure_kind = None
        db.commit()

        try:
            self.queue.enqueue(
                {
                    "reel_id": reel.id,
                    "file_path": self.storage.original_path(file_name),
                    "file_name": file_name,
                    "user_id": reel.user_id,
                },
                priority=settings.maintenance_retry_priority,
                attempts_max=settings.maintenance_retry_attempts,
            )
        except Exception:
            # Restoring the old updated_at keeps the reel on its original retry window
            reel.status = ReelStatus.FAILED.value
            reel.failed_reason, reel.failure_kind, reel.updated_at = previous
            db.commit()
            raise

        logger.info(f"[CRON] Reel {reel.id} queued for retry")

    def tasks_status(self) -> Dict[str, Dict[str, str]]:
        return {
            name: {"schedule": schedule, "description": description}
            for name, (schedule, description) in MAINTENANCE_TASKS.items()
        }
