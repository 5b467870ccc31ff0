# Celery worker entrypoint - Celery app, reel processing task, maintenance beat schedule

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_init

from reelpipe.core.config import settings
from reelpipe.services.queue_service import backoff_delay, should_retry

logger = logging.getLogger(__name__)

celery_app = Celery(
    "reelpipe_worker",
    broker=settings.redis_url,
    backend=settings.redis_url
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.scheduler_timezone,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # 1 hour hard limit
    task_soft_time_limit=3000,
    # One job per worker slot; unacked jobs are redelivered if a worker dies
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.reel_worker_concurrency,
    task_queue_max_priority=10,
    task_default_priority=0,
    broker_transport_options={
        "priority_steps": list(range(10)),
        "queue_order_strategy": "priority",
    },
    beat_schedule={
        "sync_views": {
            "task": "reelpipe.maintenance.sync_views",
            "schedule": crontab(minute="*/5"),
        },
        "clean_files": {
            "task": "reelpipe.maintenance.clean_files",
            "schedule": crontab(minute=0, hour=3),
        },
        "clean_queue": {
            "task": "reelpipe.maintenance.clean_queue",
            "schedule": crontab(minute=0, hour="*/6"),
        },
        "queue_metrics": {
            "task": "reelpipe.maintenance.queue_metrics",
            "schedule": crontab(minute="*/10"),
        },
        "retry_failed": {
            "task": "reelpipe.maintenance.retry_failed",
            "schedule": crontab(minute="*/30"),
        },
    },
)


@worker_init.connect
def prepare_storage(**kwargs):
    from reelpipe.core.database import create_tables
    from reelpipe.services.file_service import media_storage

    create_tables()
    media_storage.ensure_dirs()


# Composition root: the only place that wires concrete collaborators together

_components = {}


def get_queue():
    if "queue" not in _components:
        from reelpipe.core.database import SessionLocal
        from reelpipe.services.queue_service import ReelQueue

        _components["queue"] = ReelQueue(SessionLocal)
    return _components["queue"]


def get_processor():
    if "processor" not in _components:
        from reelpipe.core.database import SessionLocal
        from reelpipe.core.redis_client import redis_client
        from reelpipe.services.cache_service import CacheService
        from reelpipe.services.codec_service import codec_service
        from reelpipe.services.file_service import media_storage
        from reelpipe.services.lease_service import LeaseManager
        from reelpipe.services.notification_service import NotificationService
        from reelpipe.services.realtime_service import RealtimeChannel
        from reelpipe.services.reel_processor import ReelProcessor

        _components["processor"] = ReelProcessor(
            session_factory=SessionLocal,
            codec=codec_service,
            storage=media_storage,
            realtime=RealtimeChannel(redis_client),
            notifications=NotificationService(SessionLocal),
            cache=CacheService(redis_client),
            leases=LeaseManager(redis_client, settings.reel_lease_ttl_seconds),
        )
    return _components["processor"]


def get_maintenance():
    if "maintenance" not in _components:
        from reelpipe.core.database import SessionLocal
        from reelpipe.core.redis_client import redis_client
        from reelpipe.services.file_service import media_storage
        from reelpipe.services.maintenance_service import MaintenanceScheduler
        from reelpipe.services.view_service import ViewCounter

        _components["maintenance"] = MaintenanceScheduler(
            session_factory=SessionLocal,
            queue=get_queue(),
            storage=media_storage,
            views=ViewCounter(redis_client, SessionLocal),
        )
    return _components["maintenance"]


@celery_app.task(bind=True, name="reelpipe.process_reel", rate_limit=settings.reel_worker_rate_limit)
def process_reel_task(self, payload: dict, attempts_max: int = 1):
    """
    Celery task for processing an uploaded reel

    Args:
        payload: {reel_id, file_path, file_name, user_id}
        attempts_max: total attempts allowed, including this one
    """
    job_id = self.request.id
    attempts_made = self.request.retries
    queue = get_queue()
    queue.mark_active(job_id, payload, attempts_made, attempts_max)

    # Progress callback to update the queue record
    def update_progress(progress):
        try:
            queue.update_progress(job_id, progress)
        except Exception as e:
            logger.warning(f"Failed to update progress: {e}")

    try:
        result = get_processor().process(
            payload,
            attempts_made=attempts_made,
            attempts_max=attempts_max,
            job_id=job_id,
            on_progress=update_progress,
        )
    except Exception as exc:
        if should_retry(exc, attempts_made, attempts_max):
            countdown = backoff_delay(attempts_made)
            logger.info(f"[Job {job_id}] Retrying in {countdown:.0f}s (attempt {attempts_made + 2}/{attempts_max})")
            queue.mark_delayed(job_id, attempts_made + 1, str(exc))
            raise self.retry(exc=exc, countdown=countdown, max_retries=attempts_max - 1)

        queue.mark_failed(job_id, attempts_made + 1, str(exc))
        logger.error(f"[Job {job_id}] Failed permanently after {attempts_made + 1} attempt(s): {exc}")
        raise

    queue.mark_completed(job_id, attempts_made + 1, result)
    return result


@celery_app.task(name="reelpipe.maintenance.sync_views")
def sync_views_task():
    try:
        return get_maintenance().sync_views()
    except Exception as e:
        logger.error(f"[CRON] View sync task failed: {e}", exc_info=True)
        return {"synced": 0, "error": str(e)}


@celery_app.task(name="reelpipe.maintenance.clean_files")
def clean_files_task(days_old: int = None):
    try:
        return get_maintenance().clean_files(days_old)
    except Exception as e:
        logger.error(f"[CRON] File cleanup task failed: {e}", exc_info=True)
        return {"deleted_count": 0, "freed_bytes": 0, "error": str(e)}


@celery_app.task(name="reelpipe.maintenance.clean_queue")
def clean_queue_task(older_than_ms: int = None):
    try:
        return get_maintenance().clean_queue(older_than_ms)
    except Exception as e:
        logger.error(f"[CRON] Queue cleanup task failed: {e}", exc_info=True)
        return {"completed": 0, "failed": 0, "error": str(e)}


@celery_app.task(name="reelpipe.maintenance.queue_metrics")
def queue_metrics_task():
    try:
        return get_maintenance().check_queue_metrics()
    except Exception as e:
        logger.error(f"[CRON] Queue metrics logging failed: {e}", exc_info=True)
        return {"error": str(e)}


@celery_app.task(name="reelpipe.maintenance.retry_failed")
def retry_failed_reels_task():
    try:
        return get_maintenance().retry_failed_reels()
    except Exception as e:
        logger.error(f"[CRON] Failed reels retry task failed: {e}", exc_info=True)
        return {"checked": 0, "requeued": 0, "error": str(e)}


def worker_health(timeout: float = 1.0) -> dict:
    """Ping running workers through the broker"""
    try:
        replies = celery_app.control.ping(timeout=timeout) or []
    except Exception as e:
        logger.warning(f"Worker ping failed: {e}")
        return {"is_running": False, "workers": [], "concurrency": settings.reel_worker_concurrency, "error": str(e)}

    workers = [name for reply in replies for name in reply]
    return {
        "is_running": bool(workers),
        "workers": workers,
        "concurrency": settings.reel_worker_concurrency,
    }
