# Reel processor - drives one reel through metadata -> thumbnail -> compression -> publish

import os
import time
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from reelpipe.core.config import settings
from reelpipe.core.database import utcnow
from reelpipe.core.errors import (
    DurationExceededError,
    FailureKind,
    InvalidJobError,
    ReelNotFoundError,
    classify_failure,
)
from reelpipe.models import Follow, Reel, ReelStatus
from reelpipe.services import cache_service, notification_service, realtime_service
from reelpipe.services.queue_service import REQUIRED_PAYLOAD_FIELDS, can_retry

logger = logging.getLogger(__name__)

# Overall progress checkpoints (clients render progress bars against these)
PROGRESS_STARTED = 5
PROGRESS_METADATA = 20
PROGRESS_THUMBNAIL = 40
COMPRESSION_PROGRESS_START = PROGRESS_THUMBNAIL
COMPRESSION_PROGRESS_END = 90
PROGRESS_COMPLETED = 100

# Compression updates go out once per this many percent of the stage
COMPRESSION_EMIT_STEP = 10


def validate_payload(payload: Any) -> Dict[str, Any]:
    """Raise InvalidJobError unless all required job fields are present"""
    if not isinstance(payload, dict):
        raise InvalidJobError("Invalid job data: payload must be an object")
    missing = [field for field in REQUIRED_PAYLOAD_FIELDS if payload.get(field) in (None, "")]
    if missing:
        raise InvalidJobError(f"Invalid job data: missing required fields ({', '.join(missing)})")
    return payload


def map_compression_progress(stage_percent: float) -> int:
    """Map 0-100% of the compression stage linearly onto overall 40-90%"""
    stage_percent = max(0.0, min(100.0, stage_percent))
    span = COMPRESSION_PROGRESS_END - COMPRESSION_PROGRESS_START
    return COMPRESSION_PROGRESS_START + int(stage_percent * span / 100)


def thumbnail_file_name(file_name: str) -> str:
    return f"{os.path.splitext(file_name)[0]}.jpg"


def processed_file_name(file_name: str) -> str:
    return f"{os.path.splitext(file_name)[0]}-processed.mp4"


class ReelProcessor:
    """
    Pipeline executor for a single reel job.

    Collaborators are injected so the worker owns their wiring: codec (FFmpeg),
    storage (local media dirs), realtime channel, notification service, cache
    and lease manager.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        codec,
        storage,
        realtime: realtime_service.RealtimeChannel,
        notifications: notification_service.NotificationService,
        cache: cache_service.CacheService,
        leases=None,
        max_duration: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.codec = codec
        self.storage = storage
        self.realtime = realtime
        self.notifications = notifications
        self.cache = cache
        self.leases = leases
        self.max_duration = max_duration if max_duration is not None else settings.max_reel_duration

    def process(
        self,
        payload: Dict[str, Any],
        attempts_made: int = 0,
        attempts_max: int = 1,
        job_id: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> Dict[str, Any]:
        """
        Run the pipeline for one job.

        Returns:
            {success, reel_id, video_url, thumbnail_url, published_at} on publish,
            {skipped, reel_id, reason} when the job is a duplicate or already done

        Raises:
            InvalidJobError: payload incomplete; nothing was read or written
            Exception: any pipeline failure, after the reel is marked failed
        """
        payload = validate_payload(payload)
        reel_id = payload["reel_id"]
        user_id = payload["user_id"]
        file_path = payload["file_path"]
        file_name = payload["file_name"]
        tag = f"[Job {job_id or '-'}]"
        on_progress = on_progress or (lambda progress: None)
        started = time.monotonic()

        logger.info(f"{tag} Starting processing for reel {reel_id} ({file_name}, user {user_id}, attempt {attempts_made + 1})")

        lease = None
        if self.leases is not None:
            lease = self.leases.acquire(reel_id)
            if lease is None:
                logger.warning(f"{tag} Reel {reel_id} is leased by another worker, skipping")
                return {"skipped": True, "reel_id": reel_id, "reason": "leased"}

        db = self.session_factory()
        reel = None
        try:
            try:
                reel = db.get(Reel, reel_id)
                if reel is None:
                    raise ReelNotFoundError(f"Reel {reel_id} not found in database")

                if reel.status == ReelStatus.COMPLETED.value:
                    logger.info(f"{tag} Reel {reel_id} already completed, skipping")
                    return {"skipped": True, "reel_id": reel_id, "reason": "completed"}

                if reel.status == ReelStatus.PROCESSING.value and attempts_made == 0:
                    logger.warning(f"{tag} Reel {reel_id} is already being processed")
                    return {"skipped": True, "reel_id": reel_id, "reason": "processing"}

                # Start of attempt: progress is reset rather than advanced
                self._save(
                    db, reel,
                    status=ReelStatus.PROCESSING.value,
                    processing_progress=PROGRESS_STARTED,
                    failed_reason=None,
                    failure_kind=None,
                )
                on_progress(PROGRESS_STARTED)
                self.realtime.emit(user_id, realtime_service.PROCESSING_STARTED, {
                    "reel_id": reel_id,
                    "status": ReelStatus.PROCESSING.value,
                    "progress": PROGRESS_STARTED,
                })

                # Metadata
                logger.info(f"{tag} Extracting metadata for reel {reel_id}")
                metadata = self.codec.get_video_metadata(file_path)
                if metadata["duration"] > self.max_duration:
                    raise DurationExceededError(metadata["duration"], self.max_duration)

                self._advance(
                    db, reel, PROGRESS_METADATA,
                    duration=metadata["duration"],
                    width=metadata["width"],
                    height=metadata["height"],
                    size=metadata["size"],
                )
                on_progress(PROGRESS_METADATA)
                self.realtime.emit(user_id, realtime_service.PROCESSING_PROGRESS, {
                    "reel_id": reel_id,
                    "progress": PROGRESS_METADATA,
                    "stage": "metadata_extracted",
                })
                logger.info(
                    f"{tag} Metadata extracted: {metadata['duration']}s "
                    f"{metadata['width']}x{metadata['height']} {metadata['size']} bytes"
                )

                # Thumbnail
                logger.info(f"{tag} Generating thumbnail for reel {reel_id}")
                thumbnail_url = self.codec.generate_thumbnail(file_path, thumbnail_file_name(file_name))
                self._advance(db, reel, PROGRESS_THUMBNAIL, thumbnail_url=thumbnail_url)
                on_progress(PROGRESS_THUMBNAIL)
                self.realtime.emit(user_id, realtime_service.PROCESSING_PROGRESS, {
                    "reel_id": reel_id,
                    "progress": PROGRESS_THUMBNAIL,
                    "stage": "thumbnail_generated",
                    "thumbnail_url": thumbnail_url,
                })
                logger.info(f"{tag} Thumbnail generated: {thumbnail_url}")

                # Compression
                logger.info(f"{tag} Starting video compression for reel {reel_id}")
                last_bucket = 0

                def compression_progress(stage_percent: float):
                    nonlocal last_bucket
                    overall = map_compression_progress(stage_percent)
                    on_progress(overall)
                    bucket = int(stage_percent) // COMPRESSION_EMIT_STEP
                    if bucket <= last_bucket:
                        return
                    last_bucket = bucket
                    self._advance(db, reel, overall)
                    if lease is not None:
                        lease.extend()
                    self.realtime.emit(user_id, realtime_service.PROCESSING_PROGRESS, {
                        "reel_id": reel_id,
                        "progress": overall,
                        "stage": "compressing",
                    })

                video_url = self.codec.compress_video(file_path, processed_file_name(file_name), compression_progress)
                self._advance(db, reel, COMPRESSION_PROGRESS_END, video_url=video_url)
                on_progress(COMPRESSION_PROGRESS_END)
                logger.info(f"{tag} Video compressed: {video_url}")

                # Publish
                published_at = utcnow()
                self._advance(
                    db, reel, PROGRESS_COMPLETED,
                    status=ReelStatus.COMPLETED.value,
                    published_at=published_at,
                )
                on_progress(PROGRESS_COMPLETED)
                logger.info(f"{tag} Reel {reel_id} processing completed in {time.monotonic() - started:.1f}s")

            except Exception as error:
                self._handle_failure(db, reel, payload, error, attempts_made, attempts_max, tag)
                raise

            finally:
                if lease is not None:
                    lease.release()

            # Post-publish side effects never fail the job
            self._delete_original(file_path, tag)
            follower_ids = self._fan_out(db, reel_id, user_id, tag)
            self._notify_followers(db, reel_id, user_id, follower_ids, tag)
            self._invalidate_caches(user_id, tag)

            logger.info(
                f"{tag} Reel {reel_id} fully processed and published "
                f"({len(follower_ids)} followers, {time.monotonic() - started:.1f}s)"
            )
            return {
                "success": True,
                "reel_id": reel_id,
                "video_url": video_url,
                "thumbnail_url": thumbnail_url,
                "published_at": published_at.isoformat(),
            }
        finally:
            db.close()

    def _save(self, db: Session, reel: Reel, **fields):
        for name, value in fields.items():
            setattr(reel, name, value)
        db.commit()

    def _advance(self, db: Session, reel: Reel, progress: int, **fields):
        """Persist fields and move progress forward, never backward"""
        fields["processing_progress"] = max(reel.processing_progress or 0, progress)
        self._save(db, reel, **fields)

    def _handle_failure(self, db, reel, payload, error, attempts_made, attempts_max, tag):
        reel_id = payload["reel_id"]
        user_id = payload["user_id"]
        kind = classify_failure(error)
        kind_label = kind.value if kind else "unclassified"
        message = str(error)

        logger.error(
            f"{tag} Error processing reel {reel_id} (attempt {attempts_made + 1}, {kind_label}): {message}",
            exc_info=True,
        )

        if reel is not None:
            try:
                db.rollback()
                self._save(
                    db, reel,
                    status=ReelStatus.FAILED.value,
                    failed_reason=message,
                    failure_kind=kind.value if kind else None,
                    processing_progress=0,
                )
            except Exception as update_error:
                db.rollback()
                logger.error(f"{tag} Failed to update reel status: {update_error}")

        retry_allowed = can_retry(kind, attempts_made, attempts_max)
        self.realtime.emit(user_id, realtime_service.FAILED, {
            "reel_id": reel_id,
            "error": message,
            "can_retry": retry_allowed,
        })

        try:
            suffix = " A retry will be attempted automatically." if retry_allowed else ""
            self.notifications.create(
                user_id=user_id,
                type=notification_service.REEL_PROCESSING_FAILED,
                title="Reel processing failed",
                body=f"Reel processing failed: {message}.{suffix}",
                link=f"/reels/{reel_id}",
                metadata={"reel_id": reel_id, "error": message, "can_retry": retry_allowed},
            )
        except Exception as notif_error:
            logger.error(f"{tag} Failed to create failure notification: {notif_error}")

    def _delete_original(self, file_path: str, tag: str):
        try:
            self.storage.delete_file(file_path)
            logger.info(f"{tag} Original file deleted: {file_path}")
        except Exception as cleanup_error:
            logger.warning(f"{tag} Failed to delete original file: {cleanup_error}")

    def _fan_out(self, db: Session, reel_id: int, user_id: int, tag: str) -> List[int]:
        try:
            db.expire_all()
            reel = db.get(Reel, reel_id)
            reel_data = reel.to_dict()
            author = reel_data["author"]
            follower_ids = list(db.scalars(
                select(Follow.follower_id).where(Follow.following_id == user_id)
            ))
        except Exception as e:
            logger.error(f"{tag} Failed to load published reel {reel_id} for fan-out: {e}")
            return []

        self.realtime.emit(user_id, realtime_service.PUBLISHED, {
            "reel": reel_data,
            "message": "Your Reel has been published successfully!",
        })

        for follower_id in follower_ids:
            try:
                self.realtime.emit(follower_id, realtime_service.NEW_FROM_FOLLOWING, {
                    "reel": reel_data,
                    "author": author,
                })
            except Exception as e:
                logger.error(f"{tag} Failed to notify follower {follower_id}: {e}")

        if follower_ids:
            logger.info(f"{tag} Notified {len(follower_ids)} followers")
        return follower_ids

    def _notify_followers(self, db: Session, reel_id: int, user_id: int, follower_ids: List[int], tag: str):
        if not follower_ids:
            return
        try:
            reel = db.get(Reel, reel_id)
            username = reel.author.username if reel.author else f"user {user_id}"
        except Exception as e:
            logger.error(f"{tag} Failed to load reel {reel_id} for notifications: {e}")
            return
        body = f"{username} posted a new Reel"
        if reel.caption:
            body += f': "{reel.caption[:50]}"'

        for follower_id in follower_ids:
            try:
                self.notifications.create(
                    user_id=follower_id,
                    sender_id=user_id,
                    type=notification_service.REEL_PUBLISHED,
                    title="New Reel",
                    body=body,
                    link=f"/reels/{reel.uuid}",
                    metadata={"reel_id": reel.id, "reel_uuid": reel.uuid, "author_username": username},
                )
            except Exception as e:
                logger.error(f"{tag} Failed to create notification for follower {follower_id}: {e}")

    def _invalidate_caches(self, user_id: int, tag: str):
        patterns = [
            cache_service.REEL_FEED_PATTERN,
            cache_service.TRENDING_REELS_PATTERN,
            cache_service.user_reels_pattern(user_id),
        ]
        for pattern in patterns:
            try:
                self.cache.invalidate_pattern(pattern)
            except Exception as e:
                logger.warning(f"{tag} Failed to invalidate cache {pattern}: {e}")
