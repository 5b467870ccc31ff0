import os

import pytest

from conftest import follow, make_reel, make_user
from reelpipe.core.errors import CodecError, CodecTimeoutError, DurationExceededError, InvalidJobError, ReelNotFoundError
from reelpipe.models import Notification, Reel, ReelStatus
from reelpipe.services import realtime_service
from reelpipe.services.lease_service import lease_key
from reelpipe.services.notification_service import REEL_PROCESSING_FAILED, REEL_PUBLISHED
from reelpipe.services.reel_processor import (
    COMPRESSION_PROGRESS_END,
    COMPRESSION_PROGRESS_START,
    map_compression_progress,
    processed_file_name,
    thumbnail_file_name,
)


@pytest.fixture()
def author(db):
    return make_user(db, "author")


@pytest.fixture()
def upload(storage):
    path = storage.original_path("a.mp4")
    with open(path, "wb") as f:
        f.write(b"\x00" * 2048)
    return path


def job_payload(reel, upload_path, user):
    return {"reel_id": reel.id, "file_path": upload_path, "file_name": "a.mp4", "user_id": user.id}


def reload(session_factory, reel_id):
    session = session_factory()
    try:
        return session.get(Reel, reel_id)
    finally:
        session.close()


def test_valid_reel_is_published(processor, session_factory, db, author, upload, storage, fake_redis):
    followers = [make_user(db, "f1"), make_user(db, "f2")]
    for f in followers:
        follow(db, f, author)
    reel = make_reel(db, author, caption="hello")
    fake_redis.set("reel_feed:page:1", "x")
    fake_redis.set("trending_reels:10", "x")
    fake_redis.set(f"user_reels:{author.id}:1", "x")
    fake_redis.set("user_reels:999:1", "x")

    result = processor.process(job_payload(reel, upload, author), attempts_made=0, attempts_max=3, job_id="j1")

    assert result["success"] is True
    stored = reload(session_factory, reel.id)
    assert stored.status == ReelStatus.COMPLETED.value
    assert stored.processing_progress == 100
    assert stored.thumbnail_url == storage.thumbnail_url("a.jpg")
    assert stored.video_url == storage.processed_url("a-processed.mp4")
    assert stored.duration == 45.0
    assert stored.width == 1080 and stored.height == 1920 and stored.size == 4_200_000
    assert stored.published_at is not None
    assert stored.failed_reason is None

    # Original upload removed
    assert not os.path.exists(upload)

    # One notification per follower
    notifications = db.query(Notification).filter(Notification.type == REEL_PUBLISHED).all()
    assert sorted(n.user_id for n in notifications) == sorted(f.id for f in followers)
    assert all(n.sender_id == author.id for n in notifications)
    assert all(n.link == f"/reels/{stored.uuid}" for n in notifications)

    # Realtime fan-out
    author_channel = f"user:{author.id}"
    assert len(fake_redis.events(author_channel, realtime_service.PROCESSING_STARTED)) == 1
    published = fake_redis.events(author_channel, realtime_service.PUBLISHED)
    assert len(published) == 1
    assert published[0]["data"]["reel"]["id"] == reel.id
    for f in followers:
        events = fake_redis.events(f"user:{f.id}", realtime_service.NEW_FROM_FOLLOWING)
        assert len(events) == 1
        assert events[0]["data"]["author"]["username"] == "author"

    # Feed, trending and the author's listings are invalidated; other users' are not
    assert "reel_feed:page:1" not in fake_redis.store
    assert "trending_reels:10" not in fake_redis.store
    assert f"user_reels:{author.id}:1" not in fake_redis.store
    assert "user_reels:999:1" in fake_redis.store

    # Lease released
    assert lease_key(reel.id) not in fake_redis.store


def test_progress_is_non_decreasing(processor, db, author, upload, fake_redis):
    reel = make_reel(db, author)
    reported = []

    processor.process(job_payload(reel, upload, author), on_progress=reported.append)

    assert reported == sorted(reported)
    assert reported[0] == 5 and reported[-1] == 100
    emitted = [e["data"]["progress"] for e in fake_redis.events(f"user:{author.id}") if "progress" in e["data"]]
    assert emitted == sorted(emitted)
    assert {5, 20, 40}.issubset(emitted)


def test_compression_progress_emitted_per_ten_percent_of_stage(processor, db, author, upload, fake_redis, codec):
    codec.progress_steps = [float(step) for step in range(0, 101)]
    reel = make_reel(db, author)

    processor.process(job_payload(reel, upload, author))

    compressing = [
        e["data"]["progress"]
        for e in fake_redis.events(f"user:{author.id}", realtime_service.PROCESSING_PROGRESS)
        if e["data"]["stage"] == "compressing"
    ]
    assert compressing == [45, 50, 55, 60, 65, 70, 75, 80, 85, 90]


def test_duration_over_limit_fails_without_media(processor, session_factory, db, author, upload, codec, fake_redis):
    codec.duration = 75.0
    reel = make_reel(db, author)

    with pytest.raises(DurationExceededError):
        processor.process(job_payload(reel, upload, author), attempts_made=0, attempts_max=3)

    stored = reload(session_factory, reel.id)
    assert stored.status == ReelStatus.FAILED.value
    assert "60s" in stored.failed_reason
    assert stored.failure_kind == "fatal"
    assert stored.processing_progress == 0
    assert stored.thumbnail_url is None
    assert stored.video_url is None
    assert codec.called("thumbnail") == [] and codec.called("compress") == []

    failed = fake_redis.events(f"user:{author.id}", realtime_service.FAILED)
    assert len(failed) == 1
    assert failed[0]["data"]["can_retry"] is False

    notice = db.query(Notification).filter(Notification.type == REEL_PROCESSING_FAILED).one()
    assert notice.user_id == author.id
    assert lease_key(reel.id) not in fake_redis.store


def test_missing_field_rejected_before_any_state_access(codec, storage, fake_redis, author, upload):
    from reelpipe.services.cache_service import CacheService
    from reelpipe.services.notification_service import NotificationService
    from reelpipe.services.realtime_service import RealtimeChannel
    from reelpipe.services.reel_processor import ReelProcessor

    opened = []

    def tracking_factory():
        opened.append(True)
        raise AssertionError("state store must not be touched")

    processor = ReelProcessor(
        session_factory=tracking_factory,
        codec=codec,
        storage=storage,
        realtime=RealtimeChannel(fake_redis),
        notifications=NotificationService(tracking_factory),
        cache=CacheService(fake_redis),
    )

    with pytest.raises(InvalidJobError):
        processor.process({"reel_id": 1, "file_name": "a.mp4", "user_id": author.id})

    assert opened == []
    assert codec.calls == []
    assert fake_redis.published == []


def test_duplicate_dispatch_is_a_noop(processor, session_factory, db, author, upload, codec, fake_redis):
    reel = make_reel(db, author, status=ReelStatus.PROCESSING.value, processing_progress=40)

    result = processor.process(job_payload(reel, upload, author), attempts_made=0, attempts_max=3)

    assert result == {"skipped": True, "reel_id": reel.id, "reason": "processing"}
    stored = reload(session_factory, reel.id)
    assert stored.status == ReelStatus.PROCESSING.value
    assert stored.processing_progress == 40
    assert codec.calls == []
    assert fake_redis.published == []
    assert lease_key(reel.id) not in fake_redis.store


def test_redelivered_attempt_resumes_processing_reel(processor, session_factory, db, author, upload):
    reel = make_reel(db, author, status=ReelStatus.PROCESSING.value, processing_progress=60)

    processor.process(job_payload(reel, upload, author), attempts_made=1, attempts_max=3)

    assert reload(session_factory, reel.id).status == ReelStatus.COMPLETED.value


def test_completed_reel_is_skipped(processor, db, author, upload, codec):
    reel = make_reel(db, author, status=ReelStatus.COMPLETED.value, processing_progress=100)

    result = processor.process(job_payload(reel, upload, author))

    assert result["skipped"] is True and result["reason"] == "completed"
    assert codec.calls == []


def test_live_lease_skips_job(processor, session_factory, db, author, upload, codec, fake_redis):
    reel = make_reel(db, author)
    fake_redis.set(lease_key(reel.id), "other-worker")

    result = processor.process(job_payload(reel, upload, author))

    assert result["reason"] == "leased"
    assert reload(session_factory, reel.id).status == ReelStatus.PENDING.value
    assert fake_redis.store[lease_key(reel.id)] == "other-worker"
    assert codec.calls == []


def test_unknown_reel_fails_and_notifies(processor, db, author, upload, fake_redis):
    payload = {"reel_id": 4242, "file_path": upload, "file_name": "a.mp4", "user_id": author.id}

    with pytest.raises(ReelNotFoundError):
        processor.process(payload)

    assert len(fake_redis.events(f"user:{author.id}", realtime_service.FAILED)) == 1


def test_transient_failure_is_tagged_retryable(processor, session_factory, db, author, upload, codec, fake_redis):
    codec.compress_error = CodecTimeoutError("FFmpeg timeout while compressing")
    reel = make_reel(db, author)

    with pytest.raises(CodecTimeoutError):
        processor.process(job_payload(reel, upload, author), attempts_made=0, attempts_max=3)

    stored = reload(session_factory, reel.id)
    assert stored.status == ReelStatus.FAILED.value
    assert stored.failure_kind == "retryable"
    assert stored.processing_progress == 0
    # Thumbnail stage had finished before compression failed
    assert stored.thumbnail_url is not None
    assert stored.video_url is None

    failed = fake_redis.events(f"user:{author.id}", realtime_service.FAILED)[0]["data"]
    assert failed["can_retry"] is True
    assert "timeout" in failed["error"].lower()


def test_last_attempt_reports_no_retry(processor, db, author, upload, codec, fake_redis):
    codec.compress_error = CodecTimeoutError("FFmpeg timeout while compressing")
    reel = make_reel(db, author)

    with pytest.raises(CodecTimeoutError):
        processor.process(job_payload(reel, upload, author), attempts_made=2, attempts_max=3)

    failed = fake_redis.events(f"user:{author.id}", realtime_service.FAILED)[0]["data"]
    assert failed["can_retry"] is False


def test_codec_exit_failure_is_redelivered_untagged(processor, session_factory, db, author, upload, codec, fake_redis):
    codec.compress_error = CodecError("Video compression failed with code 1: Conversion failed!")
    reel = make_reel(db, author)

    with pytest.raises(CodecError):
        processor.process(job_payload(reel, upload, author), attempts_made=0, attempts_max=3)

    stored = reload(session_factory, reel.id)
    assert stored.status == ReelStatus.FAILED.value
    assert stored.failure_kind is None
    assert stored.failed_reason.startswith("Video compression failed with code 1")
    failed = fake_redis.events(f"user:{author.id}", realtime_service.FAILED)[0]["data"]
    assert failed["can_retry"] is True


def test_original_cleanup_failure_does_not_fail_job(processor, session_factory, db, author, upload, storage):
    def broken_delete(path):
        raise PermissionError("read-only filesystem")

    storage.delete_file = broken_delete
    reel = make_reel(db, author)

    result = processor.process(job_payload(reel, upload, author))

    assert result["success"] is True
    assert reload(session_factory, reel.id).status == ReelStatus.COMPLETED.value


def test_follower_failures_are_isolated(processor, db, author, upload, fake_redis):
    f1, f2, f3 = make_user(db, "f1"), make_user(db, "f2"), make_user(db, "f3")
    for f in (f1, f2, f3):
        follow(db, f, author)
    reel = make_reel(db, author)
    fake_redis.fail_channels.add(f"user:{f1.id}")

    original_create = processor.notifications.create

    def flaky_create(**kwargs):
        if kwargs["user_id"] == f2.id:
            raise RuntimeError("notification store unavailable")
        return original_create(**kwargs)

    processor.notifications.create = flaky_create

    result = processor.process(job_payload(reel, upload, author))

    assert result["success"] is True
    assert len(fake_redis.events(f"user:{f2.id}", realtime_service.NEW_FROM_FOLLOWING)) == 1
    assert len(fake_redis.events(f"user:{f3.id}", realtime_service.NEW_FROM_FOLLOWING)) == 1
    receivers = {n.user_id for n in db.query(Notification).filter(Notification.type == REEL_PUBLISHED)}
    assert receivers == {f1.id, f3.id}


def test_disabled_notification_type_is_skipped(processor, db, author, upload):
    muted = make_user(db, "muted", notification_settings={REEL_PUBLISHED: {"in_app": False}})
    follow(db, muted, author)
    reel = make_reel(db, author)

    processor.process(job_payload(reel, upload, author))

    assert db.query(Notification).filter(Notification.user_id == muted.id).count() == 0


def test_compression_progress_mapping():
    assert map_compression_progress(0) == COMPRESSION_PROGRESS_START
    assert map_compression_progress(50) == 65
    assert map_compression_progress(100) == COMPRESSION_PROGRESS_END
    assert map_compression_progress(150) == COMPRESSION_PROGRESS_END


def test_derived_file_names():
    assert thumbnail_file_name("clip.final.mov") == "clip.final.jpg"
    assert processed_file_name("a.mp4") == "a-processed.mp4"
