import os
import fnmatch
import json
from datetime import timedelta

import pytest

# Settings are read at import time; point them at throwaway backends first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reelpipe.core.database import Base, utcnow
from reelpipe.models import Follow, Reel, ReelStatus, User
from reelpipe.services.cache_service import CacheService
from reelpipe.services.file_service import MediaStorage
from reelpipe.services.lease_service import LeaseManager
from reelpipe.services.notification_service import NotificationService
from reelpipe.services.realtime_service import RealtimeChannel
from reelpipe.services.reel_processor import ReelProcessor


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the pipeline uses"""

    def __init__(self):
        self.store = {}
        self.published = []
        self.fail_channels = set()

    def ping(self):
        return True

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, nx=False, ex=None, px=None):
        if nx and key in self.store:
            return None
        self.store[key] = str(value)
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def getdel(self, key):
        return self.store.pop(key, None)

    def incr(self, key, amount=1):
        value = int(self.store.get(key, 0)) + amount
        self.store[key] = str(value)
        return value

    def expire(self, key, seconds):
        return key in self.store

    def scan_iter(self, match="*", count=None):
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self):
        return FakePipeline(self)

    def publish(self, channel, message):
        import redis

        if channel in self.fail_channels:
            raise redis.ConnectionError(f"publish to {channel} failed")
        self.published.append((channel, json.loads(message)))
        return 1

    def eval(self, script, numkeys, key, token, *args):
        if self.store.get(key) != token:
            return 0
        if "pexpire" in script:
            return 1
        del self.store[key]
        return 1

    def events(self, channel=None, event=None):
        return [
            message for ch, message in self.published
            if (channel is None or ch == channel) and (event is None or message["event"] == event)
        ]


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def __getattr__(self, name):
        def queued(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return queued

    def execute(self):
        return [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.calls]


class FakeCodec:
    """Codec double: fixed metadata, records calls, replays compression progress"""

    def __init__(self, storage, duration=45.0, progress_steps=(0, 5, 12, 25, 50, 75, 99, 100)):
        self.storage = storage
        self.duration = duration
        self.progress_steps = progress_steps
        self.calls = []
        self.compress_error = None

    def get_video_metadata(self, path):
        self.calls.append(("metadata", path))
        return {"duration": self.duration, "width": 1080, "height": 1920, "size": 4_200_000, "codec": "h264"}

    def generate_thumbnail(self, path, output_file_name):
        self.calls.append(("thumbnail", path))
        return self.storage.thumbnail_url(output_file_name)

    def compress_video(self, path, output_file_name, progress_callback=None):
        self.calls.append(("compress", path))
        for step in self.progress_steps:
            if self.compress_error is not None and step >= 50:
                raise self.compress_error
            if progress_callback:
                progress_callback(step)
        return self.storage.processed_url(output_file_name)

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def storage(tmp_path):
    storage = MediaStorage(root=str(tmp_path / "reels"), public_prefix="/uploads/reels")
    storage.ensure_dirs()
    return storage


@pytest.fixture()
def codec(storage):
    return FakeCodec(storage)


@pytest.fixture()
def processor(session_factory, codec, storage, fake_redis):
    return ReelProcessor(
        session_factory=session_factory,
        codec=codec,
        storage=storage,
        realtime=RealtimeChannel(fake_redis),
        notifications=NotificationService(session_factory),
        cache=CacheService(fake_redis),
        leases=LeaseManager(fake_redis, ttl_seconds=60),
        max_duration=60,
    )


def make_user(db, username, **fields):
    user = User(username=username, display_name=username.title(), **fields)
    db.add(user)
    db.commit()
    return user


def make_reel(db, user, status=ReelStatus.PENDING.value, file_name="a.mp4", updated_ago=None, **fields):
    reel = Reel(
        user_id=user.id,
        origin_url=f"/uploads/reels/original/{file_name}",
        status=status,
        **fields,
    )
    if updated_ago is not None:
        reel.updated_at = utcnow() - updated_ago
    db.add(reel)
    db.commit()
    return reel


def follow(db, follower, following):
    db.add(Follow(follower_id=follower.id, following_id=following.id))
    db.commit()


def hours(n):
    return timedelta(hours=n)
