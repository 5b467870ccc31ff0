# Reel model - short video tracked through upload -> processing -> publish

import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, BigInteger, Text, Float, ForeignKey
from sqlalchemy.orm import relationship
from reelpipe.core.database import Base, utcnow


class ReelStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Reel(Base):
    """Reel model; status and media fields are written by the processing pipeline"""

    __tablename__ = "reels"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    uuid = Column(String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    caption = Column(Text, nullable=True)

    # Public URL of the uploaded original, e.g. /uploads/reels/original/abc.mp4
    origin_url = Column(String(500), nullable=False)

    # Processing state: pending, processing, completed, failed
    status = Column(String(20), nullable=False, default=ReelStatus.PENDING.value, index=True)
    processing_progress = Column(Integer, nullable=False, default=0)  # 0-100
    failed_reason = Column(Text, nullable=True)
    failure_kind = Column(String(20), nullable=True)  # retryable, fatal

    # Populated stage by stage
    video_url = Column(String(500), nullable=True)
    thumbnail_url = Column(String(500), nullable=True)
    duration = Column(Float, nullable=True)  # seconds
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    size = Column(BigInteger, nullable=True)  # bytes
    published_at = Column(DateTime, nullable=True)

    views = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow, index=True)

    author = relationship("User", lazy="joined")

    def __repr__(self):
        return f"<Reel(id={self.id}, user_id={self.user_id}, status={self.status}, progress={self.processing_progress})>"

    def to_dict(self) -> dict:
        """Serialize for realtime payloads"""
        return {
            "id": self.id,
            "uuid": self.uuid,
            "user_id": self.user_id,
            "caption": self.caption,
            "status": self.status,
            "video_url": self.video_url,
            "thumbnail_url": self.thumbnail_url,
            "duration": self.duration,
            "width": self.width,
            "height": self.height,
            "size": self.size,
            "views": self.views,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "author": self.author.to_dict() if self.author else None,
        }
