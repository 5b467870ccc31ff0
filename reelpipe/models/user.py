# User and follow models - the subset of the account schema the pipeline reads

import uuid

from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, UniqueConstraint
from reelpipe.core.database import Base, utcnow


class User(Base):
    """Reel author / follower"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    uuid = Column(String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))
    username = Column(String(100), unique=True, nullable=False)
    display_name = Column(String(255), nullable=True)
    avatar_url = Column(String(500), nullable=True)

    # {"reel_published": {"in_app": false}} disables a notification type
    notification_settings = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}')>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "uuid": self.uuid,
            "username": self.username,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
        }


class Follow(Base):
    """follower_id follows following_id's reels"""

    __tablename__ = "follows"
    __table_args__ = (UniqueConstraint("follower_id", "following_id", name="uq_follows_pair"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    follower_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    following_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
