# Notification model - persisted user-facing notifications

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean, ForeignKey
from reelpipe.core.database import Base, utcnow


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # receiver
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # e.g. reel_published, reel_processing_failed
    type = Column(String(50), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    body = Column(Text, nullable=True)
    link = Column(String(500), nullable=True)
    extra = Column("metadata", JSON, nullable=True)

    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type})>"
