# Notification service - persists user-facing notifications for reel events

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from reelpipe.models import Notification, User

logger = logging.getLogger(__name__)

REEL_PUBLISHED = "reel_published"
REEL_PROCESSING_FAILED = "reel_processing_failed"


def is_enabled(user: User, notification_type: str) -> bool:
    """In-app delivery is on unless the user's settings switch this type off"""
    settings = (user.notification_settings or {}).get(notification_type)
    if settings is None:
        return True
    return bool(settings.get("in_app", True))


class NotificationService:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def create(
        self,
        user_id: int,
        type: str,
        title: Optional[str] = None,
        body: Optional[str] = None,
        sender_id: Optional[int] = None,
        link: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        """
        Create a notification for `user_id`.

        Returns None without raising when the receiver does not exist or has
        disabled this notification type. Database errors propagate.
        """
        db = self.session_factory()
        try:
            receiver = db.get(User, user_id)
            if receiver is None:
                logger.error(f"Notification receiver {user_id} does not exist")
                return None
            if not is_enabled(receiver, type):
                logger.info(f"User {user_id} disabled {type} notifications")
                return None

            notification = Notification(
                user_id=user_id,
                sender_id=sender_id,
                type=type,
                title=title,
                body=body,
                link=link,
                extra=metadata or {},
            )
            db.add(notification)
            db.commit()
            db.refresh(notification)
            db.expunge(notification)
            return notification
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
