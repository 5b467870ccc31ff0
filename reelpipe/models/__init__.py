# SQLAlchemy database models - Reel, User, Follow, Notification, ProcessingJob

from .user import User, Follow
from .reel import Reel, ReelStatus
from .notification import Notification
from .job import ProcessingJob, JobState, TERMINAL_JOB_STATES

__all__ = [
    "User",
    "Follow",
    "Reel",
    "ReelStatus",
    "Notification",
    "ProcessingJob",
    "JobState",
    "TERMINAL_JOB_STATES",
]
