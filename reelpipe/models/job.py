# Job model - queue-side record of a reel processing job (state, attempts, progress, errors)

import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, Float, JSON
from reelpipe.core.database import Base, utcnow


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"  # waiting out a retry backoff
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = (JobState.COMPLETED.value, JobState.FAILED.value)


class ProcessingJob(Base):
    """One queued unit of work; the id doubles as the Celery task id"""

    __tablename__ = "processing_jobs"

    id = Column(String(64), primary_key=True)

    # Immutable payload
    reel_id = Column(Integer, nullable=True, index=True)
    payload = Column(JSON, nullable=False)

    # Runtime metadata
    state = Column(String(20), nullable=False, default=JobState.WAITING.value, index=True)
    priority = Column(Integer, nullable=False, default=0)
    attempts_made = Column(Integer, nullable=False, default=0)
    attempts_max = Column(Integer, nullable=False, default=1)
    progress = Column(Float, nullable=False, default=0.0)
    failed_reason = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True, index=True)

    def __repr__(self):
        return f"<ProcessingJob(id={self.id}, reel_id={self.reel_id}, state={self.state}, attempts={self.attempts_made}/{self.attempts_max})>"
