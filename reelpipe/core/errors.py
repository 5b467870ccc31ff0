# Pipeline error taxonomy - every error carries a retryable/fatal tag persisted with the failed reel

import enum
import subprocess
from typing import Optional

import redis
from sqlalchemy.exc import OperationalError

# Legacy free-text markers for failures recorded before failure_kind existed
RETRYABLE_REASON_MARKERS = ("timeout", "econnreset", "etimedout", "network")


class FailureKind(str, enum.Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class ReelPipelineError(Exception):
    """Base class for reel pipeline errors; `kind` is None when the error is unclassified"""

    kind: Optional[FailureKind] = None

    def __init__(self, message: str, kind: Optional[FailureKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class InvalidJobError(ReelPipelineError):
    """Job payload is missing required fields"""

    kind = FailureKind.FATAL


class ReelNotFoundError(ReelPipelineError):
    """Reel referenced by a job does not exist"""

    kind = FailureKind.FATAL


class DurationExceededError(ReelPipelineError):
    """Video is longer than the reel duration limit"""

    kind = FailureKind.FATAL

    def __init__(self, duration: float, limit: float):
        self.duration = duration
        self.limit = limit
        super().__init__(str(self))
        # Result backends rebuild exceptions as cls(*args)
        self.args = (duration, limit)

    def __str__(self):
        return f"Video duration exceeds {self.limit:g}s limit ({self.duration:.2f}s)"


class CodecError(ReelPipelineError):
    """FFmpeg/FFprobe failed on the input"""


class CodecTimeoutError(CodecError):
    """FFmpeg/FFprobe did not finish in time"""

    kind = FailureKind.RETRYABLE


class EnqueueError(ReelPipelineError):
    """Job could not be published to the broker"""

    kind = FailureKind.RETRYABLE


_TRANSIENT_TYPES = (
    TimeoutError,
    ConnectionError,
    subprocess.TimeoutExpired,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    OperationalError,
)


def is_retryable_reason(reason: Optional[str]) -> bool:
    """Match a free-text failure reason against the transient markers"""
    if not reason:
        return False
    lowered = reason.lower()
    return any(marker in lowered for marker in RETRYABLE_REASON_MARKERS)


def classify_failure(exc: BaseException) -> Optional[FailureKind]:
    """
    Tag an exception at the point it is caught.

    Tagged pipeline errors keep their tag and well-known infrastructure errors are
    retryable. Otherwise the message is matched against the transient markers.
    Returns None for an unclassified error: the queue still redelivers it within
    its attempt budget, and the stored reel is left untagged.
    """
    if isinstance(exc, ReelPipelineError) and exc.kind is not None:
        return exc.kind
    if isinstance(exc, _TRANSIENT_TYPES):
        return FailureKind.RETRYABLE
    if is_retryable_reason(str(exc)):
        return FailureKind.RETRYABLE
    return None
