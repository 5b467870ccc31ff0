# Realtime channel - per-user push events published over Redis pub/sub

import json
import logging
from typing import Any, Dict

import redis

logger = logging.getLogger(__name__)

PROCESSING_STARTED = "reel:processing_started"
PROCESSING_PROGRESS = "reel:processing_progress"
PUBLISHED = "reel:published"
NEW_FROM_FOLLOWING = "reel:new_from_following"
FAILED = "reel:failed"


def user_channel(user_id: int) -> str:
    return f"user:{user_id}"


class RealtimeChannel:
    """
    Publishes `{"event": ..., "data": ...}` messages on the `user:{id}` channel.

    Delivery is fire-and-forget: a Redis failure is logged and reported as False,
    never raised into the caller's pipeline.
    """

    def __init__(self, client):
        self.client = client

    def emit(self, user_id: int, event: str, data: Dict[str, Any]) -> bool:
        message = json.dumps({"event": event, "data": data}, default=str)
        try:
            self.client.publish(user_channel(user_id), message)
        except redis.RedisError as e:
            logger.warning(f"Failed to emit {event} to user {user_id}: {e}")
            return False
        return True
