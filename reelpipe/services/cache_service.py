# Cache service - pattern invalidation of aggregate views (feeds, trending, user reels)

import logging

logger = logging.getLogger(__name__)

REEL_FEED_PATTERN = "reel_feed:*"
TRENDING_REELS_PATTERN = "trending_reels:*"


def user_reels_pattern(user_id: int) -> str:
    return f"user_reels:{user_id}:*"


class CacheService:
    """Redis-backed cache; keys are dropped by glob pattern"""

    def __init__(self, client, scan_count: int = 500):
        self.client = client
        self.scan_count = scan_count

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Delete every key matching `pattern`.

        Uses SCAN rather than KEYS so large keyspaces do not block Redis.

        Returns:
            int: number of keys deleted
        """
        deleted = 0
        batch = []
        for key in self.client.scan_iter(match=pattern, count=self.scan_count):
            batch.append(key)
            if len(batch) >= self.scan_count:
                deleted += self.client.delete(*batch)
                batch = []
        if batch:
            deleted += self.client.delete(*batch)

        logger.debug(f"Invalidated {deleted} cache keys for pattern {pattern}")
        return deleted
