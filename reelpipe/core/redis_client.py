# Redis client initialization - shared connection used by cache, leases, views and realtime

import redis

from .config import settings

# Connections are opened lazily on first command
redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
