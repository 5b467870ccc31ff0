# Reel lease - short-lived Redis ownership token so only one worker drives a reel at a time

import uuid
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Only the holder's token may release or extend the lease
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


def lease_key(reel_id: int) -> str:
    return f"reel_lease:{reel_id}"


class ReelLease:
    """Lease handle returned by LeaseManager.acquire"""

    def __init__(self, manager: "LeaseManager", reel_id: int, token: str):
        self.manager = manager
        self.reel_id = reel_id
        self.token = token
        self.released = False

    def extend(self) -> bool:
        if self.released:
            return False
        return self.manager.extend(self)

    def release(self) -> bool:
        if self.released:
            return False
        self.released = True
        return self.manager.release(self)


class LeaseManager:
    def __init__(self, client, ttl_seconds: int):
        self.client = client
        self.ttl_ms = int(ttl_seconds * 1000)

    def acquire(self, reel_id: int) -> Optional[ReelLease]:
        """Atomically take the lease; None if another worker holds a live one"""
        token = uuid.uuid4().hex
        if self.client.set(lease_key(reel_id), token, nx=True, px=self.ttl_ms):
            return ReelLease(self, reel_id, token)
        return None

    def extend(self, lease: ReelLease) -> bool:
        extended = self.client.eval(_EXTEND_SCRIPT, 1, lease_key(lease.reel_id), lease.token, self.ttl_ms)
        if not extended:
            logger.warning(f"Lease for reel {lease.reel_id} was lost before it could be extended")
        return bool(extended)

    def release(self, lease: ReelLease) -> bool:
        return bool(self.client.eval(_RELEASE_SCRIPT, 1, lease_key(lease.reel_id), lease.token))
