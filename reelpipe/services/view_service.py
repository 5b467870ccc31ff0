# View counter - buffers reel views in Redis and flushes them into the reels table

import logging
from typing import Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from reelpipe.models import Reel

logger = logging.getLogger(__name__)

PENDING_VIEWS_PREFIX = "reel_views_pending:"
VIEW_WINDOW_SECONDS = 3600  # one counted view per viewer per hour


def pending_views_key(reel_id: int) -> str:
    return f"{PENDING_VIEWS_PREFIX}{reel_id}"


def viewer_marker_key(reel_id: int, user_id: Optional[int]) -> str:
    return f"reel_view:{reel_id}:{user_id or 'guest'}"


class ViewCounter:
    """Per-reel view counters kept in Redis to avoid a DB write per view"""

    def __init__(self, client, session_factory: Callable[[], Session]):
        self.client = client
        self.session_factory = session_factory

    def record_view(self, reel_id: int, user_id: Optional[int] = None) -> bool:
        """
        Count a view unless this viewer was already counted within the window.

        Returns:
            bool: True if the view was counted
        """
        marker = viewer_marker_key(reel_id, user_id)
        if not self.client.set(marker, "1", nx=True, ex=VIEW_WINDOW_SECONDS):
            return False

        key = pending_views_key(reel_id)
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, VIEW_WINDOW_SECONDS)
        pipe.execute()
        return True

    def sync_pending_views(self) -> Dict[str, int]:
        """
        Flush buffered counters into reels.views.

        Each counter is read and removed atomically (GETDEL), so views recorded
        during the flush land in a fresh counter for the next run.

        Returns:
            Dict with synced (number of reels updated)
        """
        synced = 0
        db = self.session_factory()
        try:
            for key in self.client.scan_iter(match=f"{PENDING_VIEWS_PREFIX}*"):
                reel_id = key[len(PENDING_VIEWS_PREFIX):]
                if not reel_id.isdigit():
                    continue

                pending = int(self.client.getdel(key) or 0)
                if pending <= 0:
                    continue

                result = db.execute(
                    update(Reel)
                    .where(Reel.id == int(reel_id))
                    .values(views=Reel.views + pending)
                )
                db.commit()
                if result.rowcount:
                    synced += 1
                    logger.debug(f"Synced {pending} views for reel {reel_id}")
        finally:
            db.close()

        return {"synced": synced}
