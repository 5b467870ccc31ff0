# Reel API endpoints - manual retry of a failed reel

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from reelpipe.core.database import get_db
from reelpipe.core.errors import EnqueueError
from reelpipe.models import Reel, ReelStatus
from reelpipe.worker import get_maintenance

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/reels/{reel_id}/retry")
def retry_reel(reel_id: int, db: Session = Depends(get_db)):
    """
    Requeue a failed reel regardless of its failure classification.
    """
    reel = db.get(Reel, reel_id)
    if not reel:
        raise HTTPException(status_code=404, detail=f"Reel {reel_id} not found")

    if reel.status != ReelStatus.FAILED.value:
        raise HTTPException(
            status_code=409,
            detail=f"Reel {reel_id} is {reel.status}; only failed reels can be retried"
        )

    try:
        get_maintenance().requeue_reel(db, reel)
    except EnqueueError as e:
        logger.error(f"Manual retry of reel {reel_id} failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    return {"message": f"Reel {reel_id} queued for retry", "reel_id": reel_id, "status": reel.status}
