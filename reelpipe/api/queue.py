# Queue API endpoints - job metrics and manual cleanup of terminal job records

import logging

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from reelpipe.worker import get_queue

router = APIRouter()
logger = logging.getLogger(__name__)


class QueueMetricsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int


class QueueCleanupResponse(BaseModel):
    completed: int
    failed: int


@router.get("/queue/metrics", response_model=QueueMetricsResponse)
def get_queue_metrics():
    try:
        return get_queue().metrics()
    except Exception as e:
        logger.error(f"Failed to read queue metrics: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to read queue metrics: {str(e)}")


@router.post("/queue/cleanup", response_model=QueueCleanupResponse)
def cleanup_queue(
    older_than_hours: float = Query(24, gt=0, description="Remove completed/failed jobs older than this"),
):
    """
    Remove completed/failed job records. Active and waiting jobs are never touched.
    """
    try:
        return get_queue().cleanup(int(older_than_hours * 3600 * 1000))
    except Exception as e:
        logger.error(f"Queue cleanup failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Queue cleanup failed: {str(e)}")
