# Maintenance API endpoints - scheduled task overview

from fastapi import APIRouter

from reelpipe.worker import get_maintenance

router = APIRouter()


@router.get("/maintenance/tasks")
def list_maintenance_tasks():
    return {"tasks": get_maintenance().tasks_status()}
