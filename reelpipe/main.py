# FastAPI application entrypoint - ops API for the reel pipeline (health, queue, maintenance)

from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

import psutil
from fastapi import FastAPI
from sqlalchemy import text

from reelpipe.api import ping, queue, maintenance, reels
from reelpipe.core.database import create_tables

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    logger.info("Database tables ready")
    yield


app = FastAPI(title="Reel Pipeline", lifespan=lifespan)

app.include_router(ping.router, prefix="/api", tags=["health"])
app.include_router(queue.router, prefix="/api", tags=["queue"])
app.include_router(maintenance.router, prefix="/api", tags=["maintenance"])
app.include_router(reels.router, prefix="/api", tags=["reels"])


@app.get("/")
def read_root():
    return {"system": "Reel Pipeline", "status": "online", "version": "1.0.0"}


def _check_database() -> str:
    from reelpipe.core.database import engine

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return "unreachable"


def _check_redis() -> str:
    from reelpipe.core.redis_client import redis_client

    try:
        redis_client.ping()
        return "ok"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return "unreachable"


@app.get("/health")
def health_check():
    """
    Pipeline health: database, Redis, worker pool and host load.
    """
    from reelpipe.worker import worker_health

    database = _check_database()
    redis_status = _check_redis()
    workers = worker_health()

    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('/')
    host = {
        "cpu_percent": psutil.cpu_percent(interval=0.1),
        "memory_percent": memory.percent,
        "disk_percent": disk.percent,
    }

    status = "healthy"
    issues = []

    if database != "ok":
        status = "degraded"
        issues.append("Database unreachable")

    if redis_status != "ok":
        status = "degraded"
        issues.append("Redis unreachable")

    if not workers["is_running"]:
        status = "degraded"
        issues.append("No reel workers responding")

    if disk.percent > 95:
        status = "degraded"
        issues.append("Low disk space")

    return {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "issues": issues if issues else None,
        "database": database,
        "redis": redis_status,
        "workers": workers,
        "host": host,
    }
