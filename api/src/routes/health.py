from fastapi import APIRouter, Depends
from sqlalchemy import text
import asyncio

from api.src.deps import get_scheduler
from controller.src.services.scheduler import Scheduler
from controller.src.services.status_reporter import DatabaseSink, RedisSink

router = APIRouter(tags=["health"])

def _ping_database(sink: DatabaseSink):
    with sink.engine.connect() as conn:
        conn.execute(text("SELECT 1"))

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "kiln-api"}

@router.get("/health/runners")
async def runners_health_check(scheduler: Scheduler = Depends(get_scheduler)):
    pool = scheduler.pool
    return {
        "status": "healthy" if pool.available > 0 else "saturated",
        "size": pool.size,
        "available": pool.available,
        "busy": pool.busy,
    }

@router.get("/health/db")
async def db_health_check(scheduler: Scheduler = Depends(get_scheduler)):
    sink = scheduler.reporter.get_sink(DatabaseSink)
    if sink is None:
        return {"status": "disabled", "database": "not configured"}
    try:
        await asyncio.to_thread(_ping_database, sink)
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": str(e)}

@router.get("/health/redis")
async def redis_health_check(scheduler: Scheduler = Depends(get_scheduler)):
    sink = scheduler.reporter.get_sink(RedisSink)
    if sink is None:
        return {"status": "disabled", "redis": "not configured"}
    try:
        await sink.client.ping()
        return {"status": "healthy", "redis": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "redis": str(e)}
