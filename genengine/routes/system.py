from fastapi import APIRouter, HTTPException
import asyncio
import logging

from genengine.services.scheduler import JobScheduler, get_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system", tags=["system"])


def _require_scheduler() -> JobScheduler:
    scheduler = get_scheduler()
    if not scheduler:
        raise HTTPException(status_code=503, detail="Job scheduler not available")
    return scheduler


@router.get("/resources")
async def get_resources():
    """Latest resource snapshot, pressure level and recommendations"""
    return _require_scheduler().monitor.get_resource_summary()


@router.get("/resources/recommendations")
async def get_recommendations():
    monitor = _require_scheduler().monitor
    return {
        "pressure": monitor.get_pressure_level().value,
        "recommendations": [rec.to_dict() for rec in monitor.get_recommendations()],
    }


@router.post("/resources/cleanup")
async def cleanup_disk_space():
    """Remove expired render output and temp files now, bypassing the rate limit"""
    monitor = _require_scheduler().monitor
    return await asyncio.to_thread(monitor.cleanup_disk_space, True)


@router.get("/scheduler")
async def get_scheduler_status():
    """Running and queued jobs with their limits"""
    return _require_scheduler().get_queue_status()


@router.get("/metrics")
async def get_metrics():
    return _require_scheduler().get_metrics()


@router.get("/circuit-breaker")
async def get_circuit_breaker():
    return _require_scheduler().breaker.get_status()


@router.get("/persistence/statistics")
async def get_persistence_statistics():
    return _require_scheduler().store.get_job_statistics().model_dump(mode="json")


@router.get("/persistence/recoverable")
async def get_recoverable_jobs():
    """Persisted jobs that were interrupted or failed with retries left"""
    recoverable = _require_scheduler().recovery.get_all_recoverable_jobs()
    return {
        "jobs": [
            {
                "job_id": item.job_id,
                "status": item.job.status.value,
                "progress": item.job.progress,
                "retry_count": item.job.retry_count,
                "max_retries": item.job.max_retries,
                "last_checkpoint": item.last_checkpoint.model_dump(mode="json") if item.last_checkpoint else None,
            }
            for item in recoverable
        ]
    }
