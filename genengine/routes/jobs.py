from fastapi import APIRouter, HTTPException
from typing import Optional
import logging

from genengine.errors import JobNotFoundError
from genengine.models.checkpoint import RecoveryOptions
from genengine.models.job import Job, JobStatus, JobSubmission
from genengine.services.events import job_channel
from genengine.services.scheduler import JobScheduler, get_event_log, get_scheduler

logger = logging.getLogger(__name__)
router = APIRouter()


def _require_scheduler() -> JobScheduler:
    scheduler = get_scheduler()
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Job scheduler not available")
    return scheduler


def _job_summary(job: Job) -> dict:
    return {
        "job_id": job.id,
        "status": job.status.value,
        "priority": job.priority,
        "progress": job.progress,
        "processed_models": job.processed_models,
        "total_models": job.total_models,
        "retry_count": job.retry_count,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }


@router.post("/jobs", status_code=201)
async def create_job(submission: JobSubmission):
    """
    Submit a generation job
    Admission errors are rendered by the error middleware
    """
    job = await _require_scheduler().submit(submission)
    logger.info("Created job: %s (%d units)", job.id, job.total_models)
    return job.model_dump(mode="json")


@router.get("/jobs")
async def list_jobs(status: Optional[JobStatus] = None):
    """List jobs known to this process, oldest first"""
    jobs = _require_scheduler().list_jobs(status)
    return {"jobs": [_job_summary(job) for job in jobs]}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    job = _require_scheduler().get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found", job_id=job_id)
    return job.model_dump(mode="json")


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str):
    """
    Cancel a job
    Queued jobs are cancelled at once; running jobs stop at the next unit boundary
    """
    scheduler = _require_scheduler()
    job = scheduler.get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found", job_id=job_id)

    if not await scheduler.cancel(job_id):
        raise HTTPException(status_code=409, detail=f"Job {job_id} cannot be cancelled ({job.status.value})")

    logger.info("Cancelled job: %s", job_id)
    return {
        "job_id": job_id,
        "status": job.status.value,
        "message": "Job cancelled" if job.status == JobStatus.CANCELLED else "Cancellation requested",
    }


@router.post("/jobs/{job_id}/recover")
async def recover_job(job_id: str, options: Optional[RecoveryOptions] = None):
    """Re-queue a failed or interrupted job"""
    job = await _require_scheduler().recover_job(job_id, options)
    return job.model_dump(mode="json")


@router.get("/jobs/{job_id}/checkpoints")
async def list_checkpoints(job_id: str):
    scheduler = _require_scheduler()
    checkpoints = scheduler.checkpoints.list_checkpoints(job_id)
    if not checkpoints and scheduler.get_job(job_id) is None and scheduler.store.load_job_state(job_id) is None:
        raise JobNotFoundError(f"Job {job_id} not found", job_id=job_id)
    return {
        "job_id": job_id,
        "checkpoints": [checkpoint.model_dump(mode="json") for checkpoint in checkpoints],
        "latest": checkpoints[-1].model_dump(mode="json") if checkpoints else None,
    }


@router.get("/jobs/{job_id}/events")
async def list_events(job_id: str):
    """Recent events published on the job's channel, for polling clients"""
    _require_scheduler()
    event_log = get_event_log()
    channel = job_channel(job_id)
    return {
        "job_id": job_id,
        "channel": channel,
        "events": event_log.events(channel) if event_log is not None else [],
    }
