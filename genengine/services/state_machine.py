from datetime import datetime
from typing import Optional

from genengine.models.job import Job, JobStatus


class JobStateMachine:
    """Validates and applies job status transitions with audit history."""

    VALID_TRANSITIONS = {
        JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.CANCELLED},
        JobStatus.PROCESSING: {JobStatus.PENDING, JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED},
        JobStatus.ERROR: {JobStatus.PENDING},
        JobStatus.COMPLETED: set(),
        JobStatus.CANCELLED: set(),
    }

    TERMINAL_CANDIDATES = (JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED)

    @staticmethod
    def transition(job: Job, new_status: JobStatus, reason: Optional[str] = None):
        if job.is_terminal():
            raise ValueError(f"Job {job.id} is terminal ({job.status.value})")
        if new_status not in JobStateMachine.VALID_TRANSITIONS.get(job.status, set()):
            raise ValueError(f"Invalid transition: {job.status.value} -> {new_status.value}")

        now = datetime.now()
        job.history.append({
            "from": job.status.value,
            "to": new_status.value,
            "timestamp": now.isoformat(),
            "reason": reason or ""
        })

        job.status = new_status
        if new_status == JobStatus.PROCESSING and job.started_at is None:
            job.started_at = now
        if new_status in JobStateMachine.TERMINAL_CANDIDATES:
            job.end_time = now
            if job.started_at:
                job.duration_ms = int((now - job.started_at).total_seconds() * 1000)
        elif new_status == JobStatus.PENDING:
            job.end_time = None
        job.updated_at = now
