from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List, Tuple
from enum import Enum
from datetime import datetime


class JobStatus(str, Enum):
    """Job status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = {JobStatus.PENDING, JobStatus.PROCESSING}
UNIT_SEPARATOR = ":"


def unit_id(model_id: str, material: str) -> str:
    """Identifier of one (model, material) work unit"""
    return f"{model_id}{UNIT_SEPARATOR}{material}"


class FailureRecord(BaseModel):
    """One entry of a job's append-only failure history"""
    timestamp: datetime
    error: str
    unit: Optional[str] = None
    retryable: bool = True


class JobSubmission(BaseModel):
    """Request model for submitting a generation job."""
    job_id: str
    model_ids: List[str]
    materials: List[str] = Field(default_factory=list)
    priority: Optional[int] = None


class Job(BaseModel):
    """Generation job record"""
    model_config = ConfigDict(validate_assignment=False)

    id: str
    status: JobStatus = JobStatus.PENDING
    model_ids: List[str]
    materials: List[str]
    priority: int = 2
    progress: int = 0
    processed_models: int = 0
    total_models: int = 0
    completed_units: List[str] = Field(default_factory=list)
    skipped_units: List[str] = Field(default_factory=list)
    current_model: Optional[str] = None
    current_material: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    recovery_attempts: int = 0
    failure_history: List[FailureRecord] = Field(default_factory=list)
    error: Optional[str] = None
    estimated_time_remaining: Optional[int] = None
    start_time: datetime
    started_at: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    last_retry_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    history: List[Dict[str, Any]] = Field(default_factory=list)

    def work_units(self) -> List[Tuple[str, str]]:
        """(model, material) pairs in model-major order"""
        return [(model_id, material) for model_id in self.model_ids for material in self.materials]

    def unit_ids(self) -> List[str]:
        return [unit_id(model_id, material) for model_id, material in self.work_units()]

    def is_terminal(self) -> bool:
        if self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return True
        if self.status != JobStatus.ERROR:
            return False
        return self.retry_count >= self.max_retries or self.failed_permanently()

    def failed_permanently(self) -> bool:
        """Last recorded failure was classified non-retryable"""
        return bool(self.failure_history) and not self.failure_history[-1].retryable

    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def finished_units(self) -> set:
        return set(self.completed_units) | set(self.skipped_units)


class JobEvent(BaseModel):
    """Progress / status event published on a job's channel"""
    type: str
    job_id: str
    status: JobStatus
    progress: int
    processed_models: int
    total_models: int
    retry_count: int = 0
    current_model: Optional[str] = None
    current_material: Optional[str] = None
    error: Optional[str] = None
    estimated_time_remaining: Optional[int] = None
    timestamp: datetime

    @classmethod
    def from_job(cls, job: Job, event_type: str) -> "JobEvent":
        return cls(
            type=event_type,
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            processed_models=job.processed_models,
            total_models=job.total_models,
            retry_count=job.retry_count,
            current_model=job.current_model,
            current_material=job.current_material,
            error=job.error,
            estimated_time_remaining=job.estimated_time_remaining,
            timestamp=datetime.now(),
        )
