from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from genengine.models.job import Job

PERSISTENCE_VERSION = "1.0"


class Checkpoint(BaseModel):
    """Point-in-time progress snapshot of a job"""
    job_id: str
    progress: int
    completed_models: List[str] = Field(default_factory=list)
    current_model: Optional[str] = None
    current_material: Optional[str] = None
    sequence_index: Optional[int] = None
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PersistedJobState(BaseModel):
    """Everything the store holds for one job"""
    job: Job
    checkpoints: List[Checkpoint] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    version: str = PERSISTENCE_VERSION


class JobStatistics(BaseModel):
    total_persisted_jobs: int = 0
    recoverable_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    oldest_job: Optional[str] = None
    newest_job: Optional[str] = None


class RecoveryOptions(BaseModel):
    resume_from_last_checkpoint: bool = True
    skip_failed_steps: bool = False
    retry_failed_steps: bool = True
    max_recovery_attempts: int = 3


class RecoveryPlan(BaseModel):
    """Decision on whether and how a job may resume"""
    job_id: str
    can_recover: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    resume_from_checkpoint: bool = False
    max_recovery_attempts: int = 3
    skip_failed_steps: bool = False
    retry_failed_steps: bool = True
    checkpoint: Optional[Checkpoint] = None

    @property
    def error(self) -> Optional[str]:
        return self.reason


class RecoverableJob(BaseModel):
    job_id: str
    job: Job
    last_checkpoint: Optional[Checkpoint] = None
    can_recover: bool
