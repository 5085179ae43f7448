import logging
from datetime import datetime
from typing import List, Optional

from genengine.models.checkpoint import Checkpoint, RecoverableJob, RecoveryOptions, RecoveryPlan
from genengine.models.job import Job, JobStatus
from genengine.services.checkpoint_manager import CheckpointManager
from genengine.services.persistence import PersistenceStore, is_recoverable
from genengine.services.state_machine import JobStateMachine

logger = logging.getLogger(__name__)

RETRY_LIMIT_CODE = "retry_limit_exceeded"


class RecoveryPlanner:
    """Decides whether a failed or interrupted job may resume, and from where"""

    def __init__(self, store: PersistenceStore, checkpoints: CheckpointManager):
        self.store = store
        self.checkpoints = checkpoints

    def recover_job(self, job_id: str, options: Optional[RecoveryOptions] = None) -> RecoveryPlan:
        """Plan recovery of a persisted job"""
        options = options or RecoveryOptions()
        state = self.store.load_job_state(job_id)
        if state is None:
            return self._refuse(job_id, options, "No persisted state found", "no_state")
        return self.plan_for(state.job, options)

    def plan_for(self, job: Job, options: RecoveryOptions) -> RecoveryPlan:
        if job.status == JobStatus.COMPLETED:
            return self._refuse(job.id, options, "Job already completed", "completed")
        if job.status == JobStatus.CANCELLED:
            return self._refuse(job.id, options, "Job was cancelled", "cancelled")
        # The retry ceiling is never overridden by recovery options
        if job.retry_count >= job.max_retries:
            return self._refuse(job.id, options, "Job exceeded max retries", RETRY_LIMIT_CODE)
        if job.status == JobStatus.ERROR and job.failed_permanently():
            return self._refuse(job.id, options, "Job failed with a non-retryable error", "non_retryable")
        if job.recovery_attempts >= options.max_recovery_attempts:
            return self._refuse(job.id, options, "Job exceeded max recovery attempts", "recovery_limit_exceeded")
        if self.failed_units(job) and not (options.skip_failed_steps or options.retry_failed_steps):
            return self._refuse(job.id, options, "Failed steps can be neither retried nor skipped", "failed_steps")

        checkpoint = self.latest_checkpoint_for(job)
        resume = (options.resume_from_last_checkpoint and checkpoint is not None
                  and bool(checkpoint.completed_models))

        return RecoveryPlan(
            job_id=job.id,
            can_recover=True,
            resume_from_checkpoint=resume,
            max_recovery_attempts=options.max_recovery_attempts,
            skip_failed_steps=options.skip_failed_steps,
            retry_failed_steps=options.retry_failed_steps,
            checkpoint=checkpoint if resume else None,
        )

    def _refuse(self, job_id: str, options: RecoveryOptions, reason: str, code: str) -> RecoveryPlan:
        logger.info("Job %s cannot be recovered: %s", job_id, reason)
        return RecoveryPlan(
            job_id=job_id,
            can_recover=False,
            reason=reason,
            code=code,
            max_recovery_attempts=options.max_recovery_attempts,
            skip_failed_steps=options.skip_failed_steps,
            retry_failed_steps=options.retry_failed_steps,
        )

    def latest_checkpoint_for(self, job: Job) -> Optional[Checkpoint]:
        """Latest checkpoint written for this incarnation of the job id"""
        checkpoint = self.checkpoints.get_latest_checkpoint(job.id)
        if checkpoint is None or checkpoint.timestamp < job.created_at:
            return None
        return checkpoint

    @staticmethod
    def failed_units(job: Job) -> List[str]:
        finished = job.finished_units()
        failed: List[str] = []
        for record in job.failure_history:
            if record.unit and record.unit not in finished and record.unit not in failed:
                failed.append(record.unit)
        return failed

    def apply_plan(self, job: Job, plan: RecoveryPlan) -> Job:
        """Prepare the job to be queued again according to an accepted plan"""
        if not plan.can_recover:
            raise ValueError(f"Recovery plan for {job.id} was refused: {plan.reason}")

        valid_units = job.unit_ids()
        if plan.resume_from_checkpoint and plan.checkpoint is not None:
            completed = list(job.completed_units)
            for unit in plan.checkpoint.completed_models:
                if unit in valid_units and unit not in completed:
                    completed.append(unit)
            job.completed_units = completed
            job.current_model = plan.checkpoint.current_model
            job.current_material = plan.checkpoint.current_material

        if plan.skip_failed_steps:
            for unit in self.failed_units(job):
                if unit in valid_units and unit not in job.skipped_units:
                    job.skipped_units.append(unit)

        job.processed_models = len(job.finished_units())
        if job.total_models:
            job.progress = max(job.progress, (100 * job.processed_models) // job.total_models)

        was_error = job.status == JobStatus.ERROR
        if job.status != JobStatus.PENDING:
            JobStateMachine.transition(job, JobStatus.PENDING, reason="recovery")
        job.error = None
        if was_error:
            job.retry_count += 1
            job.last_retry_at = datetime.now()
        job.recovery_attempts += 1
        job.updated_at = datetime.now()

        logger.info("Prepared job %s for recovery (resume=%s, progress=%d%%, retry %d/%d)",
                    job.id, plan.resume_from_checkpoint, job.progress, job.retry_count, job.max_retries)
        return job

    def get_all_recoverable_jobs(self) -> List[RecoverableJob]:
        """Persisted jobs that are interrupted or failed with retries left"""
        recoverable: List[RecoverableJob] = []
        for job in self.store.list_jobs():
            if not is_recoverable(job):
                continue
            recoverable.append(RecoverableJob(
                job_id=job.id,
                job=job,
                last_checkpoint=self.latest_checkpoint_for(job),
                can_recover=True,
            ))
        return recoverable
