import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from genengine.models.checkpoint import Checkpoint
from genengine.models.job import Job, JobStatus
from genengine.services.persistence import PersistenceStore

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Creates progress snapshots and owns one periodic checkpoint task per active job"""

    def __init__(self, store: PersistenceStore, interval_seconds: float = 30.0,
                 job_lookup: Optional[Callable[[str], Optional[Job]]] = None):
        self.store = store
        self.interval_seconds = interval_seconds
        self._job_lookup = job_lookup
        self._timers: Dict[str, asyncio.Task] = {}
        self._pending_writes: Set[asyncio.Task] = set()

    def start_checkpoint_timer(self, job_id: str) -> bool:
        """Start periodic snapshots for a job; a no-op while one is already running"""
        task = self._timers.get(job_id)
        if task is not None and not task.done():
            return False
        self._timers[job_id] = asyncio.create_task(self._timer_loop(job_id), name=f"checkpoint-{job_id}")
        logger.debug("Checkpoint timer started for job %s", job_id)
        return True

    def stop_checkpoint_timer(self, job_id: str) -> bool:
        task = self._timers.pop(job_id, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logger.debug("Checkpoint timer stopped for job %s", job_id)
        return True

    def is_timer_active(self, job_id: str) -> bool:
        task = self._timers.get(job_id)
        return task is not None and not task.done()

    @property
    def active_timers(self) -> List[str]:
        return [job_id for job_id, task in self._timers.items() if not task.done()]

    async def stop_all(self):
        """Cancel every timer and wait for outstanding writes"""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.flush()

    async def _timer_loop(self, job_id: str):
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                job = self._job_lookup(job_id) if self._job_lookup else None
                if job is None or job.status != JobStatus.PROCESSING:
                    break
                await self.snapshot_job(job, reason="interval")
        finally:
            if self._timers.get(job_id) is asyncio.current_task():
                self._timers.pop(job_id, None)

    async def create_checkpoint(self, job_id: str, progress: int, completed_models: Sequence[str],
                                current_model: Optional[str] = None,
                                current_material: Optional[str] = None,
                                sequence_index: Optional[int] = None,
                                metadata: Optional[Dict[str, Any]] = None) -> Optional[Checkpoint]:
        """Write a checkpoint; returns None when the store rejected it"""
        checkpoint = Checkpoint(
            job_id=job_id,
            progress=progress,
            completed_models=list(completed_models),
            current_model=current_model,
            current_material=current_material,
            sequence_index=sequence_index,
            timestamp=datetime.now(),
            metadata=dict(metadata or {}),
        )
        return await self._write(checkpoint)

    async def snapshot_job(self, job: Job, reason: str = "manual") -> Optional[Checkpoint]:
        return await self._write(self._checkpoint_from_job(job, reason))

    def schedule_snapshot(self, job: Job, reason: str) -> asyncio.Task:
        """Fire-and-forget snapshot; the checkpoint content is captured immediately"""
        task = asyncio.create_task(self._write(self._checkpoint_from_job(job, reason)))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return task

    async def flush(self):
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    def _checkpoint_from_job(self, job: Job, reason: str) -> Checkpoint:
        return Checkpoint(
            job_id=job.id,
            progress=job.progress,
            completed_models=list(job.completed_units),
            current_model=job.current_model,
            current_material=job.current_material,
            sequence_index=len(job.finished_units()),
            timestamp=datetime.now(),
            metadata={
                "reason": reason,
                "status": job.status.value,
                "processed_models": job.processed_models,
                "total_models": job.total_models,
                "retry_count": job.retry_count,
                "skipped_units": list(job.skipped_units),
            },
        )

    async def _write(self, checkpoint: Checkpoint) -> Optional[Checkpoint]:
        try:
            await asyncio.to_thread(self.store.save_checkpoint, checkpoint)
        except Exception as e:
            logger.error("Failed to create checkpoint for job %s: %s", checkpoint.job_id, e)
            return None
        logger.debug("Created checkpoint for job %s: %d%% complete", checkpoint.job_id, checkpoint.progress)
        return checkpoint

    def get_latest_checkpoint(self, job_id: str) -> Optional[Checkpoint]:
        return self.store.get_latest_checkpoint(job_id)

    def list_checkpoints(self, job_id: str) -> List[Checkpoint]:
        return self.store.list_checkpoints(job_id)
