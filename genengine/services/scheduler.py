import asyncio
import heapq
import itertools
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from genengine.config import Settings, settings
from genengine.errors import (
    CircuitOpenError,
    DuplicateJobError,
    ExecutionError,
    JobNotFoundError,
    JobNotRecoverableError,
    QueueFullError,
    ResourceExhaustedError,
    RetryLimitExceededError,
    ValidationError,
)
from genengine.models.checkpoint import RecoveryOptions
from genengine.models.job import (
    ACTIVE_STATUSES,
    UNIT_SEPARATOR,
    FailureRecord,
    Job,
    JobEvent,
    JobStatus,
    JobSubmission,
    unit_id,
)
from genengine.models.resources import GenerationStats
from genengine.routes.websocket import manager
from genengine.services.checkpoint_manager import CheckpointManager
from genengine.services.circuit_breaker import CircuitBreaker, CircuitState
from genengine.services.events import (
    EventPublisher,
    FanoutEventPublisher,
    InMemoryEventPublisher,
    WebSocketEventPublisher,
    job_channel,
)
from genengine.services.generator import GenerationOperation, create_generator
from genengine.services.persistence import PersistenceStore, create_store
from genengine.services.recovery import RETRY_LIMIT_CODE, RecoveryPlanner
from genengine.services.resource_monitor import ResourceMonitor
from genengine.services.state_machine import JobStateMachine

logger = logging.getLogger(__name__)


class JobScheduler:
    """Resource-aware generation scheduler.

    All queue mutations and status transitions happen on the event loop
    without an intervening ``await``. Pending jobs live in a heap ordered by
    ``(priority, enqueue sequence)``; entries whose sequence no longer
    matches ``_queued_seq`` are stale and skipped on pop.
    """

    def __init__(self, settings: Settings, store: PersistenceStore, generator: GenerationOperation,
                 monitor: ResourceMonitor, publisher: EventPublisher,
                 breaker: Optional[CircuitBreaker] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.store = store
        self.generator = generator
        self.monitor = monitor
        self.publisher = publisher
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker.failure_threshold,
            window_seconds=settings.circuit_breaker.window_seconds,
            cooldown_seconds=settings.circuit_breaker.cooldown_seconds,
        )
        self.checkpoints = CheckpointManager(store, settings.checkpoint.interval_seconds,
                                             job_lookup=self.get_job)
        self.recovery = RecoveryPlanner(store, self.checkpoints)

        self.max_concurrent_jobs = settings.generation.max_concurrent_jobs
        self.max_queue_size = settings.generation.max_queue_size
        self.stale_job_seconds = settings.generation.stale_job_seconds
        self._clock = clock

        self.jobs: Dict[str, Job] = {}
        self._queue: List[Tuple[int, int, str]] = []
        self._queued_seq: Dict[str, int] = {}
        self._sequence = itertools.count()
        self._workers: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._last_progress_at: Dict[str, float] = {}
        self._stalled: Set[str] = set()
        self._probe_job_id: Optional[str] = None

        self._counters = {"total_jobs": 0, "completed_jobs": 0, "failed_jobs": 0, "cancelled_jobs": 0}
        self._retry_total = 0
        self._completion_time_ms = 0
        self._processing_time_ms = 0
        self._last_health_check: Optional[datetime] = None
        self._last_cleanup = clock()

        self._tick_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._stopping = False

        self.monitor.set_stats_provider(self.get_generation_stats)

    # Lifecycle

    async def start(self):
        logger.info("Starting job scheduler (concurrency %d, queue %d, retries %d)",
                    self.max_concurrent_jobs, self.max_queue_size, self.settings.generation.retry_attempts)
        self._stopping = False
        self._stop_event.clear()
        self._tick_task = asyncio.create_task(self._tick_loop())

    async def stop(self):
        """Stop the tick loop and workers; interrupted jobs stay processing in the store"""
        logger.info("Stopping job scheduler")
        self._stopping = True
        self._stop_event.set()
        if self._tick_task:
            await self._tick_task
        self._tick_task = None

        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        await self.checkpoints.stop_all()

    async def _tick_loop(self):
        interval = self.settings.monitoring.scheduler_tick_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                self.check_stalled_workers()
                self._dispatch()
                cleanup_every = self.settings.files.cleanup_interval_minutes * 60
                if self._clock() - self._last_cleanup >= cleanup_every:
                    self._last_cleanup = self._clock()
                    self.cleanup_old_jobs()
                self._last_health_check = datetime.now()
            except Exception:
                logger.exception("Error in scheduler loop")

    # Submission

    async def submit(self, request: JobSubmission) -> Job:
        """Admit a job or raise an AdmissionError without touching any state"""
        self._validate(request)

        existing = self.jobs.get(request.job_id)
        if existing is not None and not existing.is_terminal():
            raise DuplicateJobError(f"Job {request.job_id} already exists", job_id=request.job_id)
        persisted = self.store.load_job_state(request.job_id)
        if persisted is not None and not persisted.job.is_terminal():
            raise DuplicateJobError(f"Job {request.job_id} already exists", job_id=request.job_id)

        snapshot = self.monitor.current()
        if snapshot.degraded:
            logger.warning("Admission for %s using degraded snapshot (unmeasured: %s)",
                           request.job_id, ", ".join(snapshot.degraded))
        if snapshot.is_critical:
            raise ResourceExhaustedError("System resources are critically low", job_id=request.job_id)

        if self.pending_count() >= self.max_queue_size:
            raise QueueFullError(
                f"Generation queue is full ({self.max_queue_size} pending jobs)", job_id=request.job_id,
            )

        if self.breaker.is_open():
            raise CircuitOpenError("Generation pipeline circuit breaker is open", job_id=request.job_id)

        now = datetime.now()
        materials = list(request.materials) or list(self.settings.generation.default_materials)
        priority = request.priority if request.priority is not None else self.settings.generation.default_priority
        job = Job(
            id=request.job_id,
            model_ids=list(request.model_ids),
            materials=materials,
            priority=priority,
            total_models=len(request.model_ids) * len(materials),
            max_retries=self.settings.generation.retry_attempts,
            start_time=now,
            created_at=now,
            updated_at=now,
        )

        self.store.persist_job_state(job)
        self.jobs[job.id] = job
        self._enqueue(job)
        self._counters["total_jobs"] += 1
        logger.info("Job %s queued (%d units, priority %d)", job.id, job.total_models, job.priority)

        await self._publish(job, "job_enqueued")
        self._dispatch()
        return job

    @staticmethod
    def _validate(request: JobSubmission):
        if not request.job_id or not request.job_id.strip():
            raise ValidationError("job_id must not be empty")
        if not request.model_ids:
            raise ValidationError("model_ids must not be empty", job_id=request.job_id)
        if any(not model_id or not model_id.strip() for model_id in request.model_ids):
            raise ValidationError("model_ids must not contain blank entries", job_id=request.job_id)
        if any(not material or not material.strip() for material in request.materials):
            raise ValidationError("materials must not contain blank entries", job_id=request.job_id)
        # Unit ids join model and material with ':'
        for field, values in (("model_ids", request.model_ids), ("materials", request.materials)):
            if any(UNIT_SEPARATOR in value for value in values):
                raise ValidationError(f"{field} must not contain '{UNIT_SEPARATOR}'", job_id=request.job_id)
            if len(set(values)) != len(values):
                raise ValidationError(f"{field} must not contain duplicates", job_id=request.job_id)

    # Queries

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        jobs = sorted(self.jobs.values(), key=lambda job: job.created_at)
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        return jobs

    def pending_count(self) -> int:
        return len(self._queued_seq)

    def active_count(self) -> int:
        return len(self._workers)

    # Cancellation

    async def cancel(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status not in ACTIVE_STATUSES:
            return False

        if job.status == JobStatus.PENDING:
            self._queued_seq.pop(job_id, None)
            JobStateMachine.transition(job, JobStatus.CANCELLED, reason="user_cancel")
            self._counters["cancelled_jobs"] += 1
            self._persist(job)
            self.checkpoints.schedule_snapshot(job, "cancelled")
            logger.info("Job %s cancelled while queued", job_id)
            await self._publish(job, "job_cancelled")
            return True

        event = self._cancel_events.setdefault(job_id, asyncio.Event())
        if event.is_set():
            return False
        event.set()
        self.checkpoints.stop_checkpoint_timer(job_id)
        logger.info("Cancellation requested for running job %s", job_id)
        return True

    # Dispatch

    def _enqueue(self, job: Job):
        seq = next(self._sequence)
        self._queued_seq[job.id] = seq
        heapq.heappush(self._queue, (job.priority, seq, job.id))

    def _next_queued_id(self) -> Optional[str]:
        while self._queue:
            _, seq, job_id = self._queue[0]
            if self._queued_seq.get(job_id) == seq:
                return job_id
            heapq.heappop(self._queue)
        return None

    def _dispatch(self):
        """Start queued jobs while slots are free and the breaker allows it"""
        if self._stopping:
            return
        while len(self._workers) < self.max_concurrent_jobs:
            job_id = self._next_queued_id()
            if job_id is None:
                return

            state_before = self.breaker.state
            if not self.breaker.allow_request():
                return

            heapq.heappop(self._queue)
            del self._queued_seq[job_id]
            job = self.jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                self.breaker.release_probe()
                continue

            if state_before != CircuitState.CLOSED:
                self._probe_job_id = job_id
                logger.info("Dispatching job %s as circuit breaker probe", job_id)

            JobStateMachine.transition(job, JobStatus.PROCESSING, reason="dispatch")
            self._persist(job)
            self._cancel_events[job_id] = asyncio.Event()
            self._last_progress_at[job_id] = self._clock()
            self.checkpoints.start_checkpoint_timer(job_id)
            self._workers[job_id] = asyncio.create_task(self._run_job(job), name=f"job-{job_id}")
            logger.info("Job %s started (%d/%d slots in use)", job_id, len(self._workers), self.max_concurrent_jobs)

    def _release_worker(self, job_id: str):
        if self._workers.get(job_id) is not asyncio.current_task():
            return
        del self._workers[job_id]
        self._cancel_events.pop(job_id, None)
        self._last_progress_at.pop(job_id, None)
        self._stalled.discard(job_id)
        self.checkpoints.stop_checkpoint_timer(job_id)
        if self._probe_job_id == job_id:
            # No-op unless the probe ended without a unit outcome
            self.breaker.release_probe()
            self._probe_job_id = None

    # Execution

    async def _run_job(self, job: Job):
        job_id = job.id
        cancel_event = self._cancel_events[job_id]
        run_started = self._clock()
        units_this_run = 0
        try:
            await self._publish(job, "job_started")
            for model_id, material in job.work_units():
                unit = unit_id(model_id, material)
                if unit in job.finished_units():
                    continue
                if cancel_event.is_set():
                    break

                job.current_model = model_id
                job.current_material = material
                job.updated_at = datetime.now()
                try:
                    await self.generator.generate(job_id, model_id, material)
                except Exception as e:
                    await self._handle_failure(job, e, unit)
                    return

                self.breaker.record_success()
                units_this_run += 1
                self._record_unit(job, unit, run_started, units_this_run)
                await self._publish(job, "job_progress")

            if cancel_event.is_set():
                await self._finish_cancelled(job)
            else:
                await self._complete(job)
        except asyncio.CancelledError:
            if job_id not in self._stalled:
                raise
            self._stalled.discard(job_id)
            unit = unit_id(job.current_model, job.current_material) if job.current_model else None
            error = ExecutionError(
                f"worker stalled: no progress for {self.stale_job_seconds:.0f}s", job_id=job_id, unit=unit,
            )
            await self._handle_failure(job, error, unit)
        finally:
            self._release_worker(job_id)
            self._dispatch()

    def _record_unit(self, job: Job, unit: str, run_started: float, units_this_run: int):
        if unit not in job.completed_units:
            job.completed_units.append(unit)
        job.processed_models = len(job.finished_units())
        job.progress = max(job.progress, (100 * job.processed_models) // job.total_models)
        remaining = job.total_models - job.processed_models
        per_unit = (self._clock() - run_started) / units_this_run
        job.estimated_time_remaining = int(per_unit * remaining)
        job.updated_at = datetime.now()
        self._last_progress_at[job.id] = self._clock()

    async def _handle_failure(self, job: Job, error: Exception, unit: Optional[str]):
        """Record a unit failure and decide between retry and error"""
        retryable = getattr(error, "retryable", True)
        message = str(error) or type(error).__name__
        job.failure_history.append(FailureRecord(
            timestamp=datetime.now(), error=message, unit=unit, retryable=retryable,
        ))
        if retryable:
            self.breaker.record_failure()

        cancel_event = self._cancel_events.get(job.id)
        if cancel_event is not None and cancel_event.is_set():
            await self._finish_cancelled(job)
            return

        if not retryable:
            logger.error("Job %s failed on %s with non-retryable error: %s", job.id, unit, message)
            await self._fail(job, message)
            return

        if job.retry_count >= job.max_retries:
            logger.error("Job %s failed after %d retries: %s", job.id, job.retry_count, message)
            await self._fail(job, message)
            return

        # Let the freed slot pull the next queued job before checking capacity
        self._release_worker(job.id)
        self._dispatch()
        if self.pending_count() >= self.max_queue_size:
            logger.error("Job %s retry could not be scheduled, queue is full", job.id)
            await self._fail(job, f"Retry could not be scheduled: queue is full ({message})")
            return

        job.retry_count += 1
        job.last_retry_at = datetime.now()
        self._retry_total += 1
        JobStateMachine.transition(job, JobStatus.PENDING,
                                   reason=f"retry {job.retry_count}/{job.max_retries}")
        self._persist(job)
        self._enqueue(job)
        logger.warning("Job %s failed on %s, retry %d/%d scheduled: %s",
                       job.id, unit, job.retry_count, job.max_retries, message)
        await self._publish(job, "job_retry_scheduled")
        self._dispatch()

    async def _complete(self, job: Job):
        job.progress = 100
        job.processed_models = job.total_models
        job.estimated_time_remaining = 0
        JobStateMachine.transition(job, JobStatus.COMPLETED, reason="all units generated")
        self._counters["completed_jobs"] += 1
        self._completion_time_ms += job.duration_ms or 0
        self._processing_time_ms += job.duration_ms or 0
        self._persist(job)
        self.checkpoints.schedule_snapshot(job, "completed")
        logger.info("Job %s completed (%d units in %sms)", job.id, job.total_models, job.duration_ms)
        await self._publish(job, "job_completed")

    async def _fail(self, job: Job, message: str):
        job.error = message
        job.estimated_time_remaining = None
        JobStateMachine.transition(job, JobStatus.ERROR, reason="generation_failed")
        self._counters["failed_jobs"] += 1
        self._processing_time_ms += job.duration_ms or 0
        self._persist(job)
        self.checkpoints.schedule_snapshot(job, "error")
        await self._publish(job, "job_failed")

    async def _finish_cancelled(self, job: Job):
        job.estimated_time_remaining = None
        JobStateMachine.transition(job, JobStatus.CANCELLED, reason="user_cancel")
        self._counters["cancelled_jobs"] += 1
        self._processing_time_ms += job.duration_ms or 0
        self._persist(job)
        self.checkpoints.schedule_snapshot(job, "cancelled")
        logger.info("Job %s cancelled after %d/%d units", job.id, job.processed_models, job.total_models)
        await self._publish(job, "job_cancelled")

    def check_stalled_workers(self) -> List[str]:
        """Cancel workers that have not reported progress within the stale window"""
        now = self._clock()
        stalled = []
        for job_id, last in list(self._last_progress_at.items()):
            if job_id in self._stalled or now - last < self.stale_job_seconds:
                continue
            task = self._workers.get(job_id)
            if task is None or task.done():
                continue
            logger.warning("Job %s made no progress for %.0fs, cancelling worker", job_id, now - last)
            self._stalled.add(job_id)
            task.cancel()
            stalled.append(job_id)
        return stalled

    # Recovery

    async def recover_job(self, job_id: str, options: Optional[RecoveryOptions] = None) -> Job:
        """Re-queue a failed or interrupted job according to a recovery plan"""
        options = options or RecoveryOptions()
        job = self.jobs.get(job_id)
        if job is not None and job.is_active():
            raise JobNotRecoverableError(f"Job {job_id} is {job.status.value}", job_id=job_id)
        if job is None:
            state = self.store.load_job_state(job_id)
            if state is None:
                raise JobNotFoundError(f"Job {job_id} not found", job_id=job_id)
            job = state.job

        plan = self.recovery.plan_for(job, options)
        if not plan.can_recover:
            if plan.code == RETRY_LIMIT_CODE:
                raise RetryLimitExceededError(plan.reason, job_id=job_id)
            raise JobNotRecoverableError(plan.reason, job_id=job_id)
        if self.pending_count() >= self.max_queue_size:
            raise QueueFullError(f"Generation queue is full ({self.max_queue_size} pending jobs)", job_id=job_id)

        self.recovery.apply_plan(job, plan)
        self.jobs[job_id] = job
        self._persist(job)
        self._enqueue(job)
        logger.info("Job %s recovered and re-queued", job_id)
        await self._publish(job, "job_enqueued")
        self._dispatch()
        return job

    async def recover_interrupted_jobs(self) -> List[str]:
        """Re-queue pending / processing jobs left behind by a previous process"""
        recovered: List[str] = []
        for candidate in self.recovery.get_all_recoverable_jobs():
            job = candidate.job
            if job.status not in ACTIVE_STATUSES or job.id in self.jobs:
                continue
            if self.pending_count() >= self.max_queue_size:
                logger.warning("Queue full, leaving interrupted job %s for manual recovery", job.id)
                continue
            plan = self.recovery.plan_for(job, RecoveryOptions())
            if not plan.can_recover:
                logger.warning("Interrupted job %s not recovered: %s", job.id, plan.reason)
                continue

            self.recovery.apply_plan(job, plan)
            self.jobs[job.id] = job
            self._persist(job)
            self._enqueue(job)
            recovered.append(job.id)
            await self._publish(job, "job_enqueued")

        if recovered:
            logger.info("Recovered %d interrupted jobs: %s", len(recovered), ", ".join(recovered))
        self._dispatch()
        return recovered

    def cleanup_old_jobs(self) -> Dict[str, int]:
        """Evict terminal jobs past the retention window from memory and the store"""
        retention_days = self.settings.files.retention_days
        cutoff = datetime.now() - timedelta(days=retention_days)
        expired = [
            job_id for job_id, job in self.jobs.items()
            if job.is_terminal() and (job.end_time or job.updated_at) < cutoff
        ]
        for job_id in expired:
            del self.jobs[job_id]
        removed = self.store.cleanup_old_jobs(retention_days)
        if expired:
            logger.info("Evicted %d old jobs from memory", len(expired))
        return {"memory": len(expired), "store": removed}

    # Metrics

    def get_metrics(self) -> Dict[str, Any]:
        completed = self._counters["completed_jobs"]
        return {
            **self._counters,
            "active_jobs": self.active_count(),
            "queue_size": self.pending_count(),
            "circuit_breaker_state": self.breaker.state.value,
            "retry_count": self._retry_total,
            "average_completion_time_ms": self._completion_time_ms / completed if completed else 0,
            "total_processing_time_ms": self._processing_time_ms,
            "last_health_check": self._last_health_check.isoformat() if self._last_health_check else None,
        }

    def get_queue_status(self) -> Dict[str, Any]:
        queued = sorted(
            (self.jobs[job_id].priority, seq, job_id)
            for job_id, seq in self._queued_seq.items() if job_id in self.jobs
        )
        return {
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "max_queue_size": self.max_queue_size,
            "running_jobs": self.active_count(),
            "queued_jobs": self.pending_count(),
            "running": list(self._workers.keys()),
            "queued": [job_id for _, _, job_id in queued],
            "circuit_breaker_state": self.breaker.state.value,
        }

    def get_generation_stats(self) -> GenerationStats:
        return GenerationStats(
            active_jobs=self.active_count(),
            queued_jobs=self.pending_count(),
            completed_jobs=self._counters["completed_jobs"],
            failed_jobs=self._counters["failed_jobs"],
        )

    # Helpers

    def _persist(self, job: Job):
        try:
            self.store.persist_job_state(job)
        except Exception as e:
            logger.error("Failed to persist job %s: %s", job.id, e)

    async def _publish(self, job: Job, event_type: str):
        event = JobEvent.from_job(job, event_type).model_dump(mode="json")
        try:
            await self.publisher.publish(job_channel(job.id), event)
        except Exception as e:
            logger.warning("Failed to publish %s for job %s: %s", event_type, job.id, e)


def create_scheduler(settings: Settings, publisher: EventPublisher,
                     store: Optional[PersistenceStore] = None,
                     generator: Optional[GenerationOperation] = None,
                     monitor: Optional[ResourceMonitor] = None) -> JobScheduler:
    """Wire a scheduler from settings, filling in default collaborators"""
    return JobScheduler(
        settings=settings,
        store=store or create_store(settings.persistence.backend, settings.persistence.db_path),
        generator=generator or create_generator(settings),
        monitor=monitor or ResourceMonitor(settings),
        publisher=publisher,
    )


# Global scheduler instance for app
scheduler: Optional[JobScheduler] = None
event_log: Optional[InMemoryEventPublisher] = None


async def init_scheduler(app_settings: Optional[Settings] = None,
                         store: Optional[PersistenceStore] = None,
                         generator: Optional[GenerationOperation] = None) -> JobScheduler:
    """Build, start and recover the global scheduler"""
    global scheduler, event_log
    if scheduler is None:
        cfg = (app_settings or settings).validate()
        event_log = InMemoryEventPublisher()
        publisher = FanoutEventPublisher([WebSocketEventPublisher(manager), event_log])

        monitor = ResourceMonitor(cfg)
        scheduler = create_scheduler(cfg, publisher, store=store, generator=generator, monitor=monitor)
        await monitor.start()
        await scheduler.start()
        await scheduler.recover_interrupted_jobs()
    return scheduler


async def shutdown_scheduler():
    global scheduler, event_log
    if scheduler is not None:
        await scheduler.stop()
        await scheduler.monitor.stop()
        scheduler = None
        event_log = None


def get_scheduler() -> Optional[JobScheduler]:
    """Get global scheduler instance"""
    return scheduler


def get_event_log() -> Optional[InMemoryEventPublisher]:
    return event_log
