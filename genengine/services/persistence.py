"""
Persistence for job records and checkpoints.

The scheduler only talks to ``PersistenceStore``; tests use the in-memory
store and deployments use SQLite.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from genengine.models.checkpoint import Checkpoint, JobStatistics, PersistedJobState, PERSISTENCE_VERSION
from genengine.models.job import Job, JobStatus

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = {JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.ERROR}


def is_recoverable(job: Job) -> bool:
    return (job.status in RECOVERABLE_STATUSES and job.retry_count < job.max_retries
            and not job.is_terminal())


class PersistenceStore(ABC):
    """Durable record store for jobs and their checkpoint history."""

    @abstractmethod
    def persist_job_state(self, job: Job) -> None:
        """Insert or replace the stored record of a job"""

    @abstractmethod
    def load_job_state(self, job_id: str) -> Optional[PersistedJobState]:
        """Stored job plus its checkpoint history, or None"""

    @abstractmethod
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Append a checkpoint; it becomes the job's latest"""

    @abstractmethod
    def list_checkpoints(self, job_id: str) -> List[Checkpoint]:
        """Checkpoint history, oldest first"""

    @abstractmethod
    def list_jobs(self) -> List[Job]:
        """Every persisted job"""

    @abstractmethod
    def delete_job(self, job_id: str) -> bool:
        """Remove a job and its checkpoints"""

    def get_latest_checkpoint(self, job_id: str) -> Optional[Checkpoint]:
        checkpoints = self.list_checkpoints(job_id)
        return checkpoints[-1] if checkpoints else None

    def cleanup_old_jobs(self, retention_days: int = 7) -> int:
        """Delete terminal jobs that ended more than ``retention_days`` ago"""
        cutoff = datetime.now() - timedelta(days=retention_days)
        cleaned = 0
        for job in self.list_jobs():
            if job.is_terminal() and (job.end_time or job.updated_at) < cutoff:
                if self.delete_job(job.id):
                    cleaned += 1
        if cleaned:
            logger.info("Cleaned up %d old persisted jobs", cleaned)
        return cleaned

    def get_job_statistics(self) -> JobStatistics:
        jobs = self.list_jobs()
        stats = JobStatistics(
            total_persisted_jobs=len(jobs),
            recoverable_jobs=sum(1 for job in jobs if is_recoverable(job)),
            completed_jobs=sum(1 for job in jobs if job.status == JobStatus.COMPLETED),
            failed_jobs=sum(1 for job in jobs if job.status == JobStatus.ERROR),
        )
        if jobs:
            ordered = sorted(jobs, key=lambda job: job.start_time)
            stats.oldest_job = ordered[0].id
            stats.newest_job = ordered[-1].id
        return stats


class InMemoryPersistenceStore(PersistenceStore):
    """Process-local store, safe to call from checkpoint writer threads"""

    def __init__(self):
        self._jobs: Dict[str, PersistedJobState] = {}
        self._checkpoints: Dict[str, List[Checkpoint]] = {}
        self._lock = threading.Lock()

    def persist_job_state(self, job: Job) -> None:
        now = datetime.now()
        with self._lock:
            existing = self._jobs.get(job.id)
            self._jobs[job.id] = PersistedJobState(
                job=job.model_copy(deep=True),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

    def load_job_state(self, job_id: str) -> Optional[PersistedJobState]:
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None:
                return None
            return PersistedJobState(
                job=state.job.model_copy(deep=True),
                checkpoints=list(self._checkpoints.get(job_id, [])),
                created_at=state.created_at,
                updated_at=state.updated_at,
            )

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._checkpoints.setdefault(checkpoint.job_id, []).append(checkpoint.model_copy(deep=True))

    def list_checkpoints(self, job_id: str) -> List[Checkpoint]:
        with self._lock:
            return list(self._checkpoints.get(job_id, []))

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return [state.job.model_copy(deep=True) for state in self._jobs.values()]

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            self._checkpoints.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None


class SQLitePersistenceStore(PersistenceStore):
    """SQLite-based store. Opens a connection per call so any thread may use it."""

    def __init__(self, db_path: str = "jobs.db"):
        self.db_path = Path(db_path)
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_database(self):
        """Initialize the database with required tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,  -- Job as JSON
                    version TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    payload TEXT NOT NULL,  -- Checkpoint as JSON
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_checkpoints_job_id ON checkpoints(job_id, id)")

            conn.commit()
            logger.info("Job database initialized at %s", self.db_path)

    def persist_job_state(self, job: Job) -> None:
        now = datetime.now().isoformat()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO jobs (job_id, status, payload, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    version = excluded.version,
                    updated_at = excluded.updated_at
            """, (job.id, job.status.value, job.model_dump_json(), PERSISTENCE_VERSION, now, now))
            conn.commit()
        logger.debug("Persisted job state: %s (%s)", job.id, job.status.value)

    def load_job_state(self, job_id: str) -> Optional[PersistedJobState]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT payload, version, created_at, updated_at FROM jobs WHERE job_id = ?
            """, (job_id,)).fetchone()

        if not row:
            return None

        return PersistedJobState(
            job=Job.model_validate_json(row[0]),
            checkpoints=self.list_checkpoints(job_id),
            version=row[1],
            created_at=datetime.fromisoformat(row[2]),
            updated_at=datetime.fromisoformat(row[3]),
        )

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO checkpoints (job_id, payload, created_at) VALUES (?, ?, ?)
            """, (checkpoint.job_id, checkpoint.model_dump_json(), checkpoint.timestamp.isoformat()))
            conn.commit()

    def list_checkpoints(self, job_id: str) -> List[Checkpoint]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT payload FROM checkpoints WHERE job_id = ? ORDER BY id ASC
            """, (job_id,)).fetchall()
        return [Checkpoint.model_validate_json(row[0]) for row in rows]

    def get_latest_checkpoint(self, job_id: str) -> Optional[Checkpoint]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT payload FROM checkpoints WHERE job_id = ? ORDER BY id DESC LIMIT 1
            """, (job_id,)).fetchone()
        return Checkpoint.model_validate_json(row[0]) if row else None

    def list_jobs(self) -> List[Job]:
        with self._connect() as conn:
            rows = conn.execute("SELECT payload FROM jobs ORDER BY created_at ASC").fetchall()
        return [Job.model_validate_json(row[0]) for row in rows]

    def delete_job(self, job_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM checkpoints WHERE job_id = ?", (job_id,))
            cursor.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            deleted = cursor.rowcount > 0
            conn.commit()
        if deleted:
            logger.info("Deleted job %s from database", job_id)
        return deleted


def create_store(backend: str, db_path: str) -> PersistenceStore:
    if backend == "memory":
        return InMemoryPersistenceStore()
    return SQLitePersistenceStore(db_path)
