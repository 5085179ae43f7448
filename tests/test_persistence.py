"""
Tests for the in-memory and SQLite persistence stores.
"""

import pytest
from datetime import datetime, timedelta

from genengine.models.checkpoint import Checkpoint
from genengine.models.job import FailureRecord, Job, JobStatus
from genengine.services.persistence import (
    InMemoryPersistenceStore,
    SQLitePersistenceStore,
    create_store,
)


def make_job(job_id="ring-1", **overrides):
    now = datetime.now()
    fields = dict(id=job_id, model_ids=["m1", "m2"], materials=["platinum"], total_models=2,
                  start_time=now, created_at=now, updated_at=now)
    fields.update(overrides)
    return Job(**fields)


def make_checkpoint(job_id="ring-1", progress=50, completed=("m1:platinum",), **overrides):
    fields = dict(job_id=job_id, progress=progress, completed_models=list(completed),
                  current_model="m2", current_material="platinum", sequence_index=1,
                  timestamp=datetime.now())
    fields.update(overrides)
    return Checkpoint(**fields)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryPersistenceStore()
    return SQLitePersistenceStore(str(tmp_path / "state" / "jobs.db"))


class TestPersistenceStore:
    """Behaviour shared by every store implementation."""

    def test_persist_and_load(self, store):
        job = make_job(failure_history=[
            FailureRecord(timestamp=datetime.now(), error="boom", unit="m1:platinum"),
        ])
        store.persist_job_state(job)

        state = store.load_job_state("ring-1")
        assert state is not None
        assert state.job.id == "ring-1"
        assert state.job.model_ids == ["m1", "m2"]
        assert state.job.failure_history[0].error == "boom"
        assert state.version == "1.0"

    def test_load_unknown_returns_none(self, store):
        assert store.load_job_state("missing") is None

    def test_persist_replaces_record(self, store):
        job = make_job()
        store.persist_job_state(job)
        first = store.load_job_state("ring-1")

        job.status = JobStatus.PROCESSING
        job.progress = 50
        store.persist_job_state(job)

        state = store.load_job_state("ring-1")
        assert state.job.status == JobStatus.PROCESSING
        assert state.job.progress == 50
        assert state.created_at == first.created_at
        assert len(store.list_jobs()) == 1

    def test_stored_job_is_a_copy(self, store):
        job = make_job()
        store.persist_job_state(job)
        job.progress = 99

        assert store.load_job_state("ring-1").job.progress == 0

    def test_checkpoint_history_and_latest(self, store):
        store.persist_job_state(make_job())
        store.save_checkpoint(make_checkpoint(progress=25, completed=[]))
        store.save_checkpoint(make_checkpoint(progress=75, completed=["m1:platinum"]))

        checkpoints = store.list_checkpoints("ring-1")
        assert [c.progress for c in checkpoints] == [25, 75]
        assert store.get_latest_checkpoint("ring-1").progress == 75
        assert len(store.load_job_state("ring-1").checkpoints) == 2
        assert store.get_latest_checkpoint("other") is None

    def test_delete_removes_job_and_checkpoints(self, store):
        store.persist_job_state(make_job())
        store.save_checkpoint(make_checkpoint())

        assert store.delete_job("ring-1") is True
        assert store.load_job_state("ring-1") is None
        assert store.list_checkpoints("ring-1") == []
        assert store.delete_job("ring-1") is False

    def test_cleanup_only_removes_old_terminal_jobs(self, store):
        old = datetime.now() - timedelta(days=40)
        store.persist_job_state(make_job("old-done", status=JobStatus.COMPLETED, end_time=old))
        store.persist_job_state(make_job("new-done", status=JobStatus.COMPLETED, end_time=datetime.now()))
        store.persist_job_state(make_job("old-pending", updated_at=old))
        store.persist_job_state(make_job("old-error", status=JobStatus.ERROR, retry_count=0, end_time=old))

        assert store.cleanup_old_jobs(retention_days=30) == 1
        remaining = {job.id for job in store.list_jobs()}
        assert remaining == {"new-done", "old-pending", "old-error"}

    def test_job_statistics(self, store):
        base = datetime.now()
        store.persist_job_state(make_job("a", status=JobStatus.COMPLETED, start_time=base - timedelta(hours=2)))
        store.persist_job_state(make_job("b", status=JobStatus.ERROR, retry_count=3, start_time=base - timedelta(hours=1)))
        store.persist_job_state(make_job("c", status=JobStatus.PROCESSING, start_time=base))

        stats = store.get_job_statistics()
        assert stats.total_persisted_jobs == 3
        assert stats.completed_jobs == 1
        assert stats.failed_jobs == 1
        assert stats.recoverable_jobs == 1
        assert stats.oldest_job == "a"
        assert stats.newest_job == "c"

    def test_empty_statistics(self, store):
        stats = store.get_job_statistics()
        assert stats.total_persisted_jobs == 0
        assert stats.oldest_job is None


class TestSQLitePersistenceStore:

    def test_state_survives_reopen(self, tmp_path):
        db_path = str(tmp_path / "jobs.db")
        SQLitePersistenceStore(db_path).persist_job_state(make_job(status=JobStatus.PROCESSING))

        reopened = SQLitePersistenceStore(db_path)
        assert reopened.load_job_state("ring-1").job.status == JobStatus.PROCESSING

    def test_create_store_selects_backend(self, tmp_path):
        assert isinstance(create_store("memory", str(tmp_path / "x.db")), InMemoryPersistenceStore)
        assert isinstance(create_store("sqlite", str(tmp_path / "x.db")), SQLitePersistenceStore)
