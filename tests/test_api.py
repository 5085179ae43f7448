"""
HTTP and WebSocket tests against the FastAPI app with the simulated generator
and the in-memory store.
"""

import time
import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from genengine.main import app
from genengine.models.resources import DiskUsage
from genengine.services.resource_monitor import ResourceMonitor


@pytest.fixture
def client():
    healthy_disk = DiskUsage(used=100, total=1000, percentage=10.0)
    with patch.object(ResourceMonitor, "_sample_disk", return_value=healthy_disk):
        with TestClient(app) as test_client:
            yield test_client


def wait_for_status(client, job_id, statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    job = None
    while time.monotonic() < deadline:
        job = client.get(f"/v1/jobs/{job_id}").json()
        if job.get("status") in statuses:
            return job
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} never reached {statuses}: {job}")


class TestServiceEndpoints:

    def test_health(self, client):
        response = client.get("/v1/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "OK"
        assert data["service"] == "genengine"
        assert data["scheduler_running"] is True
        assert "timestamp" in data

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "version" in response.json()


class TestJobEndpoints:
    """Job submission, inspection and cancellation over HTTP."""

    def test_job_lifecycle(self, client):
        response = client.post("/v1/jobs", json={
            "job_id": "ring-1", "model_ids": ["m1"], "materials": ["platinum", "rose-gold"],
        })
        assert response.status_code == 201
        created = response.json()
        assert created["id"] == "ring-1"
        assert created["total_models"] == 2
        assert created["status"] in ("pending", "processing")

        job = wait_for_status(client, "ring-1", {"completed"})
        assert job["progress"] == 100
        assert job["completed_units"] == ["m1:platinum", "m1:rose-gold"]

        listed = client.get("/v1/jobs", params={"status": "completed"}).json()["jobs"]
        assert [item["job_id"] for item in listed] == ["ring-1"]

        events = client.get("/v1/jobs/ring-1/events").json()
        types = [event["type"] for event in events["events"]]
        assert events["channel"] == "job-ring-1"
        assert types[0] == "job_enqueued"
        assert types[-1] == "job_completed"

    def test_default_materials(self, client):
        created = client.post("/v1/jobs", json={"job_id": "ring-2", "model_ids": ["m1"]}).json()
        assert created["materials"] == ["platinum", "white-gold", "yellow-gold", "rose-gold"]

    def test_validation_error_envelope(self, client):
        response = client.post("/v1/jobs", json={"job_id": "", "model_ids": ["m1"]})
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["retryable"] is False
        assert "hint" in body

    def test_duplicate_and_cancel_running_job(self, client):
        payload = {"job_id": "big", "model_ids": [f"m{i}" for i in range(100)]}
        assert client.post("/v1/jobs", json=payload).status_code == 201

        duplicate = client.post("/v1/jobs", json=payload)
        assert duplicate.status_code == 409
        assert duplicate.json()["code"] == "DUPLICATE_JOB"

        response = client.delete("/v1/jobs/big")
        assert response.status_code == 200
        assert response.json()["job_id"] == "big"

        job = wait_for_status(client, "big", {"cancelled"})
        assert job["progress"] < 100

        again = client.delete("/v1/jobs/big")
        assert again.status_code == 409

    def test_unknown_job(self, client):
        response = client.get("/v1/jobs/missing")
        assert response.status_code == 404
        assert response.json()["code"] == "JOB_NOT_FOUND"

        assert client.delete("/v1/jobs/missing").status_code == 404
        assert client.post("/v1/jobs/missing/recover").status_code == 404
        assert client.get("/v1/jobs/missing/checkpoints").status_code == 404

    def test_completed_job_not_recoverable(self, client):
        client.post("/v1/jobs", json={"job_id": "ring-3", "model_ids": ["m1"], "materials": ["platinum"]})
        wait_for_status(client, "ring-3", {"completed"})

        response = client.post("/v1/jobs/ring-3/recover", json={"skip_failed_steps": True})
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "JOB_NOT_RECOVERABLE"
        assert body["message"] == "Job already completed"

    def test_checkpoints_after_completion(self, client):
        client.post("/v1/jobs", json={"job_id": "ring-4", "model_ids": ["m1"], "materials": ["platinum"]})
        wait_for_status(client, "ring-4", {"completed"})

        deadline = time.monotonic() + 2.0
        latest = None
        while latest is None and time.monotonic() < deadline:
            latest = client.get("/v1/jobs/ring-4/checkpoints").json()["latest"]
            time.sleep(0.02)

        assert latest is not None
        assert latest["progress"] == 100
        assert latest["metadata"]["reason"] == "completed"


class TestSystemEndpoints:

    def test_resources(self, client):
        data = client.get("/v1/system/resources").json()
        assert data["pressure"] in {"low", "medium", "high", "critical"}
        assert data["snapshot"]["disk"]["percentage"] == 10.0

        recommendations = client.get("/v1/system/resources/recommendations").json()
        assert "recommendations" in recommendations

    def test_disk_cleanup(self, client):
        removed = {"output_dirs": 2, "temp_files": 5, "freed_mb": 40}
        with patch.object(ResourceMonitor, "cleanup_disk_space", return_value=removed) as cleanup:
            response = client.post("/v1/system/resources/cleanup")

        assert response.status_code == 200
        assert response.json() == removed
        cleanup.assert_called_once_with(True)

    def test_scheduler_and_metrics(self, client):
        status = client.get("/v1/system/scheduler").json()
        assert status["max_concurrent_jobs"] == 3
        assert status["max_queue_size"] == 50

        metrics = client.get("/v1/system/metrics").json()
        for key in ("total_jobs", "completed_jobs", "failed_jobs", "active_jobs", "queue_size",
                    "circuit_breaker_state", "retry_count", "average_completion_time_ms"):
            assert key in metrics

    def test_circuit_breaker(self, client):
        data = client.get("/v1/system/circuit-breaker").json()
        assert data["state"] == "closed"
        assert data["failure_threshold"] == 5

    def test_persistence_views(self, client):
        client.post("/v1/jobs", json={"job_id": "ring-5", "model_ids": ["m1"], "materials": ["platinum"]})
        wait_for_status(client, "ring-5", {"completed"})

        stats = client.get("/v1/system/persistence/statistics").json()
        assert stats["total_persisted_jobs"] == 1
        assert stats["completed_jobs"] == 1

        recoverable = client.get("/v1/system/persistence/recoverable").json()
        assert recoverable["jobs"] == []


class TestJobWebSocket:

    def test_connect_and_ping(self, client):
        with client.websocket_connect("/ws/jobs/ring-6") as websocket:
            connected = websocket.receive_json()
            assert connected["type"] == "connected"
            assert connected["channel"] == "job-ring-6"

            websocket.send_json({"type": "ping"})
            assert websocket.receive_json()["type"] == "pong"

    def test_streams_job_events(self, client):
        with client.websocket_connect("/ws/jobs/ring-7") as websocket:
            websocket.receive_json()
            client.post("/v1/jobs", json={"job_id": "ring-7", "model_ids": ["m1", "m2"], "materials": ["platinum"]})

            types = []
            for _ in range(20):
                event = websocket.receive_json()
                assert event["job_id"] == "ring-7"
                types.append(event["type"])
                if event["type"] == "job_completed":
                    break

        assert types[0] == "job_enqueued"
        assert types.count("job_progress") == 2
        assert types[-1] == "job_completed"
