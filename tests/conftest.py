"""
Shared fixtures for the generation engine tests.
"""

import os

# Must be set before genengine.config builds its global settings
os.environ["ENVIRONMENT"] = "test"
os.environ["PERSISTENCE_BACKEND"] = "memory"
os.environ["SIMULATED_UNIT_SECONDS"] = "0.01"
os.environ["SCHEDULER_TICK_SECONDS"] = "0.05"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("GENERATOR_COMMAND", None)

import asyncio
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from genengine.config import Settings
from genengine.models.job import unit_id
from genengine.models.resources import PressureLevel, ResourceSnapshot
from genengine.services.events import InMemoryEventPublisher
from genengine.services.generator import GenerationOperation
from genengine.services.persistence import InMemoryPersistenceStore
from genengine.services.resource_monitor import ResourceMonitor
from genengine.services.scheduler import JobScheduler


class ScriptedGenerator(GenerationOperation):
    """Records every unit it renders and fails or blocks on request."""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        # unit -> exceptions raised on successive attempts
        self.failures: Dict[str, List[Exception]] = {}
        # unit -> exception raised on every attempt
        self.fail_always: Dict[str, Exception] = {}
        # job_id -> gate the job's units wait on
        self.gates: Dict[str, asyncio.Event] = {}

    def block(self, job_id: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[job_id] = gate
        return gate

    def release(self, job_id: str):
        gate = self.gates.pop(job_id, None)
        if gate is not None:
            gate.set()

    def units_for(self, job_id: str) -> List[str]:
        return [unit for called_job, unit in self.calls if called_job == job_id]

    async def generate(self, job_id: str, model_id: str, material: str) -> None:
        unit = unit_id(model_id, material)
        self.calls.append((job_id, unit))
        gate = self.gates.get(job_id)
        if gate is not None:
            await gate.wait()
        pending = self.failures.get(unit)
        if pending:
            raise pending.pop(0)
        if unit in self.fail_always:
            raise self.fail_always[unit]
        await asyncio.sleep(0)


class StaticMonitor(ResourceMonitor):
    """Resource monitor that reports a fixed pressure level instead of sampling."""

    def __init__(self, settings: Settings, pressure: PressureLevel = PressureLevel.LOW):
        super().__init__(settings)
        self.pressure = pressure

    def set_pressure(self, pressure: PressureLevel):
        self.pressure = pressure
        self.sample()

    def sample(self) -> ResourceSnapshot:
        self._latest = ResourceSnapshot(pressure=self.pressure, generation=self._sample_generation())
        return self._latest


@pytest.fixture
def engine_settings(tmp_path):
    cfg = Settings()
    cfg.generation.max_concurrent_jobs = 2
    cfg.generation.max_queue_size = 10
    cfg.generation.retry_attempts = 3
    cfg.generation.stale_job_seconds = 300
    cfg.generation.default_priority = 2
    cfg.checkpoint.interval_seconds = 30
    cfg.monitoring.scheduler_tick_seconds = 0.02
    cfg.files.output_directory = str(tmp_path / "output")
    cfg.files.models_directory = str(tmp_path / "models")
    cfg.files.temp_directory = str(tmp_path / "tmp")
    cfg.persistence.db_path = str(tmp_path / "tmp" / "jobs.db")
    cfg.persistence.backend = "memory"
    return cfg


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def store():
    return InMemoryPersistenceStore()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def monitor(engine_settings):
    return StaticMonitor(engine_settings)


@pytest.fixture
def fake_clock():
    """Controllable monotonic clock: ``fake_clock[0]`` is the current time"""
    return [1000.0]


@pytest_asyncio.fixture
async def scheduler(engine_settings, store, generator, monitor, publisher, fake_clock):
    sched = JobScheduler(
        settings=engine_settings,
        store=store,
        generator=generator,
        monitor=monitor,
        publisher=publisher,
        clock=lambda: fake_clock[0],
    )
    yield sched
    for job_id in list(generator.gates):
        generator.release(job_id)
    await sched.stop()


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 2.0, message: Optional[str] = None):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(message or "condition not met before timeout")
            await asyncio.sleep(0.005)
    return _wait_until
