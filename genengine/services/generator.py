"""
The per-unit generation operation.

The engine treats rendering one (model, material) pair as an opaque call that
may fail. ``SubprocessGenerator`` shells out to the configured renderer;
``SimulatedGenerator`` stands in when no renderer is configured.
"""

import asyncio
import logging
import random
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from genengine.config import Settings
from genengine.errors import ExecutionError, MissingInputError
from genengine.models.job import unit_id

logger = logging.getLogger(__name__)


class GenerationOperation(ABC):
    """Renders one work unit. Raises ExecutionError (or any exception) on failure."""

    @abstractmethod
    async def generate(self, job_id: str, model_id: str, material: str) -> None:
        ...


class SubprocessGenerator(GenerationOperation):
    def __init__(self, command: str, models_dir: str, timeout_seconds: float = 120.0,
                 model_extension: str = ".glb"):
        self.command: List[str] = shlex.split(command)
        self.models_dir = Path(models_dir)
        self.timeout_seconds = timeout_seconds
        self.model_extension = model_extension

    def model_path(self, model_id: str) -> Path:
        return self.models_dir / f"{model_id}{self.model_extension}"

    async def generate(self, job_id: str, model_id: str, material: str) -> None:
        unit = unit_id(model_id, material)
        path = self.model_path(model_id)
        if not path.exists():
            raise MissingInputError(f"Model file not found: {path}", job_id=job_id, unit=unit)

        args = [*self.command, "--model", model_id, "--material", material, "--job-id", job_id]
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Generation subprocess timeout, killing process (job %s, unit %s)", job_id, unit)
            process.kill()
            await process.wait()
            raise ExecutionError("Generation timeout", job_id=job_id, unit=unit)
        except asyncio.CancelledError:
            if process.returncode is None:
                logger.warning("Generation cancelled, killing process (job %s, unit %s)", job_id, unit)
                process.kill()
                await asyncio.shield(process.wait())
            raise

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[-500:]
            logger.error("Generation subprocess failed (job %s, unit %s, code %s): %s",
                         job_id, unit, process.returncode, detail)
            raise ExecutionError(
                f"Generation script exited with code {process.returncode}",
                job_id=job_id, unit=unit,
            )

        logger.debug("Generation output for %s: %s", unit, stdout.decode(errors="replace").strip()[-200:])


class SimulatedGenerator(GenerationOperation):
    """Sleeps per unit and fails at a configurable rate"""

    def __init__(self, unit_seconds: float = 0.5, failure_rate: float = 0.0,
                 rng: Optional[random.Random] = None):
        self.unit_seconds = unit_seconds
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()

    async def generate(self, job_id: str, model_id: str, material: str) -> None:
        await asyncio.sleep(self.unit_seconds)
        if self.failure_rate and self._rng.random() < self.failure_rate:
            raise ExecutionError("Simulated renderer failure", job_id=job_id, unit=unit_id(model_id, material))


def create_generator(settings: Settings) -> GenerationOperation:
    if settings.generator.command:
        return SubprocessGenerator(
            command=settings.generator.command,
            models_dir=settings.files.models_directory,
            timeout_seconds=settings.generator.timeout_seconds,
        )
    logger.info("No GENERATOR_COMMAND configured, using simulated generator")
    return SimulatedGenerator(unit_seconds=settings.generator.simulated_unit_seconds)
