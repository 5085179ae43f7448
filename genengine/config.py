import os
from typing import List, Optional

from genengine.errors import ConfigurationError

DEFAULT_MATERIALS = ["platinum", "white-gold", "yellow-gold", "rose-gold"]


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _list_env(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class GenerationSettings:
    """Queue, concurrency and retry limits"""
    def __init__(self):
        self.max_concurrent_jobs: int = _int_env("MAX_CONCURRENT_JOBS", 3)
        self.max_queue_size: int = _int_env("MAX_QUEUE_SIZE", 50)
        self.retry_attempts: int = _int_env("RETRY_ATTEMPTS", 3)
        self.stale_job_seconds: float = _float_env("STALE_JOB_SECONDS", 300.0)
        self.default_priority: int = _int_env("DEFAULT_PRIORITY", 2)
        self.default_materials: List[str] = _list_env("DEFAULT_MATERIALS", DEFAULT_MATERIALS)


class ResourceSettings:
    """Resource limits and pressure thresholds (percentages)"""
    def __init__(self):
        self.max_memory_mb: int = _int_env("MAX_MEMORY_MB", 2048)
        self.max_processes: int = _int_env("MAX_PROCESSES", 10)
        self.medium_threshold: float = _float_env("PRESSURE_MEDIUM_PERCENT", 70.0)
        self.high_threshold: float = _float_env("PRESSURE_HIGH_PERCENT", 85.0)
        self.critical_threshold: float = _float_env("PRESSURE_CRITICAL_PERCENT", 95.0)


class MonitoringSettings:
    def __init__(self):
        self.sample_interval_seconds: float = _float_env("SAMPLE_INTERVAL_SECONDS", 30.0)
        self.scheduler_tick_seconds: float = _float_env("SCHEDULER_TICK_SECONDS", 1.0)
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")


class CheckpointSettings:
    def __init__(self):
        self.interval_seconds: float = _float_env("CHECKPOINT_INTERVAL_SECONDS", 30.0)


class CircuitBreakerSettings:
    def __init__(self):
        self.failure_threshold: int = _int_env("CIRCUIT_FAILURE_THRESHOLD", 5)
        self.window_seconds: float = _float_env("CIRCUIT_WINDOW_SECONDS", 60.0)
        self.cooldown_seconds: float = _float_env("CIRCUIT_COOLDOWN_SECONDS", 60.0)


class PersistenceSettings:
    def __init__(self):
        self.backend: str = os.getenv("PERSISTENCE_BACKEND", "sqlite")
        self.db_path: str = os.getenv("PERSISTENCE_DB_PATH", "/tmp/3d-generation/jobs.db")


class FileSettings:
    def __init__(self):
        self.output_directory: str = os.getenv("OUTPUT_DIR", "./public/images/products/sequences")
        self.models_directory: str = os.getenv("MODELS_DIR", "./public/models")
        self.temp_directory: str = os.getenv("TEMP_DIR", "/tmp/3d-generation")
        self.retention_days: int = _int_env("RETENTION_DAYS", 30)
        self.cleanup_interval_minutes: int = _int_env("CLEANUP_INTERVAL_MINUTES", 60)


class GeneratorSettings:
    def __init__(self):
        # Empty command selects the simulated generator
        self.command: Optional[str] = os.getenv("GENERATOR_COMMAND") or None
        self.timeout_seconds: float = _float_env("GENERATOR_TIMEOUT_SECONDS", 120.0)
        self.simulated_unit_seconds: float = _float_env("SIMULATED_UNIT_SECONDS", 0.5)


class Settings:
    """Application settings"""
    def __init__(self):
        self.app_name: str = os.getenv("APP_NAME", "Jewelry Generation Engine")
        self.app_version: str = os.getenv("APP_VERSION", "1.0.0")
        self.environment: str = os.getenv("ENVIRONMENT", "production").lower()
        self.debug: bool = os.getenv("DEBUG", "false").lower() == "true"
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "8000"))

        # API settings
        self.api_v1_prefix: str = os.getenv("API_V1_PREFIX", "/v1")

        cors_origins_str = os.getenv("CORS_ORIGINS", '["http://localhost:3000"]')
        try:
            import json
            self.cors_origins = json.loads(cors_origins_str) if cors_origins_str.startswith('[') else ["*"]
        except (json.JSONDecodeError, ValueError):
            self.cors_origins = ["*"]

        self.generation = GenerationSettings()
        self.resources = ResourceSettings()
        self.monitoring = MonitoringSettings()
        self.checkpoint = CheckpointSettings()
        self.circuit_breaker = CircuitBreakerSettings()
        self.persistence = PersistenceSettings()
        self.files = FileSettings()
        self.generator = GeneratorSettings()

        if self.is_development:
            self._apply_development_overrides()

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def _apply_development_overrides(self):
        # Development boxes share the machine with the storefront dev server
        self.generation.max_concurrent_jobs = min(self.generation.max_concurrent_jobs, 2)
        self.generation.max_queue_size = min(self.generation.max_queue_size, 10)
        self.generation.retry_attempts = min(self.generation.retry_attempts, 2)
        self.monitoring.log_level = "DEBUG"

    def validate(self) -> "Settings":
        """Check every bound and raise ConfigurationError listing all violations"""
        errors: List[str] = []

        if not 1 <= self.generation.max_concurrent_jobs <= 20:
            errors.append("max_concurrent_jobs must be between 1 and 20")
        if not 1 <= self.generation.max_queue_size <= 1000:
            errors.append("max_queue_size must be between 1 and 1000")
        if self.generation.retry_attempts < 0:
            errors.append("retry_attempts must not be negative")
        if self.generation.stale_job_seconds <= 0:
            errors.append("stale_job_seconds must be positive")
        if not 512 <= self.resources.max_memory_mb <= 16384:
            errors.append("max_memory_mb must be between 512 and 16384")
        if self.resources.max_processes < 1:
            errors.append("max_processes must be at least 1")
        if not (0 < self.resources.medium_threshold < self.resources.high_threshold
                < self.resources.critical_threshold <= 100):
            errors.append("pressure thresholds must satisfy 0 < medium < high < critical <= 100")
        if self.monitoring.log_level.upper() not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            errors.append("log_level must be one of: CRITICAL, ERROR, WARNING, INFO, DEBUG")
        if self.checkpoint.interval_seconds <= 0:
            errors.append("checkpoint interval must be positive")
        if self.circuit_breaker.failure_threshold < 1:
            errors.append("circuit breaker failure_threshold must be at least 1")
        if self.persistence.backend not in {"sqlite", "memory"}:
            errors.append("persistence backend must be 'sqlite' or 'memory'")
        if not self.generation.default_materials:
            errors.append("default_materials must not be empty")

        if errors:
            raise ConfigurationError(errors)
        return self


# Global settings instance
settings = Settings()
