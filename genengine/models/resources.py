from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Tuple


class PressureLevel(str, Enum):
    """Resource pressure classification, ordered by severity"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    PressureLevel.LOW: 0,
    PressureLevel.MEDIUM: 1,
    PressureLevel.HIGH: 2,
    PressureLevel.CRITICAL: 3,
}


@dataclass(frozen=True)
class MemoryUsage:
    """Memory used by the engine process against its configured budget (MB)"""
    used: int = 0
    total: int = 0
    percentage: float = 0.0
    is_over_limit: bool = False


@dataclass(frozen=True)
class DiskUsage:
    """Usage of the filesystem holding the output directory (MB)"""
    used: int = 0
    total: int = 0
    percentage: float = 0.0
    is_over_limit: bool = False


@dataclass(frozen=True)
class ProcessUsage:
    count: int = 0
    limit: int = 0
    percentage: float = 0.0
    is_over_limit: bool = False


@dataclass(frozen=True)
class CpuUsage:
    usage: float = 0.0
    load: Tuple[float, ...] = ()


@dataclass(frozen=True)
class GenerationStats:
    active_jobs: int = 0
    queued_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time system state; replaced by the next sample, never mutated"""
    memory: MemoryUsage = field(default_factory=MemoryUsage)
    disk: DiskUsage = field(default_factory=DiskUsage)
    processes: ProcessUsage = field(default_factory=ProcessUsage)
    cpu: CpuUsage = field(default_factory=CpuUsage)
    generation: GenerationStats = field(default_factory=GenerationStats)
    pressure: PressureLevel = PressureLevel.LOW
    degraded: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_critical(self) -> bool:
        return self.pressure == PressureLevel.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cpu"]["load"] = list(self.cpu.load)
        data["pressure"] = self.pressure.value
        data["degraded"] = list(self.degraded)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class OptimizationRecommendation:
    type: str
    severity: PressureLevel
    message: str
    action: str
    auto_fix_available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "message": self.message,
            "action": self.action,
            "auto_fix_available": self.auto_fix_available,
        }
