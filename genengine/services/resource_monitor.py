import asyncio
import logging
import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from genengine.config import Settings
from genengine.models.resources import (
    CpuUsage,
    DiskUsage,
    GenerationStats,
    MemoryUsage,
    OptimizationRecommendation,
    PressureLevel,
    ProcessUsage,
    ResourceSnapshot,
)

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
SECONDS_PER_DAY = 24 * 60 * 60

DISK_CLEANUP_THRESHOLD = 85.0
DISK_CLEANUP_MIN_INTERVAL_SECONDS = 300.0


class ResourceMonitor:
    """Samples system resources and classifies pressure for admission control"""

    def __init__(self, settings: Settings,
                 stats_provider: Optional[Callable[[], GenerationStats]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.update_interval = settings.monitoring.sample_interval_seconds
        self._stats_provider = stats_provider
        self._latest: Optional[ResourceSnapshot] = None
        self._process = psutil.Process(os.getpid())
        self._monitoring_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._clock = clock
        self._last_disk_cleanup: Optional[float] = None

    def set_stats_provider(self, provider: Callable[[], GenerationStats]):
        """Register the callable that reports scheduler job counts"""
        self._stats_provider = provider

    async def start(self):
        """Start resource monitoring"""
        logger.info("Starting resource monitoring (interval %.1fs)", self.update_interval)
        self._stop_event.clear()
        self.sample()
        self._monitoring_task = asyncio.create_task(self._monitoring_loop())

    async def stop(self):
        """Stop resource monitoring"""
        logger.info("Stopping resource monitoring")
        self._stop_event.set()
        if self._monitoring_task:
            await self._monitoring_task
        self._monitoring_task = None

    async def _monitoring_loop(self):
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.update_interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                snapshot = self.sample()
                if snapshot.pressure.severity >= PressureLevel.HIGH.severity:
                    logger.warning("Resource pressure %s (memory %.1f%%, disk %.1f%%, processes %d/%d)",
                                   snapshot.pressure.value, snapshot.memory.percentage,
                                   snapshot.disk.percentage, snapshot.processes.count,
                                   snapshot.processes.limit)
                if snapshot.disk.percentage > DISK_CLEANUP_THRESHOLD:
                    await asyncio.to_thread(self.cleanup_disk_space)
            except Exception as e:
                logger.error("Error in resource monitoring loop: %s", e)

    @property
    def latest(self) -> Optional[ResourceSnapshot]:
        """Most recent snapshot, without re-sampling"""
        return self._latest

    def current(self) -> ResourceSnapshot:
        """Latest snapshot, sampling once if none has been taken yet"""
        snapshot = self._latest
        if snapshot is None:
            snapshot = self.sample()
        return snapshot

    def sample(self) -> ResourceSnapshot:
        """Take a new snapshot and make it the latest"""
        degraded: List[str] = []

        memory = self._measure("memory", self._sample_memory, MemoryUsage(), degraded)
        disk = self._measure("disk", self._sample_disk, DiskUsage(), degraded)
        processes = self._measure(
            "processes", self._sample_processes,
            ProcessUsage(limit=self.settings.resources.max_processes), degraded,
        )
        cpu = self._measure("cpu", self._sample_cpu, CpuUsage(), degraded)
        generation = self._measure("generation", self._sample_generation, GenerationStats(), degraded)

        snapshot = ResourceSnapshot(
            memory=memory,
            disk=disk,
            processes=processes,
            cpu=cpu,
            generation=generation,
            pressure=self.classify(memory, disk, processes, degraded),
            degraded=tuple(degraded),
            timestamp=datetime.now(),
        )
        self._latest = snapshot
        return snapshot

    def _measure(self, name: str, sampler: Callable[[], Any], fallback: Any, degraded: List[str]) -> Any:
        try:
            return sampler()
        except Exception as e:
            logger.warning("Could not measure %s, treating as not over limit: %s", name, e)
            degraded.append(name)
            return fallback

    def _sample_memory(self) -> MemoryUsage:
        used_mb = int(self._process.memory_info().rss // BYTES_PER_MB)
        limit_mb = self.settings.resources.max_memory_mb
        return MemoryUsage(
            used=used_mb,
            total=limit_mb,
            percentage=round(used_mb / limit_mb * 100.0, 1),
            is_over_limit=used_mb > limit_mb,
        )

    def _sample_disk(self) -> DiskUsage:
        usage = psutil.disk_usage(str(self._existing_output_path()))
        return DiskUsage(
            used=int(usage.used // BYTES_PER_MB),
            total=int(usage.total // BYTES_PER_MB),
            percentage=float(usage.percent),
            is_over_limit=usage.percent >= self.settings.resources.critical_threshold,
        )

    def _existing_output_path(self) -> Path:
        # The output directory may not exist before the first render
        path = Path(self.settings.files.output_directory).resolve()
        while not path.exists() and path != path.parent:
            path = path.parent
        return path

    def _sample_processes(self) -> ProcessUsage:
        count = len(self._process.children(recursive=True))
        limit = self.settings.resources.max_processes
        return ProcessUsage(
            count=count,
            limit=limit,
            percentage=round(count / limit * 100.0, 1),
            is_over_limit=count > limit,
        )

    def _sample_cpu(self) -> CpuUsage:
        return CpuUsage(
            usage=psutil.cpu_percent(interval=None),
            load=tuple(round(value, 2) for value in psutil.getloadavg()),
        )

    def _sample_generation(self) -> GenerationStats:
        if self._stats_provider is None:
            return GenerationStats()
        return self._stats_provider()

    def classify_percentage(self, percentage: float) -> PressureLevel:
        thresholds = self.settings.resources
        if percentage < thresholds.medium_threshold:
            return PressureLevel.LOW
        if percentage < thresholds.high_threshold:
            return PressureLevel.MEDIUM
        if percentage < thresholds.critical_threshold:
            return PressureLevel.HIGH
        return PressureLevel.CRITICAL

    def classify(self, memory: MemoryUsage, disk: DiskUsage, processes: ProcessUsage,
                 degraded: Optional[List[str]] = None) -> PressureLevel:
        """Most severe level across memory, disk and process dimensions"""
        degraded = degraded or []
        levels = [PressureLevel.LOW]
        for name, usage in (("memory", memory), ("disk", disk), ("processes", processes)):
            if name in degraded:
                continue
            if usage.is_over_limit:
                return PressureLevel.CRITICAL
            levels.append(self.classify_percentage(usage.percentage))
        return max(levels, key=lambda level: level.severity)

    def get_pressure_level(self) -> PressureLevel:
        return self.current().pressure

    def get_recommendations(self) -> List[OptimizationRecommendation]:
        """Optimization hints derived from the latest snapshot"""
        snapshot = self.current()
        recommendations: List[OptimizationRecommendation] = []

        if snapshot.memory.percentage > 80:
            recommendations.append(OptimizationRecommendation(
                type="memory",
                severity=PressureLevel.CRITICAL if snapshot.memory.percentage > 90 else PressureLevel.HIGH,
                message=f"Memory usage at {snapshot.memory.percentage}%",
                action="Reduce concurrent generation jobs or raise MAX_MEMORY_MB",
            ))

        if snapshot.disk.percentage > DISK_CLEANUP_THRESHOLD:
            recommendations.append(OptimizationRecommendation(
                type="disk",
                severity=PressureLevel.CRITICAL if snapshot.disk.percentage > 95 else PressureLevel.HIGH,
                message=f"Disk usage at {snapshot.disk.percentage}%",
                action="Clean up old generation files and temporary data",
                auto_fix_available=True,
            ))

        if snapshot.processes.is_over_limit:
            recommendations.append(OptimizationRecommendation(
                type="process",
                severity=PressureLevel.HIGH,
                message=f"Too many active processes: {snapshot.processes.count}/{snapshot.processes.limit}",
                action="Reduce concurrent generation jobs",
            ))

        return recommendations

    def cleanup_disk_space(self, force: bool = False) -> Dict[str, int]:
        """
        Delete render output directories and temp files older than the
        retention window. Runs at most once per DISK_CLEANUP_MIN_INTERVAL_SECONDS
        unless forced; the persistence database is never touched.
        """
        result = {"output_dirs": 0, "temp_files": 0, "freed_mb": 0}
        now = self._clock()
        if (not force and self._last_disk_cleanup is not None
                and now - self._last_disk_cleanup < DISK_CLEANUP_MIN_INTERVAL_SECONDS):
            return result
        self._last_disk_cleanup = now

        cutoff = time.time() - self.settings.files.retention_days * SECONDS_PER_DAY
        freed_bytes = 0

        output_dir = Path(self.settings.files.output_directory)
        if output_dir.is_dir():
            for entry in output_dir.iterdir():
                try:
                    if not entry.is_dir() or entry.stat().st_mtime >= cutoff:
                        continue
                    size = sum(path.stat().st_size for path in entry.rglob("*") if path.is_file())
                    shutil.rmtree(entry)
                except OSError as e:
                    logger.warning("Could not remove output directory %s: %s", entry, e)
                    continue
                freed_bytes += size
                result["output_dirs"] += 1

        temp_dir = Path(self.settings.files.temp_directory)
        db_path = Path(self.settings.persistence.db_path).resolve()
        if temp_dir.is_dir():
            for entry in temp_dir.iterdir():
                # jobs.db plus its -journal / -wal companions
                if entry.resolve().parent == db_path.parent and entry.name.startswith(db_path.name):
                    continue
                try:
                    stat = entry.stat()
                    if not entry.is_file() or stat.st_mtime >= cutoff:
                        continue
                    entry.unlink()
                except OSError as e:
                    logger.warning("Could not remove temp file %s: %s", entry, e)
                    continue
                freed_bytes += stat.st_size
                result["temp_files"] += 1

        result["freed_mb"] = int(freed_bytes // BYTES_PER_MB)
        logger.info("Disk cleanup removed %d output directories and %d temp files (%dMB freed)",
                    result["output_dirs"], result["temp_files"], result["freed_mb"])
        return result

    def get_resource_summary(self) -> Dict[str, Any]:
        """Latest snapshot plus recommendations"""
        snapshot = self.current()
        return {
            "snapshot": snapshot.to_dict(),
            "pressure": snapshot.pressure.value,
            "degraded": list(snapshot.degraded),
            "recommendations": [rec.to_dict() for rec in self.get_recommendations()],
        }
