"""
Self-healing monitor
Detects jobs stuck in processing, resumes them, and reports processor and
system health
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from loguru import logger

from config import get_settings
from database import Storage
from guardrails import CircuitBreakerRegistry
from job_processor import JobProcessor
from models import BulkJob, ProcessorHealth, utcnow

RECENT_JOBS_SCAN_LIMIT = 100


class SelfHealingMonitor:
    """Periodic stale-job recovery and health reporting"""

    def __init__(
        self,
        processor: JobProcessor,
        breakers: Optional[CircuitBreakerRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = get_settings()
        self.processor = processor
        self.storage: Storage = processor.storage
        self.breakers = breakers
        self._clock = clock
        self._recovery_running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def _is_stale(self, job: BulkJob, now: datetime) -> bool:
        if job.status != "processing":
            return False
        started_at = job.started_at
        if started_at is None:
            return True
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=timezone.utc)
        age_ms = (now - started_at).total_seconds() * 1000
        return age_ms > self.settings.stale_job_threshold_ms

    async def recover_stale_jobs(self) -> int:
        """
        Resume jobs stuck in processing longer than the stale threshold

        Jobs are rescheduled in the background; item-level skip logic makes
        reprocessing safe. Overlapping calls return 0.

        Returns:
            Number of jobs rescheduled
        """
        if self._recovery_running:
            logger.debug("Stale job recovery already running, skipping")
            return 0

        self._recovery_running = True
        try:
            jobs = await self.storage.get_bulk_jobs(limit=RECENT_JOBS_SCAN_LIMIT, status="processing")
            now = self._clock()
            recovered = 0
            for job in jobs:
                if not self._is_stale(job, now):
                    continue
                if self.processor.registry.is_processing(job.id):
                    logger.debug(f"Stale job {job.id} is still running in this process")
                    continue
                logger.warning(f"Recovering stale job {job.id} (started {job.started_at})")
                self.processor.schedule(job.id)
                recovered += 1
            if recovered:
                logger.info(f"Recovered {recovered} stale job(s)")
            return recovered
        except Exception as e:
            logger.error(f"Error recovering stale jobs: {e}")
            return 0
        finally:
            self._recovery_running = False

    async def get_processor_health(self) -> ProcessorHealth:
        """Counts of pending, processing and stale jobs; unhealthy while any job is stale"""
        try:
            jobs = await self.storage.get_bulk_jobs(limit=RECENT_JOBS_SCAN_LIMIT)
        except Exception as e:
            logger.error(f"Failed to read jobs for health check: {e}")
            return ProcessorHealth(healthy=False)

        now = self._clock()
        stale = sum(1 for job in jobs if self._is_stale(job, now))
        return ProcessorHealth(
            healthy=stale == 0,
            pending_jobs=sum(1 for job in jobs if job.status == "pending"),
            processing_jobs=sum(1 for job in jobs if job.status == "processing"),
            stale_jobs=stale,
        )

    async def check_database_health(self) -> dict:
        start = time.perf_counter()
        try:
            await self.storage.ping()
            return {"healthy": True, "latency_ms": round((time.perf_counter() - start) * 1000, 2)}
        except Exception as e:
            return {
                "healthy": False,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "error": str(e),
            }

    async def get_system_health(self) -> dict:
        """Storage, processor and circuit breaker status in one report"""
        database = await self.check_database_health()
        processor = await self.get_processor_health()
        healthy = database["healthy"] and processor.healthy
        return {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": self._clock().isoformat(),
            "service": self.settings.service_name,
            "database": database,
            "processor": processor.model_dump(),
            "active_jobs": self.processor.registry.active(),
            "circuit_breakers": self.breakers.snapshot() if self.breakers else {},
        }

    async def _wait(self, seconds: float) -> bool:
        """Sleep until the interval passes or shutdown is requested; True on shutdown"""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _health_loop(self) -> None:
        while not await self._wait(self.settings.health_check_interval):
            try:
                health = await self.get_processor_health()
                if health.stale_jobs > 0:
                    logger.warning(f"Health check found {health.stale_jobs} stale job(s), recovering")
                    await self.recover_stale_jobs()
            except Exception as e:
                logger.error(f"Health check failed: {e}")

    async def _recovery_loop(self) -> None:
        while not await self._wait(self.settings.stale_recovery_interval):
            await self.recover_stale_jobs()

    def start(self) -> None:
        """Start periodic health checks and recovery sweeps"""
        if self._tasks:
            return
        self._shutdown_event.clear()
        self._tasks = [
            asyncio.create_task(self._health_loop()),
            asyncio.create_task(self._recovery_loop()),
        ]
        logger.info(
            f"Health monitoring started (health every {self.settings.health_check_interval}s, "
            f"recovery every {self.settings.stale_recovery_interval}s)"
        )

    async def stop(self) -> None:
        """Stop the periodic tasks"""
        self._shutdown_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Health monitoring stopped")
