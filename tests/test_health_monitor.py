"""
Tests for stale job recovery and health reporting.
"""

from datetime import timedelta

import pytest

from guardrails import CircuitBreakerRegistry
from health_monitor import SelfHealingMonitor
from models import ParsedRecord, utcnow

NOW = utcnow()


async def stuck_job(processor, minutes_ago):
    job = await processor.create_job([ParsedRecord(website="acme.com")])
    await processor.storage.update_bulk_job(
        job.id, status="processing", started_at=NOW - timedelta(minutes=minutes_ago)
    )
    return job


@pytest.fixture
def monitor(processor):
    return SelfHealingMonitor(processor, breakers=CircuitBreakerRegistry(), clock=lambda: NOW)


@pytest.mark.unit
class TestStaleRecovery:
    """Jobs stuck in processing are resumed."""

    async def test_recovers_stale_job(self, monitor, processor, storage):
        job = await stuck_job(processor, minutes_ago=10)

        assert await monitor.recover_stale_jobs() == 1
        await processor.wait_for_scheduled()

        recovered = await storage.get_bulk_job(job.id)
        assert recovered.status == "complete"
        assert recovered.successful == 1

    async def test_recent_job_left_alone(self, monitor, processor):
        await stuck_job(processor, minutes_ago=1)
        assert await monitor.recover_stale_jobs() == 0

    async def test_in_flight_job_skipped(self, monitor, processor):
        job = await stuck_job(processor, minutes_ago=10)
        processor.registry.try_acquire(job.id)
        assert await monitor.recover_stale_jobs() == 0

    async def test_overlapping_sweep_returns_zero(self, monitor, processor):
        await stuck_job(processor, minutes_ago=10)
        monitor._recovery_running = True
        assert await monitor.recover_stale_jobs() == 0


@pytest.mark.unit
class TestHealth:
    """Processor and system health reports."""

    async def test_processor_health_counts(self, monitor, processor):
        await processor.create_job([ParsedRecord(email="a@acme.com")])
        await stuck_job(processor, minutes_ago=10)
        await stuck_job(processor, minutes_ago=1)

        health = await monitor.get_processor_health()

        assert not health.healthy
        assert health.pending_jobs == 1
        assert health.processing_jobs == 2
        assert health.stale_jobs == 1

    async def test_system_health_healthy(self, monitor):
        report = await monitor.get_system_health()

        assert report["status"] == "healthy"
        assert report["database"]["healthy"]
        assert report["processor"]["stale_jobs"] == 0
        assert report["circuit_breakers"] == {}
        assert report["active_jobs"] == []

    async def test_system_health_database_down(self, monitor, storage):
        async def broken_ping():
            raise ConnectionError("refused")

        storage.ping = broken_ping
        report = await monitor.get_system_health()

        assert report["status"] == "unhealthy"
        assert report["database"]["error"] == "refused"

    async def test_start_and_stop(self, monitor):
        monitor.start()
        assert len(monitor._tasks) == 2
        await monitor.stop()
        assert monitor._tasks == []
