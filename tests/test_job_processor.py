"""
Tests for the bulk job processor: retries, resumption and job transitions.
"""

import pytest

from database import InMemoryStorage, StorageError
from job_processor import MISSING_IDENTIFIER_ERROR, JobProcessor, ProcessingRegistry
from models import ParsedRecord

from conftest import FakeScraper, SleepRecorder


async def run_job(processor, records, **kwargs):
    job = await processor.create_job(records, **kwargs)
    await processor.process_job_items(job.id)
    return await processor.storage.get_bulk_job(job.id)


@pytest.mark.unit
class TestCreateJob:
    """Job and item creation."""

    async def test_one_item_per_record(self, processor, storage):
        records = [ParsedRecord(email=f"user{i}@acme.com") for i in range(3)]
        job = await processor.create_job(records, name="Q3 list", source_format="json")

        items = await storage.get_bulk_job_items(job.id)
        assert job.status == "pending"
        assert job.total_records == 3
        assert job.source_format == "json"
        assert [item.row_number for item in items] == [1, 2, 3]
        assert all(item.status == "pending" for item in items)


@pytest.mark.unit
class TestRegistry:
    """In-flight job tracking."""

    def test_acquire_release(self):
        registry = ProcessingRegistry()
        assert registry.try_acquire("job-1")
        assert not registry.try_acquire("job-1")
        assert registry.active() == ["job-1"]
        registry.release("job-1")
        assert len(registry) == 0

    async def test_concurrent_call_is_noop(self, processor, storage):
        job = await processor.create_job([ParsedRecord(website="acme.com")])
        processor.registry.try_acquire(job.id)

        assert await processor.process_job_items(job.id) is False

        assert (await storage.get_bulk_job(job.id)).status == "pending"
        assert processor.scraper.calls == []


@pytest.mark.unit
class TestItemRetries:
    """Per-item retry and failure handling."""

    async def test_network_failure_retries_with_backoff(self, storage, sleeps):
        scraper = FakeScraper(fail_urls=["down.com"])
        processor = JobProcessor(storage, scraper=scraper, sleep=sleeps)

        job = await run_job(processor, [ParsedRecord(website="down.com")])
        item = (await storage.get_bulk_job_items(job.id))[0]

        assert scraper.calls == ["down.com"] * 3
        assert sleeps.delays == [1.0, 2.0]
        assert item.status == "failed"
        assert item.retry_count == 3
        assert "network unreachable" in item.last_error
        assert job.status == "complete"
        assert (job.successful, job.failed) == (0, 1)

    async def test_validation_failure_uses_no_retry(self, processor, storage, sleeps):
        job = await run_job(processor, [ParsedRecord(first_name="Ann")])
        item = (await storage.get_bulk_job_items(job.id))[0]

        assert item.status == "failed"
        assert item.retry_count == 0
        assert item.last_error == MISSING_IDENTIFIER_ERROR
        assert sleeps.delays == []
        assert job.failed == 1

    async def test_partial_failures(self, storage, sleeps):
        failing = [f"site{i}.com" for i in range(5)]
        processor = JobProcessor(storage, scraper=FakeScraper(fail_urls=failing), sleep=sleeps)
        records = [ParsedRecord(website=f"site{i}.com") for i in range(25)]

        job = await run_job(processor, records)

        assert job.status == "complete"
        assert job.successful == 20
        assert job.failed == 5
        assert job.progress == 100
        assert job.completed_at is not None


@pytest.mark.unit
class TestResumption:
    """Re-running a job only touches unfinished items."""

    async def test_rerun_is_idempotent(self, storage, sleeps):
        scraper = FakeScraper(fail_urls=["down.com"])
        processor = JobProcessor(storage, scraper=scraper, sleep=sleeps)
        job = await run_job(processor, [ParsedRecord(website="acme.com"), ParsedRecord(website="down.com")])
        calls_before = list(scraper.calls)

        await processor.process_job_items(job.id)
        rerun = await storage.get_bulk_job(job.id)

        assert scraper.calls == calls_before
        assert (rerun.successful, rerun.failed, rerun.status) == (1, 1, "complete")

    async def test_resumes_from_recorded_retry_count(self, storage, sleeps):
        scraper = FakeScraper(fail_urls=["down.com"])
        processor = JobProcessor(storage, scraper=scraper, sleep=sleeps)
        job = await processor.create_job([ParsedRecord(website="down.com")])
        item = (await storage.get_bulk_job_items(job.id))[0]
        await storage.update_bulk_job_item(item.id, status="processing", retry_count=2)

        await processor.process_job_items(job.id)

        assert scraper.calls == ["down.com"]
        assert sleeps.delays == []
        assert (await storage.get_bulk_job_items(job.id))[0].retry_count == 3


@pytest.mark.unit
class TestEnrichment:
    """Completed items carry enrichment output."""

    async def test_item_enriched(self, processor, storage):
        job = await run_job(processor, [ParsedRecord(website="acmeplumbing.com", city="Chicago", state="IL")])
        item = (await storage.get_bulk_job_items(job.id))[0]

        assert item.status == "complete"
        assert item.contact_id is not None
        assert item.company_id is not None
        assert item.enrichment_data["services"] == ["Plumbing", "Drain", "Water heater", "Cleaning"]
        assert item.personalization_bullets[0] == "Specializes in Plumbing, Drain, Water heater"
        assert item.icebreaker.startswith("I was researching plumbing companies in Chicago, IL")
        assert 0 < item.confidence_score <= 1
        assert item.scrape_sources[0].status_code == 200

    async def test_no_website_still_completes(self, processor, storage):
        job = await run_job(processor, [ParsedRecord(email="ann@acme.com")])
        item = (await storage.get_bulk_job_items(job.id))[0]

        assert item.status == "complete"
        assert item.enrichment_data["scrape_error"] == "No website URL provided"
        assert item.personalization_bullets == []
        assert processor.scraper.calls == []

    async def test_two_rows_same_email_merge(self, processor, storage):
        records = [
            ParsedRecord(email="john@acme.com", first_name="John", website="acme.com"),
            ParsedRecord(email="JOHN@acme.com", title="Owner"),
        ]
        job = await run_job(processor, records)
        first, second = await storage.get_bulk_job_items(job.id)

        assert job.successful == 2
        assert job.duplicates_found == 1
        assert second.matched_contact_id == first.contact_id
        contacts = await storage.get_contacts()
        assert len(contacts) == 1
        assert contacts[0].title == "Owner"


class FlakyStorage(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.item_reads = 0

    async def get_bulk_job_items(self, job_id):
        self.item_reads += 1
        raise StorageError("database connection lost")


@pytest.mark.unit
class TestJobFailure:
    """Job-level failure handling."""

    async def test_storage_outage_fails_job(self, sleeps):
        storage = FlakyStorage()
        processor = JobProcessor(storage, scraper=FakeScraper(), sleep=sleeps)

        job = await run_job(processor, [ParsedRecord(email="a@acme.com")])

        assert job.status == "failed"
        assert job.last_error == "database connection lost"
        assert storage.item_reads == 3
        assert not processor.registry.is_processing(job.id)

    async def test_unknown_job(self, processor):
        assert await processor.process_job_items("missing") is False
        assert len(processor.registry) == 0

    async def test_run_reports_it_ran(self, processor):
        job = await processor.create_job([ParsedRecord(email="a@acme.com")])
        assert await processor.process_job_items(job.id) is True

    async def test_schedule_and_wait(self, processor, storage):
        job = await processor.create_job([ParsedRecord(website="acme.com")])
        processor.schedule(job.id)
        await processor.wait_for_scheduled()
        assert (await storage.get_bulk_job(job.id)).status == "complete"
