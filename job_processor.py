"""
Bulk job processor
Drives one job's items through normalization, identity resolution, scraping,
business intelligence, personalization and scoring with per-item retries,
progress checkpoints and job-level state transitions
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from loguru import logger

from config import get_settings
from content_parser import extract_business_intelligence
from database import Storage
from domain_discovery import DomainDiscovery
from guardrails import categorize_error, with_retry
from identity import build_candidate
from models import (
    BulkJob,
    BulkJobItem,
    ErrorKind,
    ItemOutcome,
    ParsedRecord,
    ScrapeResult,
    utcnow,
)
from personalization import generate_personalization
from scoring import calculate_confidence_score, calculate_data_quality_score
from scraper import WebsiteScraper

MISSING_IDENTIFIER_ERROR = (
    "Missing required identifier (email, phone, website, LinkedIn URL, or company and city)"
)
NO_WEBSITE_ERROR = "No website URL provided"


class ProcessingRegistry:
    """Job IDs currently being processed by this process"""

    def __init__(self):
        self._active: Set[str] = set()

    def try_acquire(self, job_id: str) -> bool:
        """Claim a job, returning False when it is already in flight"""
        if job_id in self._active:
            return False
        self._active.add(job_id)
        return True

    def release(self, job_id: str) -> None:
        self._active.discard(job_id)

    def is_processing(self, job_id: str) -> bool:
        return job_id in self._active

    def active(self) -> List[str]:
        return sorted(self._active)

    def __len__(self) -> int:
        return len(self._active)


class JobProcessor:
    """Processes bulk job items with retry, checkpointing and self-healing resumption"""

    def __init__(
        self,
        storage: Storage,
        scraper: Optional[WebsiteScraper] = None,
        registry: Optional[ProcessingRegistry] = None,
        discovery: Optional[DomainDiscovery] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = get_settings()
        self.storage = storage
        self.scraper = scraper or WebsiteScraper()
        self.registry = registry or ProcessingRegistry()
        self.discovery = discovery
        if self.discovery is None and self.settings.domain_discovery_enabled:
            self.discovery = DomainDiscovery()
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    def get_retry_delay(self, attempt: int) -> float:
        """Backoff before the next attempt, in seconds"""
        return self.settings.retry_delay_ms * (2 ** attempt) / 1000

    async def create_job(
        self,
        records: List[ParsedRecord],
        name: str = "Bulk import",
        source_format: str = "csv",
    ) -> BulkJob:
        """
        Create a pending job with one pending item per record

        Args:
            records: Parsed upload records
            name: Display name of the job
            source_format: csv, json or email_list

        Returns:
            Created BulkJob
        """
        job = BulkJob(name=name, source_format=source_format, total_records=len(records))
        job = await self.storage.create_bulk_job(job)
        items = [
            BulkJobItem(bulk_job_id=job.id, row_number=i + 1, parsed_data=record)
            for i, record in enumerate(records)
        ]
        if items:
            await self.storage.create_bulk_job_items(items)
        logger.info(f"Created job {job.id} ({name}) with {len(items)} items")
        return job

    def schedule(self, job_id: str) -> asyncio.Task:
        """Start processing a job in the background"""
        task = asyncio.create_task(self.process_job_items(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_scheduled(self) -> None:
        """Wait until every scheduled job task has finished"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _storage_call(self, func, *args, **kwargs):
        return await with_retry(
            func,
            *args,
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.retry_delay_ms / 1000,
            sleep=self._sleep,
            **kwargs,
        )

    async def _checkpoint(self, job_id: str, processed: int, total: int, counters: Dict[str, int]) -> None:
        progress = round(processed / total * 100) if total else 100
        await self._storage_call(
            self.storage.update_bulk_job,
            job_id,
            progress=progress,
            successful=counters["successful"],
            failed=counters["failed"],
            duplicates_found=counters["duplicates"],
        )
        logger.debug(f"Job {job_id} checkpoint: {processed}/{total} ({progress}%)")

    async def process_job_items(self, job_id: str) -> bool:
        """
        Process every unfinished item of a job, in row order

        Items that are already complete, or failed with their retries
        exhausted, are counted and skipped, so re-running a job resumes it.
        A second concurrent call for the same job is a no-op.

        Args:
            job_id: Bulk job ID

        Returns:
            False when the job was already in flight or does not exist
        """
        if not self.registry.try_acquire(job_id):
            logger.info(f"Job {job_id} is already being processed, skipping")
            return False

        try:
            job = await self._storage_call(self.storage.get_bulk_job, job_id)
            if job is None:
                logger.warning(f"Job {job_id} not found")
                return False

            items = await self._storage_call(self.storage.get_bulk_job_items, job_id)
            total = len(items)
            counters = {"successful": 0, "failed": 0, "duplicates": 0}
            processed = 0

            await self._storage_call(
                self.storage.update_bulk_job,
                job_id,
                status="processing",
                started_at=utcnow(),
                completed_at=None,
                last_error=None,
            )
            logger.info(f"Processing job {job_id} with {total} items")

            for item in items:
                await self._process_with_retries(job, item, counters)
                processed += 1

                if processed % self.settings.progress_checkpoint_interval == 0 or processed == total:
                    await self._checkpoint(job_id, processed, total, counters)

            await self._storage_call(
                self.storage.update_bulk_job,
                job_id,
                status="complete",
                successful=counters["successful"],
                failed=counters["failed"],
                duplicates_found=counters["duplicates"],
                completed_at=utcnow(),
                progress=100,
            )
            logger.info(
                f"Job {job_id} complete: {counters['successful']} successful, "
                f"{counters['failed']} failed, {counters['duplicates']} duplicates"
            )

        except Exception as e:
            logger.error(f"Error processing job {job_id}: {e}")
            try:
                await self.storage.update_bulk_job(job_id, status="failed", last_error=str(e))
            except Exception as update_error:
                logger.error(f"Failed to mark job {job_id} as failed: {update_error}")
        finally:
            self.registry.release(job_id)
        return True

    async def _process_with_retries(self, job: BulkJob, item: BulkJobItem, counters: Dict[str, int]) -> None:
        """Run one item through the pipeline until it succeeds or its retries are exhausted"""
        max_retries = self.settings.max_retries

        if item.status == "complete":
            counters["successful"] += 1
            if item.matched_contact_id:
                counters["duplicates"] += 1
            return

        if item.status == "failed" and item.retry_count >= max_retries:
            counters["failed"] += 1
            return

        await self.storage.update_bulk_job_item(item.id, status="processing")

        last_error: Optional[str] = None
        for attempt in range(item.retry_count, max_retries):
            try:
                outcome = await self.process_item(job, item)
            except Exception as e:
                error = categorize_error(e)
                outcome = ItemOutcome.fail(error.kind, error.message)

            if outcome.success:
                counters["successful"] += 1
                if outcome.is_duplicate:
                    counters["duplicates"] += 1
                return

            error = outcome.error
            last_error = error.message if error else "Unknown error"

            if error and not error.recoverable:
                counters["failed"] += 1
                await self.storage.update_bulk_job_item(item.id, status="failed", last_error=last_error)
                logger.warning(f"Item {item.id} failed permanently ({error.kind.value}): {last_error}")
                return

            await self.storage.update_bulk_job_item(item.id, retry_count=attempt + 1, last_error=last_error)
            logger.debug(f"Item {item.id} attempt {attempt + 1}/{max_retries} failed: {last_error}")

            if attempt < max_retries - 1:
                await self._sleep(self.get_retry_delay(attempt))

        counters["failed"] += 1
        await self.storage.update_bulk_job_item(
            item.id,
            status="failed",
            last_error=last_error or "Max retries exceeded",
            retry_count=max_retries,
        )
        logger.warning(f"Item {item.id} failed after {max_retries} attempts: {last_error}")

    async def _resolve_website(self, record: ParsedRecord, enrichment: Dict[str, Any]) -> Optional[str]:
        website = record.website_url()
        if website or self.discovery is None or not record.company:
            return website

        discovered = await self.discovery.discover_domain(record)
        enrichment["domain_discovery"] = discovered.model_dump(mode="json")
        return discovered.domain

    async def process_item(self, job: BulkJob, item: BulkJobItem) -> ItemOutcome:
        """
        Run the full enrichment pipeline for one item

        Args:
            job: Job the item belongs to
            item: Item to enrich

        Returns:
            ItemOutcome; storage and network failures are reported, not raised
        """
        record = item.parsed_data
        if not record.has_identifier():
            return ItemOutcome.fail(ErrorKind.VALIDATION, MISSING_IDENTIFIER_ERROR)

        try:
            enrichment: Dict[str, Any] = {}
            website = await self._resolve_website(record, enrichment)

            if website:
                logger.debug(f"Scraping website for item {item.id}: {website}")
                scrape_result = await self.scraper.scrape_website(website)
            else:
                scrape_result = ScrapeResult(url="", success=False, error=NO_WEBSITE_ERROR)

            intel = extract_business_intelligence(scrape_result, record)
            personalization = generate_personalization(intel, scrape_result, record)
            confidence = calculate_confidence_score(scrape_result, intel, record)

            company_id = None
            company_name = intel.company_name or record.company
            if company_name:
                company = await self.storage.upsert_company(company_name, website)
                company_id = company.id

            candidate = build_candidate(record, company_id=company_id)
            fills = {
                "website": candidate.website or scrape_result.url or None,
                "phone": candidate.phone or intel.contact_info.phone,
                "city": candidate.city or intel.city,
                "state": candidate.state or intel.state,
                "company_name": candidate.company_name or company_name,
                "category": candidate.category or intel.industry,
            }
            candidate = candidate.model_copy(update=fills)
            merge = await self.storage.merge_contact(candidate, source=job.source_format)

            enrichment.update({
                "company_name": intel.company_name,
                "city": intel.city,
                "state": intel.state,
                "services": intel.services,
                "signals": intel.signals,
                "industry": intel.industry,
                "founded_year": intel.founded_year,
                "contact_info": intel.contact_info.model_dump(),
                "website_url": scrape_result.url or None,
                "website_title": scrape_result.content.title if scrape_result.content else None,
                "website_description": scrape_result.content.description if scrape_result.content else None,
                "scrape_error": scrape_result.error,
                "personalization_tier": personalization.tier,
                "merge": {
                    "is_new": merge.is_new,
                    "matched_by": merge.matched_by,
                    "fields_updated": merge.fields_updated,
                },
            })

            await self.storage.update_bulk_job_item(
                item.id,
                status="complete",
                contact_id=merge.contact.id,
                company_id=company_id,
                matched_contact_id=None if merge.is_new else merge.contact.id,
                fit_score=calculate_data_quality_score(record),
                enrichment_data=enrichment,
                scrape_sources=scrape_result.sources,
                personalization_bullets=personalization.bullets,
                icebreaker=personalization.icebreaker,
                confidence_score=confidence.score,
                confidence_rationale=confidence.rationale,
                last_error=None,
            )
        except Exception as e:
            error = categorize_error(e)
            return ItemOutcome.fail(error.kind, error.message)

        logger.debug(
            f"Completed item {item.id}: confidence={confidence.score}, "
            f"bullets={len(personalization.bullets)}, duplicate={not merge.is_new}"
        )
        return ItemOutcome.ok(is_duplicate=not merge.is_new)
