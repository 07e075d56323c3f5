"""
Storage façade for bulk jobs, job items, companies and contacts

Two backends share one interface: an in-memory store used by tests and
single-process runs, and a Supabase store for deployments.
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel
from supabase import Client, create_client
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import get_settings
from guardrails import CircuitBreakerRegistry, CircuitOpenError
from identity import ContactIndex, resolve_contact
from models import BulkJob, BulkJobItem, Company, Contact, MergeResult, utcnow
from normalize import normalize_company, normalize_domain


class StorageError(Exception):
    """Raised when a storage operation fails"""
    pass


def _to_json(value: Any) -> Any:
    """Convert models and datetimes into JSON-compatible values"""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [_to_json(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_json(v) for k, v in value.items()}
    return value


class Storage(ABC):
    """Persistence operations the enrichment pipeline depends on"""

    @abstractmethod
    async def get_bulk_job(self, job_id: str) -> Optional[BulkJob]:
        ...

    @abstractmethod
    async def get_bulk_jobs(self, limit: int = 100, status: Optional[str] = None) -> List[BulkJob]:
        """Most recently created jobs first"""

    @abstractmethod
    async def create_bulk_job(self, job: BulkJob) -> BulkJob:
        ...

    @abstractmethod
    async def create_bulk_job_items(self, items: List[BulkJobItem]) -> List[BulkJobItem]:
        ...

    @abstractmethod
    async def get_bulk_job_items(self, job_id: str) -> List[BulkJobItem]:
        """Items of a job ordered by row number"""

    @abstractmethod
    async def update_bulk_job(self, job_id: str, **updates) -> Optional[BulkJob]:
        ...

    @abstractmethod
    async def update_bulk_job_item(self, item_id: str, **updates) -> Optional[BulkJobItem]:
        ...

    @abstractmethod
    async def upsert_company(self, name: str, domain: Optional[str] = None) -> Company:
        """Find a company by domain (or name when there is no domain) or create it"""

    @abstractmethod
    async def merge_contact(self, candidate: Contact, source: str) -> MergeResult:
        """Resolve a candidate against stored contacts with no-loss merge semantics"""

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def get_contacts(self, limit: int = 100) -> List[Contact]:
        ...

    async def ping(self) -> bool:
        """Cheap round trip used by health checks"""
        await self.get_bulk_jobs(limit=1)
        return True

    async def close(self) -> None:
        pass


class InMemoryStorage(Storage):
    """Process-local storage backend"""

    def __init__(self, company_city_match: Optional[bool] = None, email_conflict_guard: Optional[bool] = None):
        settings = get_settings()
        if company_city_match is None:
            company_city_match = settings.merge_company_city_match
        if email_conflict_guard is None:
            email_conflict_guard = settings.merge_email_conflict_guard
        self.company_city_match = company_city_match
        self.email_conflict_guard = email_conflict_guard
        self._jobs: Dict[str, BulkJob] = {}
        self._items: Dict[str, BulkJobItem] = {}
        self._companies: Dict[str, Company] = {}
        self._contacts = ContactIndex()

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    async def get_bulk_job(self, job_id: str) -> Optional[BulkJob]:
        return self._copy(self._jobs.get(job_id))

    async def get_bulk_jobs(self, limit: int = 100, status: Optional[str] = None) -> List[BulkJob]:
        jobs = [job for job in self._jobs.values() if status is None or job.status == status]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return [self._copy(job) for job in jobs[:limit]]

    async def create_bulk_job(self, job: BulkJob) -> BulkJob:
        self._jobs[job.id] = self._copy(job)
        return self._copy(job)

    async def create_bulk_job_items(self, items: List[BulkJobItem]) -> List[BulkJobItem]:
        for item in items:
            if item.bulk_job_id not in self._jobs:
                raise StorageError(f"Unknown bulk job {item.bulk_job_id}")
            self._items[item.id] = self._copy(item)
        return [self._copy(item) for item in items]

    async def get_bulk_job_items(self, job_id: str) -> List[BulkJobItem]:
        items = [item for item in self._items.values() if item.bulk_job_id == job_id]
        items.sort(key=lambda item: item.row_number)
        return [self._copy(item) for item in items]

    async def update_bulk_job(self, job_id: str, **updates) -> Optional[BulkJob]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        updated = job.model_copy(update={**copy.deepcopy(updates), "updated_at": utcnow()})
        self._jobs[job_id] = BulkJob.model_validate(updated.model_dump())
        return self._copy(self._jobs[job_id])

    async def update_bulk_job_item(self, item_id: str, **updates) -> Optional[BulkJobItem]:
        item = self._items.get(item_id)
        if item is None:
            return None
        updated = item.model_copy(update={**copy.deepcopy(updates), "updated_at": utcnow()})
        self._items[item_id] = BulkJobItem.model_validate(updated.model_dump())
        return self._copy(self._items[item_id])

    async def upsert_company(self, name: str, domain: Optional[str] = None) -> Company:
        domain = normalize_domain(domain)
        name_key = normalize_company(name)
        for company in self._companies.values():
            if domain and company.domain == domain:
                return self._copy(company)
            if not domain and not company.domain and normalize_company(company.name) == name_key:
                return self._copy(company)
        company = Company(name=name, domain=domain)
        self._companies[company.id] = company
        logger.debug(f"Created company {company.id} ({name})")
        return self._copy(company)

    async def merge_contact(self, candidate: Contact, source: str) -> MergeResult:
        result = resolve_contact(
            self._contacts,
            candidate,
            source,
            company_city_match=self.company_city_match,
            email_conflict_guard=self.email_conflict_guard,
        )
        return result.model_copy(deep=True)

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        return self._copy(self._contacts.get(contact_id))

    async def get_contacts(self, limit: int = 100) -> List[Contact]:
        contacts = sorted(self._contacts.all(), key=lambda c: c.created_at)
        return [self._copy(contact) for contact in contacts[:limit]]


class SupabaseStorage(Storage):
    """Supabase storage backend with retries and read/write circuit breakers"""

    JOBS_TABLE = "bulk_jobs"
    ITEMS_TABLE = "bulk_job_items"
    COMPANIES_TABLE = "companies"
    CONTACTS_TABLE = "contacts"

    def __init__(self, breakers: Optional[CircuitBreakerRegistry] = None):
        self.settings = get_settings()
        self._client: Optional[Client] = None
        self._connection_lock = asyncio.Lock()
        self.breakers = breakers or CircuitBreakerRegistry.from_settings(self.settings)

    async def get_client(self) -> Client:
        """Get or create the Supabase client"""
        if self._client is None:
            async with self._connection_lock:
                if self._client is None:
                    if not self.settings.supabase_url or not self.settings.supabase_service_role_key:
                        raise StorageError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
                    try:
                        self._client = create_client(
                            supabase_url=self.settings.supabase_url,
                            supabase_key=self.settings.supabase_service_role_key,
                        )
                        logger.info("Supabase client initialized successfully")
                    except Exception as e:
                        logger.error(f"Failed to initialize Supabase client: {e}")
                        raise StorageError(f"Failed to initialize Supabase client: {e}") from e
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(StorageError),
        reraise=True
    )
    async def _execute(self, kind: str, build_query) -> List[Dict[str, Any]]:
        """
        Run a query through the read or write circuit breaker

        Args:
            kind: "read" or "write"
            build_query: Callable receiving the client and returning a query builder

        Returns:
            Rows returned by Supabase
        """
        try:
            return await self.breakers.call(f"storage:{kind}", self._execute_impl, build_query)
        except CircuitOpenError:
            raise
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"Supabase {kind} failed: {e}")
            raise StorageError(f"Database {kind} failed: {e}") from e

    async def _execute_impl(self, build_query) -> List[Dict[str, Any]]:
        client = await self.get_client()
        query = build_query(client)
        # Run synchronous Supabase operation in thread pool to avoid blocking
        response = await asyncio.to_thread(query.execute)
        return response.data or []

    async def get_bulk_job(self, job_id: str) -> Optional[BulkJob]:
        rows = await self._execute(
            "read", lambda c: c.table(self.JOBS_TABLE).select("*").eq("id", job_id).limit(1)
        )
        return BulkJob(**rows[0]) if rows else None

    async def get_bulk_jobs(self, limit: int = 100, status: Optional[str] = None) -> List[BulkJob]:
        def build(c):
            query = c.table(self.JOBS_TABLE).select("*")
            if status:
                query = query.eq("status", status)
            return query.order("created_at", desc=True).limit(limit)

        rows = await self._execute("read", build)
        return [BulkJob(**row) for row in rows]

    async def create_bulk_job(self, job: BulkJob) -> BulkJob:
        data = job.model_dump(mode="json")
        rows = await self._execute("write", lambda c: c.table(self.JOBS_TABLE).insert(data))
        logger.info(f"Created bulk job {job.id} with {job.total_records} records")
        return BulkJob(**rows[0]) if rows else job

    async def create_bulk_job_items(self, items: List[BulkJobItem], batch_size: int = 500) -> List[BulkJobItem]:
        created = []
        for i in range(0, len(items), batch_size):
            batch = [item.model_dump(mode="json") for item in items[i:i + batch_size]]
            rows = await self._execute("write", lambda c, b=batch: c.table(self.ITEMS_TABLE).insert(b))
            created.extend(BulkJobItem(**row) for row in rows)
        logger.debug(f"Saved {len(items)} bulk job items")
        return created or items

    async def get_bulk_job_items(self, job_id: str) -> List[BulkJobItem]:
        rows = await self._execute(
            "read",
            lambda c: c.table(self.ITEMS_TABLE).select("*").eq("bulk_job_id", job_id).order("row_number"),
        )
        return [BulkJobItem(**row) for row in rows]

    async def update_bulk_job(self, job_id: str, **updates) -> Optional[BulkJob]:
        data = _to_json({**updates, "updated_at": utcnow()})
        rows = await self._execute(
            "write", lambda c: c.table(self.JOBS_TABLE).update(data).eq("id", job_id)
        )
        return BulkJob(**rows[0]) if rows else None

    async def update_bulk_job_item(self, item_id: str, **updates) -> Optional[BulkJobItem]:
        data = _to_json({**updates, "updated_at": utcnow()})
        rows = await self._execute(
            "write", lambda c: c.table(self.ITEMS_TABLE).update(data).eq("id", item_id)
        )
        return BulkJobItem(**rows[0]) if rows else None

    async def upsert_company(self, name: str, domain: Optional[str] = None) -> Company:
        domain = normalize_domain(domain)
        if domain:
            rows = await self._execute(
                "read", lambda c: c.table(self.COMPANIES_TABLE).select("*").eq("domain", domain).limit(1)
            )
        else:
            rows = await self._execute(
                "read",
                lambda c: c.table(self.COMPANIES_TABLE).select("*").is_("domain", "null").ilike("name", name).limit(1),
            )
        if rows:
            return Company(**rows[0])

        company = Company(name=name, domain=domain)
        data = company.model_dump(mode="json")
        rows = await self._execute("write", lambda c: c.table(self.COMPANIES_TABLE).insert(data))
        return Company(**rows[0]) if rows else company

    async def _candidate_contacts(self, candidate: Contact) -> List[Contact]:
        """Fetch every stored contact that shares a normalization key with the candidate"""
        found: Dict[str, Contact] = {}
        keys = [
            ("email_norm", candidate.email_norm),
            ("domain_norm", candidate.domain_norm),
            ("phone_norm", candidate.phone_norm),
        ]
        for column, value in keys:
            if not value:
                continue
            rows = await self._execute(
                "read",
                lambda c, col=column, val=value: c.table(self.CONTACTS_TABLE).select("*").eq(col, val).limit(25),
            )
            for row in rows:
                found.setdefault(row["id"], Contact(**row))

        if candidate.company_norm and candidate.city_norm:
            rows = await self._execute(
                "read",
                lambda c: c.table(self.CONTACTS_TABLE).select("*")
                .eq("company_norm", candidate.company_norm)
                .ilike("city_norm", candidate.city_norm)
                .limit(25),
            )
            for row in rows:
                found.setdefault(row["id"], Contact(**row))
        return list(found.values())

    async def merge_contact(self, candidate: Contact, source: str) -> MergeResult:
        index = ContactIndex(await self._candidate_contacts(candidate))
        result = resolve_contact(
            index,
            candidate,
            source,
            company_city_match=self.settings.merge_company_city_match,
            email_conflict_guard=self.settings.merge_email_conflict_guard,
        )
        data = result.contact.model_dump(mode="json")
        await self._execute(
            "write", lambda c: c.table(self.CONTACTS_TABLE).upsert(data, on_conflict="id")
        )
        return result

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        rows = await self._execute(
            "read", lambda c: c.table(self.CONTACTS_TABLE).select("*").eq("id", contact_id).limit(1)
        )
        return Contact(**rows[0]) if rows else None

    async def get_contacts(self, limit: int = 100) -> List[Contact]:
        rows = await self._execute(
            "read", lambda c: c.table(self.CONTACTS_TABLE).select("*").order("created_at").limit(limit)
        )
        return [Contact(**row) for row in rows]

    async def close(self):
        """Close database connections"""
        if self._client:
            # Supabase client has no explicit close, dropping the reference is enough
            self._client = None
            logger.info("Database client closed")


# Global storage instance - lazy loaded
_storage: Optional[Storage] = None


async def get_db_client(breakers: Optional[CircuitBreakerRegistry] = None) -> Storage:
    """Get the global storage backend selected by settings"""
    global _storage
    if _storage is None:
        settings = get_settings()
        if settings.use_supabase:
            _storage = SupabaseStorage(breakers=breakers)
            logger.info("Using Supabase storage backend")
        else:
            _storage = InMemoryStorage()
            logger.info("Using in-memory storage backend")
    return _storage


def set_db_client(storage: Optional[Storage]) -> None:
    """Replace the global storage backend"""
    global _storage
    _storage = storage
