"""
Pydantic models for the Lead Enrichment Service
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

JOB_STATUSES = ["pending", "processing", "complete", "failed"]
ITEM_STATUSES = ["pending", "processing", "complete", "failed"]
SOURCE_FORMATS = ["csv", "json", "xlsx", "email_list"]


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class ParsedRecord(BaseModel):
    """One uploaded record mapped onto the recognized canonical fields"""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    lead_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    company: Optional[str] = None
    company_domain: Optional[str] = None
    website: Optional[str] = None
    linkedin_url: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    address: Optional[str] = None
    category: Optional[str] = None
    extra: Dict[str, str] = Field(default_factory=dict)

    CANONICAL_FIELDS: ClassVar[List[str]] = [
        "first_name", "last_name", "lead_name", "email", "phone", "title",
        "company", "company_domain", "website", "linkedin_url", "city",
        "state", "address", "category",
    ]

    def has_identifier(self) -> bool:
        """A record is usable when it carries at least one way to find the lead"""
        return bool(
            self.email
            or self.phone
            or self.linkedin_url
            or self.website
            or self.company_domain
            or (self.company and self.city)
        )

    def website_url(self) -> Optional[str]:
        return self.company_domain or self.website

    def display_name(self) -> Optional[str]:
        full = " ".join(part for part in [self.first_name, self.last_name] if part)
        return full or self.lead_name


class NormalizedContact(BaseModel):
    """Comparison keys derived from a contact, recomputed on every write"""
    email_norm: Optional[str] = None
    phone_norm: Optional[str] = None
    domain_norm: Optional[str] = None
    city_norm: Optional[str] = None
    company_norm: Optional[str] = None
    source_hash: str


class Contact(BaseModel):
    """Durable identity record for a person or business"""
    id: str = Field(default_factory=new_id)
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    title: Optional[str] = None
    company_name: Optional[str] = None
    company_id: Optional[str] = None
    website: Optional[str] = None
    linkedin_url: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    address: Optional[str] = None
    category: Optional[str] = None
    sources: List[str] = Field(default_factory=list)

    # Normalization keys
    email_norm: Optional[str] = None
    phone_norm: Optional[str] = None
    domain_norm: Optional[str] = None
    city_norm: Optional[str] = None
    company_norm: Optional[str] = None
    source_hash: Optional[str] = None

    data_quality_score: int = Field(default=0, ge=0, le=100)
    last_seen_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

    MERGEABLE_FIELDS: ClassVar[List[str]] = [
        "email", "phone", "first_name", "last_name", "title", "company_name",
        "company_id", "website", "linkedin_url", "city", "state", "address",
        "category",
    ]
    LOCATION_FIELDS: ClassVar[List[str]] = ["company_name", "company_id", "city", "state", "address"]


class Company(BaseModel):
    """Company record, upserted by domain"""
    id: str = Field(default_factory=new_id)
    name: str
    domain: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class BulkJob(BaseModel):
    """One import batch"""
    id: str = Field(default_factory=new_id)
    name: str = "Bulk import"
    source_format: str = "csv"
    status: str = "pending"
    total_records: int = 0
    successful: int = 0
    failed: int = 0
    duplicates_found: int = 0
    progress: int = Field(default=0, ge=0, le=100)
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in JOB_STATUSES:
            raise ValueError(f"Status must be one of {JOB_STATUSES}")
        return v

    @field_validator("source_format")
    @classmethod
    def validate_source_format(cls, v):
        if v not in SOURCE_FORMATS:
            raise ValueError(f"Source format must be one of {SOURCE_FORMATS}")
        return v


class ScrapeSource(BaseModel):
    """One fetch attempt in a scrape's attempt log"""
    url: str
    status_code: int = 0
    success: bool = False
    error: Optional[str] = None
    redirected_to: Optional[str] = None


class ScrapeContent(BaseModel):
    """Reduced page content"""
    title: Optional[str] = None
    description: Optional[str] = None
    headings: List[str] = Field(default_factory=list)
    body_text: str = ""
    links: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)


class ScrapeResult(BaseModel):
    """Outcome of scraping one website"""
    url: str
    success: bool = False
    sources: List[ScrapeSource] = Field(default_factory=list)
    content: Optional[ScrapeContent] = None
    error: Optional[str] = None

    def body_text(self) -> str:
        return self.content.body_text if self.content else ""


class BulkJobItem(BaseModel):
    """One record within a bulk job"""
    id: str = Field(default_factory=new_id)
    bulk_job_id: str
    row_number: int
    status: str = "pending"
    retry_count: int = 0
    last_error: Optional[str] = None
    parsed_data: ParsedRecord = Field(default_factory=ParsedRecord)

    contact_id: Optional[str] = None
    company_id: Optional[str] = None
    matched_contact_id: Optional[str] = None

    # Enrichment outputs
    enrichment_data: Dict[str, Any] = Field(default_factory=dict)
    scrape_sources: List[ScrapeSource] = Field(default_factory=list)
    personalization_bullets: List[str] = Field(default_factory=list)
    icebreaker: Optional[str] = None
    confidence_score: Optional[float] = None
    confidence_rationale: Optional[str] = None
    fit_score: Optional[int] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in ITEM_STATUSES:
            raise ValueError(f"Status must be one of {ITEM_STATUSES}")
        return v


class ContactInfo(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None


class BusinessIntelligence(BaseModel):
    """Signals derived from a scraped website"""
    company_name: Optional[str] = None
    services: List[str] = Field(default_factory=list)
    signals: List[str] = Field(default_factory=list)
    industry: Optional[str] = None
    founded_year: Optional[int] = None
    city: Optional[str] = None
    state: Optional[str] = None
    contact_info: ContactInfo = Field(default_factory=ContactInfo)


class PersonalizationResult(BaseModel):
    """Outreach copy generated for one lead"""
    bullets: List[str] = Field(default_factory=list)
    icebreaker: str = ""
    tier: int = Field(default=0, ge=0, le=2)
    is_generic: bool = True


class ConfidenceResult(BaseModel):
    score: float = Field(..., ge=0.0, le=1.0)
    rationale: str
    factors: List[str] = Field(default_factory=list)


class MergeResult(BaseModel):
    """Outcome of resolving a candidate contact against stored contacts"""
    contact: Contact
    is_new: bool
    matched_by: Optional[str] = None  # email, domain, phone, company_city
    fields_updated: List[str] = Field(default_factory=list)


class DomainAttempt(BaseModel):
    domain: str
    success: bool
    error: Optional[str] = None


class DomainDiscoveryResult(BaseModel):
    domain: Optional[str] = None
    source: str = "none"  # input, guessed, none
    verified: bool = False
    attempts: List[DomainAttempt] = Field(default_factory=list)


class ErrorKind(str, Enum):
    """Failure categories for item processing"""
    VALIDATION = "validation"
    NETWORK = "network"
    DATABASE = "database"
    AUTH = "auth"
    UNKNOWN = "unknown"


class EnrichmentError(BaseModel):
    kind: ErrorKind = ErrorKind.UNKNOWN
    message: str

    @property
    def recoverable(self) -> bool:
        return self.kind not in (ErrorKind.VALIDATION, ErrorKind.AUTH)


class ItemOutcome(BaseModel):
    """Result of one pipeline run for one item"""
    success: bool
    is_duplicate: bool = False
    error: Optional[EnrichmentError] = None

    @classmethod
    def ok(cls, is_duplicate: bool = False) -> "ItemOutcome":
        return cls(success=True, is_duplicate=is_duplicate)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> "ItemOutcome":
        return cls(success=False, error=EnrichmentError(kind=kind, message=message))


class ProcessorHealth(BaseModel):
    healthy: bool
    pending_jobs: int = 0
    processing_jobs: int = 0
    stale_jobs: int = 0


class ImportRecordError(BaseModel):
    """Validation problem with one uploaded row"""
    row: int
    field: Optional[str] = None
    message: str
    value: Optional[str] = None


class ImportStats(BaseModel):
    total: int = 0
    valid: int = 0
    invalid: int = 0
    duplicates_merged: int = 0
    error_rate: float = 0.0


class ImportResult(BaseModel):
    """Parsed upload ready to become a bulk job"""
    success: bool
    source_format: str = "csv"
    records: List[ParsedRecord] = Field(default_factory=list)
    errors: List[ImportRecordError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    stats: ImportStats = Field(default_factory=ImportStats)
