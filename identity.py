"""
Identity resolution and no-loss contact merging

Stored contacts are matched by normalization key in priority order
email -> domain -> phone, with an optional weak company+city tier for records
that carry neither an email nor a phone. Domain and phone matches between two
different emails are skipped unless the guard is turned off. Merges only ever
fill empty fields.
"""
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from models import Contact, MergeResult, ParsedRecord, utcnow
from normalize import (
    normalize_city,
    normalize_contact_fields,
    normalize_email,
    normalize_phone_e164,
    normalize_website_url,
)
from scoring import calculate_data_quality_score

MATCH_EMAIL = "email"
MATCH_DOMAIN = "domain"
MATCH_PHONE = "phone"
MATCH_COMPANY_CITY = "company_city"


def _is_empty(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def split_lead_name(lead_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split "Jane Q Doe" into ("Jane", "Q Doe")"""
    if not lead_name or not lead_name.strip():
        return None, None
    parts = lead_name.strip().split()
    first = parts[0]
    last = " ".join(parts[1:]) or None
    return first, last


def refresh_keys(contact: Contact) -> Contact:
    """Recompute normalization keys and quality score after any write"""
    keys = normalize_contact_fields(
        email=contact.email,
        website=contact.website,
        phone=contact.phone,
        city=contact.city,
        company=contact.company_name,
    )
    return contact.model_copy(update={
        **keys.model_dump(),
        "data_quality_score": calculate_data_quality_score(contact),
    })


def build_candidate(record: ParsedRecord, company_id: Optional[str] = None) -> Contact:
    """
    Build an unsaved contact from an uploaded record

    Args:
        record: Parsed upload record
        company_id: Company the contact belongs to, if already upserted

    Returns:
        Contact with display values cleaned and keys computed
    """
    first_name, last_name = record.first_name, record.last_name
    if not first_name and not last_name:
        first_name, last_name = split_lead_name(record.lead_name)

    candidate = Contact(
        email=normalize_email(record.email) or record.email,
        phone=normalize_phone_e164(record.phone) or record.phone,
        first_name=first_name,
        last_name=last_name,
        title=record.title,
        company_name=record.company,
        company_id=company_id,
        website=normalize_website_url(record.website_url()),
        linkedin_url=record.linkedin_url,
        city=normalize_city(record.city),
        state=record.state,
        address=record.address,
        category=record.category,
    )
    return refresh_keys(candidate)


def fill_missing(existing: Contact, incoming: Contact, fields: Iterable[str]) -> Tuple[Contact, List[str]]:
    """Copy incoming values into fields that are empty on the existing contact"""
    updates = {}
    for field in fields:
        new_value = getattr(incoming, field)
        if _is_empty(getattr(existing, field)) and not _is_empty(new_value):
            updates[field] = new_value
    return existing.model_copy(update=updates), list(updates)


def apply_no_loss_merge(
    existing: Contact,
    candidate: Contact,
    source: str,
    matched_by: str,
) -> Tuple[Contact, List[str]]:
    """
    Merge a candidate into an existing contact without losing data

    Args:
        existing: Stored contact
        candidate: Incoming contact
        source: Import channel touching the contact
        matched_by: Match tier that selected the existing contact

    Returns:
        Tuple of (merged contact, names of fields that were filled)
    """
    fields = Contact.LOCATION_FIELDS if matched_by == MATCH_COMPANY_CITY else Contact.MERGEABLE_FIELDS
    merged, fields_updated = fill_missing(existing, candidate, fields)

    sources = list(merged.sources)
    if source and source not in sources:
        sources.append(source)
    merged = merged.model_copy(update={"sources": sources, "last_seen_at": utcnow()})
    return refresh_keys(merged), fields_updated


def _emails_conflict(existing: Contact, candidate: Contact) -> bool:
    return bool(
        existing.email_norm
        and candidate.email_norm
        and existing.email_norm != candidate.email_norm
    )


class ContactIndex:
    """Lookup of stored contacts by normalization key"""

    def __init__(self, contacts: Iterable[Contact] = ()):
        self._by_id: Dict[str, Contact] = {}
        self._by_email: Dict[str, str] = {}
        self._by_domain: Dict[str, List[str]] = {}
        self._by_phone: Dict[str, List[str]] = {}
        for contact in contacts:
            self.add(contact)

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, contact_id: str) -> Optional[Contact]:
        return self._by_id.get(contact_id)

    def all(self) -> List[Contact]:
        return list(self._by_id.values())

    def add(self, contact: Contact) -> None:
        if contact.id in self._by_id:
            self.remove(contact.id)
        self._by_id[contact.id] = contact
        if contact.email_norm:
            self._by_email.setdefault(contact.email_norm, contact.id)
        if contact.domain_norm:
            self._by_domain.setdefault(contact.domain_norm, []).append(contact.id)
        if contact.phone_norm:
            self._by_phone.setdefault(contact.phone_norm, []).append(contact.id)

    def remove(self, contact_id: str) -> None:
        contact = self._by_id.pop(contact_id, None)
        if contact is None:
            return
        if contact.email_norm and self._by_email.get(contact.email_norm) == contact_id:
            del self._by_email[contact.email_norm]
        for key, bucket in ((contact.domain_norm, self._by_domain), (contact.phone_norm, self._by_phone)):
            if key and contact_id in bucket.get(key, []):
                bucket[key].remove(contact_id)
                if not bucket[key]:
                    del bucket[key]

    def _first_compatible(self, ids: List[str], candidate: Contact, email_conflict_guard: bool) -> Optional[Contact]:
        for contact_id in ids:
            contact = self._by_id[contact_id]
            if not email_conflict_guard or not _emails_conflict(contact, candidate):
                return contact
        return None

    def find_match(
        self,
        candidate: Contact,
        company_city_match: bool = True,
        email_conflict_guard: bool = True,
    ) -> Tuple[Optional[Contact], Optional[str]]:
        """
        Find the stored contact a candidate resolves to

        Args:
            candidate: Contact with normalization keys computed
            company_city_match: Whether the weak company+city tier is enabled
            email_conflict_guard: Skip domain and phone matches whose emails differ

        Returns:
            Tuple of (matched contact or None, match tier or None)
        """
        if candidate.email_norm and candidate.email_norm in self._by_email:
            return self._by_id[self._by_email[candidate.email_norm]], MATCH_EMAIL

        if candidate.domain_norm:
            match = self._first_compatible(
                self._by_domain.get(candidate.domain_norm, []), candidate, email_conflict_guard
            )
            if match:
                return match, MATCH_DOMAIN

        if candidate.phone_norm:
            match = self._first_compatible(
                self._by_phone.get(candidate.phone_norm, []), candidate, email_conflict_guard
            )
            if match:
                return match, MATCH_PHONE

        if (
            company_city_match
            and not candidate.email_norm
            and not candidate.phone_norm
            and candidate.company_norm
            and candidate.city_norm
        ):
            city_key = candidate.city_norm.lower()
            for contact in self._by_id.values():
                if (
                    contact.company_norm == candidate.company_norm
                    and contact.city_norm
                    and contact.city_norm.lower() == city_key
                ):
                    return contact, MATCH_COMPANY_CITY

        return None, None


def resolve_contact(
    index: ContactIndex,
    candidate: Contact,
    source: str,
    company_city_match: bool = True,
    email_conflict_guard: bool = True,
) -> MergeResult:
    """
    Merge a candidate into the index or create a new contact

    Args:
        index: Stored contacts
        candidate: Incoming contact
        source: Import channel, added to the contact's source set
        company_city_match: Whether the weak company+city tier is enabled
        email_conflict_guard: Skip domain and phone matches whose emails differ

    Returns:
        MergeResult describing what happened
    """
    candidate = refresh_keys(candidate)
    existing, matched_by = index.find_match(
        candidate,
        company_city_match=company_city_match,
        email_conflict_guard=email_conflict_guard,
    )

    if existing is None:
        created = candidate.model_copy(update={
            "sources": [source] if source else [],
            "last_seen_at": utcnow(),
        })
        index.add(created)
        logger.debug(f"Created contact {created.id}")
        return MergeResult(contact=created, is_new=True)

    merged, fields_updated = apply_no_loss_merge(existing, candidate, source, matched_by)
    index.add(merged)
    logger.debug(
        f"Merged into contact {merged.id} by {matched_by}, filled {fields_updated or 'nothing'}"
    )
    return MergeResult(
        contact=merged,
        is_new=False,
        matched_by=matched_by,
        fields_updated=fields_updated,
    )
