"""
Business intelligence extraction from scraped website content
"""
import re
from typing import List, Optional

from loguru import logger

from models import BusinessIntelligence, ContactInfo, ParsedRecord, ScrapeResult

MAX_SERVICES = 5
MAX_SIGNALS = 5
MIN_CITY_STATE_MATCHES = 3

SERVICE_KEYWORDS = [
    "hvac", "heating", "cooling", "air conditioning", "furnace", "ventilation",
    "roofing", "roof repair", "roof installation", "shingles", "gutters",
    "plumbing", "pipe", "drain", "water heater",
    "electrical", "wiring", "lighting", "panel",
    "construction", "remodeling", "renovation", "building",
    "landscaping", "lawn care", "tree service",
    "painting", "drywall", "flooring",
    "pest control", "exterminator",
    "cleaning", "janitorial", "maid service",
    "moving", "storage", "hauling",
    "auto repair", "mechanic", "body shop",
    "dental", "dentist", "orthodontic",
    "medical", "clinic", "healthcare",
    "legal", "law firm", "attorney",
    "accounting", "tax", "bookkeeping",
    "insurance", "real estate", "mortgage",
    "restaurant", "catering", "food service",
    "retail", "wholesale", "distribution",
    "manufacturing", "fabrication",
    "technology", "software", "it services",
    "marketing", "advertising", "seo",
    "consulting", "coaching", "training",
]

SIGNAL_PATTERNS = [
    (re.compile(r"family[- ]owned|family business", re.I), "Family-owned business"),
    (re.compile(r"since \d{4}|established \d{4}|founded \d{4}", re.I), "Established business"),
    (re.compile(r"free (estimate|quote|consultation)", re.I), "Offers free estimates"),
    (re.compile(r"24[/-]?7|emergency", re.I), "Offers 24/7 service"),
    (re.compile(r"licensed|insured|bonded", re.I), "Licensed and insured"),
    (re.compile(r"certified|certification", re.I), "Has certifications"),
    (re.compile(r"award|winner|best of", re.I), "Award-winning"),
    (re.compile(r"financing|payment plan", re.I), "Offers financing"),
    (re.compile(r"warranty|guarantee", re.I), "Provides warranties"),
    (re.compile(r"serving .* (county|area|region)", re.I), "Serves regional area"),
    (re.compile(r"years? (of )?experience", re.I), "Experienced team"),
    (re.compile(r"satisfaction guarantee", re.I), "Satisfaction guaranteed"),
    (re.compile(r"same[- ]day|next[- ]day", re.I), "Fast service available"),
    (re.compile(r"veteran[- ]owned", re.I), "Veteran-owned"),
    (re.compile(r"woman[- ]owned|women[- ]owned", re.I), "Woman-owned"),
    (re.compile(r"locally owned|local business", re.I), "Locally owned"),
]

# Checked in order, first industry whose services were found wins
INDUSTRY_RULES = [
    ("HVAC", {"Hvac", "Heating", "Cooling", "Air conditioning"}),
    ("Roofing", {"Roofing", "Roof repair", "Roof installation"}),
    ("Plumbing", {"Plumbing", "Pipe", "Drain"}),
    ("Electrical", {"Electrical", "Wiring", "Lighting"}),
    ("Dental", {"Dental", "Dentist"}),
    ("Legal", {"Legal", "Law firm", "Attorney"}),
]
DEFAULT_INDUSTRY = "Home Services"

CITY_STATE_PATTERN = re.compile(r"\b([A-Z][a-z]+(?:\s[A-Z][a-z]+)?),?\s*([A-Z]{2})\b")
PHONE_PATTERN = re.compile(r"(?:\+1[- ]?)?(?:\(?\d{3}\)?[- ]?\d{3}[- ]?\d{4})")
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
YEAR_PATTERN = re.compile(r"(?:since|established|founded|serving since)\s*(\d{4})", re.I)
TITLE_SEPARATORS = re.compile(r"[|\-–—]")


def _format_service(keyword: str) -> str:
    return keyword[:1].upper() + keyword[1:]


def find_services(text: str) -> List[str]:
    """Vocabulary services mentioned in lower-cased text"""
    services = []
    for keyword in SERVICE_KEYWORDS:
        if keyword in text:
            service = _format_service(keyword)
            if service not in services:
                services.append(service)
    return services[:MAX_SERVICES]


def find_signals(text: str) -> List[str]:
    signals = []
    for pattern, signal in SIGNAL_PATTERNS:
        if pattern.search(text) and signal not in signals:
            signals.append(signal)
    return signals[:MAX_SIGNALS]


def infer_industry(services: List[str]) -> Optional[str]:
    for industry, keywords in INDUSTRY_RULES:
        if any(service in keywords for service in services):
            return industry
    return DEFAULT_INDUSTRY if services else None


def _company_from_title(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    first = TITLE_SEPARATORS.split(title)[0].strip()
    return first or None


def _business_email(body_text: str) -> Optional[str]:
    for email in EMAIL_PATTERN.findall(body_text):
        lowered = email.lower()
        if "example" not in lowered and "test" not in lowered:
            return email
    return None


def _defaults(record: ParsedRecord) -> BusinessIntelligence:
    return BusinessIntelligence(
        company_name=record.company,
        city=record.city,
        state=record.state,
    )


def extract_business_intelligence(scrape_result: ScrapeResult, record: ParsedRecord) -> BusinessIntelligence:
    """
    Derive services, trust signals, industry and contact details from a scrape

    Input values seed the result, so a failed scrape yields only what the
    upload already said. Never raises.

    Args:
        scrape_result: Website scrape outcome
        record: Uploaded record

    Returns:
        BusinessIntelligence for the lead
    """
    intel = _defaults(record)
    if not scrape_result.success or not scrape_result.content:
        return intel

    try:
        content = scrape_result.content
        body_text = content.body_text or ""
        all_text = " ".join(
            [content.title or "", content.description or "", *content.headings, body_text]
        ).lower()

        if not intel.company_name:
            intel.company_name = _company_from_title(content.title)

        if not intel.city:
            matches = list(CITY_STATE_PATTERN.finditer(body_text))
            if len(matches) >= MIN_CITY_STATE_MATCHES:
                intel.city = matches[0].group(1)
                intel.state = matches[0].group(2)

        intel.services = find_services(all_text)
        intel.signals = find_signals(all_text)
        intel.industry = infer_industry(intel.services)

        year_match = YEAR_PATTERN.search(body_text)
        if year_match:
            intel.founded_year = int(year_match.group(1))

        phone_match = PHONE_PATTERN.search(body_text)
        intel.contact_info = ContactInfo(
            phone=phone_match.group(0) if phone_match else None,
            email=_business_email(body_text),
        )
    except Exception as e:
        logger.warning(f"Business intelligence extraction failed for {scrape_result.url}: {e}")
        return _defaults(record)

    return intel
