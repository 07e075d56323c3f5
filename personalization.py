"""
Tiered outreach personalization built from extracted business intelligence
"""
from datetime import datetime
from typing import List, Optional

from models import BusinessIntelligence, ParsedRecord, PersonalizationResult, ScrapeResult

MAX_BULLETS = 4
RICH_CONTENT_MIN_CHARS = 100
ESTABLISHED_BEFORE_YEAR = 2010

SIGNAL_PHRASES = {
    "Family-owned business": "Family-owned and operated business",
    "Licensed and insured": "Fully licensed and insured",
    "Offers 24/7 service": "Provides 24/7 emergency services",
    "Award-winning": "Award-winning service in the community",
    "Offers free estimates": "Offers free estimates to customers",
    "Veteran-owned": "Veteran-owned business",
}


def determine_tier(scrape_result: ScrapeResult, intel: BusinessIntelligence) -> int:
    """
    How much real website content backs the personalization

    Returns:
        2 for rich content with extracted data, 1 for a successful scrape with
        at least one usable data point, 0 otherwise
    """
    if not scrape_result.success or not scrape_result.content:
        return 0

    has_extracted = bool(intel.services or intel.signals or intel.founded_year)
    if len(scrape_result.content.body_text) >= RICH_CONTENT_MIN_CHARS:
        return 2 if has_extracted else 1

    if has_extracted or intel.city or intel.company_name:
        return 1
    return 0


def _location(intel: BusinessIntelligence, record: ParsedRecord) -> str:
    parts = [intel.city or record.city, intel.state or record.state]
    return ", ".join(part for part in parts if part)


def _years_in_business(founded_year: Optional[int], current_year: int) -> Optional[int]:
    if not founded_year:
        return None
    years = current_year - founded_year
    if 0 < years < 200:
        return years
    return None


def build_bullets(intel: BusinessIntelligence, location: str, current_year: int) -> List[str]:
    bullets = []
    if intel.services:
        bullets.append(f"Specializes in {', '.join(intel.services[:3])}")
    if location:
        bullets.append(f"Serves the {location} area")
    years = _years_in_business(intel.founded_year, current_year)
    if years:
        bullets.append(f"{years}+ years of experience (since {intel.founded_year})")

    for signal in intel.signals:
        if len(bullets) >= MAX_BULLETS:
            break
        phrase = SIGNAL_PHRASES.get(signal)
        if phrase:
            bullets.append(phrase)
    return bullets[:MAX_BULLETS]


def build_icebreaker(
    intel: BusinessIntelligence,
    scrape_result: ScrapeResult,
    company_name: str,
    location: str,
    current_year: int,
) -> str:
    """First matching template wins; every template needs a company name"""
    if not company_name:
        return ""
    if intel.services and location:
        return (
            f"I was researching {intel.services[0].lower()} companies in {location} "
            f"and noticed {company_name}'s strong reputation in the area."
        )
    if intel.founded_year and intel.founded_year < ESTABLISHED_BEFORE_YEAR:
        years = current_year - intel.founded_year
        return (
            f"With {years}+ years serving your community, {company_name} has clearly built "
            f"something special. I'd love to discuss how we might help you grow even further."
        )
    if "Award-winning" in intel.signals:
        return (
            f"Congratulations on the recognition {company_name} has received. It's clear you're "
            f"committed to excellence, and I wanted to connect about a potential opportunity."
        )
    if location:
        return (
            f"I noticed {company_name} serves the {location} market and wanted to reach out "
            f"about an opportunity that might interest you."
        )
    if scrape_result.success:
        return (
            f"After reviewing {company_name}'s website, I was impressed by your services "
            f"and wanted to connect about a potential opportunity."
        )
    return ""


def generate_personalization(
    intel: BusinessIntelligence,
    scrape_result: ScrapeResult,
    record: ParsedRecord,
    current_year: Optional[int] = None,
) -> PersonalizationResult:
    """
    Generate outreach bullets and an icebreaker for one lead

    Tier 0 leads get no copy at all rather than a fabricated one.

    Args:
        intel: Extracted business intelligence
        scrape_result: Website scrape outcome
        record: Uploaded record
        current_year: Year used for years-in-business math, defaults to now

    Returns:
        PersonalizationResult
    """
    tier = determine_tier(scrape_result, intel)
    if tier == 0:
        return PersonalizationResult(bullets=[], icebreaker="", tier=0, is_generic=True)

    year = current_year or datetime.now().year
    company_name = intel.company_name or record.company or ""
    location = _location(intel, record)

    return PersonalizationResult(
        bullets=build_bullets(intel, location, year),
        icebreaker=build_icebreaker(intel, scrape_result, company_name, location, year),
        tier=tier,
        is_generic=False,
    )
