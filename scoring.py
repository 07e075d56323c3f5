"""
Confidence and data quality scoring
"""
from typing import Any, Dict

from models import BusinessIntelligence, ConfidenceResult, ParsedRecord, ScrapeResult

THIN_RECORD = "thin_record"

DATA_QUALITY_WEIGHTS: Dict[str, int] = {
    "email": 30,
    "phone": 20,
    "first_name": 15,
    "last_name": 15,
    "company": 10,
    "title": 5,
    "linkedin_url": 5,
}

# Field aliases so contacts and parsed records score the same way
_FIELD_ALIASES = {"company": ("company", "company_name")}


def _field_value(record: Any, field: str):
    for name in _FIELD_ALIASES.get(field, (field,)):
        if isinstance(record, dict):
            value = record.get(name)
        else:
            value = getattr(record, name, None)
        if value:
            return value
    return None


def calculate_data_quality_score(record: Any) -> int:
    """
    Weighted field-presence score used for operational triage

    Args:
        record: ParsedRecord, Contact or plain dict

    Returns:
        Score between 0 and 100
    """
    score = 0
    for field, weight in DATA_QUALITY_WEIGHTS.items():
        value = _field_value(record, field)
        if isinstance(value, str) and value.strip():
            score += weight
    return min(score, 100)


def calculate_confidence_score(
    scrape_result: ScrapeResult,
    intel: BusinessIntelligence,
    record: ParsedRecord,
) -> ConfidenceResult:
    """
    Score how much of a lead's profile is backed by real enrichment

    Input-derived fields (company name, location, email, phone) add points
    but never count as enrichment on their own. When nothing was learned from
    the website the rationale is the literal "thin_record".

    Args:
        scrape_result: Website scrape outcome
        intel: Extracted business intelligence
        record: Uploaded record

    Returns:
        ConfidenceResult with a score in [0, 1] rounded to 2 decimals
    """
    score = 0.0
    factors = []
    has_enrichment = False

    if scrape_result.success and scrape_result.content:
        content = scrape_result.content
        score += 0.3
        factors.append("Website scraped successfully")
        has_enrichment = True

        if content.title:
            score += 0.05
        if content.description:
            score += 0.05
        if len(content.body_text) > 500:
            score += 0.1
            factors.append("Rich website content")
        elif len(content.body_text) > 50:
            score += 0.05
            factors.append("Thin website content")

    if intel.company_name:
        score += 0.1
    if intel.city or intel.state:
        score += 0.1

    if intel.services:
        score += 0.1
        factors.append(f"{len(intel.services)} services identified")
        has_enrichment = True

    if len(intel.signals) >= 2:
        score += 0.1
        factors.append("Multiple business signals found")
        has_enrichment = True
    elif len(intel.signals) == 1:
        score += 0.05
        factors.append("Business signal found")
        has_enrichment = True

    if record.email:
        score += 0.05
    if record.phone:
        score += 0.05

    score = round(min(max(score, 0.0), 1.0), 2)
    rationale = "; ".join(factors) if has_enrichment else THIN_RECORD
    return ConfidenceResult(score=score, rationale=rationale, factors=factors)
