"""
Tests for confidence and data quality scoring.
"""

import pytest

from models import BusinessIntelligence, Contact, ParsedRecord, ScrapeResult
from scoring import THIN_RECORD, calculate_confidence_score, calculate_data_quality_score

from conftest import make_scrape_result


@pytest.mark.unit
class TestDataQualityScore:
    """Weighted field presence."""

    def test_full_record_caps_at_100(self):
        record = ParsedRecord(email="a@acme.com", phone="+12125551234", first_name="Ann",
                              last_name="Lee", company="Acme", title="CEO",
                              linkedin_url="https://linkedin.com/in/ann")
        assert calculate_data_quality_score(record) == 100

    def test_empty_record_scores_zero(self):
        assert calculate_data_quality_score(ParsedRecord()) == 0

    def test_contact_company_name_counts_as_company(self):
        assert calculate_data_quality_score(Contact(company_name="Acme")) == 10

    def test_dict_records(self):
        assert calculate_data_quality_score({"email": "a@acme.com", "title": "  "}) == 30


@pytest.mark.unit
class TestConfidenceScore:
    """Confidence reflects real enrichment, not input echoes."""

    def test_input_only_record_is_thin(self):
        record = ParsedRecord(company="Acme", city="Chicago", email="a@acme.com", phone="2125551234")
        intel = BusinessIntelligence(company_name="Acme", city="Chicago")
        result = calculate_confidence_score(ScrapeResult(url="", success=False), intel, record)

        assert result.rationale == THIN_RECORD
        assert result.score == 0.3

    def test_rich_enrichment(self):
        scrape = make_scrape_result(body_text="x" * 600)
        scrape.content.description = "Plumbers"
        intel = BusinessIntelligence(company_name="Acme", city="Chicago",
                                     services=["Plumbing", "Drain cleaning"],
                                     signals=["Family-owned business", "Licensed and insured"])
        result = calculate_confidence_score(scrape, intel, ParsedRecord(email="a@acme.com", phone="2125551234"))

        assert result.score == 1.0
        assert "Website scraped successfully" in result.factors
        assert "2 services identified" in result.factors
        assert result.rationale.startswith("Website scraped successfully; Rich website content")

    def test_single_signal_without_scrape_is_enrichment(self):
        intel = BusinessIntelligence(signals=["Award-winning"])
        result = calculate_confidence_score(ScrapeResult(url="x"), intel, ParsedRecord())
        assert result.rationale == "Business signal found"
        assert result.score == 0.05

    def test_thin_content(self):
        result = calculate_confidence_score(make_scrape_result(body_text="y" * 80, title=""),
                                            BusinessIntelligence(), ParsedRecord())
        assert result.score == 0.35
        assert "Thin website content" in result.factors
