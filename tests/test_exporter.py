"""
Tests for CSV export and export artifacts.
"""

import pytest

from exporter import (
    EXPORT_COLUMNS,
    ExportArtifacts,
    build_csv,
    build_export_row,
    escape_csv_field,
    export_job_csv,
    read_export_csv,
)
from models import BulkJobItem, ParsedRecord, ScrapeSource


def complete_item(**overrides) -> BulkJobItem:
    fields = dict(
        bulk_job_id="job-1",
        row_number=1,
        status="complete",
        parsed_data=ParsedRecord(lead_name="Jane Doe", email="jane@acme.com", website="acme.com"),
        enrichment_data={"company_name": "Acme, Inc.", "city": "Chicago", "state": "IL",
                         "industry": "Plumbing", "services": ["Plumbing", "Drain"]},
        scrape_sources=[ScrapeSource(url="https://acme.com", status_code=200, success=True)],
        personalization_bullets=["Specializes in Plumbing, Drain", "Serves the Chicago, IL area"],
        icebreaker='They said "call us" first',
        confidence_score=0.8,
        confidence_rationale="Website scraped successfully",
    )
    fields.update(overrides)
    return BulkJobItem(**fields)


@pytest.mark.unit
class TestEscaping:
    """RFC 4180 style quoting."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, ""),
            ("plain", "plain"),
            ("a,b", '"a,b"'),
            ('say "hi"', '"say ""hi"""'),
            ("line\nbreak", '"line\nbreak"'),
            (0.5, "0.5"),
        ],
    )
    def test_escape(self, value, expected):
        assert escape_csv_field(value) == expected


@pytest.mark.unit
class TestRows:
    """Row building and CSV rendering."""

    def test_row_prefers_record_then_enrichment(self):
        row = build_export_row(complete_item())

        assert row["company_name"] == "Acme, Inc."
        assert row["website"] == "acme.com"
        assert row["category"] == "Plumbing"
        assert row["services"] == "Plumbing; Drain"
        assert row["personalization_bullet_2"] == "Serves the Chicago, IL area"
        assert row["personalization_bullet_4"] == ""
        assert row["confidence_score"] == "0.80"
        assert row["scrape_url"] == "https://acme.com"
        assert row["scrape_status"] == "success"
        assert (row["first_name"], row["last_name"]) == ("Jane", "Doe")

    def test_scrape_status(self):
        assert build_export_row(complete_item(scrape_sources=[]))["scrape_status"] == "skipped"
        failed = [ScrapeSource(url="https://acme.com", status_code=500)]
        assert build_export_row(complete_item(scrape_sources=failed))["scrape_status"] == "failed"

    def test_only_complete_items(self):
        items = [
            complete_item(),
            complete_item(row_number=2, status="failed"),
            complete_item(row_number=3, status="pending"),
        ]
        text, count = build_csv(items)

        assert count == 1
        assert text.startswith(",".join(EXPORT_COLUMNS) + "\n")
        assert text.endswith("\n")

    def test_csv_reads_back(self):
        text, _ = build_csv([complete_item()])
        rows = read_export_csv(text)

        assert len(rows) == 1
        assert rows[0]["company_name"] == "Acme, Inc."
        assert rows[0]["icebreaker"] == 'They said "call us" first'

    async def test_export_job_csv(self, storage):
        from models import BulkJob
        job = await storage.create_bulk_job(BulkJob(name="Export"))
        await storage.create_bulk_job_items([complete_item(bulk_job_id=job.id)])

        text, count = await export_job_csv(storage, job.id)
        assert count == 1
        assert "jane@acme.com" in text


@pytest.mark.unit
class TestArtifacts:
    """Export files on disk."""

    def test_write_and_read(self, tmp_path):
        artifacts = ExportArtifacts(str(tmp_path / "out"))
        artifact = artifacts.write_export_artifact("a,b\n1,2\n", "job", "abc-123", row_count=1)

        assert artifact.filename.startswith("export-job-abc-123-")
        assert artifact.size == len("a,b\n1,2\n")
        assert artifacts.get_export_file(artifact.filename) == b"a,b\n1,2\n"

    def test_list_files(self, tmp_path):
        artifacts = ExportArtifacts(str(tmp_path))
        artifacts.write_export_artifact("x\n", "contacts")
        files = artifacts.list_export_files()

        assert len(files) == 1
        assert files[0].entity_type == "contacts"
        assert files[0].entity_id is None

    def test_unknown_entity_type(self, tmp_path):
        with pytest.raises(ValueError):
            ExportArtifacts(str(tmp_path)).write_export_artifact("x\n", "secrets")

    def test_rejects_bad_names(self, tmp_path):
        artifacts = ExportArtifacts(str(tmp_path))
        assert artifacts.get_export_file("../etc/passwd") is None
        assert artifacts.get_export_file("export-job-../../x-1.csv") is None
        assert artifacts.get_export_file("export-job-123.csv") is None

    def test_missing_directory_lists_nothing(self, tmp_path):
        assert ExportArtifacts(str(tmp_path / "missing")).list_export_files() == []
