"""
Tests for the typer CLI.

Records carry no website, so processing never reaches the network.
"""

import json

import pytest
from typer.testing import CliRunner

import database
from database import InMemoryStorage
from main import app

from conftest import write_workbook

runner = CliRunner()


@pytest.fixture
def memory_storage():
    storage = InMemoryStorage()
    database.set_db_client(storage)
    return storage


def json_output(output: str) -> dict:
    for line in output.splitlines():
        if line.startswith("JSON_OUTPUT: "):
            return json.loads(line[len("JSON_OUTPUT: "):])
    raise AssertionError(f"No JSON output in: {output}")


@pytest.fixture
def leads_file(tmp_path):
    path = tmp_path / "leads.csv"
    path.write_text("Email,Company\na@acme.com,Acme\nb@beta.com,Beta\n", encoding="utf-8")
    return path


@pytest.mark.integration
class TestImportAndProcess:
    """import-file, process-job, job-status and export-job."""

    def test_import_without_processing(self, memory_storage, leads_file):
        result = runner.invoke(app, ["import-file", str(leads_file), "--no-process"])

        assert result.exit_code == 0, result.output
        payload = json_output(result.output)
        assert payload["status"] == "pending"
        assert payload["total_records"] == 2

    def test_import_and_process(self, memory_storage, leads_file):
        result = runner.invoke(app, ["import-file", str(leads_file), "--name", "Leads"])

        assert result.exit_code == 0, result.output
        payload = json_output(result.output)
        assert payload["status"] == "complete"
        assert payload["successful"] == 2

    def test_process_then_export(self, memory_storage, leads_file, tmp_path):
        job_id = json_output(runner.invoke(app, ["import-file", str(leads_file), "--no-process"]).output)["job_id"]

        processed = runner.invoke(app, ["process-job", job_id])
        assert processed.exit_code == 0, processed.output
        assert f"Job {job_id}: complete" in processed.output

        status = runner.invoke(app, ["job-status", job_id])
        assert json_output(status.output)["successful"] == 2

        out = tmp_path / "out.csv"
        exported = runner.invoke(app, ["export-job", job_id, "--output", str(out), "--artifact"])
        assert exported.exit_code == 0, exported.output
        lines = out.read_text(encoding="utf-8").splitlines()
        assert lines[0].startswith("company_name,")
        assert len(lines) == 3

    def test_import_xlsx(self, memory_storage, tmp_path):
        path = write_workbook(tmp_path / "leads.xlsx", [
            ["Email", "Company", "City"],
            ["a@acme.com", "Acme", "Chicago"],
            ["b@beta.com", "Beta", "Austin"],
        ])
        result = runner.invoke(app, ["import-file", str(path), "--no-process"])

        assert result.exit_code == 0, result.output
        payload = json_output(result.output)
        assert payload["total_records"] == 2

    def test_no_valid_records(self, memory_storage, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("Notes\nhello\n", encoding="utf-8")

        result = runner.invoke(app, ["import-file", str(path)])
        assert result.exit_code == 1

    def test_unknown_job(self, memory_storage):
        assert runner.invoke(app, ["job-status", "missing"]).exit_code == 1
        assert runner.invoke(app, ["process-job", "missing"]).exit_code == 1
        assert runner.invoke(app, ["export-job", "missing"]).exit_code == 1


@pytest.mark.integration
class TestOperations:
    """health and recover."""

    def test_health(self, memory_storage):
        result = runner.invoke(app, ["health"])
        assert result.exit_code == 0
        assert '"status": "healthy"' in result.output

    def test_recover(self, memory_storage):
        result = runner.invoke(app, ["recover"])
        assert result.exit_code == 0
        assert "Recovered 0 stale job(s)" in result.output
