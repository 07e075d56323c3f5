import os
import sys
from typing import Dict, List, Optional

import pytest
from openpyxl import Workbook

# Ensure project root on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from config import reload_settings  # noqa: E402
from models import ScrapeContent, ScrapeResult, ScrapeSource  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    # Offline, in-memory and quiet on disk
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("LOG_FILE_ENABLED", "false")
    monkeypatch.setenv("EXPORTS_DIR", str(tmp_path / "exports"))
    monkeypatch.setenv("DOMAIN_DISCOVERY_ENABLED", "false")
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
    reload_settings()

    import database
    database.set_db_client(None)
    yield
    database.set_db_client(None)
    reload_settings()


SAMPLE_HTML = """
<html>
  <head>
    <title>Acme Plumbing | Chicago Plumbers</title>
    <meta name="description" content="Family-owned plumbing and drain cleaning since 1985.">
    <meta property="og:title" content="Acme Plumbing">
  </head>
  <body>
    <nav><a href="/nav-only">Menu</a></nav>
    <h1>Acme Plumbing</h1>
    <h2>Our Services</h2>
    <p>We are a family-owned business, licensed and insured, serving Chicago, IL since 1985.
       We offer plumbing repair, drain cleaning and water heater installation with free estimates.
       Call (312) 555-0199 or email info@acmeplumbing.com for 24/7 emergency service.</p>
    <a href="/about">About</a>
    <a href="https://example.org/partner">Partner</a>
    <a href="#top">Top</a>
    <script>var tracking = true;</script>
    <footer>Footer text</footer>
  </body>
</html>
"""


def make_scrape_result(url: str = "https://acmeplumbing.com", body_text: Optional[str] = None,
                       title: str = "Acme Plumbing", success: bool = True) -> ScrapeResult:
    if not success:
        return ScrapeResult(
            url=url,
            success=False,
            error="HTTP 500: Internal Server Error",
            sources=[ScrapeSource(url=url, status_code=500, success=False, error="HTTP 500: Internal Server Error")],
        )
    text = body_text if body_text is not None else (
        "Acme Plumbing is a family-owned business, licensed and insured, serving Chicago, IL "
        "since 1985. We offer plumbing repair, drain cleaning and water heater installation."
    )
    return ScrapeResult(
        url=url,
        success=True,
        sources=[ScrapeSource(url=url, status_code=200, success=True)],
        content=ScrapeContent(title=title, body_text=text),
    )


class FakeScraper:
    """Scraper double returning canned results per URL"""

    def __init__(self, results: Optional[Dict[str, ScrapeResult]] = None,
                 fail_urls: Optional[List[str]] = None, default: Optional[ScrapeResult] = None):
        self.results = results or {}
        self.fail_urls = set(fail_urls or [])
        self.default = default
        self.calls: List[str] = []

    async def scrape_website(self, url: str) -> ScrapeResult:
        self.calls.append(url)
        if url in self.fail_urls:
            raise ConnectionError(f"network unreachable for {url}")
        if url in self.results:
            return self.results[url]
        if self.default is not None:
            return self.default.model_copy(update={"url": url})
        return make_scrape_result(url)

    async def close(self):
        pass


def write_workbook(path, rows: List[list]):
    """Save rows to the first sheet of a new .xlsx file and return its path"""
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    workbook.save(path)
    return path


class SleepRecorder:
    """Async sleep replacement recording requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


@pytest.fixture
def sample_html():
    return SAMPLE_HTML


@pytest.fixture
def storage():
    from database import InMemoryStorage
    return InMemoryStorage()


@pytest.fixture
def fake_scraper():
    return FakeScraper()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def processor(storage, fake_scraper, sleeps):
    from job_processor import JobProcessor
    return JobProcessor(storage, scraper=fake_scraper, sleep=sleeps)
