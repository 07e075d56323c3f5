"""
Tests for the website scraper.

Network access is replaced with httpx.MockTransport handlers.
"""

import httpx
import pytest

from config import reload_settings
from guardrails import CircuitBreakerRegistry
from scraper import WebsiteScraper, normalize_scrape_url, parse_html


def make_scraper(handler, breakers=None) -> WebsiteScraper:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    return WebsiteScraper(client=client, breakers=breakers)


def html_response(html: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, headers={"content-type": "text/html; charset=utf-8"}, text=html)


@pytest.mark.unit
class TestUrlAndHtml:
    """URL validation and HTML reduction."""

    def test_prepends_scheme(self):
        assert normalize_scrape_url("acme.com") == "https://acme.com"

    def test_rejects_invalid(self):
        assert normalize_scrape_url("not a url") is None
        assert normalize_scrape_url("") is None

    def test_parse_html(self, sample_html):
        content = parse_html(sample_html, "https://acmeplumbing.com/")

        assert content.title == "Acme Plumbing | Chicago Plumbers"
        assert content.description == "Family-owned plumbing and drain cleaning since 1985."
        assert content.headings == ["Acme Plumbing", "Our Services"]
        assert "licensed and insured" in content.body_text
        assert "Footer text" not in content.body_text
        assert "tracking" not in content.body_text
        assert "Menu" not in content.body_text
        assert content.links == ["https://acmeplumbing.com/about", "https://example.org/partner"]
        assert content.metadata["og:title"] == "Acme Plumbing"

    def test_title_falls_back_to_og_then_h1(self):
        og = parse_html('<html><head><meta property="og:title" content="OG Name"></head></html>', "https://a.com")
        assert og.title == "OG Name"
        h1 = parse_html("<html><body><h1>Heading Name</h1></body></html>", "https://a.com")
        assert h1.title == "Heading Name"

    def test_body_text_is_capped(self):
        content = parse_html("<html><body><p>" + "word " * 20000 + "</p></body></html>", "https://a.com")
        assert len(content.body_text) == 50000


@pytest.mark.unit
class TestScrapeWebsite:
    """Retry, short-circuit and failure handling."""

    async def test_success(self, sample_html):
        scraper = make_scraper(lambda request: html_response(sample_html))
        result = await scraper.scrape_website("acmeplumbing.com")

        assert result.success
        assert result.url == "https://acmeplumbing.com"
        assert len(result.sources) == 1
        assert result.sources[0].status_code == 200
        assert result.content.title.startswith("Acme Plumbing")

    async def test_404_short_circuits(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(404)

        result = await make_scraper(handler).scrape_website("https://acme.com")

        assert not result.success
        assert len(result.sources) == 1
        assert len(calls) == 1
        assert result.error == "HTTP 404: Not Found"

    async def test_server_error_retries(self):
        result = await make_scraper(lambda request: httpx.Response(500)).scrape_website("acme.com")
        assert not result.success
        assert len(result.sources) == 2
        assert all(source.status_code == 500 for source in result.sources)

    async def test_non_html_fails_immediately(self):
        handler = lambda request: httpx.Response(200, json={"ok": True})  # noqa: E731
        result = await make_scraper(handler).scrape_website("acme.com")

        assert not result.success
        assert len(result.sources) == 1
        assert result.error.startswith("Non-HTML content type")

    async def test_oversized_content(self, monkeypatch):
        monkeypatch.setenv("SCRAPER_MAX_CONTENT_BYTES", "100")
        reload_settings()
        scraper = make_scraper(lambda request: html_response("<p>" + "x" * 500 + "</p>"))

        result = await scraper.scrape_website("acme.com")

        assert not result.success
        assert result.error == "Content exceeds maximum size"
        assert result.content is None

    async def test_timeout_recorded_per_attempt(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await make_scraper(handler).scrape_website("acme.com")

        assert not result.success
        assert [source.error for source in result.sources] == ["Request timeout", "Request timeout"]

    async def test_redirect_recorded(self, sample_html):
        def handler(request):
            if request.url.host == "acme.com":
                return httpx.Response(301, headers={"location": "https://www.acme.com/"})
            return html_response(sample_html)

        result = await make_scraper(handler).scrape_website("acme.com")

        assert result.success
        assert result.sources[0].redirected_to == "https://www.acme.com/"

    async def test_invalid_url(self):
        result = await make_scraper(lambda request: httpx.Response(200)).scrape_website("not a url")
        assert not result.success
        assert result.error == "Invalid URL format"
        assert result.sources[0].status_code == 0

    async def test_open_circuit_stops_retries(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        breakers = CircuitBreakerRegistry(failure_threshold=1, reset_timeout=60)
        result = await make_scraper(handler, breakers=breakers).scrape_website("acme.com")

        assert len(result.sources) == 2
        assert result.sources[0].error == "connection refused"
        assert result.sources[1].error == "Circuit breaker open for: scraper:acme.com"
        assert breakers.snapshot()["scraper:acme.com"]["state"] == "open"

    async def test_scrape_multiple_urls(self, sample_html):
        scraper = make_scraper(lambda request: html_response(sample_html))
        results = await scraper.scrape_multiple_urls(["a.com", "b.com", "c.com", "d.com"])
        assert set(results) == {"a.com", "b.com", "c.com", "d.com"}
        assert all(result.success for result in results.values())
