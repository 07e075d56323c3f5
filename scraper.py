"""
Website scraper with per-attempt timeouts, bounded retries and HTML reduction
"""
import asyncio
import re
from typing import Dict, List, NamedTuple, Optional
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from config import get_settings
from guardrails import CircuitBreakerRegistry, CircuitOpenError, with_timeout
from models import ScrapeContent, ScrapeResult, ScrapeSource

REMOVED_TAGS = ["script", "style", "nav", "footer", "header", "iframe", "noscript"]
MAX_HEADINGS = 20
MAX_HEADING_LENGTH = 200
MAX_BODY_TEXT = 50000
MAX_LINKS = 50
MAX_META_VALUE = 500
NO_RETRY_STATUSES = (403, 404)

REQUEST_TIMEOUT_ERROR = "Request timeout"
INVALID_URL_ERROR = "Invalid URL format"
OVERSIZED_ERROR = "Content exceeds maximum size"


class FetchedPage(NamedTuple):
    """Raw outcome of one HTTP attempt"""
    status_code: int
    reason: str
    final_url: str
    content_type: str
    html: Optional[str] = None
    oversized: bool = False


def normalize_scrape_url(url: Optional[str]) -> Optional[str]:
    """Prepend https:// when no scheme is present and validate the host"""
    if not url or not url.strip():
        return None
    cleaned = url.strip()
    if not re.match(r"^https?://", cleaned, flags=re.IGNORECASE):
        cleaned = "https://" + cleaned
    try:
        parts = urlsplit(cleaned)
        host = parts.hostname
        parts.port  # raises ValueError for a malformed port
    except ValueError:
        return None
    if not host or "." not in host or " " in cleaned:
        return None
    return parts._replace(scheme=parts.scheme.lower(), netloc=parts.netloc.lower()).geturl()


def _is_html(content_type: str) -> bool:
    lowered = content_type.lower()
    return "text/html" in lowered or "application/xhtml" in lowered


def _meta_content(soup: BeautifulSoup, **attrs) -> str:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip()
    return ""


def parse_html(html: str, base_url: str) -> ScrapeContent:
    """
    Reduce an HTML page to the content used for enrichment

    Args:
        html: Page markup
        base_url: URL the page was served from, used to absolutize links

    Returns:
        ScrapeContent with title, description, headings, body text, links and meta tags
    """
    soup = BeautifulSoup(html, "html.parser")

    metadata: Dict[str, str] = {}
    for tag in soup.find_all("meta"):
        name = tag.get("name") or tag.get("property")
        content = tag.get("content")
        if name and content:
            metadata[name] = content[:MAX_META_VALUE]

    description = _meta_content(soup, name="description") or _meta_content(soup, property="og:description")
    og_title = _meta_content(soup, property="og:title")

    for tag in soup(REMOVED_TAGS):
        tag.decompose()

    title = soup.title.get_text(strip=True) if soup.title else ""
    if not title:
        title = og_title
    if not title:
        first_h1 = soup.find("h1")
        title = first_h1.get_text(" ", strip=True) if first_h1 else ""

    headings = []
    for heading in soup.find_all(["h1", "h2", "h3"]):
        text = heading.get_text(" ", strip=True)
        if text and len(text) < MAX_HEADING_LENGTH:
            headings.append(text)

    body = soup.body or soup
    body_text = re.sub(r"\s+", " ", body.get_text(" ")).strip()[:MAX_BODY_TEXT]

    links: List[str] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith("#") or href.lower().startswith("javascript:"):
            continue
        try:
            absolute = urljoin(base_url, href)
        except ValueError:
            continue
        if absolute not in links:
            links.append(absolute)

    return ScrapeContent(
        title=title or None,
        description=description or None,
        headings=headings[:MAX_HEADINGS],
        body_text=body_text,
        links=links[:MAX_LINKS],
        metadata=metadata,
    )


class WebsiteScraper:
    """Fetches and reduces lead websites"""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
    ):
        self.settings = get_settings()
        self.timeout = self.settings.scraper_timeout_ms / 1000
        self.max_retries = self.settings.scraper_max_retries
        self.max_content_bytes = self.settings.scraper_max_content_bytes
        self.breakers = breakers if self.settings.scraper_circuit_breaker_enabled else None
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                max_redirects=self.settings.scraper_max_redirects,
                headers={
                    "User-Agent": self.settings.scraper_user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.5",
                },
            )
        return self._client

    async def close(self):
        """Close the HTTP client if this scraper created it"""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _fetch(self, url: str) -> FetchedPage:
        client = await self._get_client()
        async with client.stream("GET", url) as response:
            page = FetchedPage(
                status_code=response.status_code,
                reason=response.reason_phrase,
                final_url=str(response.url),
                content_type=response.headers.get("content-type", ""),
            )
            if not response.is_success or not _is_html(page.content_type):
                return page

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > self.max_content_bytes:
                return page._replace(oversized=True)

            chunks = []
            size = 0
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > self.max_content_bytes:
                    return page._replace(oversized=True)
                chunks.append(chunk)

            raw = b"".join(chunks)
            try:
                html = raw.decode(response.encoding or "utf-8", errors="replace")
            except LookupError:
                html = raw.decode("utf-8", errors="replace")
            return page._replace(html=html)

    async def _fetch_with_timeout(self, url: str) -> FetchedPage:
        return await with_timeout(self._fetch(url), self.timeout, REQUEST_TIMEOUT_ERROR)

    async def _attempt(self, url: str) -> FetchedPage:
        if self.breakers is None:
            return await self._fetch_with_timeout(url)
        host = urlsplit(url).hostname or url
        return await self.breakers.call(f"scraper:{host}", self._fetch_with_timeout, url)

    async def scrape_website(self, url: str) -> ScrapeResult:
        """
        Scrape a website with bounded retries

        Every attempt appends one entry to the result's source log. 403 and 404
        responses end the retry loop early, non-HTML responses fail at once.

        Args:
            url: Website URL or bare domain

        Returns:
            ScrapeResult, never raises for network failures
        """
        normalized = normalize_scrape_url(url)
        if not normalized:
            return ScrapeResult(
                url=url or "",
                success=False,
                sources=[ScrapeSource(url=url or "", status_code=0, success=False, error=INVALID_URL_ERROR)],
                error=INVALID_URL_ERROR,
            )

        sources: List[ScrapeSource] = []
        last_error = ""

        for attempt in range(self.max_retries):
            logger.debug(f"Fetching {normalized} (attempt {attempt + 1})")
            try:
                page = await self._attempt(normalized)
            except CircuitOpenError as e:
                last_error = str(e)
                sources.append(ScrapeSource(url=normalized, status_code=0, success=False, error=last_error))
                break
            except (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError):
                last_error = REQUEST_TIMEOUT_ERROR
                sources.append(ScrapeSource(url=normalized, status_code=0, success=False, error=last_error))
                logger.debug(f"Attempt {attempt + 1} timed out for {normalized}")
                continue
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                sources.append(ScrapeSource(url=normalized, status_code=0, success=False, error=last_error))
                logger.debug(f"Attempt {attempt + 1} failed for {normalized}: {last_error}")
                continue

            source = ScrapeSource(
                url=normalized,
                status_code=page.status_code,
                success=200 <= page.status_code < 300,
            )
            if page.final_url.rstrip("/") != normalized.rstrip("/"):
                source.redirected_to = page.final_url

            if not source.success:
                last_error = f"HTTP {page.status_code}: {page.reason}"
                source.error = last_error
                sources.append(source)
                if page.status_code in NO_RETRY_STATUSES:
                    break
                continue

            if not _is_html(page.content_type):
                last_error = f"Non-HTML content type: {page.content_type}"
                source.error = last_error
                sources.append(source)
                return ScrapeResult(url=normalized, success=False, sources=sources, error=last_error)

            if page.oversized:
                source.success = False
                source.error = OVERSIZED_ERROR
                sources.append(source)
                return ScrapeResult(url=normalized, success=False, sources=sources, error=OVERSIZED_ERROR)

            sources.append(source)
            content = parse_html(page.html or "", page.final_url or normalized)
            logger.info(f"Scraped {normalized}: \"{(content.title or '')[:50]}\"")
            return ScrapeResult(url=normalized, success=True, sources=sources, content=content)

        return ScrapeResult(
            url=normalized,
            success=False,
            sources=sources,
            error=last_error or "Failed after retries",
        )

    async def scrape_multiple_urls(self, urls: List[str]) -> Dict[str, ScrapeResult]:
        """Scrape several websites, a few at a time"""
        results: Dict[str, ScrapeResult] = {}
        batch_size = self.settings.scraper_concurrency
        for i in range(0, len(urls), batch_size):
            batch = urls[i:i + batch_size]
            batch_results = await asyncio.gather(*(self.scrape_website(url) for url in batch))
            results.update(zip(batch, batch_results))
        return results
