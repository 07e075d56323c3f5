"""
Domain discovery for leads that arrive without a website
"""
import asyncio
import re
from typing import List, Optional, Tuple

import httpx
from loguru import logger

from config import get_settings
from guardrails import with_timeout
from models import DomainAttempt, DomainDiscoveryResult, ParsedRecord
from normalize import normalize_domain

COMPANY_STOPWORDS = {"inc", "llc", "ltd", "corp", "co", "company", "services", "the"}
VALID_STATUSES = (403, 405)


def _slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "", text.lower())


def generate_domain_guesses(company_name: str, city: Optional[str] = None, max_guesses: int = 3) -> List[str]:
    """
    Candidate .com domains for a company name

    Args:
        company_name: Display name, e.g. "Acme Heating Co"
        city: Optional city used for the initials guess
        max_guesses: Number of guesses to keep

    Returns:
        Unique guesses in priority order
    """
    slug = _slugify(company_name)
    if not slug:
        return []

    guesses = [f"{slug}.com"]
    words = [w for w in company_name.lower().split() if len(w) > 1]
    filtered = [w for w in words if w not in COMPANY_STOPWORDS]

    if filtered:
        main_slug = "".join(_slugify(w) for w in filtered)
        if main_slug != slug and len(main_slug) > 2:
            guesses.append(f"{main_slug}.com")

    if len(filtered) >= 2:
        initials = "".join(w[0] for w in filtered)
        city_part = _slugify(city)[:3] if city else ""
        guesses.append(f"{initials}{city_part}.com")

    if len(slug) > 3:
        guesses.append(f"{slug}hvac.com")
        guesses.append(f"{slug}services.com")

    unique = list(dict.fromkeys(guesses))
    return unique[:max_guesses]


class DomainDiscovery:
    """Verifies input domains and guesses domains from company names"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.settings = get_settings()
        self.timeout = self.settings.discovery_timeout_ms / 1000
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                headers={"User-Agent": self.settings.scraper_user_agent},
            )
        return self._client

    async def close(self):
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _probe(self, domain: str) -> bool:
        client = await self._get_client()
        for url in (f"https://{domain}", f"https://www.{domain}", f"http://{domain}"):
            try:
                response = await client.head(url)
            except httpx.HTTPError:
                continue
            if response.is_success or response.status_code in VALID_STATUSES:
                return True
        return False

    async def verify_domain(self, domain: str) -> Tuple[bool, Optional[str]]:
        """
        Check that a domain answers HTTP requests

        Args:
            domain: Bare domain, e.g. "acme.com"

        Returns:
            Tuple of (valid, error message)
        """
        try:
            if await with_timeout(self._probe(domain), self.timeout, "Timeout"):
                return True, None
            return False, "No valid response from domain"
        except (TimeoutError, asyncio.TimeoutError):
            return False, "Timeout"

    async def discover_domain(self, record: ParsedRecord) -> DomainDiscoveryResult:
        """
        Find a working domain for a lead

        The input website is verified first; when it is missing or dead, guesses
        built from the company name are tried in order.

        Args:
            record: Uploaded record

        Returns:
            DomainDiscoveryResult with every attempt recorded
        """
        attempts: List[DomainAttempt] = []

        input_domain = normalize_domain(record.website_url())
        if input_domain:
            valid, error = await self.verify_domain(input_domain)
            attempts.append(DomainAttempt(domain=input_domain, success=valid, error=error))
            if valid:
                return DomainDiscoveryResult(domain=input_domain, source="input", verified=True, attempts=attempts)
            logger.debug(f"Input domain {input_domain} failed verification: {error}")

        if not record.company:
            return DomainDiscoveryResult(attempts=attempts)

        guesses = generate_domain_guesses(record.company, record.city, self.settings.discovery_max_guesses)
        logger.debug(f"Trying {len(guesses)} domain guesses for \"{record.company}\": {', '.join(guesses)}")

        for guess in guesses:
            valid, error = await self.verify_domain(guess)
            attempts.append(DomainAttempt(domain=guess, success=valid, error=error))
            if valid:
                logger.info(f"Discovered domain {guess} for \"{record.company}\"")
                return DomainDiscoveryResult(domain=guess, source="guessed", verified=True, attempts=attempts)

        logger.debug(f"No valid domain found for \"{record.company}\"")
        return DomainDiscoveryResult(attempts=attempts)
