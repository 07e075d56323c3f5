"""
Tests for domain guessing and verification.
"""

import httpx
import pytest

from domain_discovery import DomainDiscovery, generate_domain_guesses
from models import ParsedRecord


def make_discovery(live_hosts, status_code=200) -> DomainDiscovery:
    def handler(request):
        if request.url.host in live_hosts:
            return httpx.Response(status_code)
        raise httpx.ConnectError("no route", request=request)

    return DomainDiscovery(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.unit
class TestGuesses:
    """Guess generation from company names."""

    def test_priority_order(self):
        assert generate_domain_guesses("Acme Heating Co", "Chicago") == [
            "acmeheatingco.com",
            "acmeheating.com",
            "ahchi.com",
        ]

    def test_more_guesses_when_allowed(self):
        guesses = generate_domain_guesses("Acme Heating Co", "Chicago", max_guesses=10)
        assert guesses[-2:] == ["acmeheatingcohvac.com", "acmeheatingcoservices.com"]

    def test_empty_name(self):
        assert generate_domain_guesses("!!!") == []


@pytest.mark.unit
class TestDiscovery:
    """Verification and discovery over HTTP HEAD."""

    async def test_verify_accepts_method_not_allowed(self):
        discovery = make_discovery({"acme.com"}, status_code=405)
        assert await discovery.verify_domain("acme.com") == (True, None)

    async def test_verify_dead_domain(self):
        discovery = make_discovery(set())
        assert await discovery.verify_domain("acme.com") == (False, "No valid response from domain")

    async def test_input_domain_wins(self):
        discovery = make_discovery({"acme.com"})
        result = await discovery.discover_domain(ParsedRecord(website="https://www.acme.com/contact"))

        assert result.domain == "acme.com"
        assert result.source == "input"
        assert result.verified

    async def test_guesses_after_dead_input(self):
        discovery = make_discovery({"acmeheating.com"})
        record = ParsedRecord(company="Acme Heating Co", city="Chicago", website="dead.com")
        result = await discovery.discover_domain(record)

        assert result.domain == "acmeheating.com"
        assert result.source == "guessed"
        assert [a.domain for a in result.attempts] == ["dead.com", "acmeheatingco.com", "acmeheating.com"]
        assert not result.attempts[0].success

    async def test_nothing_found(self):
        discovery = make_discovery(set())
        result = await discovery.discover_domain(ParsedRecord(company="Acme Heating Co"))

        assert result.domain is None
        assert result.source == "none"
        assert len(result.attempts) == 3

    async def test_no_company_no_website(self):
        result = await make_discovery(set()).discover_domain(ParsedRecord(email="a@b.com"))
        assert result.domain is None
        assert result.attempts == []
