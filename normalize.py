"""
Field normalization for contact matching

Every function here is total: invalid or empty input yields None instead of
raising, so callers can normalize raw upload values without guarding.
"""
import hashlib
import re
from typing import Optional
from urllib.parse import urlsplit

from models import NormalizedContact

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MIN_EMAIL_LENGTH = 5
MAX_EMAIL_LENGTH = 254

_TRAILING_JUNK = re.compile(r"[/\s.,;:!?]+$")
_HOSTNAME = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*$")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Trim and lowercase an email address, rejecting malformed values"""
    if not email or not isinstance(email, str):
        return None
    cleaned = email.strip().lower()
    if "@" not in cleaned:
        return None
    if len(cleaned) < MIN_EMAIL_LENGTH or len(cleaned) > MAX_EMAIL_LENGTH:
        return None
    if not EMAIL_PATTERN.match(cleaned):
        return None
    return cleaned


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits-only phone with the US country code stripped"""
    if not phone or not isinstance(phone, str):
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) < 7:
        return None
    return digits


def normalize_phone_e164(phone: Optional[str], default_country: str = "1") -> Optional[str]:
    """
    Convert a phone number to E.164

    Args:
        phone: Raw phone value, e.g. "(212) 555-1234"
        default_country: Country code prefixed to 10-digit numbers

    Returns:
        "+12125551234" style string, or None for fewer than 10 digits
    """
    if not phone or not isinstance(phone, str):
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 10:
        return None
    if len(digits) == 10:
        digits = default_country + digits
    return "+" + digits


def normalize_website_url(url: Optional[str]) -> Optional[str]:
    """
    Normalize a website to a clean https:// URL

    Repairs missing colons ("https//"), doubled protocols
    ("https://https://"), forces https and strips trailing slashes and
    punctuation. Query strings and fragments are dropped.

    Args:
        url: Raw website value

    Returns:
        "https://host[/path]" or None when the value is not a usable URL
    """
    if not url or not isinstance(url, str):
        return None
    cleaned = url.strip()
    if not cleaned:
        return None

    cleaned = re.sub(r"^https//", "https://", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"^http//", "http://", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"^https?://https?://", "https://", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"^https?://https//", "https://", cleaned, flags=re.IGNORECASE)

    lowered = cleaned.lower()
    if lowered.startswith("http://"):
        cleaned = "https://" + cleaned[len("http://"):]
    elif lowered.startswith("https://"):
        cleaned = "https://" + cleaned[len("https://"):]
    else:
        cleaned = "https://" + cleaned

    cleaned = _TRAILING_JUNK.sub("", cleaned)

    try:
        parts = urlsplit(cleaned)
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not host or not _HOSTNAME.match(host):
        return None

    origin = f"https://{host}"
    if port and port != 443:
        origin = f"{origin}:{port}"
    path = parts.path.rstrip("/")
    if " " in path:
        return None
    return origin + path


def normalize_domain(website: Optional[str]) -> Optional[str]:
    """Bare host of a website or domain value, without www. or port"""
    if not website or not isinstance(website, str):
        return None
    domain = website.strip().lower()
    domain = re.sub(r"^https?://", "", domain)
    domain = re.sub(r"^www\.", "", domain)
    domain = domain.split("/")[0]
    domain = domain.split("?")[0]
    domain = domain.split("#")[0]
    domain = re.sub(r":\d+$", "", domain)
    if len(domain) < 3 or "." not in domain:
        return None
    return domain


def normalize_company(company: Optional[str]) -> Optional[str]:
    """Comparison key for company names (not a display value)"""
    if not company or not isinstance(company, str):
        return None
    cleaned = re.sub(r"\s+", " ", company.strip()).lower()
    return cleaned or None


def normalize_city(city: Optional[str]) -> Optional[str]:
    """Titlecase each word of a city name"""
    if not city or not isinstance(city, str):
        return None
    cleaned = re.sub(r"\s+", " ", city.strip())
    if not cleaned:
        return None
    words = cleaned.lower().split(" ")
    return " ".join(word[:1].upper() + word[1:] for word in words)


def compute_source_hash(
    email_norm: Optional[str],
    domain_norm: Optional[str],
    phone_norm: Optional[str],
) -> str:
    """Stable 16 hex char bucket key over the identity keys"""
    key = "|".join([email_norm or "", domain_norm or "", phone_norm or ""])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def normalize_contact_fields(
    email: Optional[str] = None,
    website: Optional[str] = None,
    phone: Optional[str] = None,
    city: Optional[str] = None,
    company: Optional[str] = None,
) -> NormalizedContact:
    """Derive every normalization key for a contact"""
    email_norm = normalize_email(email)
    domain_norm = normalize_domain(website)
    phone_norm = normalize_phone_e164(phone)
    return NormalizedContact(
        email_norm=email_norm,
        phone_norm=phone_norm,
        domain_norm=domain_norm,
        city_norm=normalize_city(city),
        company_norm=normalize_company(company),
        source_hash=compute_source_hash(email_norm, domain_norm, phone_norm),
    )
