"""
Bulk upload parsing
Maps CSV, Excel, JSON and plain email-list uploads onto canonical lead records,
normalizes their identifiers and merges duplicates within the upload
"""
import csv
import io
import json
import re
import zipfile
from pathlib import PurePath
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit

from loguru import logger
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from config import get_settings
from models import ImportRecordError, ImportResult, ImportStats, ParsedRecord
from normalize import (
    normalize_city,
    normalize_company,
    normalize_email,
    normalize_phone,
    normalize_phone_e164,
    normalize_website_url,
)

# Checked in order, first match wins. More specific fields come before the
# ones whose synonyms are substrings of them (linkedinurl before url,
# companydomain before company).
FIELD_SYNONYMS: List[Tuple[str, List[str]]] = [
    ("first_name", ["first_name", "firstname", "first", "fname", "given_name"]),
    ("last_name", ["last_name", "lastname", "last", "lname", "surname", "family_name"]),
    ("email", ["email", "e_mail", "email_address", "emailaddress", "mail", "emails"]),
    ("phone", ["phone", "phone_number", "mobile", "telephone", "cell", "phonenumber"]),
    ("title", ["title", "job_title", "position", "role", "jobtitle"]),
    ("linkedin_url", ["linkedin", "linkedin_url", "linkedin_profile", "linkedinurl"]),
    ("company_domain", ["domain", "company_domain"]),
    ("website", ["website", "website_url", "url", "web", "site", "site_url"]),
    ("company", ["company", "company_name", "organization", "org", "employer",
                 "business", "business_name", "place_name"]),
    ("city", ["city", "town", "metro"]),
    ("state", ["state", "state_code", "province", "region"]),
    ("address", ["address", "street_address", "formatted_address", "full_address", "location"]),
    ("category", ["category", "type", "primary_category", "business_type", "industry"]),
    ("lead_name", ["lead_name", "full_name", "contact_name", "name"]),
]

CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
MISSING_IDENTIFIER_MESSAGE = "Requires email, phone, LinkedIn URL, website, or company+city"
XLSX_MAGIC = b"PK\x03\x04"

FILE_SUFFIXES = {
    ".csv": "csv",
    ".json": "json",
    ".txt": "email_list",
    ".xlsx": "xlsx",
}
CONTENT_TYPES = {
    "text/csv": "csv",
    "application/json": "json",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
}


class InputValidationError(Exception):
    """Raised when an upload cannot be parsed at all"""


def _letters_only(value: str) -> str:
    return re.sub(r"[^a-z]", "", value.lower())


_SYNONYM_KEYS = [(field, [_letters_only(p) for p in patterns]) for field, patterns in FIELD_SYNONYMS]


def match_field(header: str) -> Optional[str]:
    """Canonical field for a column header, or None when unrecognized"""
    key = _letters_only(header or "")
    if not key:
        return None
    # Exact synonyms first so "fullname" is not read as containing "lname"
    for field, patterns in _SYNONYM_KEYS:
        if key in patterns:
            return field
    for field, patterns in _SYNONYM_KEYS:
        if any(pattern in key for pattern in patterns):
            return field
    return None


def sanitize_string(value: Any, max_length: Optional[int] = None) -> str:
    """Trim, strip control characters and truncate"""
    if value is None or isinstance(value, bool):
        return ""
    if not isinstance(value, str):
        if not isinstance(value, (int, float)):
            return ""
        value = str(value)
    limit = max_length or get_settings().import_max_field_length
    return CONTROL_CHARS.sub("", value.strip())[:limit]


def map_fields(row: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map a loosely named row onto canonical fields

    Unrecognized columns are kept under "extra".

    Args:
        row: Column header to value mapping

    Returns:
        Dict of canonical field values plus an "extra" dict
    """
    mapped: Dict[str, Any] = {}
    extra: Dict[str, str] = {}
    for key, raw in row.items():
        value = sanitize_string(raw)
        if not value:
            continue
        field = match_field(str(key))
        if field is None:
            extra[str(key)] = value
        elif field not in mapped:
            mapped[field] = value
    mapped["extra"] = extra
    return mapped


def _is_valid_url(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class _BatchBuilder:
    """Accumulates records for one upload, merging duplicates as they arrive"""

    def __init__(self, label: str):
        self.label = label
        self.records: List[ParsedRecord] = []
        self.errors: List[ImportRecordError] = []
        self.warnings: List[str] = []
        self.invalid_rows = set()
        self.duplicates = 0
        self._by_email: Dict[str, int] = {}
        self._by_phone: Dict[str, int] = {}
        self._by_company_city: Dict[str, int] = {}

    def _error(self, row: int, field: Optional[str], message: str, value: Optional[str] = None) -> None:
        self.invalid_rows.add(row)
        self.errors.append(ImportRecordError(row=row, field=field, message=message, value=value))

    def _normalize(self, row: int, mapped: Dict[str, Any]) -> Dict[str, Any]:
        if mapped.get("email"):
            email = normalize_email(mapped["email"])
            if email is None:
                self.warnings.append(f"{self.label} {row}: Invalid email \"{mapped['email']}\" dropped")
            mapped["email"] = email
        if mapped.get("phone"):
            raw = mapped["phone"]
            mapped["phone"] = normalize_phone_e164(raw) or normalize_phone(raw)
        if mapped.get("website"):
            mapped["website"] = normalize_website_url(mapped["website"])
        if mapped.get("city"):
            mapped["city"] = normalize_city(mapped["city"])
        return mapped

    def _find_duplicate(self, record: ParsedRecord, keys: Dict[str, Optional[str]]) -> Tuple[Optional[int], str]:
        if record.email and record.email in self._by_email:
            return self._by_email[record.email], f"email \"{record.email}\""
        if keys["phone"] and keys["phone"] in self._by_phone:
            return self._by_phone[keys["phone"]], f"phone \"{record.phone}\""
        # Weakest tier, only for rows with no email or phone of their own
        if record.email or keys["phone"]:
            return None, ""
        if keys["company_city"] and keys["company_city"] in self._by_company_city:
            return self._by_company_city[keys["company_city"]], f"company+city \"{record.company}, {record.city}\""
        return None, ""

    def _track(self, index: int, record: ParsedRecord, keys: Dict[str, Optional[str]]) -> None:
        if record.email:
            self._by_email.setdefault(record.email, index)
        if keys["phone"]:
            self._by_phone.setdefault(keys["phone"], index)
        if keys["company_city"]:
            self._by_company_city.setdefault(keys["company_city"], index)

    def add(self, row: int, raw: Dict[str, Any]) -> None:
        """Validate, normalize and either append or merge one row"""
        mapped = self._normalize(row, map_fields(raw))
        record = ParsedRecord(**{k: v for k, v in mapped.items() if v is not None})

        company_norm = normalize_company(record.company)
        city_key = record.city.lower().strip() if record.city else None
        keys = {
            "phone": normalize_phone(record.phone),
            "company_city": f"{company_norm}|{city_key}" if company_norm and city_key else None,
        }

        index, reason = self._find_duplicate(record, keys)
        if index is not None:
            existing = self.records[index]
            fills = {
                field: getattr(record, field)
                for field in ParsedRecord.CANONICAL_FIELDS
                if not getattr(existing, field) and getattr(record, field)
            }
            extra = {**record.extra, **existing.extra}
            merged = existing.model_copy(update={**fills, "extra": extra})
            self.records[index] = merged
            self._track(index, merged, keys)
            self.duplicates += 1
            self.warnings.append(f"{self.label} {row}: Duplicate by {reason} - merged")
            return

        if record.linkedin_url and not _is_valid_url(record.linkedin_url):
            self._error(row, "linkedin_url", "Invalid URL", record.linkedin_url)
            return
        if not record.has_identifier():
            self._error(row, "record", MISSING_IDENTIFIER_MESSAGE)
            return

        self.records.append(record)
        self._track(len(self.records) - 1, record, keys)

    def result(self, source_format: str, total: int, extra_warnings: Optional[List[str]] = None) -> ImportResult:
        settings = get_settings()
        invalid = len(self.invalid_rows)
        stats = ImportStats(
            total=total,
            valid=len(self.records),
            invalid=invalid,
            duplicates_merged=self.duplicates,
            error_rate=round(invalid / total * 100) if total else 0,
        )
        return ImportResult(
            success=bool(self.records),
            source_format=source_format,
            records=self.records,
            errors=self.errors[:settings.import_max_errors],
            warnings=(extra_warnings or []) + self.warnings,
            stats=stats,
        )


def _check_size(content: Union[str, bytes]) -> None:
    limit_mb = get_settings().import_max_file_size_mb
    data = content.encode("utf-8") if isinstance(content, str) else content
    size_mb = len(data) / (1024 * 1024)
    if size_mb > limit_mb:
        raise InputValidationError(f"File exceeds {limit_mb}MB limit")


def _failed(source_format: str, field: str, message: str) -> ImportResult:
    return ImportResult(
        success=False,
        source_format=source_format,
        errors=[ImportRecordError(row=0, field=field, message=message)],
        stats=ImportStats(invalid=1, error_rate=100),
    )


def _limit_records(rows: List[Any], noun: str) -> Tuple[List[Any], List[str]]:
    max_records = get_settings().import_max_records
    if len(rows) > max_records:
        warning = f"File contains {len(rows)} {noun}. Only first {max_records} will be processed."
        logger.warning(warning)
        return rows[:max_records], [warning]
    return rows, []


def parse_csv(content: str) -> ImportResult:
    """
    Parse a CSV upload with a header row

    Args:
        content: CSV text

    Returns:
        ImportResult; rows are numbered from 2 to match spreadsheet line numbers

    Raises:
        InputValidationError: If the content exceeds the size limit
    """
    _check_size(content)
    try:
        reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
        rows = [row for row in reader if any((v or "").strip() for v in row.values() if isinstance(v, str))]
    except csv.Error as e:
        return _failed("csv", "csv", f"Malformed CSV: {e}")

    rows, warnings = _limit_records(rows, "records")
    batch = _BatchBuilder("Row")
    for idx, row in enumerate(rows):
        row.pop(None, None)  # values beyond the header
        batch.add(idx + 2, row)

    result = batch.result("csv", len(rows), warnings)
    logger.info(f"Parsed CSV: {result.stats.valid} valid, {result.stats.invalid} invalid, "
                f"{result.stats.duplicates_merged} merged")
    return result


def parse_json(content: str) -> ImportResult:
    """Parse a JSON object or array of objects"""
    _check_size(content)
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return _failed("json", "json", "Invalid JSON syntax")

    data = parsed if isinstance(parsed, list) else [parsed]
    data, warnings = _limit_records(data, "records")
    batch = _BatchBuilder("Record")
    for idx, obj in enumerate(data):
        if not isinstance(obj, dict):
            batch._error(idx + 1, "json", "Record must be an object")
            continue
        batch.add(idx + 1, obj)

    result = batch.result("json", len(data), warnings)
    logger.info(f"Parsed JSON: {result.stats.valid} valid, {result.stats.invalid} invalid")
    return result


def _cell_value(value: Any) -> Any:
    # Excel stores phone numbers and zip codes as floats
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def parse_xlsx(data: bytes) -> ImportResult:
    """
    Parse the first sheet of an Excel workbook with a header row

    Args:
        data: Raw .xlsx bytes

    Returns:
        ImportResult; rows keep their sheet row numbers

    Raises:
        InputValidationError: If the workbook exceeds the size limit
    """
    _check_size(data)
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError) as e:
        logger.warning(f"Could not open Excel workbook: {e}")
        return _failed("xlsx", "xlsx", "Invalid Excel workbook")

    try:
        sheet = workbook.active
        cells = sheet.iter_rows(values_only=True)
        header_row = next(cells, None) or ()
        header = [str(cell).strip() if cell is not None else "" for cell in header_row]

        rows = []
        for idx, values in enumerate(cells):
            row = {
                header[col]: _cell_value(value)
                for col, value in enumerate(values)
                if col < len(header) and header[col] and value is not None
            }
            if any(str(value).strip() for value in row.values()):
                rows.append((idx + 2, row))
    finally:
        workbook.close()

    rows, warnings = _limit_records(rows, "records")
    batch = _BatchBuilder("Row")
    for row_number, row in rows:
        batch.add(row_number, row)

    result = batch.result("xlsx", len(rows), warnings)
    logger.info(f"Parsed XLSX: {result.stats.valid} valid, {result.stats.invalid} invalid, "
                f"{result.stats.duplicates_merged} merged")
    return result


def parse_email_list(content: str) -> ImportResult:
    """One email per line; repeats are skipped"""
    _check_size(content)
    lines = [line.strip() for line in content.splitlines() if line.strip()]
    lines, warnings = _limit_records(lines, "lines")

    batch = _BatchBuilder("Line")
    seen = set()
    for idx, line in enumerate(lines):
        email = normalize_email(line)
        if email is None:
            batch._error(idx + 1, "email", "Invalid email format", line)
            continue
        if email in seen:
            batch.duplicates += 1
            batch.warnings.append(f"Line {idx + 1}: Duplicate email \"{email}\" - skipped")
            continue
        seen.add(email)
        batch.records.append(ParsedRecord(email=email))

    return batch.result("email_list", len(lines), warnings)


def detect_format(content: str) -> str:
    """json when the content opens an object or array, csv when the first line has commas, else email_list"""
    trimmed = content.strip()
    if trimmed.startswith("[") or trimmed.startswith("{"):
        return "json"
    first_line = trimmed.split("\n", 1)[0]
    if len(first_line.split(",")) >= 2:
        return "csv"
    return "email_list"


def detect_file_format(filename: Optional[str], content_type: Optional[str] = None) -> Optional[str]:
    """Format implied by a file suffix or content type, None when neither is recognized"""
    suffix = PurePath(filename or "").suffix.lower()
    if suffix in FILE_SUFFIXES:
        return FILE_SUFFIXES[suffix]
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    return CONTENT_TYPES.get(media_type)


PARSERS = {
    "csv": parse_csv,
    "json": parse_json,
    "xlsx": parse_xlsx,
    "email_list": parse_email_list,
}


def parse(content: Union[str, bytes], source_format: Optional[str] = None) -> ImportResult:
    """
    Parse an upload in the given or detected format

    Args:
        content: Uploaded text, or raw bytes for Excel workbooks
        source_format: csv, json, xlsx or email_list; detected when omitted

    Returns:
        ImportResult

    Raises:
        InputValidationError: For an unknown format, undecodable text or oversized content
    """
    if isinstance(content, bytes):
        if source_format is None and content.startswith(XLSX_MAGIC):
            source_format = "xlsx"
        if source_format != "xlsx":
            try:
                content = content.decode("utf-8")
            except UnicodeDecodeError:
                raise InputValidationError("File is not valid UTF-8 text")
    elif source_format == "xlsx":
        raise InputValidationError("Excel workbooks must be uploaded as binary files")

    fmt = source_format or detect_format(content)
    parser = PARSERS.get(fmt)
    if parser is None:
        raise InputValidationError(f"Unsupported format '{fmt}'. Use one of {list(PARSERS)}")
    return parser(content)
