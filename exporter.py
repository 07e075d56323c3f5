"""
CSV export of enriched job items and export artifact files
"""
import csv
import io
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel

from config import get_settings
from database import Storage
from identity import split_lead_name
from models import BulkJobItem

EXPORT_COLUMNS = [
    "company_name",
    "website",
    "city",
    "state",
    "category",
    "services",
    "personalization_bullet_1",
    "personalization_bullet_2",
    "personalization_bullet_3",
    "personalization_bullet_4",
    "icebreaker",
    "confidence_score",
    "confidence_rationale",
    "scrape_url",
    "scrape_status",
    "email",
    "phone",
    "first_name",
    "last_name",
    "title",
]

ENTITY_TYPES = ["job", "contacts", "report", "core", "core-contacts"]
_ENTITY_PATTERN = "|".join(re.escape(t) for t in sorted(ENTITY_TYPES, key=len, reverse=True))
EXPORT_FILENAME_PATTERN = re.compile(
    rf"^export-({_ENTITY_PATTERN})(?:-([a-f0-9-]+))?-(\d+)\.csv$"
)


class ExportArtifact(BaseModel):
    """Metadata for a written export file"""
    filename: str
    file_path: str
    row_count: int
    created_at: datetime
    entity_type: str
    entity_id: Optional[str] = None
    size: int


class ExportFile(BaseModel):
    name: str
    created_at: datetime
    size: int
    entity_type: str
    entity_id: Optional[str] = None


def escape_csv_field(value) -> str:
    """Double embedded quotes and quote fields containing a comma, quote or newline"""
    text = "" if value is None else str(value)
    if any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def _scrape_status(item: BulkJobItem) -> str:
    if not item.scrape_sources:
        return "skipped"
    return "success" if any(source.success for source in item.scrape_sources) else "failed"


def build_export_row(item: BulkJobItem) -> Dict[str, str]:
    """Flatten one completed item into export columns"""
    record = item.parsed_data
    enrichment = item.enrichment_data or {}

    first_name, last_name = record.first_name, record.last_name
    if not first_name and not last_name:
        first_name, last_name = split_lead_name(record.lead_name)

    bullets = list(item.personalization_bullets[:4])
    bullets += [""] * (4 - len(bullets))

    row = {
        "company_name": record.company or enrichment.get("company_name"),
        "website": record.website_url() or enrichment.get("website_url"),
        "city": record.city or enrichment.get("city"),
        "state": record.state or enrichment.get("state"),
        "category": record.category or enrichment.get("industry"),
        "services": "; ".join(enrichment.get("services") or []),
        "personalization_bullet_1": bullets[0],
        "personalization_bullet_2": bullets[1],
        "personalization_bullet_3": bullets[2],
        "personalization_bullet_4": bullets[3],
        "icebreaker": item.icebreaker,
        "confidence_score": "" if item.confidence_score is None else f"{item.confidence_score:.2f}",
        "confidence_rationale": item.confidence_rationale,
        "scrape_url": item.scrape_sources[0].url if item.scrape_sources else "",
        "scrape_status": _scrape_status(item),
        "email": record.email,
        "phone": record.phone,
        "first_name": first_name,
        "last_name": last_name,
        "title": record.title,
    }
    return {column: "" if row[column] is None else str(row[column]) for column in EXPORT_COLUMNS}


def build_csv(items: List[BulkJobItem]) -> Tuple[str, int]:
    """
    Render completed items as CSV

    Args:
        items: Job items, in any status

    Returns:
        Tuple of (CSV text with header, number of data rows)
    """
    lines = [",".join(EXPORT_COLUMNS)]
    count = 0
    for item in items:
        if item.status != "complete":
            continue
        row = build_export_row(item)
        lines.append(",".join(escape_csv_field(row[column]) for column in EXPORT_COLUMNS))
        count += 1
    return "\n".join(lines) + "\n", count


def read_export_csv(content: str) -> List[Dict[str, str]]:
    """Parse an export back into rows"""
    return list(csv.DictReader(io.StringIO(content)))


async def export_job_csv(storage: Storage, job_id: str) -> Tuple[str, int]:
    items = await storage.get_bulk_job_items(job_id)
    return build_csv(items)


class ExportArtifacts:
    """Export files kept on disk under the exports directory"""

    def __init__(self, exports_dir: Optional[str] = None):
        self.settings = get_settings()
        self.exports_dir = Path(exports_dir or self.settings.exports_dir).resolve()

    def ensure_directory(self) -> Path:
        self.exports_dir.mkdir(parents=True, exist_ok=True)
        return self.exports_dir

    def write_export_artifact(
        self,
        csv_content: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        row_count: int = 0,
    ) -> ExportArtifact:
        """
        Write an export to disk

        Args:
            csv_content: CSV text
            entity_type: One of job, contacts, report, core, core-contacts
            entity_id: Optional ID included in the filename
            row_count: Number of data rows, recorded in the metadata

        Returns:
            ExportArtifact describing the file
        """
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Entity type must be one of {ENTITY_TYPES}")

        id_part = f"-{entity_id}" if entity_id else ""
        filename = f"export-{entity_type}{id_part}-{int(time.time() * 1000)}.csv"
        path = self.ensure_directory() / filename
        path.write_text(csv_content, encoding="utf-8")

        artifact = ExportArtifact(
            filename=filename,
            file_path=str(path),
            row_count=row_count,
            created_at=datetime.now(timezone.utc),
            entity_type=entity_type,
            entity_id=entity_id,
            size=path.stat().st_size,
        )
        logger.info(f"Export written: {filename} ({row_count} rows, {artifact.size} bytes)")
        return artifact

    def list_export_files(self) -> List[ExportFile]:
        """Most recent export files first"""
        if not self.exports_dir.exists():
            return []

        files = []
        for path in self.exports_dir.glob("*.csv"):
            try:
                stats = path.stat()
            except OSError as e:
                logger.warning(f"Could not stat export file {path.name}: {e}")
                continue
            match = EXPORT_FILENAME_PATTERN.match(path.name)
            files.append(ExportFile(
                name=path.name,
                created_at=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
                size=stats.st_size,
                entity_type=match.group(1) if match else "unknown",
                entity_id=match.group(2) if match else None,
            ))

        files.sort(key=lambda f: f.created_at, reverse=True)
        return files[:self.settings.exports_list_limit]

    def get_export_file(self, filename: str) -> Optional[bytes]:
        """Read an export by name; unknown names and path traversal return None"""
        if not EXPORT_FILENAME_PATTERN.match(filename):
            logger.warning(f"Invalid export filename: {filename}")
            return None

        path = (self.exports_dir / filename).resolve()
        if path.parent != self.exports_dir:
            logger.warning(f"Path traversal attempt blocked: {filename}")
            return None

        try:
            return path.read_bytes()
        except FileNotFoundError:
            logger.warning(f"Export file not found: {filename}")
            return None
