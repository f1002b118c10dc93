"""
Incident listing HTML → IncidentRecord list.

Columns are read by position: 0=status marker, 1=timestamp (dd/mm/yyyy HH:MM), 2=type,
3=id, 4=operator, 5=description, 6=address.

Status has no column of its own: a row is OPEN when the marker cell contains the
open badge class (badge-danger), CLOSED otherwise. Any change to the upstream markup
silently flips every row to CLOSED, so keep tests/test_feed.py in sync with the page.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from bs4 import BeautifulSoup

from core.models import IncidentRecord, IncidentStatus
from extractors.classifier import IncidentClassifier

logger = logging.getLogger("incident_map.feed.parser")

ROW_SELECTOR = "table.table tbody tr"
TABLE_SELECTOR = "table.table"
EXPECTED_COLUMNS = 7
DESCRIPTION_MAX_CHARS = 120
TIMESTAMP_REGEX = re.compile(r"(\d{2})/(\d{2})/(\d{4})\s+(\d{2}):(\d{2})")


class FeedSchemaError(ValueError):
    """The page no longer looks like the incident listing (distinct from 'no incidents')."""


def parse_timestamp(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    m = TIMESTAMP_REGEX.search(text)
    if not m:
        return None
    day, month, year, hour, minute = (int(g) for g in m.groups())
    try:
        return datetime(year, month, day, hour, minute)
    except ValueError:
        return None


def _first_line(text: str) -> str:
    lines = text.strip().split("\n")
    return lines[0].strip()[:DESCRIPTION_MAX_CHARS] if lines else ""


def parse_incident_rows(
    html: str,
    classifier: IncidentClassifier,
    now: datetime,
    window_minutes: int = 60,
    open_marker: str = "badge-danger",
) -> list:
    """
    Parse, filter to the last `window_minutes`, classify, and sort most recent first.
    Malformed rows are skipped. Raises FeedSchemaError when the listing table is missing
    or none of its rows has the expected columns.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    if soup.select_one(TABLE_SELECTOR) is None:
        raise FeedSchemaError("incident table not found")
    rows = soup.select(ROW_SELECTOR)
    cutoff = now - timedelta(minutes=window_minutes)

    records = []
    well_formed = 0
    skipped = 0
    for row in rows:
        cells = row.find_all("td")
        if len(cells) < EXPECTED_COLUMNS:
            skipped += 1
            continue
        well_formed += 1
        occurred_at = parse_timestamp(cells[1].get_text(strip=True))
        if occurred_at is None:
            skipped += 1
            continue
        if occurred_at < cutoff:
            continue
        marker_html = cells[0].decode_contents()
        status = IncidentStatus.OPEN if open_marker in marker_html else IncidentStatus.CLOSED
        type_text = cells[2].get_text(strip=True)
        records.append(IncidentRecord(
            id=cells[3].get_text(strip=True),
            occurred_at=occurred_at,
            type=type_text,
            operator_id=cells[4].get_text(strip=True),
            description=_first_line(cells[5].get_text()),
            address=cells[6].get_text(strip=True),
            status=status,
            category=classifier.classify(type_text),
        ))

    if rows and not well_formed:
        raise FeedSchemaError(f"no row has {EXPECTED_COLUMNS} columns (rows={len(rows)})")

    records.sort(key=lambda r: r.occurred_at, reverse=True)
    logger.debug("parsed rows=%d recent=%d skipped=%d", len(rows), len(records), skipped)
    return records
