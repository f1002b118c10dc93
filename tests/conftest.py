"""Pytest fixtures for incident map tests."""

import os
from datetime import datetime, timedelta

import pytest

from core.config import FeedConfig, GeocoderConfig, RefreshConfig
from core.models import BoundingBox, Installation
from extractors.classifier import IncidentClassifier

os.environ.setdefault("SCHEDULER_AUTOSTART", "0")

NOW = datetime(2026, 2, 10, 14, 0)
BBOX = BoundingBox(min_lat=-33.45, max_lat=-33.35, min_lon=-70.65, max_lon=-70.50)


class FakeClock:
    """Monotonic clock + sleep that advances it without waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


def _row_html(row: dict) -> str:
    marker = '<span class="badge badge-danger">P</span>' if row.get("open") else '<span class="badge badge-primary">C</span>'
    return (
        "<tr>"
        f"<td>{marker}</td>"
        f"<td>{row['ts']}</td>"
        f"<td>{row.get('type', '')}</td>"
        f"<td>{row['id']}</td>"
        f"<td>{row.get('operator', 'OP1')}</td>"
        f"<td>{row.get('description', '')}</td>"
        f"<td>{row.get('address', '')}</td>"
        "</tr>"
    )


def build_listing(rows: list) -> str:
    body = "".join(_row_html(r) for r in rows)
    return (
        "<html><body><table class=\"table\"><thead><tr><th>Área</th></tr></thead>"
        f"<tbody>{body}</tbody></table></body></html>"
    )


def minutes_ago(minutes: int) -> str:
    return (NOW - timedelta(minutes=minutes)).strftime("%d/%m/%Y %H:%M")


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def bbox():
    return BBOX


@pytest.fixture
def classifier():
    return IncidentClassifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def listing():
    """Builder: list of row dicts → listing HTML."""
    return build_listing


@pytest.fixture
def ago():
    """Builder: minutes before NOW → 'dd/mm/yyyy HH:MM'."""
    return minutes_ago


@pytest.fixture
def feed_config():
    return FeedConfig(url="https://portal.test/incidents", retries=2, retry_delay_seconds=2.0, max_pages=1, page_delay_seconds=0.4)


@pytest.fixture
def geocoder_config():
    return GeocoderConfig(url="https://geo.test/search", throttle_seconds=1.1, timeout_seconds=5.0, bbox=BBOX)


@pytest.fixture
def refresh_config():
    return RefreshConfig()


@pytest.fixture
def installations():
    """Three cameras along Isabel la Católica plus one far away."""
    return [
        Installation(lat=-33.426284, lon=-70.573986, id="239", label="ISABEL LA CATOLICA 4601", category="FIJA"),
        Installation(lat=-33.426145, lon=-70.572864, id="PI184", label="COLEGIO QUIMAY", category="PTZ"),
        Installation(lat=-33.427483, lon=-70.578904, id="188", label="ISABEL LA CATOLICA - CARLOS V", category="PTZ"),
        Installation(lat=-33.429549, lon=-70.554328, id="N-01", label="ÑANDU", category="FIJA"),
    ]


@pytest.fixture
def app_client():
    """FastAPI TestClient (lifespan not entered, so no background scheduler). Clears the snapshot."""
    from fastapi.testclient import TestClient
    import api.main as main_module
    main_module.store.clear()
    return TestClient(main_module.app)
