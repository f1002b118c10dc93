"""
FastAPI backend: serves the live incident snapshot and camera proximity queries to the map.
The refresh scheduler runs as a background task for the lifetime of the app.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.config import load_config
from core.engine import RefreshScheduler
from core.models import FeedSnapshot, GeoPoint, IncidentStatus
from extractors.classifier import IncidentClassifier, filter_by_category
from feed.fetcher import IncidentFeedFetcher
from geo.geocoder import GeocodeCache, GeocodeQueue
from geo.installations import load_installations, load_installations_with_fallback
from geo.proximity import ProximityIndex

load_dotenv(override=True)

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("incident_map.api")

# -----------------------------------------------------------------------------
# Shared state (replaced wholesale, never mutated field by field)
# -----------------------------------------------------------------------------
config = load_config()
classifier = IncidentClassifier()
proximity = ProximityIndex(load_installations(config.proximity.installations_path), config.proximity.default_radius_m)
geocode_cache = GeocodeCache()


class SnapshotStore:
    """Latest snapshot published by the scheduler's render step."""

    def __init__(self):
        self.current = FeedSnapshot()

    def publish(self, snapshot: FeedSnapshot) -> None:
        self.current = snapshot

    def clear(self) -> None:
        self.current = FeedSnapshot()


store = SnapshotStore()


def _autostart() -> bool:
    return os.environ.get("SCHEDULER_AUTOSTART", "1") == "1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    global proximity
    if not _autostart():
        logger.info("scheduler autostart disabled")
        yield
        return
    async with httpx.AsyncClient(follow_redirects=True) as client:
        if config.proximity.feature_server_url:
            installations = await load_installations_with_fallback(
                client, config.proximity.feature_server_url, config.proximity.installations_path,
            )
            proximity = ProximityIndex(installations, config.proximity.default_radius_m)
        fetcher = IncidentFeedFetcher(client, config.feed, classifier)
        geocoder = GeocodeQueue(client, config.geocoder, cache=geocode_cache)
        scheduler = RefreshScheduler(fetcher, geocoder, config.refresh, render=store.publish)
        task = asyncio.create_task(scheduler.run_forever())
        logger.info("scheduler started feed=%s", config.feed.url)
        try:
            yield
        finally:
            scheduler.stop()
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("scheduler stopped after %d cycles", scheduler.cycles)


app = FastAPI(title="Incident Map API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------------------------------------------------------
# Response models
# -----------------------------------------------------------------------------
class IncidentsResponse(BaseModel):
    status: str
    live: bool
    fetched_at: Optional[str] = None
    refresh: dict
    counts: dict
    incidents: list[dict]


class NearbyResponse(BaseModel):
    center: dict
    radius_m: float
    incident_id: Optional[str] = None
    installations: list[dict]


# -----------------------------------------------------------------------------
# No-cache for dynamic API responses (avoid 304 for stale data)
# -----------------------------------------------------------------------------
NO_CACHE_HEADERS = {"Cache-Control": "no-store, no-cache, must-revalidate", "Pragma": "no-cache"}


def _nearby_payload(center: GeoPoint, radius: Optional[float], incident_id: Optional[str] = None) -> dict:
    radius_m = proximity.default_radius_m if radius is None else radius
    hits = proximity.nearby(center, radius_m)
    return NearbyResponse(
        center=center.to_dict(),
        radius_m=radius_m,
        incident_id=incident_id,
        installations=[h.to_dict() for h in hits],
    ).model_dump()


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.get("/incidents")
def list_incidents(category: Optional[str] = None, status: Optional[IncidentStatus] = None):
    """Current snapshot, most recent first. Filters keep feed order."""
    snap = store.current
    records = filter_by_category(snap.records, category)
    if status is not None:
        records = [r for r in records if r.status is status]
    wanted = {r.id for r in records}
    incidents = [loc.to_dict() for loc in snap.located if loc.record.id in wanted]
    body = IncidentsResponse(
        status=snap.status.value,
        live=snap.live,
        fetched_at=snap.fetched_at.strftime("%Y-%m-%dT%H:%M:%S") if snap.fetched_at else None,
        refresh=snap.refresh.to_dict(),
        counts={
            "total": len(snap.records),
            "open": sum(1 for r in snap.records if r.is_open),
            "closed": sum(1 for r in snap.records if not r.is_open),
            "shown": len(incidents),
        },
        incidents=incidents,
    )
    return JSONResponse(content=body.model_dump(), headers=NO_CACHE_HEADERS)


@app.get("/incidents/{incident_id}/nearby")
def incident_nearby(incident_id: str, radius: Optional[float] = Query(default=None, ge=0)):
    """Installations around a located incident (user selected it on the map)."""
    located = store.current.find(incident_id)
    if located is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    if located.point is None:
        raise HTTPException(status_code=404, detail="Incident has no resolved location")
    return JSONResponse(content=_nearby_payload(located.point, radius, incident_id), headers=NO_CACHE_HEADERS)


@app.get("/nearby")
def point_nearby(
    lat: float = Query(ge=-90, le=90),
    lon: float = Query(ge=-180, le=180),
    radius: Optional[float] = Query(default=None, ge=0),
):
    """Installations around an arbitrary map click."""
    return JSONResponse(content=_nearby_payload(GeoPoint(lat, lon), radius), headers=NO_CACHE_HEADERS)


@app.get("/installations")
def list_installations():
    return {"count": len(proximity), "installations": [i.to_dict() for i in proximity.installations]}


@app.get("/categories")
def list_categories():
    return {
        "categories": [c.to_dict() for c in classifier.categories],
        "critical": sorted(config.refresh.critical_categories),
    }


@app.get("/health")
def health():
    snap = store.current
    return JSONResponse(
        content={
            "status": "ok",
            "feed": snap.status.value,
            "live": snap.live,
            "geocode_cache": len(geocode_cache),
            "installations": len(proximity),
        },
        headers=NO_CACHE_HEADERS,
    )
