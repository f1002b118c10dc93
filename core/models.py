"""Incident feed models: immutable records, taxonomy, geo points and cycle snapshots."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class IncidentStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class GeocodeState(str, Enum):
    """Lifecycle of one normalized address key inside the geocode queue."""
    UNRESOLVED = "unresolved"
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    CACHED = "cached"


class FeedStatus(str, Enum):
    LIVE = "live"  # live and at least one recent incident
    EMPTY = "empty"  # live, nothing in the time window
    DISCONNECTED = "disconnected"  # showing last-known-good data
    SCHEMA_ERROR = "schema_error"  # upstream markup no longer matches


@dataclass(frozen=True)
class Category:
    id: str
    display_name: str
    color_token: str
    keywords: tuple = ()  # declaration order matters: first match wins

    def to_dict(self):
        return {"id": self.id, "display_name": self.display_name, "color_token": self.color_token}


OTHER_CATEGORY = Category(id="otro", display_name="Otro", color_token="#6b7280")


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float

    def to_dict(self):
        return {"lat": round(self.lat, 6), "lon": round(self.lon, 6)}


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, point: GeoPoint) -> bool:
        return self.min_lat <= point.lat <= self.max_lat and self.min_lon <= point.lon <= self.max_lon

    def viewbox(self) -> str:
        """Nominatim viewbox: lon1,lat1,lon2,lat2."""
        return f"{self.min_lon},{self.max_lat},{self.max_lon},{self.min_lat}"


@dataclass(frozen=True)
class IncidentRecord:
    id: str
    occurred_at: datetime
    type: str
    operator_id: str
    description: str
    address: str
    status: IncidentStatus
    category: Category = OTHER_CATEGORY

    @property
    def is_open(self) -> bool:
        return self.status is IncidentStatus.OPEN

    def to_dict(self):
        return {
            "id": self.id,
            "occurred_at": self.occurred_at.strftime("%Y-%m-%dT%H:%M:%S"),
            "type": self.type,
            "operator_id": self.operator_id,
            "description": self.description,
            "address": self.address,
            "status": self.status.value,
            "category": self.category.to_dict(),
        }


@dataclass(frozen=True)
class Installation:
    """Fixed point asset (camera). Read-only reference data."""
    lat: float
    lon: float
    id: str
    label: str
    category: str = ""
    attributes: dict = field(default_factory=dict, compare=False, hash=False)

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.lat, self.lon)

    def to_dict(self):
        d = {
            "id": self.id,
            "label": self.label,
            "category": self.category,
            "lat": round(self.lat, 6),
            "lon": round(self.lon, 6),
        }
        if self.attributes:
            d["attributes"] = dict(self.attributes)
        return d


@dataclass(frozen=True)
class RefreshState:
    pending_count: int = 0
    has_critical_category: bool = False
    last_interval_sec: int = 0

    def to_dict(self):
        return {
            "pending_count": self.pending_count,
            "has_critical_category": self.has_critical_category,
            "last_interval_sec": self.last_interval_sec,
        }


@dataclass(frozen=True)
class FeedPage:
    records: tuple = ()
    live: bool = False
    error: Optional[str] = None  # "unreachable" | "schema" when live is False


@dataclass(frozen=True)
class LocatedIncident:
    record: IncidentRecord
    point: Optional[GeoPoint] = None

    def to_dict(self):
        d = self.record.to_dict()
        d["location"] = self.point.to_dict() if self.point is not None else None
        return d


@dataclass(frozen=True)
class FeedSnapshot:
    """Result of one refresh cycle. Replaced wholesale, never mutated."""
    records: tuple = ()
    located: tuple = ()
    live: bool = False
    status: FeedStatus = FeedStatus.DISCONNECTED
    fetched_at: Optional[datetime] = None
    refresh: RefreshState = field(default_factory=RefreshState)

    def find(self, incident_id: str) -> Optional[LocatedIncident]:
        return next((loc for loc in self.located if loc.record.id == incident_id), None)
