"""
Runtime configuration from environment (optionally via .env).

Every tunable has a default; malformed values are logged and replaced by the default
so a typo in the environment never stops the map from starting.

- FEED_URL, FEED_WINDOW_MINUTES, FEED_RETRIES, FEED_RETRY_DELAY_SECONDS,
  FEED_MAX_PAGES, FEED_PAGE_DELAY_SECONDS, FEED_OPEN_MARKER, FEED_TIMEOUT_SECONDS,
  FEED_TIMEZONE (IANA name of the portal's local time, e.g. America/Santiago)
- GEOCODER_URL, GEOCODER_THROTTLE_MS, GEOCODER_TIMEOUT_SECONDS, GEOCODER_USER_AGENT,
  GEOCODER_LOCALITY, GEO_BBOX (min_lat,min_lon,max_lat,max_lon)
- REFRESH_IDLE_SECONDS, REFRESH_CRITICAL_SECONDS, REFRESH_BUSIEST_SECONDS,
  REFRESH_TIERS (e.g. 5:12,10:7 = up to 5 open → 12s, up to 10 → 7s), CRITICAL_CATEGORIES
- PROXIMITY_RADIUS_M, INSTALLATIONS_PATH, INSTALLATIONS_FEATURESERVER
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.models import BoundingBox

logger = logging.getLogger("incident_map.config")

DEFAULT_BBOX = BoundingBox(min_lat=-33.45, max_lat=-33.35, min_lon=-70.65, max_lon=-70.50)
DEFAULT_TIERS = ((5, 12), (10, 7))  # (max open count, seconds), ascending


@dataclass(frozen=True)
class FeedConfig:
    url: str = "https://seguridad.lascondes.cl/incidents"
    window_minutes: int = 60
    retries: int = 2
    retry_delay_seconds: float = 2.0
    max_pages: int = 15
    page_delay_seconds: float = 0.4
    open_marker: str = "badge-danger"
    timeout_seconds: float = 15.0
    timezone: str = "America/Santiago"  # listing timestamps are naive local times


@dataclass(frozen=True)
class GeocoderConfig:
    url: str = "https://nominatim.openstreetmap.org/search"
    throttle_seconds: float = 1.1
    timeout_seconds: float = 10.0
    user_agent: str = "incident-map/1.0"
    locality: str = "Las Condes, Santiago, Chile"
    bbox: BoundingBox = DEFAULT_BBOX


@dataclass(frozen=True)
class RefreshConfig:
    idle_seconds: int = 20
    critical_seconds: int = 5
    busiest_seconds: int = 5
    tiers: tuple = DEFAULT_TIERS
    critical_categories: frozenset = frozenset({"robo", "sospechoso"})


@dataclass(frozen=True)
class ProximityConfig:
    default_radius_m: float = 300.0
    installations_path: Optional[str] = None
    feature_server_url: Optional[str] = None


@dataclass(frozen=True)
class AppConfig:
    feed: FeedConfig = field(default_factory=FeedConfig)
    geocoder: GeocoderConfig = field(default_factory=GeocoderConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    proximity: ProximityConfig = field(default_factory=ProximityConfig)


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return default
    try:
        return max(minimum, float(v.strip()))
    except ValueError:
        logger.warning("invalid %s=%r, using default %s", name, v, default)
        return default


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return default
    try:
        return max(minimum, int(v.strip()))
    except ValueError:
        logger.warning("invalid %s=%r, using default %s", name, v, default)
        return default


def parse_tiers(s: Optional[str]) -> Optional[tuple]:
    """'3:12,10:7' → ((3, 12), (10, 7)) sorted by threshold. None if malformed."""
    if not s or not s.strip():
        return None
    tiers = []
    for part in s.split(","):
        part = part.strip()
        if not part:
            continue
        threshold, sep, seconds = part.partition(":")
        if not sep:
            return None
        try:
            tiers.append((int(threshold), int(seconds)))
        except ValueError:
            return None
    if not tiers or any(t < 0 or sec <= 0 for t, sec in tiers):
        return None
    return tuple(sorted(tiers))


def parse_bbox(s: Optional[str]) -> Optional[BoundingBox]:
    """'min_lat,min_lon,max_lat,max_lon' → BoundingBox. None if malformed."""
    if not s or not s.strip():
        return None
    parts = [p.strip() for p in s.split(",")]
    if len(parts) != 4:
        return None
    try:
        min_lat, min_lon, max_lat, max_lon = (float(p) for p in parts)
    except ValueError:
        return None
    if min_lat >= max_lat or min_lon >= max_lon:
        return None
    return BoundingBox(min_lat=min_lat, max_lat=max_lat, min_lon=min_lon, max_lon=max_lon)


def _env_timezone(name: str, default: str) -> str:
    v = _env_str(name, default)
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("invalid %s=%r, using default %s", name, v, default)
        return default
    return v


def _parse_ids(s: Optional[str]) -> Optional[frozenset]:
    if s is None:
        return None
    return frozenset(p.strip().lower() for p in s.split(",") if p.strip())


def load_config() -> AppConfig:
    """Build AppConfig from the current environment."""
    tiers_raw = os.environ.get("REFRESH_TIERS")
    tiers = parse_tiers(tiers_raw)
    if tiers_raw and tiers is None:
        logger.warning("invalid REFRESH_TIERS=%r, using default", tiers_raw)
    bbox_raw = os.environ.get("GEO_BBOX")
    bbox = parse_bbox(bbox_raw)
    if bbox_raw and bbox is None:
        logger.warning("invalid GEO_BBOX=%r, using default", bbox_raw)
    critical = _parse_ids(os.environ.get("CRITICAL_CATEGORIES"))

    feed = FeedConfig(
        url=_env_str("FEED_URL", FeedConfig.url),
        window_minutes=_env_int("FEED_WINDOW_MINUTES", FeedConfig.window_minutes, minimum=1),
        retries=_env_int("FEED_RETRIES", FeedConfig.retries),
        retry_delay_seconds=_env_float("FEED_RETRY_DELAY_SECONDS", FeedConfig.retry_delay_seconds),
        max_pages=_env_int("FEED_MAX_PAGES", FeedConfig.max_pages, minimum=1),
        page_delay_seconds=_env_float("FEED_PAGE_DELAY_SECONDS", FeedConfig.page_delay_seconds),
        open_marker=_env_str("FEED_OPEN_MARKER", FeedConfig.open_marker),
        timeout_seconds=_env_float("FEED_TIMEOUT_SECONDS", FeedConfig.timeout_seconds, minimum=0.1),
        timezone=_env_timezone("FEED_TIMEZONE", FeedConfig.timezone),
    )
    geocoder = GeocoderConfig(
        url=_env_str("GEOCODER_URL", GeocoderConfig.url),
        throttle_seconds=_env_float("GEOCODER_THROTTLE_MS", GeocoderConfig.throttle_seconds * 1000) / 1000.0,
        timeout_seconds=_env_float("GEOCODER_TIMEOUT_SECONDS", GeocoderConfig.timeout_seconds, minimum=0.1),
        user_agent=_env_str("GEOCODER_USER_AGENT", GeocoderConfig.user_agent),
        locality=_env_str("GEOCODER_LOCALITY", GeocoderConfig.locality),
        bbox=bbox or DEFAULT_BBOX,
    )
    refresh = RefreshConfig(
        idle_seconds=_env_int("REFRESH_IDLE_SECONDS", RefreshConfig.idle_seconds, minimum=1),
        critical_seconds=_env_int("REFRESH_CRITICAL_SECONDS", RefreshConfig.critical_seconds, minimum=1),
        busiest_seconds=_env_int("REFRESH_BUSIEST_SECONDS", RefreshConfig.busiest_seconds, minimum=1),
        tiers=tiers or DEFAULT_TIERS,
        critical_categories=critical if critical is not None else RefreshConfig.critical_categories,
    )
    proximity = ProximityConfig(
        default_radius_m=_env_float("PROXIMITY_RADIUS_M", ProximityConfig.default_radius_m),
        installations_path=_env_str("INSTALLATIONS_PATH", None),
        feature_server_url=_env_str("INSTALLATIONS_FEATURESERVER", None),
    )
    return AppConfig(feed=feed, geocoder=geocoder, refresh=refresh, proximity=proximity)
