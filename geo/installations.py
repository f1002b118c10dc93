"""
Static installation (camera) dataset, loaded once at startup.

Sources, in order of preference:
- an ArcGIS FeatureServer layer (INSTALLATIONS_FEATURESERVER), queried once;
- a JSON file (INSTALLATIONS_PATH), or the bundled geo/data/cameras.json.

JSON rows are either arrays [lat, lon, label, id, address, sector, type] or objects
with lat/lon (or lng), id, label, category and any extra attributes.
"""

import json
import logging
import math
from pathlib import Path
from typing import Optional

import httpx

from core.models import Installation

logger = logging.getLogger("incident_map.geo.installations")

BUNDLED_PATH = Path(__file__).resolve().parent / "data" / "cameras.json"
WEB_MERCATOR_WKIDS = {102100, 3857}
WEB_MERCATOR_HALF_WORLD = 20037508.34
DEFAULT_LABEL = "Cámara"


def _from_row(row) -> Optional[Installation]:
    if isinstance(row, (list, tuple)):
        if len(row) < 2:
            return None
        padded = list(row) + [""] * (7 - len(row))
        lat, lon, label, code, address, sector, kind = padded[:7]
        attributes = {k: v for k, v in (("address", address), ("sector", sector)) if v}
        return Installation(
            lat=float(lat), lon=float(lon), id=str(code or ""), label=str(label or DEFAULT_LABEL),
            category=str(kind or ""), attributes=attributes,
        )
    if isinstance(row, dict):
        lon = row.get("lon", row.get("lng"))
        if row.get("lat") is None or lon is None:
            return None
        known = {"lat", "lon", "lng", "id", "label", "category"}
        return Installation(
            lat=float(row["lat"]), lon=float(lon), id=str(row.get("id") or ""),
            label=str(row.get("label") or DEFAULT_LABEL), category=str(row.get("category") or ""),
            attributes={k: v for k, v in row.items() if k not in known},
        )
    return None


def parse_installations(rows: list) -> list:
    """Convert raw JSON rows; malformed rows are skipped with a warning."""
    out = []
    for i, row in enumerate(rows):
        try:
            inst = _from_row(row)
        except (TypeError, ValueError) as e:
            logger.warning("installation row %d skipped: %s", i, e)
            continue
        if inst is None:
            logger.warning("installation row %d skipped: missing coordinates", i)
            continue
        out.append(inst)
    return out


def load_installations(path: Optional[str] = None) -> list:
    """Read the dataset from path (or the bundled file)."""
    source = Path(path) if path else BUNDLED_PATH
    with source.open(encoding="utf-8") as fh:
        rows = json.load(fh)
    if not isinstance(rows, list):
        raise ValueError(f"{source}: expected a JSON array of installations")
    installations = parse_installations(rows)
    logger.info("installations loaded source=%s count=%d", source, len(installations))
    return installations


def web_mercator_to_wgs84(x: float, y: float) -> tuple:
    """EPSG:3857 metres → (lat, lon) degrees."""
    lon = (x / WEB_MERCATOR_HALF_WORLD) * 180
    lat = math.atan(math.exp((y / WEB_MERCATOR_HALF_WORLD) * math.pi)) * 360 / math.pi - 90
    return lat, lon


def parse_feature_server(data: dict) -> list:
    """FeatureServer query JSON → installations. Coordinates converted when in Web Mercator."""
    features = data.get("features") or []
    wkid = (data.get("spatialReference") or {}).get("wkid")
    is_mercator = wkid in WEB_MERCATOR_WKIDS
    out = []
    for f in features:
        geometry = f.get("geometry") or {}
        attrs = f.get("attributes") or {}
        if geometry.get("x") is None or geometry.get("y") is None:
            continue
        x, y = float(geometry["x"]), float(geometry["y"])
        lat, lon = web_mercator_to_wgs84(x, y) if is_mercator else (y, x)
        attributes = {
            k: v for k, v in (("address", attrs.get("direccion")), ("sector", attrs.get("destacamen"))) if v
        }
        out.append(Installation(
            lat=lat,
            lon=lon,
            id=str(attrs.get("id_camara") or attrs.get("id_centro") or ""),
            label=str(attrs.get("nombre_csv") or attrs.get("nombre_hik") or attrs.get("Name") or DEFAULT_LABEL),
            category=str(attrs.get("tipo_de_c") or ""),
            attributes=attributes,
        ))
    return out


async def fetch_feature_server(client: httpx.AsyncClient, url: str, limit: int = 2000) -> list:
    """Query every feature of the layer. Raises httpx.HTTPError / ValueError on failure."""
    params = {
        "where": "1=1",
        "outFields": "*",
        "f": "json",
        "returnGeometry": "true",
        "resultRecordCount": str(limit),
    }
    resp = await client.get(f"{url.rstrip('/')}/query", params=params)
    resp.raise_for_status()
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError("FeatureServer response is not a JSON object")
    return parse_feature_server(data)


async def load_installations_with_fallback(
    client: httpx.AsyncClient,
    feature_server_url: Optional[str],
    path: Optional[str] = None,
) -> list:
    """FeatureServer when configured and non-empty, else the JSON dataset."""
    if feature_server_url:
        try:
            installations = await fetch_feature_server(client, feature_server_url)
            if installations:
                logger.info("installations loaded from FeatureServer count=%d", len(installations))
                return installations
            logger.warning("FeatureServer returned no installations; using JSON dataset")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("FeatureServer fetch failed, using JSON dataset: %s", e)
    return load_installations(path)
