"""
Installations (cameras) within a radius of a point.

Linear scan over the whole dataset on every query: ~2,000 installations and one query per
user click, so a grid or R-tree would not pay for itself. Revisit if the dataset grows by
an order of magnitude.
"""

import logging
from typing import Iterable, NamedTuple, Optional

from core.models import GeoPoint, Installation
from geo.distance import haversine_m

logger = logging.getLogger("incident_map.geo.proximity")


class NearbyInstallation(NamedTuple):
    installation: Installation
    distance_m: float

    def to_dict(self):
        d = self.installation.to_dict()
        d["distance_m"] = round(self.distance_m, 1)
        return d


class ProximityIndex:
    def __init__(self, installations: Iterable[Installation], default_radius_m: float = 300.0):
        self._installations = tuple(installations)
        self.default_radius_m = default_radius_m

    def __len__(self) -> int:
        return len(self._installations)

    @property
    def installations(self) -> tuple:
        return self._installations

    def nearby(self, center: GeoPoint, radius_m: Optional[float] = None) -> list:
        """
        Installations with distance <= radius_m (inclusive), nearest first.
        Equal distances keep dataset order.
        """
        radius = self.default_radius_m if radius_m is None else radius_m
        if radius < 0:
            raise ValueError(f"radius must be >= 0, got {radius}")
        hits = []
        for inst in self._installations:
            d = haversine_m(center.lat, center.lon, inst.lat, inst.lon)
            if d <= radius:
                hits.append(NearbyInstallation(inst, d))
        hits.sort(key=lambda h: h.distance_m)
        logger.debug("nearby lat=%.6f lon=%.6f radius=%.1f hits=%d", center.lat, center.lon, radius, len(hits))
        return hits
