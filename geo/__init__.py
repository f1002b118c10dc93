"""Geo: haversine distance, camera proximity, throttled geocoding, installation dataset."""

from geo.distance import haversine_m
from geo.proximity import ProximityIndex, NearbyInstallation
from geo.geocoder import GeocodeCache, GeocodeQueue
from geo.installations import load_installations

__all__ = [
    "haversine_m",
    "ProximityIndex",
    "NearbyInstallation",
    "GeocodeCache",
    "GeocodeQueue",
    "load_installations",
]
