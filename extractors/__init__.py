"""Text extractors: geocoder query from a raw address, category from an incident type."""

from extractors.address import normalize, cache_key, geocoder_query
from extractors.classifier import IncidentClassifier, DEFAULT_CATEGORIES, filter_by_category

__all__ = [
    "normalize",
    "cache_key",
    "geocoder_query",
    "IncidentClassifier",
    "DEFAULT_CATEGORIES",
    "filter_by_category",
]
