"""Core feed models, configuration and the refresh cycle."""

from core.models import IncidentRecord, Category, GeoPoint, Installation, RefreshState, FeedSnapshot
from core.engine import refresh_interval, compute_refresh_state, RefreshScheduler

__all__ = [
    "IncidentRecord",
    "Category",
    "GeoPoint",
    "Installation",
    "RefreshState",
    "FeedSnapshot",
    "refresh_interval",
    "compute_refresh_state",
    "RefreshScheduler",
]
