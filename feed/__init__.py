"""Incident listing: HTML parsing and retrying fetch."""

from feed.parser import FeedSchemaError, parse_incident_rows
from feed.fetcher import IncidentFeedFetcher, feed_clock

__all__ = ["FeedSchemaError", "parse_incident_rows", "IncidentFeedFetcher", "feed_clock"]
