"""
Incident listing fetcher: retrying HTTP GET + parse.

fetch_page never raises: after the last failed attempt it returns FeedPage(live=False),
which callers must read as "keep the last-known-good data and show a connectivity
warning", not "clear the map".
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import httpx

from core.config import FeedConfig
from core.models import FeedPage
from extractors.classifier import IncidentClassifier
from feed.parser import FeedSchemaError, parse_incident_rows

logger = logging.getLogger("incident_map.feed.fetcher")

ERROR_UNREACHABLE = "unreachable"
ERROR_SCHEMA = "schema"


def feed_clock(tz_name: str, utc_now: Optional[Callable[[], datetime]] = None) -> Callable[[], datetime]:
    """
    Naive wall-clock time in the portal's timezone, comparable with listing timestamps.
    Independent of the host's TZ: the server may run in UTC while the portal prints Santiago time.
    """
    zone = ZoneInfo(tz_name)

    def now() -> datetime:
        current = utc_now() if utc_now is not None else datetime.now(timezone.utc)
        return current.astimezone(zone).replace(tzinfo=None)

    return now


class IncidentFeedFetcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        config: FeedConfig,
        classifier: IncidentClassifier,
        sleep: Callable = asyncio.sleep,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._client = client
        self._config = config
        self._classifier = classifier
        self._sleep = sleep
        self._now = now or feed_clock(config.timezone)

    async def _get_html(self, page: int) -> str:
        resp = await self._client.get(
            self._config.url,
            params={"page": str(page)},
            headers={"Accept": "text/html, application/xhtml+xml"},
            timeout=self._config.timeout_seconds,
        )
        resp.raise_for_status()
        return resp.text

    async def fetch_page(self, page: int = 1) -> FeedPage:
        """One listing page, with `retries` extra attempts and attempt × base backoff."""
        attempts = self._config.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                html = await self._get_html(page)
                records = parse_incident_rows(
                    html,
                    self._classifier,
                    now=self._now(),
                    window_minutes=self._config.window_minutes,
                    open_marker=self._config.open_marker,
                )
                return FeedPage(records=tuple(records), live=True)
            except FeedSchemaError as e:
                # Retrying will not fix a markup change
                logger.warning("feed schema drift page=%d: %s", page, e)
                return FeedPage(records=(), live=False, error=ERROR_SCHEMA)
            except httpx.HTTPError as e:
                logger.warning("feed fetch failed page=%d attempt=%d/%d: %s", page, attempt, attempts, e)
                if attempt < attempts:
                    await self._sleep(attempt * self._config.retry_delay_seconds)
        logger.error("feed unreachable page=%d after %d attempts", page, attempts)
        return FeedPage(records=(), live=False, error=ERROR_UNREACHABLE)

    async def fetch_recent(self) -> FeedPage:
        """
        Walk listing pages until one has nothing inside the time window (or max_pages).
        Records are de-duplicated by id, first occurrence wins, most recent first.
        """
        seen: dict = {}
        for page in range(1, self._config.max_pages + 1):
            result = await self.fetch_page(page)
            if not result.live:
                if page == 1:
                    return result
                logger.warning("feed page=%d failed, keeping %d records from earlier pages", page, len(seen))
                break
            for record in result.records:
                seen.setdefault(record.id, record)
            if not result.records:
                break
            if page < self._config.max_pages:
                await self._sleep(self._config.page_delay_seconds)
        records = sorted(seen.values(), key=lambda r: r.occurred_at, reverse=True)
        logger.info("feed fetched records=%d", len(records))
        return FeedPage(records=tuple(records), live=True)
