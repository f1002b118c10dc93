"""
Address → GeoPoint through a Nominatim-style service.

- One process-wide cache per queue (injected), keyed by normalized address; failures are
  cached as None and never retried for the session.
- Single flight: concurrent resolve() calls for the same key share one future.
- One FIFO worker; at least `throttle_seconds` between the end of one upstream request
  and the start of the next. The upstream service bans bursts.
- Each request is bounded by `timeout_seconds`; a stuck request becomes a failure and
  the queue moves on.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Optional

import httpx

from core.config import GeocoderConfig
from core.models import GeocodeState, GeoPoint
from extractors.address import cache_key, geocoder_query

logger = logging.getLogger("incident_map.geo.geocoder")


class GeocodeCache:
    """Normalized key → GeoPoint | None. No expiry: street addresses do not move."""

    def __init__(self):
        self._entries: dict[str, Optional[GeoPoint]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[GeoPoint]:
        return self._entries.get(key)

    def set(self, key: str, point: Optional[GeoPoint]) -> None:
        self._entries[key] = point

    def failures(self) -> int:
        return sum(1 for p in self._entries.values() if p is None)


def parse_geocode_response(data, bbox) -> Optional[GeoPoint]:
    """First candidate of a Nominatim JSON array, if inside bbox."""
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    if not isinstance(first, dict):
        return None
    try:
        point = GeoPoint(lat=float(first["lat"]), lon=float(first["lon"]))
    except (KeyError, TypeError, ValueError):
        return None
    if not bbox.contains(point):
        logger.info("geocode out of bounds lat=%s lon=%s", point.lat, point.lon)
        return None
    return point


class GeocodeQueue:
    def __init__(
        self,
        client: httpx.AsyncClient,
        config: GeocoderConfig,
        cache: Optional[GeocodeCache] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._config = config
        self.cache = cache if cache is not None else GeocodeCache()
        self._sleep = sleep
        self._clock = clock
        self._queue: deque = deque()  # (key, raw address) in first-request order
        self._pending: dict[str, asyncio.Future] = {}
        self._in_flight: Optional[str] = None
        self._worker: Optional[asyncio.Task] = None
        self._last_request_end: Optional[float] = None

    def state(self, address: Optional[str]) -> GeocodeState:
        key = cache_key(address)
        if key in self.cache:
            return GeocodeState.CACHED
        if key == self._in_flight:
            return GeocodeState.IN_FLIGHT
        if key in self._pending:
            return GeocodeState.QUEUED
        return GeocodeState.UNRESOLVED

    def peek(self, address: Optional[str]) -> Optional[GeoPoint]:
        """Cached point without queueing (None when unknown or failed)."""
        return self.cache.get(cache_key(address))

    async def resolve(self, address: Optional[str]) -> Optional[GeoPoint]:
        key = cache_key(address)
        if not key:
            return None
        if key in self.cache:
            return self.cache.get(key)
        fut = self._pending.get(key)
        if fut is None:
            fut = asyncio.get_running_loop().create_future()
            self._pending[key] = fut
            self._queue.append((key, address))
            logger.debug("geocode queued key=%r depth=%d", key, len(self._queue))
            self._ensure_worker()
        # shield: a cancelled caller must not cancel the lookup other callers share
        return await asyncio.shield(fut)

    async def join(self) -> None:
        """Wait until every queued address is resolved."""
        while self._worker is not None and not self._worker.done():
            await self._worker

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while self._queue:
            key, address = self._queue.popleft()
            await self._wait_for_throttle()
            self._in_flight = key
            try:
                point = await self._lookup(address)
            except Exception:
                logger.exception("geocode lookup crashed key=%r", key)
                point = None
            finally:
                self._in_flight = None
                self._last_request_end = self._clock()
            self.cache.set(key, point)
            fut = self._pending.pop(key, None)
            if fut is not None and not fut.done():
                fut.set_result(point)
            logger.info("geocode %s key=%r remaining=%d", "ok" if point else "failed", key, len(self._queue))

    async def _wait_for_throttle(self) -> None:
        if self._last_request_end is None:
            return
        remaining = self._config.throttle_seconds - (self._clock() - self._last_request_end)
        if remaining > 0:
            await self._sleep(remaining)

    async def _lookup(self, address: str) -> Optional[GeoPoint]:
        query = geocoder_query(address, self._config.locality)
        params = {
            "format": "json",
            "q": query,
            "limit": "1",
            "bounded": "1",
            "viewbox": self._config.bbox.viewbox(),
        }
        headers = {"User-Agent": self._config.user_agent, "Accept": "application/json"}
        try:
            resp = await asyncio.wait_for(
                self._client.get(self._config.url, params=params, headers=headers),
                timeout=self._config.timeout_seconds,
            )
            resp.raise_for_status()
            return parse_geocode_response(resp.json(), self._config.bbox)
        except asyncio.TimeoutError:
            logger.warning("geocode timed out after %.1fs q=%r", self._config.timeout_seconds, query)
        except httpx.HTTPError as e:
            logger.warning("geocode request failed q=%r: %s", query, e)
        except ValueError as e:
            logger.warning("geocode response not JSON q=%r: %s", query, e)
        return None
