"""
Refresh cycle: fetch → classify → geocode → render → pick next interval → sleep.

The interval is chosen from (open count, any open critical category) only, so it can be
tested without a network. A cycle never raises: feed or geocoder failures produce a
DISCONNECTED snapshot that still carries the last-known-good records.
"""

import asyncio
import inspect
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Optional

from core.config import RefreshConfig
from core.models import (
    FeedSnapshot,
    FeedStatus,
    GeocodeState,
    IncidentRecord,
    LocatedIncident,
    RefreshState,
)

logger = logging.getLogger("incident_map.engine")


def refresh_interval(
    open_count: int,
    has_critical: bool,
    config: Optional[RefreshConfig] = None,
) -> int:
    """
    Seconds until the next poll.
    - no open incidents            → idle (20s)
    - any open critical incident   → critical (5s), whatever the count
    - else first tier whose threshold is not exceeded (<=5 → 12s, <=10 → 7s)
    - else                         → busiest (5s)
    """
    cfg = config or RefreshConfig()
    if open_count <= 0:
        return cfg.idle_seconds
    if has_critical:
        return cfg.critical_seconds
    for threshold, seconds in cfg.tiers:
        if open_count <= threshold:
            return seconds
    return cfg.busiest_seconds


def compute_refresh_state(records: Iterable[IncidentRecord], config: Optional[RefreshConfig] = None) -> RefreshState:
    cfg = config or RefreshConfig()
    open_records = [r for r in records if r.is_open]
    has_critical = any(r.category.id in cfg.critical_categories for r in open_records)
    return RefreshState(
        pending_count=len(open_records),
        has_critical_category=has_critical,
        last_interval_sec=refresh_interval(len(open_records), has_critical, cfg),
    )


def feed_status(live: bool, record_count: int, error: Optional[str]) -> FeedStatus:
    if live:
        return FeedStatus.LIVE if record_count else FeedStatus.EMPTY
    if error == "schema":
        return FeedStatus.SCHEMA_ERROR
    return FeedStatus.DISCONNECTED


class RefreshScheduler:
    """
    Owns the cycle and the current snapshot. Collaborators are injected:
    fetcher (fetch_recent), geocoder (state, peek, resolve), render (optional, sync or async).
    """

    def __init__(
        self,
        fetcher,
        geocoder,
        config: Optional[RefreshConfig] = None,
        render: Optional[Callable] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._fetcher = fetcher
        self._geocoder = geocoder
        self._config = config or RefreshConfig()
        self._render = render
        self._sleep = sleep
        self._clock = clock
        self._snapshot = FeedSnapshot(refresh=RefreshState(last_interval_sec=self._config.idle_seconds))
        self._stop = asyncio.Event()
        self.cycles = 0

    @property
    def snapshot(self) -> FeedSnapshot:
        return self._snapshot

    @property
    def state(self) -> RefreshState:
        return self._snapshot.refresh

    async def _locate(self, record: IncidentRecord) -> LocatedIncident:
        if not record.address:
            return LocatedIncident(record=record)
        return LocatedIncident(record=record, point=await self._geocoder.resolve(record.address))

    def _needs_lookup(self, record: IncidentRecord) -> bool:
        return bool(record.address) and self._geocoder.state(record.address) is not GeocodeState.CACHED

    async def _build_snapshot(self) -> FeedSnapshot:
        page = await self._fetcher.fetch_recent()
        previous = self._snapshot
        if page.live:
            records = tuple(page.records)
        else:
            # Keep last-known-good data on screen
            records = previous.records
        snapshot = FeedSnapshot(
            records=records,
            located=tuple(
                LocatedIncident(r, self._geocoder.peek(r.address) if r.address else None) for r in records
            ),
            live=page.live,
            status=feed_status(page.live, len(records), page.error),
            fetched_at=self._clock() if page.live else previous.fetched_at,
            refresh=compute_refresh_state(records, self._config),
        )
        unresolved = sum(1 for r in records if self._needs_lookup(r))
        if not unresolved:
            return snapshot
        # New addresses wait on the throttled geocoder; show the list with cached points meanwhile
        logger.debug("cycle=%d publishing before geocoding unresolved=%d", self.cycles, unresolved)
        await self._publish(snapshot)
        # gather starts resolves in record order, so the geocode FIFO follows feed order
        located = tuple(await asyncio.gather(*(self._locate(r) for r in records)))
        return replace(snapshot, located=located)

    async def _publish(self, snapshot: FeedSnapshot) -> None:
        self._snapshot = snapshot
        if self._render is None:
            return
        try:
            result = self._render(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("render failed in cycle %d", self.cycles)

    async def run_cycle(self) -> FeedSnapshot:
        """
        One full cycle. Always returns a snapshot; never raises.
        Render may be called twice: once before new addresses are geocoded, once after.
        """
        self.cycles += 1
        try:
            snapshot = await self._build_snapshot()
        except Exception:
            logger.exception("refresh cycle %d failed; keeping previous data", self.cycles)
            previous = self._snapshot
            snapshot = FeedSnapshot(
                records=previous.records,
                located=previous.located,
                live=False,
                status=FeedStatus.DISCONNECTED,
                fetched_at=previous.fetched_at,
                refresh=compute_refresh_state(previous.records, self._config),
            )
        await self._publish(snapshot)
        located_count = sum(1 for loc in snapshot.located if loc.point is not None)
        logger.info(
            "cycle=%d status=%s records=%d located=%d open=%d critical=%s next_in=%ds",
            self.cycles, snapshot.status.value, len(snapshot.records), located_count,
            snapshot.refresh.pending_count, snapshot.refresh.has_critical_category,
            snapshot.refresh.last_interval_sec,
        )
        return snapshot

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """Cycle, then sleep the computed interval. The next cycle starts only after the previous one ends."""
        self._stop.clear()
        done = 0
        while not self._stop.is_set():
            snapshot = await self.run_cycle()
            done += 1
            if max_cycles is not None and done >= max_cycles:
                break
            if self._stop.is_set():
                break
            await self._sleep(snapshot.refresh.last_interval_sec)

    def stop(self) -> None:
        self._stop.set()
