"""Tests for the incident listing parser and the retrying fetcher."""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import httpx
import pytest

from core.models import IncidentStatus
from feed.fetcher import IncidentFeedFetcher, feed_clock
from feed.parser import FeedSchemaError, parse_incident_rows, parse_timestamp


class TestParseTimestamp:
    def test_valid(self):
        assert parse_timestamp("10/02/2026 13:45") == datetime(2026, 2, 10, 13, 45)

    @pytest.mark.parametrize("text", [None, "", "2026-02-10 13:45", "31/02/2026 10:00", "10/02/2026"])
    def test_invalid(self, text):
        assert parse_timestamp(text) is None


class TestParseRows:
    def test_fields_by_position(self, listing, ago, classifier, now):
        html = listing([{
            "open": True, "ts": ago(5), "type": "Robo con intimidación", "id": "INC-1",
            "operator": "OP7", "description": "Dos sujetos huyen\nsegunda línea", "address": "EL TOQUI, 2001",
        }])
        [record] = parse_incident_rows(html, classifier, now)
        assert record.id == "INC-1"
        assert record.type == "Robo con intimidación"
        assert record.operator_id == "OP7"
        assert record.description == "Dos sujetos huyen"
        assert record.address == "EL TOQUI, 2001"
        assert record.status is IncidentStatus.OPEN
        assert record.category.id == "robo"
        assert record.occurred_at == datetime(2026, 2, 10, 13, 55)

    def test_description_truncated(self, listing, ago, classifier, now):
        html = listing([{"ts": ago(1), "id": "1", "description": "x" * 300}])
        [record] = parse_incident_rows(html, classifier, now)
        assert len(record.description) == 120

    def test_rows_outside_window_excluded(self, listing, ago, classifier, now):
        html = listing([
            {"ts": ago(10), "id": "recent"},
            {"ts": ago(60), "id": "edge"},
            {"ts": ago(61), "id": "old"},
            {"ts": ago(600), "id": "ancient"},
        ])
        ids = [r.id for r in parse_incident_rows(html, classifier, now, window_minutes=60)]
        assert ids == ["recent", "edge"]

    def test_sorted_most_recent_first(self, listing, ago, classifier, now):
        html = listing([
            {"ts": ago(30), "id": "b"},
            {"ts": ago(2), "id": "a"},
            {"ts": ago(45), "id": "c"},
        ])
        records = parse_incident_rows(html, classifier, now)
        assert [r.id for r in records] == ["a", "b", "c"]
        assert all(x.occurred_at >= y.occurred_at for x, y in zip(records, records[1:]))

    def test_short_and_malformed_rows_skipped(self, listing, ago, classifier, now):
        html = listing([{"ts": ago(3), "id": "good"}, {"ts": "sin fecha", "id": "bad-ts"}])
        html = html.replace("</tbody>", "<tr><td>solo</td><td>dos</td></tr></tbody>")
        assert [r.id for r in parse_incident_rows(html, classifier, now)] == ["good"]

    def test_status_from_badge_marker(self, listing, ago, classifier, now):
        # Structural coupling: OPEN only because the first cell carries badge-danger.
        # If the portal restyles its badges this test is the first thing that should break.
        html = listing([{"open": True, "ts": ago(1), "id": "p"}, {"open": False, "ts": ago(2), "id": "c"}])
        status = {r.id: r.status for r in parse_incident_rows(html, classifier, now)}
        assert status == {"p": IncidentStatus.OPEN, "c": IncidentStatus.CLOSED}

    def test_custom_open_marker(self, listing, ago, classifier, now):
        html = listing([{"open": True, "ts": ago(1), "id": "p"}]).replace("badge-danger", "estado-pendiente")
        [record] = parse_incident_rows(html, classifier, now, open_marker="estado-pendiente")
        assert record.is_open

    def test_empty_table_is_not_an_error(self, listing, classifier, now):
        assert parse_incident_rows(listing([]), classifier, now) == []

    def test_missing_table_is_schema_drift(self, classifier, now):
        with pytest.raises(FeedSchemaError):
            parse_incident_rows("<html><body><p>Mantención</p></body></html>", classifier, now)

    def test_no_row_with_expected_columns_is_schema_drift(self, classifier, now):
        html = '<table class="table"><tbody><tr><td>a</td><td>b</td></tr></tbody></table>'
        with pytest.raises(FeedSchemaError):
            parse_incident_rows(html, classifier, now)


class Portal:
    """Mock listing endpoint: per-page HTML, optional scripted failures."""

    def __init__(self, pages: dict, failures: int = 0, status: int = 503):
        self.pages = pages
        self.failures = failures
        self.status = status
        self.calls: list[int] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        page = int(request.url.params.get("page", "1"))
        self.calls.append(page)
        if self.failures > 0:
            self.failures -= 1
            return httpx.Response(self.status, text="unavailable")
        return httpx.Response(200, text=self.pages.get(page, self.pages.get("default", "")))


def fetch(portal, config, classifier, clock, now, method="fetch_page"):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(portal)) as client:
            fetcher = IncidentFeedFetcher(client, config, classifier, sleep=clock.sleep, now=lambda: now)
            return await getattr(fetcher, method)()
    return asyncio.run(main())


class TestFetchPage:
    def test_success(self, listing, ago, feed_config, classifier, clock, now):
        portal = Portal({1: listing([{"open": True, "ts": ago(1), "id": "1", "type": "Choque"}])})
        page = fetch(portal, feed_config, classifier, clock, now)
        assert page.live
        assert page.error is None
        assert [r.id for r in page.records] == ["1"]
        assert page.records[0].category.id == "accidente"

    def test_retries_with_linear_backoff(self, listing, ago, feed_config, classifier, clock, now):
        portal = Portal({1: listing([{"ts": ago(1), "id": "1"}])}, failures=2)
        page = fetch(portal, feed_config, classifier, clock, now)
        assert page.live
        assert portal.calls == [1, 1, 1]
        assert clock.sleeps == [2.0, 4.0]

    def test_three_failures_return_not_live(self, listing, feed_config, classifier, clock, now):
        portal = Portal({1: listing([])}, failures=3)
        page = fetch(portal, feed_config, classifier, clock, now)
        assert page.live is False
        assert page.records == ()
        assert page.error == "unreachable"
        assert len(portal.calls) == 3
        assert clock.sleeps == [2.0, 4.0]

    def test_connection_error_is_retried(self, feed_config, classifier, clock, now):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        page = fetch(refuse, feed_config, classifier, clock, now)
        assert page.live is False
        assert clock.sleeps == [2.0, 4.0]

    def test_schema_drift_not_retried(self, feed_config, classifier, clock, now):
        portal = Portal({1: "<html><body>login</body></html>"})
        page = fetch(portal, feed_config, classifier, clock, now)
        assert page.live is False
        assert page.error == "schema"
        assert portal.calls == [1]
        assert clock.sleeps == []


class TestFetchRecent:
    def test_walks_pages_until_no_recent_rows(self, listing, ago, feed_config, classifier, clock, now):
        config = replace(feed_config, max_pages=5)
        portal = Portal({
            1: listing([{"ts": ago(1), "id": "a"}, {"ts": ago(5), "id": "b"}]),
            2: listing([{"ts": ago(5), "id": "b"}, {"ts": ago(20), "id": "c"}]),
            3: listing([{"ts": ago(120), "id": "old"}]),
            4: listing([{"ts": ago(2), "id": "never-fetched"}]),
        })
        page = fetch(portal, config, classifier, clock, now, method="fetch_recent")
        assert page.live
        assert [r.id for r in page.records] == ["a", "b", "c"]
        assert portal.calls == [1, 2, 3]
        assert clock.sleeps == [0.4, 0.4]

    def test_respects_max_pages(self, listing, ago, feed_config, classifier, clock, now):
        config = replace(feed_config, max_pages=2)
        portal = Portal({"default": listing([{"ts": ago(1), "id": "same"}])})
        page = fetch(portal, config, classifier, clock, now, method="fetch_recent")
        assert portal.calls == [1, 2]
        assert [r.id for r in page.records] == ["same"]

    def test_first_page_failure_propagates(self, feed_config, classifier, clock, now):
        portal = Portal({}, failures=10)
        page = fetch(portal, feed_config, classifier, clock, now, method="fetch_recent")
        assert page.live is False
        assert page.error == "unreachable"

    def test_later_page_failure_keeps_collected(self, listing, ago, feed_config, classifier, clock, now):
        config = replace(feed_config, max_pages=3, retries=0)
        portal = Portal({1: listing([{"ts": ago(1), "id": "a"}])})

        def flaky(request):
            if request.url.params.get("page") == "2":
                return httpx.Response(500)
            return portal(request)

        page = fetch(flaky, config, classifier, clock, now, method="fetch_recent")
        assert page.live
        assert [r.id for r in page.records] == ["a"]


class TestFeedClock:
    """Listing timestamps are Santiago wall-clock time; the host may run in UTC."""

    def test_summer_offset(self):
        assert feed_clock("America/Santiago", lambda: datetime(2026, 2, 10, 17, 0, tzinfo=timezone.utc))() == datetime(2026, 2, 10, 14, 0)

    def test_winter_offset(self):
        assert feed_clock("America/Santiago", lambda: datetime(2026, 7, 10, 18, 0, tzinfo=timezone.utc))() == datetime(2026, 7, 10, 14, 0)

    def test_utc_host_keeps_recent_rows(self, listing, ago, feed_config, classifier, clock, now):
        host_utc = datetime(2026, 2, 10, 17, 0, tzinfo=timezone.utc)
        html = listing([{"open": True, "ts": ago(2), "id": "recent"}])

        # Compared against the host's naive UTC clock the row looks three hours old
        assert parse_incident_rows(html, classifier, host_utc.replace(tzinfo=None)) == []

        async def main():
            async with httpx.AsyncClient(transport=httpx.MockTransport(Portal({1: html}))) as client:
                fetcher = IncidentFeedFetcher(
                    client, feed_config, classifier, sleep=clock.sleep,
                    now=feed_clock(feed_config.timezone, lambda: host_utc),
                )
                return await fetcher.fetch_page()

        page = asyncio.run(main())
        assert page.live
        assert [r.id for r in page.records] == ["recent"]

    def test_default_clock_uses_configured_timezone(self, feed_config, classifier):
        from zoneinfo import ZoneInfo

        fetcher = IncidentFeedFetcher(None, replace(feed_config, timezone="America/Santiago"), classifier)
        expected = datetime.now(ZoneInfo("America/Santiago")).replace(tzinfo=None)
        assert abs((fetcher._now() - expected).total_seconds()) < 5
