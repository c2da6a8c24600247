"""Tests for analytics scope/range resolution and the in-memory rollups."""

import asyncio
import datetime
from types import SimpleNamespace

import pytest

from smartlink.core.analytics import (
    RangeError,
    aggregate_audience,
    aggregate_campaigns,
    aggregate_route_health,
    build_timeseries,
    clamp_limit,
    day_key,
    fetch_all_paged_rows,
    normalize_scope,
    rate_window_start,
    resolve_range,
    scope_not_selected,
    to_rate,
)

UTC = datetime.timezone.utc
# 2024-03-10 01:00 in UTC+8
NOW = datetime.datetime(2024, 3, 9, 17, 0, tzinfo=UTC)


def _row(name, created_at=NOW, attribution=None, context=None, route=None,
         identity=None, fbp=None, fbc=None, event_id=None):
    return SimpleNamespace(
        event_name=name, created_at=created_at, attribution=attribution or {},
        context=context or {}, route=route or {}, identity=identity or {},
        fbp=fbp, fbc=fbc, event_id=event_id,
    )


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------

class TestScope:
    def test_default_mode_is_artist(self):
        scope = normalize_scope({"artist_slug": " artist-x/ "})
        assert scope.mode == "artist"
        assert scope.is_ready
        assert scope.artist_prefix == "/artist-x/"
        assert scope.matches("/artist-x/song-y")
        assert not scope.matches("/artist-xy/song")

    def test_song_mode_joins_slugs(self):
        scope = normalize_scope({"mode": "SONG", "artist_slug": "artist-x", "song_slug": "song-y"})
        assert scope.song_path == "/artist-x/song-y"
        assert scope.matches("/artist-x/song-y")
        assert not scope.matches("/artist-x/song-y-remix")

    def test_song_slug_with_slash_is_full_path(self):
        scope = normalize_scope({"mode": "song", "song_slug": "artist-x/song-y"})
        assert scope.is_ready
        assert scope.song_path == "/artist-x/song-y"

    def test_incomplete_scopes(self):
        assert not normalize_scope({}).is_ready
        assert not normalize_scope({"mode": "song", "artist_slug": "artist-x"}).is_ready

    def test_scope_not_selected_payload(self):
        assert scope_not_selected(rows=[]) == {
            "ok": True,
            "empty": True,
            "reason": "scope_not_selected",
            "message": "Select an artist or a song to see data.",
            "rows": [],
        }


# ---------------------------------------------------------------------------
# Range
# ---------------------------------------------------------------------------

class TestRange:
    def test_today_is_business_day(self):
        rng = resolve_range({"range": "today"}, now=NOW)
        assert rng.start_date == datetime.date(2024, 3, 10)
        assert rng.days == 1
        assert rng.start.utcoffset() == datetime.timedelta(hours=8)
        assert rng.end - rng.start == datetime.timedelta(days=1)

    def test_yesterday(self):
        rng = resolve_range({"range": "yesterday"}, now=NOW)
        assert (rng.start_date, rng.end_date) == (datetime.date(2024, 3, 9), datetime.date(2024, 3, 9))

    def test_week_default(self):
        for params in ({}, {"range": "bogus"}, {"range": "week"}):
            rng = resolve_range(params, now=NOW)
            assert rng.range == "week"
            assert rng.days == 7
            assert rng.end_date == datetime.date(2024, 3, 10)
            assert rng.start_date == datetime.date(2024, 3, 4)

    def test_month(self):
        rng = resolve_range({"range": "month"}, now=NOW)
        assert rng.days == 30
        assert rng.start_date == datetime.date(2024, 2, 10)

    def test_custom(self):
        rng = resolve_range({"range": "custom", "start_date": "2024-01-01", "end_date": "2024-01-03"}, now=NOW)
        assert rng.days == 3
        assert rng.day_keys() == ["2024-01-01", "2024-01-02", "2024-01-03"]
        assert rng.end.date() == datetime.date(2024, 1, 4)

    def test_custom_span_truncated(self):
        rng = resolve_range({"range": "custom", "start_date": "2023-01-01", "end_date": "2024-01-01"}, now=NOW)
        assert rng.days == 180

    @pytest.mark.parametrize("start,end", [
        ("2024-01-05", "2024-01-01"),
        ("2024-01-01", None),
        ("2024/01/01", "2024-01-02"),
        ("2024-02-30", "2024-03-01"),
    ])
    def test_invalid_custom(self, start, end):
        with pytest.raises(RangeError):
            resolve_range({"range": "custom", "start_date": start, "end_date": end}, now=NOW)

    def test_legacy_days(self):
        assert resolve_range({"days": "30"}, now=NOW).days == 30
        assert resolve_range({"days": "14"}, now=NOW).days == 14
        assert resolve_range({"days": "3"}, now=NOW).days == 7

    def test_day_key_uses_business_timezone(self):
        late_utc = datetime.datetime(2024, 3, 9, 16, 30, tzinfo=UTC)
        assert day_key(late_utc) == "2024-03-10"
        assert day_key(datetime.datetime(2024, 3, 9, 15, 59)) == "2024-03-09"

    def test_rate_window_start(self):
        rng = resolve_range({"range": "week"}, now=NOW)
        assert rate_window_start(rng.start, None) == rng.start
        earlier = rng.start - datetime.timedelta(days=3)
        assert rate_window_start(rng.start, earlier) == rng.start
        later = rng.start + datetime.timedelta(days=2)
        assert rate_window_start(rng.start, later) == later


# ---------------------------------------------------------------------------
# Rollups
# ---------------------------------------------------------------------------

def test_to_rate():
    assert to_rate(1, 3) == 33.33
    assert to_rate(5, 0) == 0.0


def test_timeseries_zero_filled_and_bucketed_by_business_day():
    rng = resolve_range({"range": "week"}, now=NOW)
    rows = [
        _row("SmartLinkView", datetime.datetime(2024, 3, 9, 16, 30, tzinfo=UTC)),   # 03-10 local
        _row("SmartLinkClick", datetime.datetime(2024, 3, 9, 16, 45, tzinfo=UTC)),
        _row("SmartLinkView", datetime.datetime(2024, 3, 9, 15, 0, tzinfo=UTC)),    # 03-09 local
        _row("SmartLinkRouteChosen", datetime.datetime(2024, 3, 9, 16, 45, tzinfo=UTC)),
    ]
    series = build_timeseries(rows, rng)
    assert [b["date"] for b in series] == rng.day_keys()
    by_date = {b["date"]: b for b in series}
    assert by_date["2024-03-10"]["view"] == 1
    assert by_date["2024-03-10"]["click"] == 1
    assert by_date["2024-03-10"]["clickRatePct"] == 100.0
    assert by_date["2024-03-09"]["view"] == 1
    assert by_date["2024-03-04"] == {
        "date": "2024-03-04", "view": 0, "click": 0, "openSuccess": 0, "qualified": 0,
        "openFallback": 0, "clickRatePct": 0.0, "openSuccessRatePct": 0.0, "qualifiedRatePct": 0.0,
    }


def test_campaigns_grouping_and_ordering():
    a = {"adset_id": "120200000000001", "ad_id": "120200000000009", "utm_source": "fb"}
    b = {"utm_term": "Lookalike 1%", "utm_content": "Video A", "utm_source": "ig"}
    rows = (
        [_row("SmartLinkClick", attribution=a)] * 3
        + [_row("SmartLinkClick", attribution=b)] * 2
        + [_row("SmartLinkQualified", attribution=b)]
        + [_row("SmartLinkView", attribution={})]
    )
    result = aggregate_campaigns(rows)
    assert [r["key"] for r in result] == [
        "Lookalike 1%::Video A",
        "120200000000001::120200000000009",
        "unknown::unknown",
    ]
    top = result[0]
    assert top["adSetName"] == "Lookalike 1%"
    assert top["adName"] == "Video A"
    assert top["qualifiedRatePct"] == 50.0
    numeric = result[1]
    assert numeric["adSetName"] == ""
    assert numeric["click"] == 3
    assert result[2]["utmSource"] == "unknown"


def test_campaigns_limit():
    rows = [_row("SmartLinkClick", attribution={"adset_id": str(i)}) for i in range(30)]
    assert len(aggregate_campaigns(rows, limit=10)) == 10


def test_route_health():
    ios_ig = {"os": "ios", "in_app_browser": "instagram", "is_mobile": True}
    route = {"strategy": "deep-link-first", "reason": "in-app-instagram"}
    rows = [
        _row("SmartLinkClick", context=ios_ig, route=route),
        _row("SmartLinkClick", context=ios_ig, route=route),
        _row("SmartLinkOpenAttempt", context=ios_ig, route=route),
        _row("SmartLinkOpenSuccess", context=ios_ig, route=route),
        _row("SmartLinkOpenFallback", context=ios_ig, route=route),
        _row("SmartLinkClick", context={}, route={}),
        _row("SmartLinkView", context=ios_ig, route=route),
    ]
    result = aggregate_route_health(rows)
    assert result[0]["key"] == "ios::instagram::deep-link-first::in-app-instagram"
    assert result[0]["openSuccessRatePct"] == 50.0
    assert result[0]["fallbackRatePct"] == 50.0
    assert result[0]["openAttempt"] == 1
    assert result[1]["key"] == "unknown::unknown::unknown::"


def test_audience_tiers_and_keys():
    t0 = datetime.datetime(2024, 3, 8, tzinfo=UTC)
    rows = [
        # anonymous id beats cookies
        _row("SmartLinkClick", t0, identity={"anonymousId": "anon-1"}, fbc="fbc-1", attribution={"utm_source": "ig"}),
        _row("SmartLinkQualified", t0 + datetime.timedelta(hours=1), identity={"anonymousId": "anon-1"}),
        # fbc when no anonymous id
        _row("SmartLinkClick", t0 + datetime.timedelta(hours=2), fbc="fbc-2"),
        _row("SmartLinkOpenSuccess", t0 + datetime.timedelta(hours=3), fbc="fbc-2"),
        # fbp, click only
        _row("SmartLinkClick", t0 + datetime.timedelta(hours=4), fbp="fbp-3"),
        # view only: dropped
        _row("SmartLinkView", t0, event_id="view-4"),
        # no key at all: dropped
        _row("SmartLinkClick", t0),
    ]
    result = aggregate_audience(rows)
    assert [(r["audienceKey"], r["audienceTier"]) for r in result] == [
        ("anon-1", "qualified"),
        ("fbp-3", "clicker"),
        ("fbc-2", "warm"),
    ]
    top = result[0]
    assert top["utmSource"] == "ig"
    assert top["lastQualifiedAt"] == (t0 + datetime.timedelta(hours=1)).isoformat()
    assert top["lastSeenAt"] == (t0 + datetime.timedelta(hours=1)).isoformat()
    assert result[1]["lastQualifiedAt"] is None


@pytest.mark.parametrize("raw,expected", [(None, 50), ("", 50), ("5", 10), ("500", 200), ("75", 75), ("x", 50)])
def test_clamp_limit(raw, expected):
    assert clamp_limit(raw) == expected


# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------

def _pager(total):
    calls = []

    async def fetch_page(offset, limit):
        calls.append((offset, limit))
        return list(range(offset, min(total, offset + limit)))

    return fetch_page, calls


def test_paging_reads_until_short_page():
    fetch_page, calls = _pager(25)
    paged = asyncio.run(fetch_all_paged_rows(fetch_page, page_size=10, max_rows=100))
    assert paged.rows == list(range(25))
    assert not paged.truncated
    assert calls == [(0, 10), (10, 10), (20, 10)]


def test_paging_stops_at_ceiling():
    fetch_page, calls = _pager(1000)
    paged = asyncio.run(fetch_all_paged_rows(fetch_page, page_size=10, max_rows=35))
    assert len(paged.rows) == 35
    assert paged.truncated
    assert calls[-1] == (30, 5)


def test_paging_exact_multiple_reads_one_empty_page():
    fetch_page, calls = _pager(20)
    paged = asyncio.run(fetch_all_paged_rows(fetch_page, page_size=10, max_rows=100))
    assert len(paged.rows) == 20
    assert not paged.truncated
    assert len(calls) == 3
