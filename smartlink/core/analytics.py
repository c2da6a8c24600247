"""
Analytics aggregation: scope + range resolution and in-memory rollups.

Day boundaries are always taken in the fixed business timezone (UTC+8 by
default), independent of where the server runs: "today" means the business's
today, and every timeseries bucket is a business-day date.

The rollups take plain row objects (attribute access: event_name, created_at,
attribution, context, route, identity, fbp, fbc, event_id) so they can be fed
from SQLAlchemy result rows or test doubles alike.
"""

import datetime
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field

from smartlink.config import get_settings
from smartlink.core.events import EventName

DEFAULT_DAYS = 7
VALID_DAY_OPTIONS = (7, 14, 30)
DEFAULT_LIMIT = 50
MIN_LIMIT = 10
MAX_LIMIT = 200

FUNNEL_COUNTERS = {
    EventName.VIEW.value: "view",
    EventName.CLICK.value: "click",
    EventName.OPEN_SUCCESS.value: "openSuccess",
    EventName.QUALIFIED.value: "qualified",
    EventName.OPEN_FALLBACK.value: "openFallback",
}

ROUTE_COUNTERS = {
    EventName.CLICK.value: "click",
    EventName.OPEN_ATTEMPT.value: "openAttempt",
    EventName.OPEN_SUCCESS.value: "openSuccess",
    EventName.OPEN_FALLBACK.value: "openFallback",
}

AUDIENCE_COUNTERS = {
    EventName.VIEW.value: "view",
    EventName.CLICK.value: "click",
    EventName.OPEN_SUCCESS.value: "openSuccess",
    EventName.QUALIFIED.value: "qualified",
}

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_META_ID_RE = re.compile(r"^\d{8,24}$")


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def business_tz() -> datetime.timezone:
    hours = get_settings().business_utc_offset_hours
    return datetime.timezone(datetime.timedelta(hours=hours), name=f"UTC{hours:+d}")


def as_aware(dt: datetime.datetime) -> datetime.datetime:
    """Stores without tz support hand back naive UTC datetimes."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt


def day_key(dt: datetime.datetime) -> str:
    return as_aware(dt).astimezone(business_tz()).date().isoformat()


def to_rate(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------

def _clean_slug(value: str | None) -> str:
    return (value or "").strip().strip("/")


@dataclass(frozen=True)
class AnalyticsScope:
    mode: str
    artist_slug: str
    song_slug: str

    @property
    def is_ready(self) -> bool:
        if self.mode == "song":
            return bool(self.song_slug)
        return bool(self.artist_slug)

    @property
    def song_path(self) -> str:
        """Exact request_path for song mode."""
        if "/" in self.song_slug or not self.artist_slug:
            return f"/{self.song_slug}"
        return f"/{self.artist_slug}/{self.song_slug}"

    @property
    def artist_prefix(self) -> str:
        return f"/{self.artist_slug}/"

    def matches(self, request_path: str | None) -> bool:
        path = request_path or ""
        if self.mode == "song":
            return path == self.song_path
        return path.startswith(self.artist_prefix)

    def to_dict(self) -> dict:
        return {"mode": self.mode, "artistSlug": self.artist_slug, "songSlug": self.song_slug}


def normalize_scope(params: Mapping) -> AnalyticsScope:
    mode_raw = (params.get("mode") or "artist").strip().lower()
    return AnalyticsScope(
        mode="song" if mode_raw == "song" else "artist",
        artist_slug=_clean_slug(params.get("artist_slug")),
        song_slug=_clean_slug(params.get("song_slug")),
    )


def scope_not_selected(**empty) -> dict:
    return {
        "ok": True,
        "empty": True,
        "reason": "scope_not_selected",
        "message": "Select an artist or a song to see data.",
        **empty,
    }


# ---------------------------------------------------------------------------
# Range
# ---------------------------------------------------------------------------

class RangeError(ValueError):
    pass


@dataclass(frozen=True)
class AnalyticsRange:
    range: str
    days: int
    start: datetime.datetime          # inclusive, business-tz midnight
    end: datetime.datetime            # exclusive
    start_date: datetime.date
    end_date: datetime.date           # inclusive, for display

    def day_keys(self) -> list[str]:
        return [(self.start_date + datetime.timedelta(days=i)).isoformat() for i in range(self.days)]

    def to_dict(self) -> dict:
        return {
            "range": self.range,
            "days": self.days,
            "startIso": self.start.isoformat(),
            "endIso": self.end.isoformat(),
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "timezone": self.start.tzname(),
        }


def _day_range(preset: str, start_date: datetime.date, days: int) -> AnalyticsRange:
    tz = business_tz()
    start = datetime.datetime.combine(start_date, datetime.time.min, tzinfo=tz)
    return AnalyticsRange(
        range=preset,
        days=days,
        start=start,
        end=start + datetime.timedelta(days=days),
        start_date=start_date,
        end_date=start_date + datetime.timedelta(days=days - 1),
    )


def _parse_date(text: str | None) -> datetime.date | None:
    text = (text or "").strip()
    if not _DATE_RE.match(text):
        return None
    try:
        return datetime.date.fromisoformat(text)
    except ValueError:
        return None


def resolve_days(params: Mapping) -> int:
    try:
        days = round(float(params.get("days") or DEFAULT_DAYS))
    except (TypeError, ValueError):
        return DEFAULT_DAYS
    return days if days in VALID_DAY_OPTIONS else DEFAULT_DAYS


def resolve_range(params: Mapping, now: datetime.datetime | None = None) -> AnalyticsRange:
    """Map a named preset to a half-open business-day window ending today."""
    settings = get_settings()
    raw = (params.get("range") or "").strip().lower()
    current = as_aware(now or datetime.datetime.now(datetime.timezone.utc))
    today = current.astimezone(business_tz()).date()

    def ending_today(preset: str, days: int) -> AnalyticsRange:
        return _day_range(preset, today - datetime.timedelta(days=days - 1), days)

    # Older dashboards send ?days=N without a preset.
    if not raw and params.get("days"):
        days = resolve_days(params)
        return ending_today({7: "week", 30: "month"}.get(days, "custom"), days)

    if raw in ("today", "day"):
        return ending_today("today", 1)
    if raw == "yesterday":
        return _day_range("yesterday", today - datetime.timedelta(days=1), 1)
    if raw in ("month", "last_30d"):
        return ending_today("month", 30)
    if raw == "custom":
        start = _parse_date(params.get("start_date"))
        end_inclusive = _parse_date(params.get("end_date"))
        if start is None or end_inclusive is None or start > end_inclusive:
            raise RangeError("invalid_custom_range")
        days = (end_inclusive - start).days + 1
        return _day_range("custom", start, min(settings.max_custom_range_days, days))

    return ending_today("week", 7)


def rate_window_start(range_start: datetime.datetime, first_seen: datetime.datetime | None) -> datetime.datetime:
    """Later of the range start and the first time an event type was ever seen."""
    if first_seen is None:
        return range_start
    first_seen = as_aware(first_seen)
    return first_seen if first_seen > range_start else range_start


# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------

@dataclass
class PagedRows:
    rows: list = field(default_factory=list)
    truncated: bool = False


async def fetch_all_paged_rows(
    fetch_page: Callable[[int, int], Awaitable[list]],
    page_size: int | None = None,
    max_rows: int | None = None,
) -> PagedRows:
    """Read page after page until a short page or the hard row ceiling."""
    settings = get_settings()
    page_size = page_size or settings.analytics_page_size
    max_rows = max_rows or settings.analytics_max_rows

    out = PagedRows()
    offset = 0
    while offset < max_rows:
        limit = min(page_size, max_rows - offset)
        page = list(await fetch_page(offset, limit))
        out.rows.extend(page)
        if len(page) < limit:
            return out
        offset += len(page)

    out.truncated = True
    return out


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def parse_context(context) -> dict:
    ctx = _as_dict(context)
    return {
        "os": str(ctx.get("os") or "unknown"),
        "inAppBrowser": str(ctx.get("in_app_browser") or ctx.get("inAppBrowser") or "unknown"),
        "isMobile": bool(ctx.get("is_mobile", ctx.get("isMobile", False))),
    }


def parse_route(route) -> dict:
    rt = _as_dict(route)
    return {
        "strategy": str(rt.get("strategy") or "unknown"),
        "reason": str(rt.get("reason") or ""),
    }


def _attr(attribution, key: str) -> str:
    return str(_as_dict(attribution).get(key) or "").strip()


def looks_like_meta_id(value: str) -> bool:
    return bool(_META_ID_RE.match(value.strip()))


# ---------------------------------------------------------------------------
# Rollups
# ---------------------------------------------------------------------------

def empty_counters(names: Mapping[str, str]) -> dict[str, int]:
    return {counter: 0 for counter in names.values()}


def funnel_rates(c: Mapping[str, int]) -> dict[str, float]:
    return {
        "clickRatePct": to_rate(c["click"], c["view"]),
        "openSuccessRatePct": to_rate(c["openSuccess"], c["click"]),
        "qualifiedRatePct": to_rate(c["qualified"], c["click"]),
    }


def build_timeseries(rows: Iterable, rng: AnalyticsRange) -> list[dict]:
    """One bucket per business day in range, zero-filled."""
    buckets = {key: empty_counters(FUNNEL_COUNTERS) for key in rng.day_keys()}
    for row in rows:
        counter = FUNNEL_COUNTERS.get(row.event_name)
        if counter is None or row.created_at is None:
            continue
        bucket = buckets.get(day_key(row.created_at))
        if bucket is not None:
            bucket[counter] += 1
    return [{"date": key, **c, **funnel_rates(c)} for key, c in buckets.items()]


def _adset_id(attribution) -> str:
    return _attr(attribution, "adset_id") or _attr(attribution, "utm_term") or "unknown"


def _ad_id(attribution) -> str:
    return _attr(attribution, "ad_id") or _attr(attribution, "utm_content") or "unknown"


def _name_hint(attribution, explicit_keys: tuple[str, ...], fallback_key: str) -> str:
    for key in explicit_keys:
        value = _attr(attribution, key)
        if value:
            return value[:180]
    fallback = _attr(attribution, fallback_key)
    if fallback and not looks_like_meta_id(fallback):
        return fallback[:180]
    return ""


def aggregate_campaigns(rows: Iterable, limit: int = DEFAULT_LIMIT) -> list[dict]:
    buckets: dict[str, dict] = {}
    for row in rows:
        counter = FUNNEL_COUNTERS.get(row.event_name)
        if counter is None:
            continue
        attribution = row.attribution
        adset_id, ad_id = _adset_id(attribution), _ad_id(attribution)
        key = f"{adset_id}::{ad_id}"
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = {
                "key": key,
                "utmSource": _attr(attribution, "utm_source") or "unknown",
                "utmMedium": _attr(attribution, "utm_medium") or "unknown",
                "adSetId": adset_id,
                "adId": ad_id,
                "adSetName": _name_hint(attribution, ("adset_name", "ad_set_name", "utm_adset"), "utm_term"),
                "adName": _name_hint(attribution, ("ad_name", "utm_ad"), "utm_content"),
                **empty_counters(FUNNEL_COUNTERS),
            }
        bucket[counter] += 1

    ranked = sorted(
        buckets.values(),
        key=lambda b: (-b["qualified"], -b["openSuccess"], -b["click"]),
    )
    return [{**b, **funnel_rates(b)} for b in ranked[:limit]]


def aggregate_route_health(rows: Iterable) -> list[dict]:
    buckets: dict[str, dict] = {}
    for row in rows:
        counter = ROUTE_COUNTERS.get(row.event_name)
        if counter is None:
            continue
        ctx, rt = parse_context(row.context), parse_route(row.route)
        key = f"{ctx['os']}::{ctx['inAppBrowser']}::{rt['strategy']}::{rt['reason']}"
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = {
                "key": key,
                "os": ctx["os"],
                "inAppBrowser": ctx["inAppBrowser"],
                "strategy": rt["strategy"],
                "reason": rt["reason"],
                **empty_counters(ROUTE_COUNTERS),
            }
        bucket[counter] += 1

    ranked = sorted(buckets.values(), key=lambda b: (-b["openSuccess"], -b["click"]))
    return [
        {
            **b,
            "openSuccessRatePct": to_rate(b["openSuccess"], b["click"]),
            "fallbackRatePct": to_rate(b["openFallback"], b["click"]),
        }
        for b in ranked
    ]


def audience_key(row) -> str:
    identity = _as_dict(row.identity)
    for candidate in (identity.get("anonymousId"), row.fbc, row.fbp, row.event_id):
        value = str(candidate or "").strip()
        if value:
            return value
    return ""


def audience_tier(bucket: Mapping[str, int]) -> str:
    if bucket["qualified"] > 0:
        return "qualified"
    if bucket["openSuccess"] > 0 and bucket["click"] > 0:
        return "warm"
    return "clicker"


def aggregate_audience(rows: Iterable, limit: int = DEFAULT_LIMIT) -> list[dict]:
    buckets: dict[str, dict] = {}
    for row in rows:
        counter = AUDIENCE_COUNTERS.get(row.event_name)
        key = audience_key(row)
        if counter is None or not key or row.created_at is None:
            continue
        seen_at = as_aware(row.created_at)
        bucket = buckets.get(key)
        if bucket is None:
            attribution = row.attribution
            bucket = buckets[key] = {
                "audienceKey": key,
                "lastSeenAt": seen_at,
                "lastQualifiedAt": None,
                "utmSource": _attr(attribution, "utm_source") or "unknown",
                "utmCampaign": _attr(attribution, "utm_campaign") or "unknown",
                "utmContent": _attr(attribution, "utm_content") or "unknown",
                "utmTerm": _attr(attribution, "utm_term") or "unknown",
                **empty_counters(AUDIENCE_COUNTERS),
            }
        bucket[counter] += 1
        if seen_at > bucket["lastSeenAt"]:
            bucket["lastSeenAt"] = seen_at
        if counter == "qualified" and (bucket["lastQualifiedAt"] is None or seen_at > bucket["lastQualifiedAt"]):
            bucket["lastQualifiedAt"] = seen_at

    # View-only visitors carry no intent signal.
    candidates = [
        b for b in buckets.values()
        if b["qualified"] > 0 or b["openSuccess"] > 0 or b["click"] > 0
    ]
    candidates.sort(key=lambda b: (-b["qualified"], -b["lastSeenAt"].timestamp()))
    return [
        {
            **b,
            "lastSeenAt": b["lastSeenAt"].isoformat(),
            "lastQualifiedAt": b["lastQualifiedAt"].isoformat() if b["lastQualifiedAt"] else None,
            "audienceTier": audience_tier(b),
        }
        for b in candidates[:limit]
    ]


def clamp_limit(raw) -> int:
    try:
        value = int(float(raw)) if raw not in (None, "") else DEFAULT_LIMIT
    except (TypeError, ValueError):
        value = DEFAULT_LIMIT
    return min(MAX_LIMIT, max(MIN_LIMIT, value))
