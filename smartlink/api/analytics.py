"""
Analytics API: read-only reports over landing_page_events.

Every endpoint takes the same scope + range query params. A missing scope
short-circuits with an empty payload before any query is issued. Rows are
read page by page up to a hard ceiling and rolled up in memory.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from smartlink.core.ads_lookup import enrich_campaign_names
from smartlink.core.analytics import (
    AUDIENCE_COUNTERS,
    FUNNEL_COUNTERS,
    ROUTE_COUNTERS,
    AnalyticsRange,
    AnalyticsScope,
    RangeError,
    aggregate_audience,
    aggregate_campaigns,
    aggregate_route_health,
    build_timeseries,
    clamp_limit,
    empty_counters,
    fetch_all_paged_rows,
    normalize_scope,
    rate_window_start,
    resolve_range,
    scope_not_selected,
    to_rate,
)
from smartlink.core.events import EventName
from smartlink.models.database import get_db
from smartlink.models.tables import LandingPageEvent

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/analytics", tags=["analytics"])

_ROW_COLUMNS = (
    LandingPageEvent.event_name,
    LandingPageEvent.event_id,
    LandingPageEvent.created_at,
    LandingPageEvent.attribution,
    LandingPageEvent.context,
    LandingPageEvent.route,
    LandingPageEvent.identity,
    LandingPageEvent.fbp,
    LandingPageEvent.fbc,
)


def analytics_params(
    mode: str | None = Query(None),
    artist_slug: str | None = Query(None),
    song_slug: str | None = Query(None),
    range: str | None = Query(None),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    days: str | None = Query(None),
    limit: str | None = Query(None),
) -> dict:
    return {
        "mode": mode,
        "artist_slug": artist_slug,
        "song_slug": song_slug,
        "range": range,
        "start_date": start_date,
        "end_date": end_date,
        "days": days,
        "limit": limit,
    }


def _scope_filter(scope: AnalyticsScope):
    if scope.mode == "song":
        return LandingPageEvent.request_path == scope.song_path
    return LandingPageEvent.request_path.startswith(scope.artist_prefix, autoescape=True)


def _window_filter(scope: AnalyticsScope, start, end):
    return and_(
        _scope_filter(scope),
        LandingPageEvent.created_at >= start,
        LandingPageEvent.created_at < end,
    )


def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})


def _query_failed(report: str, scope: AnalyticsScope, e: Exception) -> JSONResponse:
    logger.error("analytics_query_failed", report=report, scope=scope.to_dict(), error=str(e))
    return _error(500, "analytics_query_failed")


async def _count_by_event(db: AsyncSession, where, names) -> dict[str, int]:
    result = await db.execute(
        select(LandingPageEvent.event_name, func.count(LandingPageEvent.id).label("count"))
        .where(where, LandingPageEvent.event_name.in_(list(names)))
        .group_by(LandingPageEvent.event_name)
    )
    return {row.event_name: row.count for row in result.all()}


async def _scan(db: AsyncSession, scope: AnalyticsScope, rng: AnalyticsRange, names):
    stmt = (
        select(*_ROW_COLUMNS)
        .where(_window_filter(scope, rng.start, rng.end), LandingPageEvent.event_name.in_(list(names)))
        .order_by(LandingPageEvent.created_at, LandingPageEvent.id)
    )

    async def fetch_page(offset: int, limit: int):
        result = await db.execute(stmt.offset(offset).limit(limit))
        return result.all()

    paged = await fetch_all_paged_rows(fetch_page)
    if paged.truncated:
        logger.warning("analytics_scan_truncated", scope=scope.to_dict(), rows=len(paged.rows))
    return paged


# --- Endpoints ---

@router.get("/summary")
async def analytics_summary(
    params: dict = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    """Funnel totals and rates for the scope and range.

    Open-success and qualified rates are measured from the later of the range
    start and the first time that event type was ever recorded for the scope,
    so clicks from before the signal existed do not dilute the rate.
    """
    scope = normalize_scope(params)
    if not scope.is_ready:
        return scope_not_selected(totals=empty_counters(FUNNEL_COUNTERS))
    try:
        rng = resolve_range(params)
    except RangeError as e:
        return _error(400, str(e))

    try:
        raw = await _count_by_event(db, _window_filter(scope, rng.start, rng.end), FUNNEL_COUNTERS)
        totals = {counter: raw.get(name, 0) for name, counter in FUNNEL_COUNTERS.items()}

        windowed_names = (EventName.OPEN_SUCCESS.value, EventName.QUALIFIED.value)
        first_seen_result = await db.execute(
            select(LandingPageEvent.event_name, func.min(LandingPageEvent.created_at).label("first_seen"))
            .where(_scope_filter(scope), LandingPageEvent.event_name.in_(windowed_names))
            .group_by(LandingPageEvent.event_name)
        )
        first_seen = {row.event_name: row.first_seen for row in first_seen_result.all()}

        windows = {}
        for name in windowed_names:
            counter = FUNNEL_COUNTERS[name]
            start = rate_window_start(rng.start, first_seen.get(name))
            if start == rng.start:
                clicks, hits = totals["click"], totals[counter]
            elif start >= rng.end:
                clicks, hits = 0, 0
            else:
                counts = await _count_by_event(
                    db, _window_filter(scope, start, rng.end), (EventName.CLICK.value, name)
                )
                clicks, hits = counts.get(EventName.CLICK.value, 0), counts.get(name, 0)
            windows[counter] = {"startIso": start.isoformat(), "click": clicks, counter: hits}
    except SQLAlchemyError as e:
        return _query_failed("summary", scope, e)

    return {
        "ok": True,
        "scope": scope.to_dict(),
        "range": rng.to_dict(),
        "totals": totals,
        "clickRatePct": to_rate(totals["click"], totals["view"]),
        "openSuccessRatePct": to_rate(windows["openSuccess"]["openSuccess"], windows["openSuccess"]["click"]),
        "qualifiedRatePct": to_rate(windows["qualified"]["qualified"], windows["qualified"]["click"]),
        "rateWindows": windows,
    }


@router.get("/timeseries")
async def analytics_timeseries(
    params: dict = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    scope = normalize_scope(params)
    if not scope.is_ready:
        return scope_not_selected(series=[])
    try:
        rng = resolve_range(params)
    except RangeError as e:
        return _error(400, str(e))

    try:
        paged = await _scan(db, scope, rng, FUNNEL_COUNTERS)
    except SQLAlchemyError as e:
        return _query_failed("timeseries", scope, e)

    return {
        "ok": True,
        "scope": scope.to_dict(),
        "range": rng.to_dict(),
        "series": build_timeseries(paged.rows, rng),
        "truncated": paged.truncated,
    }


@router.get("/campaigns")
async def analytics_campaigns(
    params: dict = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    """Funnel per (ad set, ad), best ad first."""
    scope = normalize_scope(params)
    if not scope.is_ready:
        return scope_not_selected(rows=[])
    try:
        rng = resolve_range(params)
    except RangeError as e:
        return _error(400, str(e))
    limit = clamp_limit(params.get("limit"))

    try:
        paged = await _scan(db, scope, rng, FUNNEL_COUNTERS)
    except SQLAlchemyError as e:
        return _query_failed("campaigns", scope, e)

    rows = await enrich_campaign_names(aggregate_campaigns(paged.rows, limit))
    return {
        "ok": True,
        "scope": scope.to_dict(),
        "range": rng.to_dict(),
        "limit": limit,
        "rows": rows,
        "truncated": paged.truncated,
    }


@router.get("/route-health")
async def analytics_route_health(
    params: dict = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    """Open success and fallback rates per (os, in-app browser, strategy, reason)."""
    scope = normalize_scope(params)
    if not scope.is_ready:
        return scope_not_selected(rows=[])
    try:
        rng = resolve_range(params)
    except RangeError as e:
        return _error(400, str(e))

    try:
        paged = await _scan(db, scope, rng, ROUTE_COUNTERS)
    except SQLAlchemyError as e:
        return _query_failed("route_health", scope, e)

    return {
        "ok": True,
        "scope": scope.to_dict(),
        "range": rng.to_dict(),
        "rows": aggregate_route_health(paged.rows),
        "truncated": paged.truncated,
    }


@router.get("/high-intent")
async def analytics_high_intent(
    params: dict = Depends(analytics_params),
    db: AsyncSession = Depends(get_db),
):
    scope = normalize_scope(params)
    if not scope.is_ready:
        return scope_not_selected(rows=[])
    try:
        rng = resolve_range(params)
    except RangeError as e:
        return _error(400, str(e))
    limit = clamp_limit(params.get("limit"))

    try:
        paged = await _scan(db, scope, rng, AUDIENCE_COUNTERS)
    except SQLAlchemyError as e:
        return _query_failed("high_intent", scope, e)

    return {
        "ok": True,
        "scope": scope.to_dict(),
        "range": rng.to_dict(),
        "limit": limit,
        "rows": aggregate_audience(paged.rows, limit),
        "truncated": paged.truncated,
    }
