"""
Best-effort ad set / ad name lookup through the Graph API.

Campaign rows only carry numeric ids when the ad tool did not template names
into the URL. Each lookup is time-boxed and any failure just leaves the name
empty; reporting never waits on or fails because of this.
"""

import asyncio

import httpx

from smartlink.config import get_settings
from smartlink.core.analytics import looks_like_meta_id

import structlog

logger = structlog.get_logger()


async def _get_name(client: httpx.AsyncClient, url: str, token: str) -> str:
    resp = await client.get(url, params={"fields": "name", "access_token": token})
    if not resp.is_success:
        return ""
    try:
        body = resp.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    return str(body.get("name") or "").strip()[:180]


async def fetch_object_name(client: httpx.AsyncClient, object_id: str, token: str) -> str:
    settings = get_settings()
    url = f"{settings.meta_graph_api_base}/{settings.meta_lookup_api_version}/{object_id}"
    try:
        return await asyncio.wait_for(_get_name(client, url, token), settings.ads_lookup_timeout_seconds)
    except (httpx.HTTPError, asyncio.TimeoutError) as e:
        logger.debug("campaign_name_lookup_failed", object_id=object_id, error=str(e) or type(e).__name__)
        return ""


def _unresolved_ids(rows: list[dict], id_field: str, name_field: str, cap: int) -> list[str]:
    ids: list[str] = []
    for row in rows:
        value = row[id_field]
        if not row[name_field] and looks_like_meta_id(value) and value not in ids:
            ids.append(value)
    return ids[:cap]


async def enrich_campaign_names(
    rows: list[dict],
    token: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[dict]:
    settings = get_settings()
    token = token if token is not None else settings.meta_ads_read_token
    if not token or not rows:
        return rows

    adset_ids = _unresolved_ids(rows, "adSetId", "adSetName", settings.ads_lookup_max_ids)
    ad_ids = _unresolved_ids(rows, "adId", "adName", settings.ads_lookup_max_ids)
    if not adset_ids and not ad_ids:
        return rows

    async def _lookup_all(c: httpx.AsyncClient) -> list[str]:
        results = await asyncio.gather(
            *(fetch_object_name(c, i, token) for i in adset_ids + ad_ids),
            return_exceptions=True,
        )
        return [r if isinstance(r, str) else "" for r in results]

    if client is not None:
        names = await _lookup_all(client)
    else:
        async with httpx.AsyncClient() as c:
            names = await _lookup_all(c)

    adset_names = {i: n for i, n in zip(adset_ids, names[:len(adset_ids)]) if n}
    ad_names = {i: n for i, n in zip(ad_ids, names[len(adset_ids):]) if n}
    logger.info("campaign_names_enriched", adsets=len(adset_names), ads=len(ad_names))

    return [
        {
            **row,
            "adSetName": row["adSetName"] or adset_names.get(row["adSetId"], ""),
            "adName": row["adName"] or ad_names.get(row["adId"], ""),
        }
        for row in rows
    ]
