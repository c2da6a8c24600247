"""
Meta Conversions API (CAPI) forwarding, one event per call, no retries.

The event id doubles as the pixel/CAPI deduplication key; as external_id it
leaves the server only after SHA-256 hashing.
"""

import hashlib
import time
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

import httpx

from smartlink.config import get_settings

MAX_ERROR_DETAIL = 1000


@dataclass(frozen=True)
class ForwardRequest:
    pixel_id: str
    access_token: str
    event_name: str
    event_id: str
    event_source_url: str
    user_agent: str
    client_ip: str
    fbp: str | None = None
    fbc: str | None = None
    test_event_code: str | None = None


@dataclass(frozen=True)
class ForwardResult:
    ok: bool
    status_code: int | None
    detail: str | None = None


def hash_external_id(value: str) -> str:
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


def fbclid_from_url(url: str | None) -> str | None:
    if not url:
        return None
    values = parse_qs(urlsplit(url).query).get("fbclid")
    if values and values[0].strip():
        return values[0].strip()
    return None


def build_fbc(fbc_cookie: str | None, fbclid: str | None, now: float | None = None) -> str | None:
    """Prefer the browser's _fbc cookie; otherwise synthesize one from an fbclid."""
    if fbc_cookie and fbc_cookie.strip():
        return fbc_cookie.strip()
    if fbclid:
        created_ms = int((now if now is not None else time.time()) * 1000)
        return f"fb.1.{created_ms}.{fbclid}"
    return None


def build_payload(req: ForwardRequest, now: float | None = None) -> dict:
    user_data = {
        "client_user_agent": req.user_agent,
        "client_ip_address": req.client_ip,
        "external_id": hash_external_id(req.event_id),
    }
    if req.fbp:
        user_data["fbp"] = req.fbp
    if req.fbc:
        user_data["fbc"] = req.fbc

    payload = {
        "data": [
            {
                "event_name": req.event_name,
                "event_time": int(now if now is not None else time.time()),
                "action_source": "website",
                "event_source_url": req.event_source_url,
                "event_id": req.event_id,
                "user_data": user_data,
            }
        ],
    }
    if req.test_event_code:
        payload["test_event_code"] = req.test_event_code
    return payload


async def forward_event(req: ForwardRequest, client: httpx.AsyncClient | None = None) -> ForwardResult:
    """POST one event to CAPI. Never raises; transport errors become ok=False."""
    settings = get_settings()
    url = f"{settings.meta_graph_api_base}/{settings.meta_graph_api_version}/{req.pixel_id}/events"
    payload = build_payload(req)

    async def _post(c: httpx.AsyncClient) -> httpx.Response:
        return await c.post(
            url,
            params={"access_token": req.access_token},
            json=payload,
            timeout=settings.capi_timeout_seconds,
        )

    try:
        if client is not None:
            resp = await _post(client)
        else:
            async with httpx.AsyncClient() as c:
                resp = await _post(c)
    except httpx.HTTPError as e:
        return ForwardResult(ok=False, status_code=None, detail=f"request_error: {e}"[:MAX_ERROR_DETAIL])

    if resp.is_success:
        return ForwardResult(ok=True, status_code=resp.status_code)
    return ForwardResult(ok=False, status_code=resp.status_code, detail=resp.text[:MAX_ERROR_DETAIL])
