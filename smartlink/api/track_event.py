"""
Event ingestion + CAPI forwarding: POST /track-event

Flow:
  1. Parse + validate the body (event name allow-list, strict schema)
  2. Verify the signed tracking token against the event's page path
  3. Resolve ads credentials for the path (song → artist → env, cached)
  4. Persist the row as "queued" before any external call
  5. Internal-only / missing credentials → terminal skip status
  6. Otherwise forward once to CAPI → "ok" or "error"

Rejected requests (steps 1-2) are persisted directly with their skip status.
Store failures are logged and swallowed; the response still goes out.
"""

from datetime import datetime, timezone
from typing import Annotated, Any
from uuid import uuid4

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from smartlink.core.attribution import click_id_from_fbc, sanitize_attribution
from smartlink.core.capi import ForwardRequest, build_fbc, fbclid_from_url, forward_event
from smartlink.core.credentials import resolve_ads_credentials
from smartlink.core.events import EVENT_NAMES, INTERNAL_ONLY_EVENTS, ForwardStatus
from smartlink.core.tracking_auth import derive_request_path, verify_tracking_token
from smartlink.middleware.rate_limit import get_client_ip, rate_limit_ip
from smartlink.models.database import get_db
from smartlink.models.tables import LandingPageEvent

import structlog

logger = structlog.get_logger()
router = APIRouter(tags=["tracking"])


def _capped(max_length: int):
    def _normalize(value):
        if value is None:
            return None
        return str(value).strip()[:max_length]
    return Annotated[str | None, BeforeValidator(_normalize)]


ShortText = _capped(128)


# --- Request schema ---

class EventContextPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    os: ShortText = None
    in_app_browser: ShortText = None
    is_mobile: bool | None = None


class EventRoutePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: ShortText = None
    reason: ShortText = None
    deep_link_delay_ms: int | None = None
    fallback_delay_ms: int | None = None
    success_signal_window_ms: int | None = None
    open_target: ShortText = None
    fallback_target: ShortText = None
    audience_tier: ShortText = None


class IdentityPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    anonymous_id: ShortText = Field(None, alias="anonymousId")
    session_id: ShortText = Field(None, alias="sessionId")


class TrackEventPayload(BaseModel):
    """Everything the landing page sends. Unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    event_name: _capped(64) = Field(None, alias="eventName")
    event_id: ShortText = Field(None, alias="eventId")
    test_event_code: _capped(64) = Field(None, alias="testEventCode")
    event_source_url: _capped(2048) = Field(None, alias="eventSourceUrl")
    tracking_auth_token: _capped(1024) = Field(None, alias="trackingAuthToken")
    attribution: dict[str, str | int | float | bool | None] = Field(default_factory=dict)
    context: EventContextPayload | None = None
    route: EventRoutePayload | None = None
    identity: IdentityPayload | None = None
    forward_to_facebook: bool = Field(True, alias="forwardToFacebook")


# --- Persistence helpers ---

async def _persist(db: AsyncSession, row: LandingPageEvent) -> bool:
    try:
        db.add(row)
        await db.commit()
        return True
    except SQLAlchemyError as e:
        logger.error("event_persist_failed", event_name=row.event_name, error=str(e))
        await db.rollback()
        return False


async def _finalize(db: AsyncSession, row: LandingPageEvent, status: ForwardStatus,
                    error: str | None, persisted: bool):
    """The single terminal forward_status update for a queued row."""
    row.forward_status = status.value
    row.forward_error = error
    if status in (ForwardStatus.OK, ForwardStatus.ERROR):
        row.forwarded_at = datetime.now(timezone.utc)
    if not persisted:
        return
    try:
        await db.commit()
    except SQLAlchemyError as e:
        logger.error("event_status_update_failed", event_log_id=str(row.id), status=status.value, error=str(e))
        await db.rollback()


async def _reject(db: AsyncSession, http_status: int, error: str, status: ForwardStatus,
                  event_name: str, body: dict, request_path: str, reason: str | None = None):
    row = LandingPageEvent(
        id=uuid4(),
        event_name=event_name,
        event_id=str(body.get("eventId") or "")[:128] or None,
        request_path=request_path or None,
        event_source_url=str(body.get("eventSourceUrl") or "")[:2048] or None,
        forward_to_facebook=False,
        forward_status=status.value,
        forward_error=reason,
    )
    persisted = await _persist(db, row)
    logger.warning("track_event_rejected", error=error, status=status.value,
                   event_name=event_name, path=request_path, reason=reason)
    content: dict[str, Any] = {"ok": False, "error": error, "forwardStatus": status.value}
    if persisted:
        content["eventLogId"] = str(row.id)
    return JSONResponse(status_code=http_status, content=content)


# --- Endpoint ---

@router.post("/track-event")
async def track_event(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    rate_limit_ip(request)

    referer = request.headers.get("referer") or ""

    # Beacons arrive as text/plain or application/json; read the raw body either way.
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return await _reject(db, 400, "invalid_payload", ForwardStatus.SKIPPED_INVALID_EVENT,
                             "", {}, derive_request_path(referer))

    request_path = derive_request_path(str(body.get("eventSourceUrl") or "") or referer)

    # --- 1. Validate ---
    raw_name = str(body.get("eventName") or "").strip()[:64]
    if not raw_name:
        return await _reject(db, 400, "missing_event_name", ForwardStatus.SKIPPED_NO_EVENT_NAME,
                             "", body, request_path)
    if raw_name not in EVENT_NAMES:
        return await _reject(db, 400, "invalid_event_name", ForwardStatus.SKIPPED_INVALID_EVENT,
                             raw_name, body, request_path)
    try:
        payload = TrackEventPayload.model_validate(body)
    except ValidationError as e:
        return await _reject(db, 400, "invalid_payload", ForwardStatus.SKIPPED_INVALID_EVENT,
                             raw_name, body, request_path, reason=str(e)[:1000])

    # --- 2. Signature ---
    verification = verify_tracking_token(payload.tracking_auth_token, request_path)
    if not verification.ok:
        return await _reject(db, 401, "invalid_tracking_signature", ForwardStatus.SKIPPED_INVALID_SIGNATURE,
                             raw_name, body, request_path, reason=verification.reason)

    # --- 3. Credentials ---
    creds = await resolve_ads_credentials(db, request_path)

    attribution = sanitize_attribution(payload.attribution)
    fbclid = (
        request.cookies.get("fbclid")
        or attribution.get("fbclid")
        or fbclid_from_url(payload.event_source_url)
        or fbclid_from_url(referer)
        or click_id_from_fbc(request.cookies.get("_fbc"))
    )
    fbp = (request.cookies.get("_fbp") or "").strip()[:255] or None
    fbc = (build_fbc(request.cookies.get("_fbc"), fbclid) or "")[:255] or None
    client_ip = get_client_ip(request)
    user_agent = (request.headers.get("user-agent") or "")[:512]
    event_id = payload.event_id or f"srv-{uuid4().hex}"
    forward_wanted = payload.forward_to_facebook and raw_name not in INTERNAL_ONLY_EVENTS

    # --- 4. Persist as queued ---
    row = LandingPageEvent(
        id=uuid4(),
        event_name=raw_name,
        event_id=event_id,
        request_path=request_path or None,
        event_source_url=payload.event_source_url or referer or None,
        test_event_code=payload.test_event_code or None,
        attribution=attribution,
        context=payload.context.model_dump(exclude_none=True) if payload.context else {},
        route=payload.route.model_dump(exclude_none=True) if payload.route else {},
        identity=payload.identity.model_dump(by_alias=True, exclude_none=True) if payload.identity else {},
        fbp=fbp,
        fbc=fbc,
        client_ip=client_ip[:45],
        user_agent=user_agent or None,
        forward_to_facebook=forward_wanted,
        pixel_id=creds.pixel_id,
        forward_status=ForwardStatus.QUEUED.value,
    )
    persisted = await _persist(db, row)
    event_log_id = str(row.id) if persisted else None

    # --- 5/6. Skips ---
    skip = None
    if not forward_wanted:
        skip = ForwardStatus.SKIPPED_INTERNAL_ONLY
    elif not creds.pixel_id:
        skip = ForwardStatus.SKIPPED_MISSING_PIXEL
    elif not creds.access_token:
        skip = ForwardStatus.SKIPPED_MISSING_TOKEN

    if skip is not None:
        await _finalize(db, row, skip, None, persisted)
        logger.info("track_event_ingested", event_name=raw_name, path=request_path,
                    status=skip.value, event_log_id=event_log_id)
        return {"ok": True, "eventLogId": event_log_id, "forwardStatus": skip.value}

    # --- 7. Forward once ---
    result = await forward_event(ForwardRequest(
        pixel_id=creds.pixel_id,
        access_token=creds.access_token,
        event_name=raw_name,
        event_id=event_id,
        event_source_url=payload.event_source_url or referer,
        user_agent=user_agent,
        client_ip=client_ip[:45],
        fbp=fbp,
        fbc=fbc,
        test_event_code=payload.test_event_code or None,
    ))

    if result.ok:
        await _finalize(db, row, ForwardStatus.OK, None, persisted)
        logger.info("track_event_forwarded", event_name=raw_name, path=request_path,
                    pixel_id=creds.pixel_id, credential_source=creds.source, event_log_id=event_log_id)
        return {"ok": True, "eventLogId": event_log_id, "forwardStatus": ForwardStatus.OK.value}

    await _finalize(db, row, ForwardStatus.ERROR, result.detail, persisted)
    logger.error("track_event_forward_failed", event_name=raw_name, path=request_path,
                 status_code=result.status_code, detail=result.detail, event_log_id=event_log_id)
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "error": "forward_failed",
            "eventLogId": event_log_id,
            "forwardStatus": ForwardStatus.ERROR.value,
        },
    )
