"""
Smart-link landing page: GET /{artist_slug}/{song_slug}

Server side:
  - looks up the song, builds its LinkConfig
  - detects the routing context from the request UA and computes the plan
  - collects attribution from the URL, Referer and cookies
  - mints a tracking token bound to the page path

Browser side (inline JS, nonce CSP):
  - View once per page load
  - on tap, the dispatch machine with real timers + visibilitychange
  - transport: navigator.sendBeacon, then fetch(..., {keepalive: true})
  - optional Meta pixel calls share the eventID with the server event
"""

import json
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from smartlink.config import get_settings
from smartlink.core.attribution import collect_attribution
from smartlink.core.routing import LinkConfig, RoutingConfig, TrackingConfig, detect_context, plan
from smartlink.core.tracking_auth import create_tracking_token, normalize_tracking_path
from smartlink.models.database import get_db
from smartlink.models.tables import Song

import structlog

logger = structlog.get_logger()
router = APIRouter(tags=["landing"])


def link_config_for(song: Song) -> LinkConfig:
    """Build the core's view of a release. Broken overrides fall back to defaults."""
    try:
        routing = RoutingConfig.model_validate(song.routing_config or {})
    except ValidationError as e:
        logger.warning("routing_config_invalid", slug=song.slug, error=str(e))
        routing = RoutingConfig()
    try:
        tracking = TrackingConfig.model_validate(song.tracking_config or {})
    except ValidationError as e:
        logger.warning("tracking_config_invalid", slug=song.slug, error=str(e))
        tracking = TrackingConfig()

    artist = song.artist
    settings = get_settings()
    return LinkConfig(
        web_link=song.web_link,
        deep_link=song.deep_link,
        pixel_id=song.meta_pixel_id or (artist.meta_pixel_id if artist else None) or settings.meta_pixel_id or None,
        routing=routing,
        tracking=tracking,
    )


@router.get("/{artist_slug}/{song_slug}", response_class=HTMLResponse)
async def landing_page(
    artist_slug: str,
    song_slug: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    slug = f"{artist_slug}/{song_slug}"
    result = await db.execute(
        select(Song).options(selectinload(Song.artist)).where(Song.slug == slug)
    )
    song = result.scalar_one_or_none()
    if not song:
        raise HTTPException(status_code=404, detail="Not found")

    link = link_config_for(song)
    path = normalize_tracking_path(f"/{slug}")
    context = detect_context(request.headers.get("user-agent"))
    routing_plan = plan(link, context)
    token = create_tracking_token(path)
    attribution = collect_attribution(
        str(request.url),
        referrer=request.headers.get("referer"),
        cookies=request.cookies,
    )
    test_event_code = (
        request.query_params.get("test_event_code") or request.query_params.get("test_event") or ""
    ).strip()[:64]

    page_config = {
        "endpoint": "/track-event",
        "path": path,
        "webLink": link.web_link,
        "deepLink": link.deep_link or "",
        "pixelId": link.pixel_id or "",
        "trackingToken": token,
        "testEventCode": test_event_code,
        "attribution": attribution,
        "context": context.to_event(),
        "route": routing_plan.to_event(),
        "qualifiedCooldownMs": link.qualified_cooldown_ms,
    }

    nonce = secrets.token_urlsafe(16)
    html = _render_page(song, page_config, nonce)

    logger.info("landing_served", path=path, strategy=routing_plan.strategy, reason=routing_plan.reason,
                os=context.os, in_app=context.in_app_browser)

    script_src = f"'nonce-{nonce}'"
    connect_src = "'self'"
    img_src = "https: data:"
    if link.pixel_id:
        script_src += " https://connect.facebook.net"
        connect_src += " https://www.facebook.com https://connect.facebook.net"

    return HTMLResponse(
        content=html,
        headers={
            "Content-Security-Policy": (
                f"default-src 'none'; script-src {script_src}; style-src 'nonce-{nonce}'; "
                f"img-src {img_src}; connect-src {connect_src}; frame-ancestors 'none'"
            ),
            "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
        },
    )


def _render_page(song: Song, page_config: dict, nonce: str) -> str:
    title = f"{song.track_title} - {song.artist_name}"
    cover = song.cover_image_url or ""
    cover_html = f'<img class="cover" src="{_html_escape(cover)}" alt="">' if cover else ""

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width,initial-scale=1">
<title>{_html_escape(title)}</title>
<meta property="og:title" content="{_html_escape(title)}">
<meta property="og:image" content="{_html_escape(cover)}">
<style nonce="{nonce}">
body {{ margin:0; min-height:100vh; display:flex; flex-direction:column; align-items:center;
  justify-content:center; gap:16px; background:#0b111a; color:#fff; font-family:system-ui,sans-serif; }}
.cover {{ width:min(80vw,360px); aspect-ratio:1; object-fit:cover; border-radius:12px; }}
h1 {{ font-size:20px; margin:0; }} p {{ margin:0; opacity:.7; }}
button {{ padding:14px 40px; border:0; border-radius:999px; background:#1ed760; color:#000;
  font-size:17px; font-weight:600; }}
</style>
</head>
<body>
{cover_html}
<h1>{_html_escape(song.track_title)}</h1>
<p>{_html_escape(song.artist_name)}</p>
<button id="play" type="button">Play</button>
<noscript><a href="{_html_escape(song.web_link)}">Open</a></noscript>
<script nonce="{nonce}">
(function() {{
  var cfg = {_js_json(page_config)};

  function eventId(prefix) {{
    return prefix + "-" + Date.now() + "-" + Math.floor(Math.random() * 100000);
  }}

  function storedId(storage, key, prefix) {{
    var fresh = prefix + "-" + (window.crypto && crypto.randomUUID ? crypto.randomUUID() : eventId("id"));
    try {{
      var existing = (storage.getItem(key) || "").trim();
      if (existing) return existing;
      storage.setItem(key, fresh);
    }} catch(e) {{}}
    return fresh;
  }}

  function identity() {{
    return {{
      anonymousId: storedId(window.localStorage, "sl_anon_id", "anon"),
      sessionId: storedId(window.sessionStorage, "sl_session_id", "session")
    }};
  }}

  function extend(base, extra) {{
    var out = {{}}, k;
    for (k in base) out[k] = base[k];
    for (k in extra) out[k] = extra[k];
    return out;
  }}

  // Pixel (optional)
  if (cfg.pixelId) {{
    var f = window.fbq = function() {{
      f.callMethod ? f.callMethod.apply(f, arguments) : f.queue.push(arguments);
    }};
    f.push = f; f.loaded = true; f.version = "2.0"; f.queue = [];
    var s = document.createElement("script");
    s.async = true;
    s.src = "https://connect.facebook.net/en_US/fbevents.js";
    s.nonce = "{nonce}";
    document.head.appendChild(s);
    fbq("init", cfg.pixelId);
  }}

  // Transport: beacon first, keepalive fetch fallback, never throws
  function send(name, route, forward, id) {{
    id = id || eventId(name.toLowerCase());
    if (forward && window.fbq) {{
      try {{
        fbq("trackCustom", name, cfg.testEventCode ? {{ test_event_code: cfg.testEventCode }} : {{}}, {{ eventID: id }});
      }} catch(e) {{}}
    }}
    var body = JSON.stringify({{
      eventName: name,
      eventId: id,
      testEventCode: cfg.testEventCode || null,
      eventSourceUrl: window.location.href,
      trackingAuthToken: cfg.trackingToken,
      attribution: cfg.attribution,
      context: cfg.context,
      route: route,
      identity: identity(),
      forwardToFacebook: forward
    }});
    var sent = false;
    try {{
      sent = typeof navigator.sendBeacon === "function" && navigator.sendBeacon(cfg.endpoint, body);
    }} catch(e) {{}}
    if (!sent) {{
      try {{
        fetch(cfg.endpoint, {{
          method: "POST",
          headers: {{ "Content-Type": "application/json" }},
          body: body,
          keepalive: true
        }}).catch(function() {{}});
      }} catch(e) {{}}
    }}
    return id;
  }}

  function shouldEmitQualified() {{
    var key = "sl-qualified:" + cfg.path, now = Date.now();
    try {{
      var prev = Number(window.localStorage.getItem(key) || 0);
      if (isFinite(prev) && prev > 0 && now - prev < cfg.qualifiedCooldownMs) return false;
      window.localStorage.setItem(key, String(now));
    }} catch(e) {{}}
    return true;
  }}

  // View, once per page load
  var viewId = eventId("view");
  if (window.fbq) fbq("track", "PageView", undefined, {{ eventID: viewId }});
  send("SmartLinkView", {{ strategy: "view", reason: "page-load" }}, true, viewId);

  // Dispatch
  var busy = false;
  document.getElementById("play").addEventListener("click", function() {{
    if (busy) return;
    busy = true;
    var route = cfg.route;

    send("SmartLinkClick", route, true);
    send("SmartLinkRouteChosen", route, false);

    if (route.strategy === "web-only") {{
      send("SmartLinkOpenFallback", extend(route, {{ fallback_target: "web" }}), false);
      busy = false;
      window.location.href = cfg.webLink;
      return;
    }}

    var settled = false, deepLinkTimer = 0, fallbackTimer = 0, safetyTimer = 0;

    function cleanup() {{
      busy = false;
      clearTimeout(deepLinkTimer);
      clearTimeout(fallbackTimer);
      clearTimeout(safetyTimer);
      document.removeEventListener("visibilitychange", onVisibility);
    }}

    function onVisibility() {{
      if (document.visibilityState !== "hidden" || settled) return;
      settled = true;
      cleanup();
      send("SmartLinkOpenSuccess", extend(route, {{ open_target: "app" }}), true);
      if (shouldEmitQualified()) {{
        send("SmartLinkQualified", extend(route, {{ audience_tier: "high_intent" }}), true);
      }}
    }}

    document.addEventListener("visibilitychange", onVisibility);

    deepLinkTimer = setTimeout(function() {{
      send("SmartLinkOpenAttempt", extend(route, {{ open_target: "app" }}), false);
      window.location.href = cfg.deepLink;
    }}, route.deep_link_delay_ms);

    fallbackTimer = setTimeout(function() {{
      if (settled) return;
      settled = true;
      cleanup();
      send("SmartLinkOpenFallback", extend(route, {{ fallback_target: "web" }}), false);
      window.location.href = cfg.webLink;
    }}, route.fallback_delay_ms);

    safetyTimer = setTimeout(function() {{
      if (settled) return;
      settled = true;
      cleanup();
    }}, route.success_signal_window_ms);
  }});
}})();
</script>
</body>
</html>"""


def _js_json(value) -> str:
    """Serialize for an inline <script>; no sequence can close the tag."""
    return (
        json.dumps(value, separators=(",", ":"))
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def _html_escape(s: str) -> str:
    return (
        (s or "")
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#x27;")
    )
