"""
SmartLink: deep-link landing pages, funnel event ingestion and analytics.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from smartlink.api.analytics import router as analytics_router
from smartlink.api.landing import router as landing_router
from smartlink.api.track_event import router as track_event_router
from smartlink.core.tracking_auth import is_tracking_signature_enabled
from smartlink.middleware.security import SecurityHeadersMiddleware
from smartlink.config import get_settings

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "smartlink_starting",
        base_url=settings.base_url,
        tracking_signature=is_tracking_signature_enabled(),
        default_pixel=bool(settings.meta_pixel_id),
    )
    yield
    logger.info("smartlink_shutting_down")


app = FastAPI(
    title=get_settings().app_name,
    description="Smart-link landing pages with deep-link dispatch, conversion forwarding and funnel analytics.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

# The landing page posts same-origin; only the dashboard needs CORS.
ALLOWED_ORIGINS = ["*"] if get_settings().debug else [get_settings().base_url]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "smartlink", "version": VERSION}


# --- Routes ---
# The landing page route is a two-segment catch-all; register it last.
app.include_router(track_event_router)
app.include_router(analytics_router)
app.include_router(landing_router)
