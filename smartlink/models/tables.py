"""
Database models.

Design principles:
  - Artists and songs are owned by the admin app; the core only reads them
  - landing_page_events is append-only; the one allowed mutation is the
    single forward_status transition out of "queued"
  - request_path is the scoping key for every analytics query
"""

import datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in local tooling).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Release tables (admin-owned, read-only here)
# ---------------------------------------------------------------------------

class Artist(Base):
    __tablename__ = "artists"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False)
    photo_url = Column(Text, nullable=True)

    # Per-artist ads credentials (override the environment default)
    meta_pixel_id = Column(String(64), nullable=True)
    facebook_access_token = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    songs = relationship("Song", back_populates="artist")


class Song(Base):
    __tablename__ = "songs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    artist_id = Column(UUID(as_uuid=True), ForeignKey("artists.id"), nullable=False, index=True)

    # Full page path without the leading slash, e.g. "artist-x/song-y"
    slug = Column(String(255), nullable=False, unique=True, index=True)
    song_slug = Column(String(100), nullable=True)

    artist_name = Column(String(255), nullable=False)
    track_title = Column(String(255), nullable=False)
    cover_image_url = Column(Text, nullable=True)

    # Where the tap goes
    deep_link = Column(Text, nullable=True)                  # e.g. spotify://track/{id}
    web_link = Column(Text, nullable=False)

    # Per-song ads credentials (override the artist)
    meta_pixel_id = Column(String(64), nullable=True)
    facebook_access_token = Column(Text, nullable=True)

    # Routing / tracking overrides (see core.routing.RoutingConfig / TrackingConfig)
    routing_config = Column(JSONType, nullable=True)
    tracking_config = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    artist = relationship("Artist", back_populates="songs")


# ---------------------------------------------------------------------------
# Event table
# ---------------------------------------------------------------------------

class LandingPageEvent(Base):
    """
    One row per funnel event received at /track-event.
    Inserted as "queued" before any external call, then updated once.
    """
    __tablename__ = "landing_page_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    event_name = Column(String(64), nullable=False)
    event_id = Column(String(128), nullable=True, index=True)

    # Scoping + provenance
    request_path = Column(String(512), nullable=True)        # "/artist/song", query stripped
    event_source_url = Column(Text, nullable=True)
    test_event_code = Column(String(64), nullable=True)

    # Structured payload
    attribution = Column(JSONType, nullable=True)            # utm_*, click ids
    context = Column(JSONType, nullable=True)                # os / in_app_browser / is_mobile
    route = Column(JSONType, nullable=True)                  # strategy / delays / reason
    identity = Column(JSONType, nullable=True)               # anonymousId / sessionId

    # Request fingerprint forwarded to CAPI
    fbp = Column(String(255), nullable=True)
    fbc = Column(String(255), nullable=True)
    client_ip = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)

    # Forwarding
    forward_to_facebook = Column(Boolean, default=True)
    pixel_id = Column(String(64), nullable=True)
    forward_status = Column(String(40), nullable=False, default="queued")
    forward_error = Column(Text, nullable=True)
    forwarded_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now())

    __table_args__ = (
        Index("ix_landing_page_events_path_created", "request_path", "created_at"),
        Index("ix_landing_page_events_name_created", "event_name", "created_at"),
    )
