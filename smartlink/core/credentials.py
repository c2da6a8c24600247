"""
Ads credential resolution for a page path.

Lookup order, first hit wins per field:
  1. Song override   (songs.slug == path without leading slash)
  2. Artist override (artists.slug == first path segment)
  3. Environment     (SL_META_PIXEL_ID / SL_FACEBOOK_ACCESS_TOKEN)

Results are cached in-process for a short TTL keyed by normalized path.
Concurrent requests may both miss and both write; they compute the same
value, so the last write wins harmlessly.
"""

import time
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from smartlink.config import get_settings
from smartlink.core.tracking_auth import normalize_tracking_path
from smartlink.models.tables import Artist, Song

import structlog

logger = structlog.get_logger()

_cache: dict[str, tuple[float, "AdsCredentials"]] = {}


@dataclass(frozen=True)
class AdsCredentials:
    pixel_id: str | None
    access_token: str | None
    source: str  # song, artist, env, mixed


def clear_credential_cache():
    _cache.clear()


def _clean(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


async def _lookup_song(db: AsyncSession, slug: str) -> Song | None:
    result = await db.execute(select(Song).where(Song.slug == slug))
    return result.scalar_one_or_none()


async def _lookup_artist(db: AsyncSession, slug: str) -> Artist | None:
    result = await db.execute(select(Artist).where(Artist.slug == slug))
    return result.scalar_one_or_none()


async def _resolve_uncached(db: AsyncSession, path: str) -> AdsCredentials:
    settings = get_settings()
    slug = path.lstrip("/")
    pixel_id = token = None
    sources: list[str] = []

    if slug:
        try:
            song = await _lookup_song(db, slug)
            if song is not None:
                pixel_id = _clean(song.meta_pixel_id)
                token = _clean(song.facebook_access_token)
                if pixel_id or token:
                    sources.append("song")

            if not (pixel_id and token):
                artist = await _lookup_artist(db, slug.split("/", 1)[0])
                if artist is not None:
                    artist_pixel = _clean(artist.meta_pixel_id)
                    artist_token = _clean(artist.facebook_access_token)
                    if (not pixel_id and artist_pixel) or (not token and artist_token):
                        sources.append("artist")
                    pixel_id = pixel_id or artist_pixel
                    token = token or artist_token
        except SQLAlchemyError as e:
            # Fall through to the environment default. The session is reused
            # for the event insert, so clear the failed transaction first.
            logger.warning("credential_lookup_failed", path=path, error=str(e))
            await db.rollback()

    if not (pixel_id and token):
        env_pixel = _clean(settings.meta_pixel_id)
        env_token = _clean(settings.facebook_access_token)
        if (not pixel_id and env_pixel) or (not token and env_token):
            sources.append("env")
        pixel_id = pixel_id or env_pixel
        token = token or env_token

    source = sources[0] if len(sources) == 1 else ("mixed" if sources else "none")
    return AdsCredentials(pixel_id=pixel_id, access_token=token, source=source)


async def resolve_ads_credentials(db: AsyncSession, request_path: str) -> AdsCredentials:
    settings = get_settings()
    key = normalize_tracking_path(request_path)
    now = time.monotonic()

    cached = _cache.get(key)
    if cached and cached[0] > now:
        return cached[1]

    creds = await _resolve_uncached(db, key)
    _cache[key] = (now + settings.credential_cache_ttl_seconds, creds)

    # Periodic cleanup
    if len(_cache) > 5000:
        for stale in [k for k, (exp, _) in _cache.items() if exp <= now]:
            del _cache[stale]

    return creds
