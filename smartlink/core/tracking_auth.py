"""
Tracking auth tokens: minting & verification.

Format:  {payload_b64url}.{sig_b64url}
- payload  → JSON {"v": 1, "path": "/artist/song", "iat": ts, "exp": ts}
- sig      → HMAC-SHA256(payload_b64url, secret), base64url without padding

A token is minted when the landing page renders and is bound to that page's
path, so /track-event can refuse events claiming to come from another page.
With no secret configured every token verifies (reason "secret_not_configured").
"""

import base64
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass
from urllib.parse import urlsplit

from smartlink.config import get_settings

TOKEN_VERSION = 1
MIN_TTL_SECONDS = 60


def normalize_tracking_path(pathname: str) -> str:
    """Canonical page path: query/fragment dropped, single slashes, no trailing slash."""
    trimmed = (pathname or "").strip()
    if not trimmed:
        return ""
    normalized = re.sub(r"[?#].*$", "", trimmed)
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    normalized = re.sub(r"/{2,}", "/", normalized)
    if len(normalized) > 1 and normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def derive_request_path(url: str | None) -> str:
    """Request path of the page that emitted an event (absolute or relative URL)."""
    if not url:
        return ""
    raw = url.strip()
    if "://" in raw:
        raw = urlsplit(raw).path
    return normalize_tracking_path(raw)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(payload_b64: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), payload_b64.encode(), hashlib.sha256).digest()
    return _b64url_encode(digest)


def _secret(secret: str | None) -> str:
    if secret is not None:
        return secret.strip()
    return get_settings().tracking_signing_secret.strip()


@dataclass(frozen=True)
class TrackingTokenPayload:
    path: str
    iat: int
    exp: int
    v: int = TOKEN_VERSION


@dataclass(frozen=True)
class TokenVerification:
    ok: bool
    reason: str
    payload: TrackingTokenPayload | None = None


def is_tracking_signature_enabled(secret: str | None = None) -> bool:
    return bool(_secret(secret))


def create_tracking_token(
    pathname: str,
    ttl_seconds: int | None = None,
    secret: str | None = None,
    now: float | None = None,
) -> str:
    """Mint a token bound to `pathname`. Returns "" when signing is disabled."""
    key = _secret(secret)
    path = normalize_tracking_path(pathname)
    if not key or not path:
        return ""

    if ttl_seconds is None:
        ttl_seconds = get_settings().tracking_token_ttl_seconds
    issued = int(now if now is not None else time.time())
    body = {
        "v": TOKEN_VERSION,
        "path": path,
        "iat": issued,
        "exp": issued + max(MIN_TTL_SECONDS, int(ttl_seconds)),
    }
    payload_b64 = _b64url_encode(json.dumps(body, separators=(",", ":")).encode())
    return f"{payload_b64}.{_sign(payload_b64, key)}"


def _parse_payload(payload_b64: str) -> TrackingTokenPayload | None:
    try:
        body = json.loads(_b64url_decode(payload_b64))
    except ValueError:
        return None
    if not isinstance(body, dict) or body.get("v") != TOKEN_VERSION:
        return None
    path, iat, exp = body.get("path"), body.get("iat"), body.get("exp")
    if not isinstance(path, str) or not path:
        return None
    if not isinstance(iat, (int, float)) or not isinstance(exp, (int, float)):
        return None
    return TrackingTokenPayload(path=path, iat=int(iat), exp=int(exp))


def verify_tracking_token(
    token: str | None,
    expected_path: str,
    secret: str | None = None,
    now: float | None = None,
) -> TokenVerification:
    """Check signature, expiry (with grace) and path binding, in that order."""
    key = _secret(secret)
    if not key:
        return TokenVerification(ok=True, reason="secret_not_configured")

    raw = (token or "").strip()
    if not raw:
        return TokenVerification(ok=False, reason="missing_token")

    parts = raw.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return TokenVerification(ok=False, reason="invalid_format")
    payload_b64, signature = parts

    if not hmac.compare_digest(signature, _sign(payload_b64, key)):
        return TokenVerification(ok=False, reason="invalid_signature")

    payload = _parse_payload(payload_b64)
    if payload is None:
        return TokenVerification(ok=False, reason="invalid_payload")

    current = int(now if now is not None else time.time())
    if payload.exp < current - get_settings().tracking_token_grace_seconds:
        return TokenVerification(ok=False, reason="expired")

    path = normalize_tracking_path(expected_path)
    if path and payload.path != path:
        return TokenVerification(ok=False, reason="path_mismatch")

    return TokenVerification(ok=True, reason="ok", payload=payload)
