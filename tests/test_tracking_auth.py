"""Tests for tracking token minting and verification."""

import base64
import json

from smartlink.core.tracking_auth import (
    create_tracking_token,
    derive_request_path,
    is_tracking_signature_enabled,
    normalize_tracking_path,
    verify_tracking_token,
)

SECRET = "unit-secret"
NOW = 1_700_000_000


def _mint(path="/artist-x/song-y", ttl=600, now=NOW, secret=SECRET):
    return create_tracking_token(path, ttl_seconds=ttl, secret=secret, now=now)


def test_normalize_path_strips_query_and_slashes():
    assert normalize_tracking_path("artist//song/?utm_source=ig#top") == "/artist/song"
    assert normalize_tracking_path("/") == "/"
    assert normalize_tracking_path("   ") == ""


def test_derive_request_path_from_absolute_url():
    assert derive_request_path("https://x.example/artist-x/song-y?fbclid=abc") == "/artist-x/song-y"
    assert derive_request_path("/artist-x/song-y/") == "/artist-x/song-y"
    assert derive_request_path(None) == ""


def test_roundtrip_verifies_for_same_path():
    token = _mint()
    result = verify_tracking_token(token, "/artist-x/song-y", secret=SECRET, now=NOW + 10)
    assert result.ok
    assert result.reason == "ok"
    assert result.payload.path == "/artist-x/song-y"
    assert result.payload.exp == NOW + 600


def test_path_binding_rejects_other_page():
    token = _mint()
    result = verify_tracking_token(token, "/artist-x/other-song", secret=SECRET, now=NOW)
    assert not result.ok
    assert result.reason == "path_mismatch"


def test_expected_path_is_normalized_before_comparing():
    token = _mint()
    result = verify_tracking_token(token, "/artist-x/song-y/?utm_source=fb", secret=SECRET, now=NOW)
    assert result.ok


def test_expiry_has_thirty_second_grace():
    token = _mint(ttl=60)
    assert verify_tracking_token(token, "/artist-x/song-y", secret=SECRET, now=NOW + 60 + 30).ok
    result = verify_tracking_token(token, "/artist-x/song-y", secret=SECRET, now=NOW + 60 + 31)
    assert result.reason == "expired"


def test_tampered_payload_fails_signature():
    token = _mint()
    payload_b64, sig = token.split(".")
    body = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))
    body["path"] = "/artist-x/evil"
    forged = base64.urlsafe_b64encode(json.dumps(body).encode()).rstrip(b"=").decode()
    result = verify_tracking_token(f"{forged}.{sig}", "/artist-x/evil", secret=SECRET, now=NOW)
    assert result.reason == "invalid_signature"


def test_wrong_secret_fails_signature():
    token = _mint(secret="other-secret")
    assert verify_tracking_token(token, "/artist-x/song-y", secret=SECRET, now=NOW).reason == "invalid_signature"


def test_missing_and_malformed_tokens():
    assert verify_tracking_token(None, "/a/b", secret=SECRET).reason == "missing_token"
    assert verify_tracking_token("   ", "/a/b", secret=SECRET).reason == "missing_token"
    assert verify_tracking_token("no-dot", "/a/b", secret=SECRET).reason == "invalid_format"
    assert verify_tracking_token("a.b.c", "/a/b", secret=SECRET).reason == "invalid_format"


def test_signed_garbage_payload_is_invalid_payload():
    from smartlink.core.tracking_auth import _b64url_encode, _sign

    payload_b64 = _b64url_encode(b'{"v": 2, "path": "/a/b"}')
    token = f"{payload_b64}.{_sign(payload_b64, SECRET)}"
    assert verify_tracking_token(token, "/a/b", secret=SECRET).reason == "invalid_payload"


def test_no_secret_disables_signing_and_verification():
    assert create_tracking_token("/a/b", secret="") == ""
    assert not is_tracking_signature_enabled("")
    result = verify_tracking_token(None, "/a/b", secret="")
    assert result.ok
    assert result.reason == "secret_not_configured"


def test_env_secret_is_used_by_default():
    # conftest sets SL_TRACKING_SIGNING_SECRET
    assert is_tracking_signature_enabled()
    token = create_tracking_token("/a/b")
    assert verify_tracking_token(token, "/a/b").ok
