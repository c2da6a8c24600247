"""Tests for routing context detection and the routing planner."""

import pytest

from smartlink.core.routing import (
    LinkConfig,
    RoutingConfig,
    RoutingContext,
    TrackingConfig,
    clamp_ms,
    detect_context,
    plan,
)

IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
)
IPHONE_INSTAGRAM = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Mobile/15E148 Instagram 312.0.0.22.114"
)
ANDROID_FACEBOOK = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8 Build/UQ1A; wv) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Version/4.0 Chrome/120.0 Mobile Safari/537.36 [FB_IAB/FB4A;FBAV/445.0.0.34.118;]"
)
ANDROID_TIKTOK = (
    "Mozilla/5.0 (Linux; Android 13; SM-G991B) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/118.0 Mobile Safari/537.36 musical_ly_2023 BytedanceWebview/d8a21c6"
)
ANDROID_CHROME = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Mobile Safari/537.36"
)
DESKTOP_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

WITH_DEEP_LINK = LinkConfig(web_link="https://open.spotify.com/track/1", deep_link="spotify://track/1")

IOS = RoutingContext(os="ios", in_app_browser="none", is_mobile=True)
ANDROID = RoutingContext(os="android", in_app_browser="none", is_mobile=True)
DESKTOP = RoutingContext(os="desktop", in_app_browser="none", is_mobile=False)


# ---------------------------------------------------------------------------
# detect_context
# ---------------------------------------------------------------------------

class TestDetectContext:
    def test_iphone_safari(self):
        assert detect_context(IPHONE_SAFARI) == RoutingContext("ios", "none", True)

    def test_instagram_in_app(self):
        ctx = detect_context(IPHONE_INSTAGRAM)
        assert ctx.os == "ios"
        assert ctx.in_app_browser == "instagram"

    def test_facebook_in_app_on_android(self):
        ctx = detect_context(ANDROID_FACEBOOK)
        assert ctx.os == "android"
        assert ctx.in_app_browser == "facebook"

    def test_tiktok_in_app(self):
        assert detect_context(ANDROID_TIKTOK).in_app_browser == "tiktok"

    def test_plain_android_chrome(self):
        assert detect_context(ANDROID_CHROME) == RoutingContext("android", "none", True)

    def test_desktop(self):
        assert detect_context(DESKTOP_CHROME) == RoutingContext("desktop", "none", False)

    @pytest.mark.parametrize("ua", [None, "", "   "])
    def test_empty_ua_is_unknown_not_mobile(self, ua):
        assert detect_context(ua) == RoutingContext("unknown", "none", False)

    def test_event_shape(self):
        assert detect_context(IPHONE_INSTAGRAM).to_event() == {
            "os": "ios", "is_mobile": True, "in_app_browser": "instagram",
        }


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------

class TestPlan:
    def test_missing_deep_link_is_web_only(self):
        cfg = LinkConfig(web_link="https://w", deep_link="  ")
        p = plan(cfg, IOS)
        assert p.strategy == "web-only"
        assert p.reason == "missing-deep-link"
        assert (p.deep_link_delay_ms, p.fallback_delay_ms, p.success_signal_window_ms) == (0, 0, 0)

    def test_desktop_prefers_web_by_default(self):
        p = plan(WITH_DEEP_LINK, DESKTOP)
        assert p.strategy == "web-only"
        assert p.reason == "desktop-prefer-web"

    def test_desktop_can_opt_into_deep_link(self):
        cfg = LinkConfig(
            web_link="https://w", deep_link="app://x",
            routing=RoutingConfig(prefer_web_on_desktop=False),
        )
        p = plan(cfg, DESKTOP)
        assert p.strategy == "deep-link-first"
        assert p.deep_link_delay_ms == 120
        assert p.fallback_delay_ms == 900

    def test_ios_defaults(self):
        p = plan(WITH_DEEP_LINK, IOS)
        assert p.strategy == "deep-link-first"
        assert p.reason == "mobile-browser"
        assert p.deep_link_delay_ms == 180
        assert p.fallback_delay_ms == 1200
        assert p.success_signal_window_ms == 2400

    def test_android_defaults(self):
        p = plan(WITH_DEEP_LINK, ANDROID)
        assert (p.deep_link_delay_ms, p.fallback_delay_ms, p.success_signal_window_ms) == (120, 900, 2200)

    def test_in_app_adds_fallback_penalty(self):
        ctx = RoutingContext(os="ios", in_app_browser="instagram", is_mobile=True)
        p = plan(WITH_DEEP_LINK, ctx)
        assert p.reason == "in-app-instagram"
        assert p.fallback_delay_ms == 1200 + 420
        assert p.success_signal_window_ms == 1620 + 1200

    def test_in_app_penalty_override_is_clamped(self):
        ctx = RoutingContext(os="android", in_app_browser="tiktok", is_mobile=True)
        cfg = LinkConfig(web_link="w", deep_link="d", routing=RoutingConfig(in_app_fallback_extra_ms=99999))
        assert plan(cfg, ctx).fallback_delay_ms == 900 + 3000

    def test_overrides_are_clamped(self):
        cfg = LinkConfig(web_link="w", deep_link="d", routing=RoutingConfig(
            deep_link_delay_ms=-50,
            fallback_delay_ms=10,
            success_signal_window_ms=1,
        ))
        p = plan(cfg, ANDROID)
        assert p.deep_link_delay_ms == 0
        assert p.fallback_delay_ms == 300
        assert p.success_signal_window_ms == 500

    def test_huge_overrides_stay_within_ten_seconds(self):
        cfg = LinkConfig(web_link="w", deep_link="d", routing=RoutingConfig(
            deep_link_delay_ms=60000,
            fallback_delay_ms=60000,
            success_signal_window_ms=60000,
        ))
        p = plan(cfg, IOS)
        assert p.deep_link_delay_ms == 10000
        assert p.fallback_delay_ms <= 10000
        assert p.success_signal_window_ms == 10000
        assert p.success_signal_window_ms > p.fallback_delay_ms

    @pytest.mark.parametrize("ctx", [
        IOS, ANDROID,
        RoutingContext("ios", "facebook", True),
        RoutingContext("unknown", "other", True),
    ])
    def test_success_window_always_after_fallback(self, ctx):
        p = plan(WITH_DEEP_LINK, ctx)
        assert p.success_signal_window_ms > p.fallback_delay_ms

    def test_plan_is_deterministic(self):
        assert plan(WITH_DEEP_LINK, IOS) == plan(WITH_DEEP_LINK, IOS)

    def test_event_shape(self):
        assert plan(WITH_DEEP_LINK, ANDROID).to_event() == {
            "strategy": "deep-link-first",
            "deep_link_delay_ms": 120,
            "fallback_delay_ms": 900,
            "success_signal_window_ms": 2200,
            "reason": "mobile-browser",
        }


class TestClampMs:
    def test_rounds_and_clamps(self):
        assert clamp_ms(150.6, 0, 1000, 5) == 151
        assert clamp_ms(5000, 0, 1000, 5) == 1000

    @pytest.mark.parametrize("raw", [None, "abc", float("nan"), float("inf"), True])
    def test_bad_values_use_fallback(self, raw):
        assert clamp_ms(raw, 0, 1000, 42) == 42

    def test_qualified_cooldown_bounds(self):
        assert LinkConfig(web_link="w").qualified_cooldown_ms == 6 * 60 * 60 * 1000
        short = LinkConfig(web_link="w", tracking=TrackingConfig(qualified_cooldown_ms=5))
        assert short.qualified_cooldown_ms == 60 * 1000
        long = LinkConfig(web_link="w", tracking=TrackingConfig(qualified_cooldown_ms=10**12))
        assert long.qualified_cooldown_ms == 7 * 24 * 60 * 60 * 1000
