"""
Routing planner: decide how a tap should be routed for this device.

  detect_context(ua)      → RoutingContext (os, in-app browser, mobile)
  plan(config, context)   → RoutingPlan (strategy + timer budget)

plan() is pure and deterministic. Rules, in order:
  1. No deep link configured           → web-only (missing-deep-link)
  2. Desktop and prefer_web_on_desktop → web-only (desktop-prefer-web)
  3. Otherwise                         → deep-link-first with OS / in-app timing

Every delay is clamped to at most MAX_DELAY_MS so a misconfigured release can
never hold the user on the landing page for longer than that.
"""

import re
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel
from user_agents import parse as parse_ua

RoutingOs = Literal["ios", "android", "desktop", "unknown"]
InAppBrowser = Literal["instagram", "facebook", "tiktok", "other", "none"]
RoutingStrategy = Literal["deep-link-first", "web-only"]

MAX_DELAY_MS = 10000
MIN_FALLBACK_DELAY_MS = 300
MIN_SIGNAL_GAP_MS = 200
SUCCESS_WINDOW_FLOOR_MS = 2200
SUCCESS_WINDOW_EXTRA_MS = 1200
MAX_IN_APP_EXTRA_MS = 3000
DEFAULT_IN_APP_EXTRA_MS = 420

BASE_DEEP_LINK_DELAY_MS = {"ios": 180}
BASE_FALLBACK_DELAY_MS = {"ios": 1200}
DEFAULT_DEEP_LINK_DELAY_MS = 120
DEFAULT_FALLBACK_DELAY_MS = 900

DEFAULT_QUALIFIED_COOLDOWN_MS = 6 * 60 * 60 * 1000
MIN_QUALIFIED_COOLDOWN_MS = 60 * 1000
MAX_QUALIFIED_COOLDOWN_MS = 7 * 24 * 60 * 60 * 1000


# --- Config ---

class RoutingConfig(BaseModel):
    """Per-release routing overrides (songs.routing_config)."""
    prefer_web_on_desktop: bool = True
    deep_link_delay_ms: float | None = None
    fallback_delay_ms: float | None = None
    in_app_fallback_extra_ms: float | None = None
    success_signal_window_ms: float | None = None


class TrackingConfig(BaseModel):
    """Per-release tracking overrides (songs.tracking_config)."""
    qualified_cooldown_ms: float | None = None


@dataclass(frozen=True)
class LinkConfig:
    """What the core needs to know about a release."""
    web_link: str
    deep_link: str | None = None
    pixel_id: str | None = None
    access_token: str | None = None
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)

    @property
    def has_deep_link(self) -> bool:
        return bool((self.deep_link or "").strip())

    @property
    def qualified_cooldown_ms(self) -> int:
        return clamp_ms(
            self.tracking.qualified_cooldown_ms,
            MIN_QUALIFIED_COOLDOWN_MS,
            MAX_QUALIFIED_COOLDOWN_MS,
            DEFAULT_QUALIFIED_COOLDOWN_MS,
        )


@dataclass(frozen=True)
class RoutingContext:
    os: RoutingOs = "unknown"
    in_app_browser: InAppBrowser = "none"
    is_mobile: bool = False

    def to_event(self) -> dict:
        return {
            "os": self.os,
            "is_mobile": self.is_mobile,
            "in_app_browser": self.in_app_browser,
        }


@dataclass(frozen=True)
class RoutingPlan:
    strategy: RoutingStrategy
    deep_link_delay_ms: int
    fallback_delay_ms: int
    success_signal_window_ms: int
    reason: str

    def to_event(self) -> dict:
        return {
            "strategy": self.strategy,
            "deep_link_delay_ms": self.deep_link_delay_ms,
            "fallback_delay_ms": self.fallback_delay_ms,
            "success_signal_window_ms": self.success_signal_window_ms,
            "reason": self.reason,
        }


# --- Context detection ---

IN_APP_PATTERNS = {
    "instagram": [r"Instagram"],
    "facebook":  [r"FBAN/", r"FBAV/", r"FB_IAB", r"Facebook"],
    "tiktok":    [r"TikTok", r"BytedanceWebview", r"musical_ly"],
    "other":     [r"; wv\)", r"\bLine/", r"MicroMessenger"],
}

IOS_FAMILIES = {"iOS", "iPadOS"}


def _detect_in_app_browser(ua: str) -> InAppBrowser:
    for browser, patterns in IN_APP_PATTERNS.items():
        for pattern in patterns:
            if re.search(pattern, ua, re.IGNORECASE):
                return browser
    return "none"


def detect_context(user_agent: str | None) -> RoutingContext:
    """Classify a user agent into the routing context."""
    if not user_agent or not user_agent.strip():
        return RoutingContext()

    parsed = parse_ua(user_agent)
    family = parsed.os.family or ""

    if family in IOS_FAMILIES or re.search(r"iphone|ipad|ipod", user_agent, re.IGNORECASE):
        os_name: RoutingOs = "ios"
    elif family == "Android" or re.search(r"android", user_agent, re.IGNORECASE):
        os_name = "android"
    elif parsed.is_mobile or parsed.is_tablet:
        os_name = "unknown"
    else:
        os_name = "desktop"

    return RoutingContext(
        os=os_name,
        in_app_browser=_detect_in_app_browser(user_agent),
        is_mobile=os_name != "desktop",
    )


# --- Planning ---

def clamp_ms(value, min_value: int, max_value: int, fallback: int) -> int:
    """Round and clamp an override; non-numeric / missing values use `fallback`.

    The fallback is clamped too, so derived defaults respect the same bounds.
    """
    parsed = None
    if value is not None and not isinstance(value, bool):
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            parsed = None
    if parsed is None or parsed != parsed or parsed in (float("inf"), float("-inf")):
        parsed = fallback
    return int(min(max_value, max(min_value, round(parsed))))


def _web_only(reason: str) -> RoutingPlan:
    return RoutingPlan(
        strategy="web-only",
        deep_link_delay_ms=0,
        fallback_delay_ms=0,
        success_signal_window_ms=0,
        reason=reason,
    )


def plan(config: LinkConfig, context: RoutingContext) -> RoutingPlan:
    routing = config.routing

    if not config.has_deep_link:
        return _web_only("missing-deep-link")

    if not context.is_mobile and routing.prefer_web_on_desktop:
        return _web_only("desktop-prefer-web")

    in_app = context.in_app_browser != "none"
    base_deep_link = BASE_DEEP_LINK_DELAY_MS.get(context.os, DEFAULT_DEEP_LINK_DELAY_MS)
    base_fallback = BASE_FALLBACK_DELAY_MS.get(context.os, DEFAULT_FALLBACK_DELAY_MS)
    in_app_extra = clamp_ms(
        routing.in_app_fallback_extra_ms, 0, MAX_IN_APP_EXTRA_MS, DEFAULT_IN_APP_EXTRA_MS,
    ) if in_app else 0

    deep_link_delay = clamp_ms(routing.deep_link_delay_ms, 0, MAX_DELAY_MS, base_deep_link)
    # Leave room for the success window to stay strictly after the fallback.
    fallback_delay = clamp_ms(
        routing.fallback_delay_ms,
        MIN_FALLBACK_DELAY_MS,
        MAX_DELAY_MS - MIN_SIGNAL_GAP_MS,
        base_fallback + in_app_extra,
    )
    success_window = clamp_ms(
        routing.success_signal_window_ms,
        fallback_delay + MIN_SIGNAL_GAP_MS,
        MAX_DELAY_MS,
        max(fallback_delay + SUCCESS_WINDOW_EXTRA_MS, SUCCESS_WINDOW_FLOOR_MS),
    )

    return RoutingPlan(
        strategy="deep-link-first",
        deep_link_delay_ms=deep_link_delay,
        fallback_delay_ms=fallback_delay,
        success_signal_window_ms=success_window,
        reason=f"in-app-{context.in_app_browser}" if in_app else "mobile-browser",
    )
