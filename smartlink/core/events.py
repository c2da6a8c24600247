"""Funnel event names and forward statuses shared by ingestion and analytics."""

from enum import Enum


class EventName(str, Enum):
    VIEW = "SmartLinkView"
    CLICK = "SmartLinkClick"
    ROUTE_CHOSEN = "SmartLinkRouteChosen"
    OPEN_ATTEMPT = "SmartLinkOpenAttempt"
    OPEN_FALLBACK = "SmartLinkOpenFallback"
    OPEN_SUCCESS = "SmartLinkOpenSuccess"
    QUALIFIED = "SmartLinkQualified"


EVENT_NAMES = frozenset(e.value for e in EventName)

# Diagnostic events: persisted for route health, never sent to the ads API.
INTERNAL_ONLY_EVENTS = frozenset({
    EventName.ROUTE_CHOSEN.value,
    EventName.OPEN_ATTEMPT.value,
    EventName.OPEN_FALLBACK.value,
})


class ForwardStatus(str, Enum):
    QUEUED = "queued"
    OK = "ok"
    ERROR = "error"
    SKIPPED_MISSING_PIXEL = "skipped_missing_pixel"
    SKIPPED_MISSING_TOKEN = "skipped_missing_token"
    SKIPPED_NO_EVENT_NAME = "skipped_no_event_name"
    SKIPPED_INTERNAL_ONLY = "skipped_internal_only"
    SKIPPED_INVALID_EVENT = "skipped_invalid_event"
    SKIPPED_INVALID_SIGNATURE = "skipped_invalid_signature"
