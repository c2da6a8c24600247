"""
Client-side identity and the Qualified cooldown.

Both live in key/value storage the host provides: a durable store (survives
restarts, like localStorage) and an ephemeral one (per session, like
sessionStorage). A storage that raises never breaks tracking; we just fall
back to an id that is not persisted.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Callable, Protocol

import structlog

logger = structlog.get_logger()

ANON_ID_KEY = "sl_anon_id"
SESSION_ID_KEY = "sl_session_id"
QUALIFIED_KEY_PREFIX = "sl-qualified:"


class Storage(Protocol):
    def get_item(self, key: str) -> str | None: ...
    def set_item(self, key: str, value: str) -> None: ...


class MemoryStorage:
    """Dict-backed Storage."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value


@dataclass(frozen=True)
class Identity:
    anonymous_id: str | None
    session_id: str | None

    def to_event(self) -> dict:
        return {"anonymousId": self.anonymous_id, "sessionId": self.session_id}


def create_client_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


def read_or_create_id(storage: Storage | None, key: str, prefix: str) -> str:
    if storage is None:
        return create_client_id(prefix)
    try:
        existing = (storage.get_item(key) or "").strip()
        if existing:
            return existing
        fresh = create_client_id(prefix)
        storage.set_item(key, fresh)
        return fresh
    except Exception as e:
        logger.debug("identity_storage_unavailable", key=key, error=str(e))
        return create_client_id(prefix)


def resolve_identity(durable: Storage | None, ephemeral: Storage | None) -> Identity:
    return Identity(
        anonymous_id=read_or_create_id(durable, ANON_ID_KEY, "anon"),
        session_id=read_or_create_id(ephemeral, SESSION_ID_KEY, "session"),
    )


class QualifiedCooldown:
    """At most one Qualified per path per cooldown window.

    The last emission time (epoch ms) is kept under `sl-qualified:<path>` in
    durable storage, so the window holds across page loads.
    """

    def __init__(self, storage: Storage | None, clock: Callable[[], float] = time.time):
        self.storage = storage
        self.clock = clock

    def should_emit(self, path: str, cooldown_ms: int) -> bool:
        if self.storage is None:
            return True
        key = f"{QUALIFIED_KEY_PREFIX}{path}"
        now_ms = int(self.clock() * 1000)
        try:
            raw = self.storage.get_item(key)
            try:
                previous = float(raw) if raw else 0.0
            except ValueError:
                previous = 0.0
            if previous > 0 and now_ms - previous < cooldown_ms:
                return False
            self.storage.set_item(key, str(now_ms))
            return True
        except Exception as e:
            logger.debug("cooldown_storage_unavailable", path=path, error=str(e))
            return True
