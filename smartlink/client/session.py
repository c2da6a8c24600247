"""
PageSession: everything that belongs to one landing page load.

Holds the link config, page URL, attribution, signed tracking token, storage
and transport, and the one-shot View guard. The dispatcher gets a session
injected instead of reading page-global flags.
"""

import random
import time
from typing import Callable

from smartlink.client.identity import QualifiedCooldown, Storage, resolve_identity
from smartlink.client.transport import EventTransport, SendOptions
from smartlink.core.events import EventName
from smartlink.core.routing import LinkConfig, detect_context
from smartlink.core.tracking_auth import derive_request_path


def build_event_id(prefix: str, clock: Callable[[], float] = time.time) -> str:
    return f"{prefix}-{int(clock() * 1000)}-{random.randrange(100000)}"


class PageSession:
    def __init__(
        self,
        link: LinkConfig,
        page_url: str,
        transport: EventTransport,
        durable: Storage | None = None,
        ephemeral: Storage | None = None,
        attribution: dict | None = None,
        tracking_token: str = "",
        test_event_code: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.link = link
        self.page_url = page_url
        self.path = derive_request_path(page_url)
        self.transport = transport
        self.durable = durable
        self.ephemeral = ephemeral
        self.attribution = dict(attribution or {})
        self.tracking_token = tracking_token
        self.test_event_code = test_event_code
        self.clock = clock
        self.cooldown = QualifiedCooldown(durable, clock=clock)
        self.view_sent = False

    def track(
        self,
        event_name: EventName,
        context: dict | None = None,
        route: dict | None = None,
        forward: bool = True,
        event_id: str | None = None,
    ) -> str:
        """Send one event through the transport; returns its event id."""
        event_id = event_id or build_event_id(event_name.value.lower(), self.clock)
        identity = resolve_identity(self.durable, self.ephemeral)
        self.transport.send(event_name.value, SendOptions(
            event_id=event_id,
            event_source_url=self.page_url,
            tracking_auth_token=self.tracking_token,
            test_event_code=self.test_event_code,
            attribution=self.attribution,
            context=context or {},
            route=route or {},
            identity=identity.to_event(),
            forward_to_facebook=forward,
        ))
        return event_id

    def send_view(self, user_agent: str | None) -> str | None:
        """View goes out once per page load; later calls are no-ops."""
        if self.view_sent:
            return None
        self.view_sent = True
        return self.track(
            EventName.VIEW,
            context=detect_context(user_agent).to_event(),
            route={"strategy": "view", "reason": "page-load"},
            forward=True,
        )

    def should_emit_qualified(self) -> bool:
        return self.cooldown.should_emit(self.path, self.link.qualified_cooldown_ms)
