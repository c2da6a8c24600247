"""
Event transport: ship one event payload to /track-event, best effort.

Delivery order:
  1. The injected beacon callable (url, body) -> bool, if any
  2. A keepalive-style POST through httpx: scheduled on the running event
     loop when there is one, a short synchronous request otherwise

One attempt, no retries. send() never raises; tracking failures must not
reach the navigation code.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Callable

import httpx

import structlog

logger = structlog.get_logger()

Beacon = Callable[[str, str], bool]

DEFAULT_TIMEOUT_SECONDS = 2.0


@dataclass
class SendOptions:
    event_id: str
    event_source_url: str = ""
    tracking_auth_token: str = ""
    test_event_code: str | None = None
    attribution: dict = field(default_factory=dict)
    context: dict = field(default_factory=dict)
    route: dict = field(default_factory=dict)
    identity: dict = field(default_factory=dict)
    forward_to_facebook: bool = True


def build_event_body(event_name: str, options: SendOptions) -> dict:
    return {
        "eventName": event_name,
        "eventId": options.event_id,
        "testEventCode": options.test_event_code,
        "eventSourceUrl": options.event_source_url,
        "trackingAuthToken": options.tracking_auth_token,
        "attribution": options.attribution,
        "context": options.context,
        "route": options.route,
        "identity": options.identity,
        "forwardToFacebook": options.forward_to_facebook,
    }


class EventTransport:
    def __init__(
        self,
        endpoint_url: str,
        beacon: Beacon | None = None,
        client: httpx.Client | None = None,
        async_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.endpoint_url = endpoint_url
        self.beacon = beacon
        self.client = client
        self.async_client = async_client
        self.timeout = timeout
        self._pending: set[asyncio.Task] = set()

    def send(self, event_name: str, options: SendOptions) -> None:
        try:
            body = json.dumps(build_event_body(event_name, options))
        except (TypeError, ValueError) as e:
            logger.debug("event_encode_failed", event_name=event_name, error=str(e))
            return

        if self._try_beacon(event_name, body):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self._post_async(event_name, body))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        else:
            self._post_sync(event_name, body)

    async def drain(self) -> None:
        """Wait for scheduled POSTs; hosts call this before shutting down."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _try_beacon(self, event_name: str, body: str) -> bool:
        if self.beacon is None:
            return False
        try:
            return bool(self.beacon(self.endpoint_url, body))
        except Exception as e:
            logger.debug("event_beacon_failed", event_name=event_name, error=str(e))
            return False

    def _post_sync(self, event_name: str, body: str) -> None:
        headers = {"Content-Type": "application/json"}
        try:
            if self.client is not None:
                self.client.post(self.endpoint_url, content=body, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    client.post(self.endpoint_url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.debug("event_post_failed", event_name=event_name, error=str(e))

    async def _post_async(self, event_name: str, body: str) -> None:
        headers = {"Content-Type": "application/json"}
        try:
            if self.async_client is not None:
                await self.async_client.post(self.endpoint_url, content=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    await client.post(self.endpoint_url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.debug("event_post_failed", event_name=event_name, error=str(e))
