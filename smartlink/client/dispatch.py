"""
Dispatch state machine: turn one tap into one navigation outcome.

    idle ──tap──► armed ──deep-link timer──► deep_link_fired
                    │                              │
                    └──────────┬───────────────────┘
                               ▼
                            settled  (success | fallback | timeout)

web-only plans skip straight to the web URL with outcome "fallback".

For deep-link-first plans three timers are armed together:
  - deep-link timer: OpenAttempt, navigate to the deep link
  - fallback timer:  if unsettled, settle "fallback", OpenFallback, navigate to web
  - safety timer:    if unsettled, settle "timeout" silently

A hidden-page notification while unsettled settles "success" and emits
OpenSuccess, then Qualified when the per-path cooldown allows. The page going
hidden before the fallback fired is taken as evidence the app opened; it is a
heuristic (a tab switch looks the same), never ground truth.

Settling always cancels all three timers, so exactly one outcome is recorded
per tap. Timer callbacks run on the scheduler's loop and check-and-set the
settled flag, so no locking is needed.
"""

from enum import Enum
from typing import Any, Callable, Protocol

from smartlink.client.session import PageSession
from smartlink.core.events import EventName
from smartlink.core.routing import RoutingPlan, detect_context, plan

import structlog

logger = structlog.get_logger()

OPEN_TARGET = "app"
FALLBACK_TARGET = "web"
QUALIFIED_AUDIENCE_TIER = "high_intent"


class DispatchState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    DEEP_LINK_FIRED = "deep_link_fired"
    SETTLED = "settled"


class DispatchOutcome(str, Enum):
    SUCCESS = "success"
    FALLBACK = "fallback"
    TIMEOUT = "timeout"


class TimerHandle(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    """asyncio.AbstractEventLoop satisfies this."""
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


Navigator = Callable[[str], None]


class Dispatcher:
    def __init__(self, session: PageSession, scheduler: Scheduler, navigate: Navigator):
        self.session = session
        self.scheduler = scheduler
        self.navigate = navigate
        self.state = DispatchState.IDLE
        self.outcome: DispatchOutcome | None = None
        self.plan: RoutingPlan | None = None
        self._timers: list[TimerHandle] = []
        self._listening = False
        self._context: dict = {}
        self._route: dict = {}

    @property
    def is_listening(self) -> bool:
        """Whether a hidden-page notification would currently be acted on."""
        return self._listening

    # --- Entry points ---

    def tap(self, user_agent: str | None) -> RoutingPlan | None:
        """Start a dispatch. Ignored while another one is in flight."""
        if self.state not in (DispatchState.IDLE, DispatchState.SETTLED):
            return None

        context = detect_context(user_agent)
        routing_plan = plan(self.session.link, context)
        self.plan = routing_plan
        self.outcome = None
        self._context = context.to_event()
        self._route = routing_plan.to_event()

        self.session.track(EventName.CLICK, self._context, self._route, forward=True)
        self.session.track(EventName.ROUTE_CHOSEN, self._context, self._route, forward=False)
        logger.debug("dispatch_route_chosen", path=self.session.path, **self._route)

        if routing_plan.strategy == "web-only":
            self.session.track(
                EventName.OPEN_FALLBACK, self._context,
                {**self._route, "fallback_target": FALLBACK_TARGET}, forward=False,
            )
            self.state = DispatchState.IDLE
            self.outcome = DispatchOutcome.FALLBACK
            self.navigate(self.session.link.web_link)
            return routing_plan

        self.state = DispatchState.ARMED
        self._listening = True
        self._timers = [
            self.scheduler.call_later(routing_plan.deep_link_delay_ms / 1000, self._on_deep_link_timer),
            self.scheduler.call_later(routing_plan.fallback_delay_ms / 1000, self._on_fallback_timer),
            self.scheduler.call_later(routing_plan.success_signal_window_ms / 1000, self._on_safety_timer),
        ]
        return routing_plan

    def visibility_changed(self, hidden: bool) -> None:
        if not hidden or not self._listening or self._is_settled:
            return
        self._settle(DispatchOutcome.SUCCESS)
        self.session.track(
            EventName.OPEN_SUCCESS, self._context,
            {**self._route, "open_target": OPEN_TARGET}, forward=True,
        )
        if self.session.should_emit_qualified():
            self.session.track(
                EventName.QUALIFIED, self._context,
                {**self._route, "audience_tier": QUALIFIED_AUDIENCE_TIER}, forward=True,
            )

    # --- Timers ---

    @property
    def _is_settled(self) -> bool:
        return self.state in (DispatchState.IDLE, DispatchState.SETTLED)

    def _on_deep_link_timer(self) -> None:
        if self._is_settled:
            return
        self.state = DispatchState.DEEP_LINK_FIRED
        self.session.track(
            EventName.OPEN_ATTEMPT, self._context,
            {**self._route, "open_target": OPEN_TARGET}, forward=False,
        )
        self.navigate(self.session.link.deep_link or "")

    def _on_fallback_timer(self) -> None:
        if self._is_settled:
            return
        self._settle(DispatchOutcome.FALLBACK)
        self.session.track(
            EventName.OPEN_FALLBACK, self._context,
            {**self._route, "fallback_target": FALLBACK_TARGET}, forward=False,
        )
        self.navigate(self.session.link.web_link)

    def _on_safety_timer(self) -> None:
        if self._is_settled:
            return
        self._settle(DispatchOutcome.TIMEOUT)

    def _settle(self, outcome: DispatchOutcome) -> None:
        self.state = DispatchState.SETTLED
        self.outcome = outcome
        self._cleanup()
        logger.debug("dispatch_settled", path=self.session.path, outcome=outcome.value)

    def _cleanup(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers = []
        self._listening = False
