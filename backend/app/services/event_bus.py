from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import BaseModel

from backend.app.models import (
    ActivityLoggedPayload,
    AnalysisCompletePayload,
    AnalysisFailedPayload,
    AnalysisStartedPayload,
    ConnectedPayload,
    HeartbeatPayload,
    JobCapturedPayload,
    JobMatchAlertPayload,
    JobStatusChangedPayload,
    ProposalGeneratedPayload,
    ProposalStatusChangedPayload,
    RealtimeEvent,
    utc_now,
)
from backend.app.store import new_id

logger = logging.getLogger("bid_buddy.events")

JOB_CAPTURED = "job:captured"
JOB_STATUS_CHANGED = "job:statusChanged"
ANALYSIS_STARTED = "ai:analysisStarted"
ANALYSIS_COMPLETE = "ai:analysisComplete"
ANALYSIS_FAILED = "ai:analysisFailed"
PROPOSAL_GENERATED = "proposal:generated"
PROPOSAL_STATUS_CHANGED = "proposal:statusChanged"
ACTIVITY_LOGGED = "journey:activityLogged"
JOB_MATCH_ALERT = "alert:jobMatch"
SYSTEM_CONNECTED = "system:connected"
SYSTEM_HEARTBEAT = "system:heartbeat"

EVENT_PAYLOADS: dict[str, type[BaseModel]] = {
    JOB_CAPTURED: JobCapturedPayload,
    JOB_STATUS_CHANGED: JobStatusChangedPayload,
    ANALYSIS_STARTED: AnalysisStartedPayload,
    ANALYSIS_COMPLETE: AnalysisCompletePayload,
    ANALYSIS_FAILED: AnalysisFailedPayload,
    PROPOSAL_GENERATED: ProposalGeneratedPayload,
    PROPOSAL_STATUS_CHANGED: ProposalStatusChangedPayload,
    ACTIVITY_LOGGED: ActivityLoggedPayload,
    JOB_MATCH_ALERT: JobMatchAlertPayload,
    SYSTEM_CONNECTED: ConnectedPayload,
    SYSTEM_HEARTBEAT: HeartbeatPayload,
}

NOTIFIABLE_EVENTS: frozenset[str] = frozenset({JOB_CAPTURED, ANALYSIS_COMPLETE, PROPOSAL_GENERATED})

EventHandler = Callable[[RealtimeEvent], None]
EventFilter = Union[str, frozenset, set, Callable[[RealtimeEvent], bool], None]
EventData = Union[BaseModel, Mapping[str, Any], None]


def build_event(event_name: str, data: EventData, *, tenant_id: str) -> RealtimeEvent:
    """Validate a payload against its event's model and wrap it in an envelope."""
    if isinstance(data, BaseModel):
        raw: Mapping[str, Any] = data.model_dump(mode="json")
    else:
        raw = dict(data or {})
    payload_model = EVENT_PAYLOADS.get(event_name)
    if payload_model is not None:
        raw = payload_model.model_validate(raw).model_dump(mode="json")
    return RealtimeEvent(
        id=new_id("evt"),
        event=event_name,
        tenant_id=tenant_id,
        data=dict(raw),
        timestamp=utc_now(),
    )


def _compile_filter(event_filter: EventFilter) -> Optional[Callable[[RealtimeEvent], bool]]:
    if event_filter is None:
        return None
    if isinstance(event_filter, str):
        name = event_filter
        return lambda event: event.event == name
    if isinstance(event_filter, (set, frozenset)):
        names = frozenset(event_filter)
        return lambda event: event.event in names
    return event_filter


@dataclass
class _Subscription:
    id: str
    handler: EventHandler
    tenant_id: Optional[str]
    matches_event: Optional[Callable[[RealtimeEvent], bool]]

    def wants(self, event: RealtimeEvent) -> bool:
        if self.tenant_id is not None and self.tenant_id != event.tenant_id:
            return False
        if self.matches_event is not None and not self.matches_event(event):
            return False
        return True


class EventBus:
    """
    In-process publish/subscribe hub.

    Fan-out is synchronous and at-most-once per subscriber. A subscriber registered
    without a tenant receives every tenant's events; all others only see their own.
    Emitting from inside a handler on the same thread is queued until the current
    fan-out completes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, _Subscription] = {}
        self._local = threading.local()

    def subscribe(
        self,
        handler: EventHandler,
        *,
        tenant_id: Optional[str] = None,
        event: EventFilter = None,
    ) -> Callable[[], None]:
        subscription = _Subscription(
            id=new_id("sub"),
            handler=handler,
            tenant_id=tenant_id,
            matches_event=_compile_filter(event),
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.debug("bus_subscribed subscription_id=%s tenant_id=%s", subscription.id, tenant_id)

        def unsubscribe() -> None:
            self.unsubscribe(subscription.id)

        return unsubscribe

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            removed = self._subscriptions.pop(subscription_id, None)
        return removed is not None

    def subscriber_count(self, tenant_id: Optional[str] = None) -> int:
        with self._lock:
            if tenant_id is None:
                return len(self._subscriptions)
            return sum(1 for sub in self._subscriptions.values() if sub.tenant_id == tenant_id)

    def emit(self, event_name: str, data: EventData = None, *, tenant_id: str) -> RealtimeEvent:
        if not tenant_id:
            raise ValueError("events must be tagged with a tenant")
        event = build_event(event_name, data, tenant_id=tenant_id)

        pending: Optional[deque[RealtimeEvent]] = getattr(self._local, "pending", None)
        if pending is not None:
            pending.append(event)
            return event

        pending = deque([event])
        self._local.pending = pending
        try:
            while pending:
                self._fan_out(pending.popleft())
        finally:
            self._local.pending = None
        return event

    def _fan_out(self, event: RealtimeEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        delivered = 0
        for subscription in subscriptions:
            try:
                if not subscription.wants(event):
                    continue
                subscription.handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "bus_subscriber_failed event=%s tenant_id=%s subscription_id=%s",
                    event.event,
                    event.tenant_id,
                    subscription.id,
                )
        if not delivered:
            logger.debug("bus_event_unobserved event=%s tenant_id=%s", event.event, event.tenant_id)
