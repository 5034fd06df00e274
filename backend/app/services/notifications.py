from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from backend.app.models import (
    DeliveryStatus,
    JobRecord,
    NotificationChannel,
    NotificationLogRecord,
    NotificationPreferenceRecord,
    RealtimeEvent,
    utc_now,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.channels import (
    ChannelProvider,
    ChannelResult,
    ChannelTarget,
    NotificationMessage,
    compose_phone_number,
)
from backend.app.services.event_bus import NOTIFIABLE_EVENTS, PROPOSAL_GENERATED, EventBus
from backend.app.services.preferences import PreferenceStore
from backend.app.store import InMemoryStore, new_id

logger = logging.getLogger("bid_buddy.notifications")

TEST_EVENT = "notification:test"
EXTERNAL_CHANNELS = (
    NotificationChannel.desktop,
    NotificationChannel.sms,
    NotificationChannel.whatsapp,
)


class DispatchState(str, Enum):
    filtered_out = "filtered_out"
    attempted = "attempted"


@dataclass
class DispatchOutcome:
    user_id: str
    state: DispatchState
    reason: Optional[str] = None
    results: list[ChannelResult] = field(default_factory=list)


def event_match_percentage(data: Mapping[str, Any]) -> Optional[float]:
    for key in ("match_percentage", "fit_score"):
        value = data.get(key)
        if isinstance(value, (int, float)):
            return float(value)
    return None


def enabled_channels(preference: NotificationPreferenceRecord) -> list[NotificationChannel]:
    channels = [NotificationChannel.in_app]
    if preference.desktop_enabled:
        channels.append(NotificationChannel.desktop)
    if preference.sms_enabled:
        channels.append(NotificationChannel.sms)
    if preference.whatsapp_enabled:
        channels.append(NotificationChannel.whatsapp)
    return channels


def channel_target(
    channel: NotificationChannel, preference: NotificationPreferenceRecord
) -> ChannelTarget:
    phone_number = None
    if channel == NotificationChannel.sms:
        phone_number = compose_phone_number(preference.sms_country_code, preference.sms_phone_number)
    elif channel == NotificationChannel.whatsapp:
        phone_number = compose_phone_number(
            preference.whatsapp_country_code, preference.whatsapp_phone_number
        )
    return ChannelTarget(
        tenant_id=preference.tenant_id,
        user_id=preference.user_id,
        push_subscription=preference.push_subscription,
        phone_number=phone_number,
    )


def build_message(event: RealtimeEvent, job: Optional[JobRecord]) -> NotificationMessage:
    data = event.data
    job_id = data.get("job_id")
    subject = data.get("title") or (job.title if job else None) or "a new job"
    match = event_match_percentage(data)

    if event.event == PROPOSAL_GENERATED:
        title = f"Proposal ready: {subject}"
    elif match is not None:
        title = f"{int(math.floor(match + 0.5))}% Match: {subject}"
    else:
        title = f"New job: {subject}"

    parts: list[str] = []
    if data.get("recommendation"):
        parts.append(f"Recommendation: {data['recommendation']}")
    skills = data.get("matched_skills") or data.get("skills_required") or []
    if skills:
        parts.append(f"Skills: {', '.join(str(skill) for skill in skills[:5])}")
    category = data.get("category") or (job.category if job else None)
    if category:
        parts.append(f"Category: {category}")

    return NotificationMessage(
        title=title[:200],
        body=" | ".join(parts) or "Open Bid Buddy to review it.",
        correlation_id=event.id,
        event=event.event,
        job_id=job_id,
        href=f"/jobs/{job_id}" if job_id else None,
        match_percentage=match,
    )


class NotificationDispatcher:
    """
    Turns notifiable bus events into channel deliveries.

    Each delivery attempt is logged. Channel failures stay inside their own attempt and
    nothing is retried.
    """

    def __init__(
        self,
        *,
        store: InMemoryStore,
        preferences: PreferenceStore,
        providers: Mapping[NotificationChannel, ChannelProvider],
        metrics: Optional[MetricsRegistry] = None,
        timeout_seconds: float = 5.0,
        concurrency: int = 3,
    ) -> None:
        self._store = store
        self._preferences = preferences
        self._providers = dict(providers)
        self._metrics = metrics
        self._timeout = timeout_seconds
        self._concurrency = max(1, concurrency)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: set[asyncio.Task] = set()

    def attach(self, bus: EventBus) -> Callable[[], None]:
        return bus.subscribe(self.handle_event, event=NOTIFIABLE_EVENTS)

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._loop = loop

    def handle_event(self, event: RealtimeEvent) -> None:
        """Bus handler. Schedules delivery and returns without waiting for it."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            task = running.create_task(self.dispatch(event))
            self._tasks.add(task)
            task.add_done_callback(self._task_done)
            return
        if self._loop is not None and self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self.dispatch(event), self._loop)
            future.add_done_callback(self._task_done)
            return
        # No loop anywhere (scripts, sync callers): deliver inline.
        asyncio.run(self.dispatch(event))

    async def drain(self) -> None:
        """Wait for scheduled deliveries on the current loop to finish."""
        loop = asyncio.get_running_loop()
        current = asyncio.current_task()
        while True:
            pending = [
                task
                for task in self._tasks
                if task is not current and not task.done() and task.get_loop() is loop
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def dispatch(self, event: RealtimeEvent) -> list[DispatchOutcome]:
        if event.event not in NOTIFIABLE_EVENTS:
            return []
        user_ids = self._candidate_users(event)
        if not user_ids:
            logger.info(
                "notification_no_recipients event=%s tenant_id=%s", event.event, event.tenant_id
            )
            return []

        semaphore = asyncio.Semaphore(self._concurrency)

        async def run(user_id: str) -> DispatchOutcome:
            async with semaphore:
                return await self._dispatch_to_user(event, user_id)

        return list(await asyncio.gather(*(run(user_id) for user_id in user_ids)))

    async def send_test(
        self, *, tenant_id: str, user_id: str, channel: NotificationChannel
    ) -> ChannelResult:
        preference = self._preferences.get_or_create(tenant_id, user_id)
        message = NotificationMessage(
            title="Bid Buddy test notification",
            body=f"Your {channel.value.replace('_', '-').lower()} notifications are working.",
            correlation_id=new_id("test"),
            event=TEST_EVENT,
        )
        result = await self._attempt(channel, message, channel_target(channel, preference))
        logger.info(
            "notification_test tenant_id=%s user_id=%s channel=%s success=%s",
            tenant_id,
            user_id,
            channel.value,
            result.success,
        )
        return result

    def check_provider_health(self) -> dict[str, bool]:
        return {
            channel.value: provider.health_check()
            for channel, provider in sorted(self._providers.items(), key=lambda item: item[0].value)
        }

    def _candidate_users(self, event: RealtimeEvent) -> list[str]:
        explicit = event.data.get("user_id")
        if isinstance(explicit, str) and explicit:
            return [explicit]
        return [record.user_id for record in self._preferences.list_for_tenant(event.tenant_id)]

    def _filter_reason(
        self,
        event: RealtimeEvent,
        preference: Optional[NotificationPreferenceRecord],
        job: Optional[JobRecord],
    ) -> Optional[str]:
        if preference is None:
            return "no_preference"
        if not preference.is_enabled:
            return "disabled"
        match = event_match_percentage(event.data)
        if match is not None and match < preference.min_match_percentage:
            return "below_threshold"
        category = event.data.get("category") or (job.category if job else None)
        if preference.categories and category:
            wanted = {item.lower() for item in preference.categories}
            if str(category).lower() not in wanted:
                return "category_mismatch"
        job_id = event.data.get("job_id")
        if job_id and self._store.list_notification_logs(
            event.tenant_id,
            user_id=preference.user_id,
            job_id=job_id,
            event=event.event,
            status=DeliveryStatus.sent,
            limit=1,
        ):
            return "already_notified"
        return None

    async def _dispatch_to_user(self, event: RealtimeEvent, user_id: str) -> DispatchOutcome:
        try:
            preference = self._preferences.find(event.tenant_id, user_id)
            job_id = event.data.get("job_id")
            job = self._store.find_job(job_id, event.tenant_id) if job_id else None
            reason = self._filter_reason(event, preference, job)
            if reason is not None or preference is None:
                logger.info(
                    "notification_filtered event=%s tenant_id=%s user_id=%s reason=%s",
                    event.event,
                    event.tenant_id,
                    user_id,
                    reason,
                )
                return DispatchOutcome(user_id=user_id, state=DispatchState.filtered_out, reason=reason)

            message = build_message(event, job)
            channels = enabled_channels(preference)
            gathered = await asyncio.gather(
                *(
                    self._attempt(channel, message, channel_target(channel, preference))
                    for channel in channels
                ),
                return_exceptions=True,
            )
        except Exception:
            logger.exception(
                "notification_dispatch_failed event=%s tenant_id=%s user_id=%s",
                event.event,
                event.tenant_id,
                user_id,
            )
            return DispatchOutcome(user_id=user_id, state=DispatchState.attempted, reason="error")

        results: list[ChannelResult] = []
        for channel, item in zip(channels, gathered):
            if isinstance(item, BaseException):
                logger.error(
                    "notification_record_failed channel=%s user_id=%s error=%s",
                    channel.value,
                    user_id,
                    item,
                )
                continue
            results.append(item)
        return DispatchOutcome(user_id=user_id, state=DispatchState.attempted, results=results)

    async def _attempt(
        self,
        channel: NotificationChannel,
        message: NotificationMessage,
        target: ChannelTarget,
    ) -> ChannelResult:
        provider = self._providers.get(channel)
        if provider is None:
            result = ChannelResult(channel, False, error=f"No provider configured for {channel.value}.")
        else:
            try:
                result = await asyncio.wait_for(provider.send(message, target), timeout=self._timeout)
            except asyncio.TimeoutError:
                result = ChannelResult(
                    channel,
                    False,
                    error=f"{channel.value} delivery timed out after {self._timeout:g}s.",
                )
            except Exception as exc:
                logger.exception("notification_provider_error channel=%s", channel.value)
                result = ChannelResult(channel, False, error=str(exc) or exc.__class__.__name__)
        self._record(message, target, result)
        return result

    def _record(
        self, message: NotificationMessage, target: ChannelTarget, result: ChannelResult
    ) -> NotificationLogRecord:
        now = utc_now()
        status = DeliveryStatus.sent if result.success else DeliveryStatus.failed
        record = NotificationLogRecord(
            id=new_id("nlog"),
            tenant_id=target.tenant_id,
            user_id=target.user_id,
            job_id=message.job_id,
            event=message.event,
            channel=result.channel,
            title=message.title,
            body=message.body,
            match_percentage=message.match_percentage,
            status=status,
            error_message=None if result.success else (result.error or "delivery failed"),
            subscription_stale=result.subscription_stale,
            correlation_id=message.correlation_id,
            sent_at_utc=now if result.success else None,
            created_at_utc=now,
        )
        self._store.add_notification_log(record)
        if self._metrics:
            self._metrics.record_delivery(channel=result.channel.value, status=status.value)
        log = logger.info if result.success else logger.warning
        log(
            "notification_%s channel=%s tenant_id=%s user_id=%s correlation_id=%s error=%s",
            status.value,
            result.channel.value,
            target.tenant_id,
            target.user_id,
            message.correlation_id,
            record.error_message,
        )
        return record

    def _task_done(self, task: Any) -> None:
        if isinstance(task, asyncio.Task):
            self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("notification_task_failed error=%s", exc)
