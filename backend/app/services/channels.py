from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx
from pywebpush import WebPushException, webpush

from backend.app.models import JobMatchAlertPayload, NotificationChannel, PushSubscription
from backend.app.services.event_bus import JOB_MATCH_ALERT, EventBus
from backend.app.settings import Settings
from backend.app.store import InMemoryStore

logger = logging.getLogger("bid_buddy.channels")

STALE_PUSH_STATUSES = {404, 410}


class ChannelConfigurationError(Exception):
    pass


class DeliveryFailure(Exception):
    pass


class SubscriptionStaleError(DeliveryFailure):
    pass


@dataclass(frozen=True)
class NotificationMessage:
    title: str
    body: str
    correlation_id: str
    event: Optional[str] = None
    job_id: Optional[str] = None
    href: Optional[str] = None
    match_percentage: Optional[float] = None


@dataclass(frozen=True)
class ChannelTarget:
    tenant_id: str
    user_id: str
    push_subscription: Optional[PushSubscription] = None
    phone_number: Optional[str] = None


@dataclass(frozen=True)
class ChannelResult:
    channel: NotificationChannel
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    subscription_stale: bool = False


def compose_phone_number(country_code: Optional[str], number: Optional[str]) -> Optional[str]:
    """E.164 form of a stored phone number, or None when no number is stored."""
    if not number or not number.strip():
        return None
    digits = re.sub(r"\D", "", number)
    if not digits:
        return None
    if number.strip().startswith("+"):
        return f"+{digits}"
    code = re.sub(r"\D", "", country_code or "")
    return f"+{code}{digits}"


class ChannelProvider:
    channel: NotificationChannel

    async def send(self, message: NotificationMessage, target: ChannelTarget) -> ChannelResult:
        try:
            message_id = await self._deliver(message, target)
        except SubscriptionStaleError as exc:
            return ChannelResult(self.channel, False, error=str(exc), subscription_stale=True)
        except (ChannelConfigurationError, DeliveryFailure) as exc:
            return ChannelResult(self.channel, False, error=str(exc))
        return ChannelResult(self.channel, True, message_id=message_id)

    async def _deliver(self, message: NotificationMessage, target: ChannelTarget) -> Optional[str]:
        raise NotImplementedError

    def health_check(self) -> bool:
        return True


class DesktopPushProvider(ChannelProvider):
    channel = NotificationChannel.desktop

    def __init__(
        self,
        *,
        vapid_public_key: str,
        vapid_private_key: str,
        vapid_subject: str,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._public_key = vapid_public_key
        self._private_key = vapid_private_key
        self._subject = vapid_subject
        self._timeout = timeout_seconds

    def health_check(self) -> bool:
        return bool(self._public_key and self._private_key and self._subject)

    async def _deliver(self, message: NotificationMessage, target: ChannelTarget) -> Optional[str]:
        subscription = target.push_subscription
        if subscription is None or not subscription.endpoint:
            raise DeliveryFailure(
                "No push subscription registered for this user. "
                "Please toggle Desktop Notifications off and on to re-register."
            )
        if not self.health_check():
            raise ChannelConfigurationError("Desktop push is not configured: VAPID keys are missing.")

        payload = json.dumps(
            {
                "title": message.title,
                "body": message.body,
                "url": message.href,
                "tag": message.job_id or message.correlation_id,
            }
        )
        try:
            response = await asyncio.to_thread(self._push, subscription, payload)
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            if status_code in STALE_PUSH_STATUSES:
                raise SubscriptionStaleError(
                    f"Push subscription expired (HTTP {status_code}). "
                    "Please toggle Desktop Notifications off and on to re-register."
                ) from exc
            raise DeliveryFailure(f"Web push rejected: {exc}") from exc
        headers = getattr(response, "headers", None) or {}
        return headers.get("Location")

    def _push(self, subscription: PushSubscription, payload: str):
        return webpush(
            subscription_info={
                "endpoint": subscription.endpoint,
                "keys": subscription.keys.model_dump(),
            },
            data=payload,
            vapid_private_key=self._private_key,
            vapid_claims={"sub": self._subject},
            timeout=self._timeout,
        )


class TwilioMessagingProvider(ChannelProvider):
    """SMS-style delivery through the Twilio Messages REST API."""

    label = "SMS"
    address_prefix = ""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        sender: str,
        api_base_url: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._sender = sender
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    def health_check(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._sender)

    def _address(self, phone_number: str) -> str:
        if phone_number.startswith(self.address_prefix):
            return phone_number
        return f"{self.address_prefix}{phone_number}"

    async def _deliver(self, message: NotificationMessage, target: ChannelTarget) -> Optional[str]:
        if not target.phone_number:
            raise DeliveryFailure(f"No phone number configured for {self.label} notifications.")
        if not self.health_check():
            raise ChannelConfigurationError(
                f"{self.label} gateway is not configured: Twilio account SID, "
                "auth token or sender number is missing."
            )

        url = f"{self._api_base_url}/Accounts/{self._account_sid}/Messages.json"
        form = {
            "To": self._address(target.phone_number),
            "From": self._address(self._sender),
            "Body": f"{message.title}\n{message.body}",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                auth=(self._account_sid, self._auth_token),
                transport=self._transport,
            ) as client:
                response = await client.post(url, data=form)
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"{self.label} gateway request failed: {exc}") from exc

        if response.status_code >= 400:
            raise DeliveryFailure(
                f"{self.label} gateway rejected message "
                f"(HTTP {response.status_code}): {_gateway_error(response)}"
            )
        try:
            return response.json().get("sid")
        except ValueError:
            return None


class SmsProvider(TwilioMessagingProvider):
    channel = NotificationChannel.sms
    label = "SMS"


class WhatsAppProvider(TwilioMessagingProvider):
    channel = NotificationChannel.whatsapp
    label = "WhatsApp"
    address_prefix = "whatsapp:"


def _gateway_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or "no response body"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return str(body)[:200]


class InAppProvider(ChannelProvider):
    channel = NotificationChannel.in_app

    def __init__(self, *, store: InMemoryStore, bus: EventBus) -> None:
        self._store = store
        self._bus = bus

    async def _deliver(self, message: NotificationMessage, target: ChannelTarget) -> Optional[str]:
        record = self._store.add_in_app_notification(
            tenant_id=target.tenant_id,
            user_id=target.user_id,
            title=message.title,
            body=message.body,
            job_id=message.job_id,
            href=message.href,
        )
        self._bus.emit(
            JOB_MATCH_ALERT,
            JobMatchAlertPayload(
                notification_id=record.id,
                user_id=target.user_id,
                job_id=message.job_id,
                title=message.title,
                body=message.body,
                href=message.href,
            ),
            tenant_id=target.tenant_id,
        )
        return record.id


def build_providers(
    settings: Settings, *, store: InMemoryStore, bus: EventBus
) -> dict[NotificationChannel, ChannelProvider]:
    twilio = {
        "account_sid": settings.twilio_account_sid,
        "auth_token": settings.twilio_auth_token,
        "api_base_url": settings.twilio_api_base_url,
        "timeout_seconds": settings.channel_timeout_seconds,
    }
    return {
        NotificationChannel.in_app: InAppProvider(store=store, bus=bus),
        NotificationChannel.desktop: DesktopPushProvider(
            vapid_public_key=settings.vapid_public_key,
            vapid_private_key=settings.vapid_private_key,
            vapid_subject=settings.vapid_subject,
            timeout_seconds=settings.channel_timeout_seconds,
        ),
        NotificationChannel.sms: SmsProvider(sender=settings.twilio_sms_from, **twilio),
        NotificationChannel.whatsapp: WhatsAppProvider(
            sender=settings.twilio_whatsapp_from, **twilio
        ),
    }
