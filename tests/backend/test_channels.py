from __future__ import annotations

import asyncio
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
from pywebpush import WebPushException

from backend.app.models import NotificationChannel, PushSubscription
from backend.app.services import channels
from backend.app.services.channels import (
    ChannelTarget,
    DesktopPushProvider,
    NotificationMessage,
    SmsProvider,
    WhatsAppProvider,
    compose_phone_number,
)

MESSAGE = NotificationMessage(
    title="91% Match: Django API",
    body="Skills: python, django",
    correlation_id="evt_1",
    event="job:captured",
    job_id="job_1",
    href="/jobs/job_1",
)
SUBSCRIPTION = PushSubscription(
    endpoint="https://push.example.com/send/abc123",
    keys={"p256dh": "key", "auth": "secret"},
)


def twilio_provider(cls, handler, sender: str = "+15550000000"):
    return cls(
        account_sid="AC123",
        auth_token="token",
        sender=sender,
        transport=httpx.MockTransport(handler),
    )


def desktop_provider() -> DesktopPushProvider:
    return DesktopPushProvider(
        vapid_public_key="public",
        vapid_private_key="private",
        vapid_subject="mailto:ops@example.com",
    )


def test_compose_phone_number() -> None:
    assert compose_phone_number("+1", "(555) 123-4567") == "+15551234567"
    assert compose_phone_number("44", "7700 900123") == "+447700900123"
    assert compose_phone_number("+1", "+44 7700 900123") == "+447700900123"
    assert compose_phone_number("+1", "  ") is None
    assert compose_phone_number(None, None) is None


def test_sms_posts_to_twilio_messages_api() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM42"})

    provider = twilio_provider(SmsProvider, handler)
    target = ChannelTarget(tenant_id="t1", user_id="u1", phone_number="+15551234567")

    result = asyncio.run(provider.send(MESSAGE, target))

    assert result.success
    assert result.message_id == "SM42"
    assert result.channel == NotificationChannel.sms
    request = seen[0]
    assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    assert request.headers["authorization"].startswith("Basic ")
    form = parse_qs(request.content.decode())
    assert form["To"] == ["+15551234567"]
    assert form["From"] == ["+15550000000"]
    assert form["Body"][0].startswith("91% Match: Django API")


def test_whatsapp_addresses_get_prefixed_once() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(parse_qs(request.content.decode()))
        return httpx.Response(201, json={"sid": "SM43"})

    provider = twilio_provider(WhatsAppProvider, handler, sender="whatsapp:+14155238886")
    target = ChannelTarget(tenant_id="t1", user_id="u1", phone_number="+15551234567")

    assert asyncio.run(provider.send(MESSAGE, target)).success
    assert seen[0]["To"] == ["whatsapp:+15551234567"]
    assert seen[0]["From"] == ["whatsapp:+14155238886"]


def test_gateway_rejection_becomes_failed_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"code": 21211, "message": "The 'To' number is not valid."})

    provider = twilio_provider(SmsProvider, handler)
    target = ChannelTarget(tenant_id="t1", user_id="u1", phone_number="+1555")

    result = asyncio.run(provider.send(MESSAGE, target))

    assert not result.success
    assert "HTTP 400" in result.error
    assert "not valid" in result.error


def test_unconfigured_gateway_reports_unhealthy() -> None:
    provider = SmsProvider(account_sid="", auth_token="", sender="")
    target = ChannelTarget(tenant_id="t1", user_id="u1", phone_number="+15551234567")

    result = asyncio.run(provider.send(MESSAGE, target))

    assert provider.health_check() is False
    assert not result.success
    assert "not configured" in result.error


def test_web_push_sends_payload(monkeypatch) -> None:
    calls: list[dict] = []

    def fake_webpush(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(status_code=201, headers={"Location": "https://push.example.com/m/1"})

    monkeypatch.setattr(channels, "webpush", fake_webpush)
    target = ChannelTarget(tenant_id="t1", user_id="u1", push_subscription=SUBSCRIPTION)

    result = asyncio.run(desktop_provider().send(MESSAGE, target))

    assert result.success
    assert result.message_id == "https://push.example.com/m/1"
    assert calls[0]["subscription_info"]["endpoint"] == SUBSCRIPTION.endpoint
    assert calls[0]["vapid_claims"] == {"sub": "mailto:ops@example.com"}
    assert '"url": "/jobs/job_1"' in calls[0]["data"]


def test_gone_subscription_is_flagged_stale(monkeypatch) -> None:
    def gone(**_):
        raise WebPushException("Push failed", response=SimpleNamespace(status_code=410, text="gone"))

    monkeypatch.setattr(channels, "webpush", gone)
    target = ChannelTarget(tenant_id="t1", user_id="u1", push_subscription=SUBSCRIPTION)

    result = asyncio.run(desktop_provider().send(MESSAGE, target))

    assert not result.success
    assert result.subscription_stale is True
    assert "re-register" in result.error


def test_other_push_errors_are_not_stale(monkeypatch) -> None:
    def throttled(**_):
        raise WebPushException("Push failed", response=SimpleNamespace(status_code=429, text="slow down"))

    monkeypatch.setattr(channels, "webpush", throttled)
    target = ChannelTarget(tenant_id="t1", user_id="u1", push_subscription=SUBSCRIPTION)

    result = asyncio.run(desktop_provider().send(MESSAGE, target))

    assert not result.success
    assert result.subscription_stale is False


def test_desktop_without_vapid_keys_is_unhealthy() -> None:
    provider = DesktopPushProvider(vapid_public_key="", vapid_private_key="", vapid_subject="")
    target = ChannelTarget(tenant_id="t1", user_id="u1", push_subscription=SUBSCRIPTION)

    result = asyncio.run(provider.send(MESSAGE, target))

    assert provider.health_check() is False
    assert "VAPID" in result.error
