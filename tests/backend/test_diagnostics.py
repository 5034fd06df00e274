from __future__ import annotations

from datetime import timedelta

from backend.app.models import (
    DeliveryStatus,
    NotificationChannel,
    NotificationLogRecord,
    NotificationPreferenceRecord,
    utc_now,
)
from backend.app.services.diagnostics import evaluate_rules

ALL_HEALTHY = {"DESKTOP": True, "SMS": True, "WHATSAPP": True, "IN_APP": True}


def build_preference(**overrides) -> NotificationPreferenceRecord:
    now = utc_now()
    values = {
        "id": "pref_1",
        "tenant_id": "t1",
        "user_id": "u1",
        "categories": ["Web Development"],
        "desktop_enabled": True,
        "push_subscription": {
            "endpoint": "https://push.example.com/send/abc123",
            "keys": {"p256dh": "key", "auth": "secret"},
        },
        "created_at_utc": now,
        "updated_at_utc": now,
    }
    values.update(overrides)
    return NotificationPreferenceRecord.model_validate(values)


def build_log(channel: NotificationChannel, status: DeliveryStatus, minutes_ago: int, **extra) -> NotificationLogRecord:
    created = utc_now() - timedelta(minutes=minutes_ago)
    return NotificationLogRecord(
        id=f"nlog_{minutes_ago}",
        tenant_id="t1",
        user_id="u1",
        channel=channel,
        title="title",
        body="body",
        status=status,
        correlation_id=f"evt_{minutes_ago}",
        created_at_utc=created,
        **extra,
    )


def test_missing_preferences_is_the_only_issue() -> None:
    issues = evaluate_rules(None, [], ALL_HEALTHY)
    assert len(issues) == 1
    assert "No notification preferences" in issues[0]


def test_healthy_setup_has_no_issues() -> None:
    logs = [build_log(NotificationChannel.desktop, DeliveryStatus.sent, 1)]
    assert evaluate_rules(build_preference(), logs, ALL_HEALTHY) == []


def test_issues_are_reported_in_a_fixed_order() -> None:
    preference = build_preference(
        is_enabled=False,
        min_match_percentage=95,
        categories=[],
        push_subscription=None,
        sms_enabled=True,
        whatsapp_enabled=True,
    )
    logs = [
        build_log(
            NotificationChannel.desktop,
            DeliveryStatus.failed,
            1,
            error_message="Push subscription expired (HTTP 410).",
            subscription_stale=True,
        ),
        build_log(NotificationChannel.in_app, DeliveryStatus.sent, 2),
    ]
    health = {"DESKTOP": False, "SMS": False, "WHATSAPP": False, "IN_APP": True}

    issues = evaluate_rules(preference, logs, health)

    expected_prefixes = [
        "Job alerts are turned off",
        "Minimum match is set to 95%",
        "No job categories selected",
        "Desktop notifications are enabled but no push subscription",
        "SMS notifications are enabled but no phone number",
        "WhatsApp notifications are enabled but no phone number",
        "Your browser push subscription has expired",
        "1 of the last 2 deliveries failed",
        "The desktop push service is not configured",
        "The SMS gateway is not configured",
        "The WhatsApp gateway is not configured",
    ]
    assert len(issues) == len(expected_prefixes)
    for issue, prefix in zip(issues, expected_prefixes):
        assert issue.startswith(prefix)
    assert "Push subscription expired (HTTP 410)." in issues[7]
    assert issues == evaluate_rules(preference, logs, health)


def test_in_app_only_is_flagged() -> None:
    issues = evaluate_rules(build_preference(desktop_enabled=False), [], ALL_HEALTHY)
    assert len(issues) == 1
    assert issues[0].startswith("Only in-app notifications are active")


def test_stale_rule_only_looks_at_latest_desktop_attempt() -> None:
    logs = [
        build_log(NotificationChannel.desktop, DeliveryStatus.sent, 1),
        build_log(NotificationChannel.desktop, DeliveryStatus.failed, 5, subscription_stale=True),
    ]
    issues = evaluate_rules(build_preference(), logs, ALL_HEALTHY)
    assert not any("expired" in issue for issue in issues)
    assert issues[0].startswith("1 of the last 2 deliveries failed")
