from __future__ import annotations

from typing import Mapping, Optional

from backend.app.models import (
    DeliveryStatus,
    DiagnosticsReport,
    NotificationChannel,
    NotificationLogRecord,
    NotificationPreferenceRecord,
    PreferenceSummary,
)
from backend.app.services.notifications import NotificationDispatcher
from backend.app.services.preferences import PreferenceStore
from backend.app.store import InMemoryStore

HIGH_THRESHOLD = 90


def evaluate_rules(
    preference: Optional[NotificationPreferenceRecord],
    recent_logs: list[NotificationLogRecord],
    provider_health: Mapping[str, bool],
) -> list[str]:
    """Plain-language problems, always in the same order for the same inputs."""
    if preference is None:
        return [
            "No notification preferences saved yet. Open notification settings and save "
            "them to start receiving job alerts."
        ]

    issues: list[str] = []
    if not preference.is_enabled:
        issues.append("Job alerts are turned off. Enable alerts to receive notifications.")
    if preference.min_match_percentage > HIGH_THRESHOLD:
        issues.append(
            f"Minimum match is set to {preference.min_match_percentage}%. Very few jobs score "
            f"above {HIGH_THRESHOLD}%, so alerts will be rare."
        )
    if not preference.categories:
        issues.append(
            "No job categories selected. Pick at least one category so auto-scan knows what "
            "to look for."
        )
    if preference.desktop_enabled and preference.push_subscription is None:
        issues.append(
            "Desktop notifications are enabled but no push subscription is registered. "
            "Toggle Desktop Notifications off and on to re-register this browser."
        )
    if preference.sms_enabled and not preference.sms_phone_number:
        issues.append("SMS notifications are enabled but no phone number is saved.")
    if preference.whatsapp_enabled and not preference.whatsapp_phone_number:
        issues.append("WhatsApp notifications are enabled but no phone number is saved.")
    if not (preference.desktop_enabled or preference.sms_enabled or preference.whatsapp_enabled):
        issues.append(
            "Only in-app notifications are active. Enable desktop, SMS or WhatsApp to get "
            "alerts when the dashboard is closed."
        )

    latest_desktop = next(
        (log for log in recent_logs if log.channel == NotificationChannel.desktop), None
    )
    if latest_desktop is not None and latest_desktop.subscription_stale:
        issues.append(
            "Your browser push subscription has expired. Toggle Desktop Notifications off "
            "and on to re-register."
        )

    failures = [log for log in recent_logs if log.status == DeliveryStatus.failed]
    if failures:
        latest = failures[0]
        issues.append(
            f"{len(failures)} of the last {len(recent_logs)} deliveries failed. Latest error "
            f"({latest.channel.value}): {latest.error_message or 'unknown error'}"
        )

    if preference.desktop_enabled and not provider_health.get(NotificationChannel.desktop.value, False):
        issues.append(
            "The desktop push service is not configured on the server (VAPID keys missing)."
        )
    if preference.sms_enabled and not provider_health.get(NotificationChannel.sms.value, False):
        issues.append("The SMS gateway is not configured on the server.")
    if preference.whatsapp_enabled and not provider_health.get(
        NotificationChannel.whatsapp.value, False
    ):
        issues.append("The WhatsApp gateway is not configured on the server.")
    return issues


def summarize(preference: NotificationPreferenceRecord) -> PreferenceSummary:
    return PreferenceSummary(
        is_enabled=preference.is_enabled,
        min_match_percentage=preference.min_match_percentage,
        categories=list(preference.categories),
        desktop_enabled=preference.desktop_enabled,
        has_push_subscription=preference.push_subscription is not None,
        sms_enabled=preference.sms_enabled,
        has_sms_phone=bool(preference.sms_phone_number),
        whatsapp_enabled=preference.whatsapp_enabled,
        has_whatsapp_phone=bool(preference.whatsapp_phone_number),
    )


class DiagnosticsService:
    def __init__(
        self,
        *,
        store: InMemoryStore,
        preferences: PreferenceStore,
        dispatcher: NotificationDispatcher,
        log_window: int = 5,
    ) -> None:
        self._store = store
        self._preferences = preferences
        self._dispatcher = dispatcher
        self._log_window = log_window

    def diagnose(self, tenant_id: str, user_id: str) -> DiagnosticsReport:
        preference = self._preferences.find(tenant_id, user_id)
        recent = self._store.list_notification_logs(
            tenant_id, user_id=user_id, limit=self._log_window
        )
        health = self._dispatcher.check_provider_health()
        return DiagnosticsReport(
            user_id=user_id,
            preferences=summarize(preference) if preference else None,
            provider_health=health,
            recent_notifications=recent,
            issues=evaluate_rules(preference, recent, health),
        )
