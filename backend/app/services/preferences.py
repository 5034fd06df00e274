from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from backend.app.models import (
    AutoScanConfigResponse,
    NotificationPreferenceRecord,
    NotificationPreferenceUpdateRequest,
    utc_now,
)
from backend.app.store import InMemoryStore, new_id

logger = logging.getLogger("bid_buddy.preferences")

# Extension fallback when the user never saved settings.
AUTO_SCAN_DEFAULT_INTERVAL_MINUTES = 15
AUTO_SCAN_DEFAULT_MIN_MATCH = 80

_CHANNEL_CONFIG_FIELDS = {
    "desktop_enabled": ("push_subscription",),
    "sms_enabled": ("sms_phone_number", "sms_country_code"),
    "whatsapp_enabled": ("whatsapp_phone_number", "whatsapp_country_code"),
}


class PreferenceValidationError(ValueError):
    pass


def _clean_list(values: list[str]) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for value in values:
        item = value.strip()
        if item and item.lower() not in seen:
            seen.add(item.lower())
            cleaned.append(item)
    return cleaned


class PreferenceStore:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def find(self, tenant_id: str, user_id: str) -> Optional[NotificationPreferenceRecord]:
        return self._store.find_preference(tenant_id, user_id)

    def list_for_tenant(self, tenant_id: str) -> list[NotificationPreferenceRecord]:
        return self._store.list_preferences(tenant_id)

    def get_or_create(self, tenant_id: str, user_id: str) -> NotificationPreferenceRecord:
        existing = self.find(tenant_id, user_id)
        if existing:
            return existing
        now = utc_now()
        record = NotificationPreferenceRecord(
            id=new_id("pref"),
            tenant_id=tenant_id,
            user_id=user_id,
            created_at_utc=now,
            updated_at_utc=now,
        )
        logger.info("preference_created tenant_id=%s user_id=%s", tenant_id, user_id)
        return self._store.save_preference(record)

    def update(
        self,
        tenant_id: str,
        user_id: str,
        request: NotificationPreferenceUpdateRequest,
    ) -> NotificationPreferenceRecord:
        current = self.get_or_create(tenant_id, user_id)
        merged = current.model_dump()
        merged.update(request.model_dump(exclude_unset=True))
        for key in ("categories", "target_skills"):
            merged[key] = _clean_list(merged.get(key) or [])
        for toggle, fields in _CHANNEL_CONFIG_FIELDS.items():
            if not merged.get(toggle):
                for name in fields:
                    merged[name] = None
        merged["updated_at_utc"] = utc_now()
        try:
            record = NotificationPreferenceRecord.model_validate(merged)
        except ValidationError as exc:
            raise PreferenceValidationError(str(exc)) from exc
        logger.info(
            "preference_updated tenant_id=%s user_id=%s enabled=%s desktop=%s sms=%s whatsapp=%s",
            tenant_id,
            user_id,
            record.is_enabled,
            record.desktop_enabled,
            record.sms_enabled,
            record.whatsapp_enabled,
        )
        return self._store.save_preference(record)

    def auto_scan_config(self, tenant_id: str, user_id: str) -> AutoScanConfigResponse:
        """Read-only view for the browser extension. Never creates a row."""
        record = self.find(tenant_id, user_id)
        if record is None:
            return AutoScanConfigResponse(
                enabled=False,
                interval_minutes=AUTO_SCAN_DEFAULT_INTERVAL_MINUTES,
                categories=[],
                target_skills=[],
                min_match_percentage=AUTO_SCAN_DEFAULT_MIN_MATCH,
            )
        return AutoScanConfigResponse(
            enabled=record.is_enabled and record.auto_scan_enabled,
            interval_minutes=record.scan_interval_minutes,
            categories=list(record.categories),
            target_skills=list(record.target_skills),
            min_match_percentage=record.min_match_percentage,
        )
