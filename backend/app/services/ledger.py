from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Union

from backend.app.models import ActivityMetadata, ActivityRecord, GenericMetadata, JourneyPhase
from backend.app.store import InMemoryStore

logger = logging.getLogger("bid_buddy.ledger")


def _activity_order(record: ActivityRecord) -> tuple[datetime, int]:
    return record.created_at_utc, record.sequence


class ActivityLedger:
    """Append-only journey history. The latest row per job is its current phase."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def append(
        self,
        *,
        tenant_id: str,
        job_id: str,
        phase: Union[JourneyPhase, str],
        title: str,
        description: Optional[str] = None,
        metadata: Optional[ActivityMetadata] = None,
        proposal_id: Optional[str] = None,
        project_id: Optional[str] = None,
        created_at_utc: Optional[datetime] = None,
    ) -> ActivityRecord:
        # Raises ValueError for anything outside the closed phase set.
        checked_phase = JourneyPhase(phase)
        record = self._store.append_activity(
            tenant_id=tenant_id,
            job_id=job_id,
            phase=checked_phase,
            title=title,
            description=description,
            metadata=metadata or GenericMetadata(),
            proposal_id=proposal_id,
            project_id=project_id,
            created_at_utc=created_at_utc,
        )
        logger.info(
            "activity_appended tenant_id=%s job_id=%s phase=%s activity_id=%s",
            tenant_id,
            job_id,
            checked_phase.value,
            record.id,
        )
        return record

    def list_by_job(self, job_id: str, tenant_id: Optional[str] = None) -> list[ActivityRecord]:
        records = self._store.list_activities(tenant_id=tenant_id, job_id=job_id)
        return sorted(records, key=_activity_order)

    def latest_for_job(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[ActivityRecord]:
        records = self._store.list_activities(tenant_id=tenant_id, job_id=job_id)
        if not records:
            return None
        return max(records, key=_activity_order)

    def latest_by_tenant(self, tenant_id: str) -> dict[str, ActivityRecord]:
        latest: dict[str, ActivityRecord] = {}
        for record in self._store.list_activities(tenant_id=tenant_id):
            current = latest.get(record.job_id)
            if current is None or _activity_order(record) >= _activity_order(current):
                latest[record.job_id] = record
        return latest
