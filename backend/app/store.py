from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import TYPE_CHECKING, Iterable, Optional
from uuid import uuid4

from backend.app.models import (
    ActivityRecord,
    DeliveryStatus,
    GenericMetadata,
    InAppNotificationRecord,
    JobCaptureRequest,
    JobRecord,
    JobStatus,
    JourneyPhase,
    NotificationChannel,
    NotificationLogRecord,
    NotificationPreferenceRecord,
    utc_now,
)

if TYPE_CHECKING:
    from backend.app.models import ActivityMetadata
    from backend.app.persistence import DatabasePersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    """Tenant-partitioned record store with optional write-through persistence."""

    def __init__(self, persistence: Optional["DatabasePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.jobs: dict[str, JobRecord] = {}
        self.activities: list[ActivityRecord] = []
        self.preferences: dict[tuple[str, str], NotificationPreferenceRecord] = {}
        self.notification_logs: list[NotificationLogRecord] = []
        self.in_app_notifications: dict[str, InAppNotificationRecord] = {}
        self._sequence = 0

        if self.persistence:
            self._hydrate(self.persistence)

    # Jobs

    def create_job(self, tenant_id: str, request: JobCaptureRequest) -> JobRecord:
        with self._lock:
            now = utc_now()
            job = JobRecord(
                id=new_id("job"),
                tenant_id=tenant_id,
                title=request.title.strip(),
                source=request.source.strip().lower(),
                job_url=request.job_url,
                category=request.category.strip() if request.category else None,
                skills_required=[skill.strip() for skill in request.skills_required if skill.strip()],
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.jobs[job.id] = job
            self._persist_job(job)
            return job

    def get_job(self, job_id: str, tenant_id: Optional[str] = None) -> JobRecord:
        with self._lock:
            job = self.jobs.get(job_id)
        if not job or (tenant_id is not None and job.tenant_id != tenant_id):
            raise StoreNotFoundError(f"job not found: {job_id}")
        return job

    def find_job(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[JobRecord]:
        try:
            return self.get_job(job_id, tenant_id)
        except StoreNotFoundError:
            return None

    def update_job_status(self, job_id: str, status: JobStatus) -> JobRecord:
        with self._lock:
            job = self.get_job(job_id)
            updated = job.model_copy(update={"status": status, "updated_at_utc": utc_now()})
            self.jobs[job_id] = updated
            self._persist_job(updated)
            return updated

    def list_jobs(self, tenant_id: str) -> list[JobRecord]:
        with self._lock:
            return [job for job in self.jobs.values() if job.tenant_id == tenant_id]

    # Activities

    def append_activity(
        self,
        *,
        tenant_id: str,
        job_id: str,
        phase: JourneyPhase,
        title: str,
        description: Optional[str] = None,
        metadata: Optional["ActivityMetadata"] = None,
        proposal_id: Optional[str] = None,
        project_id: Optional[str] = None,
        created_at_utc: Optional[datetime] = None,
    ) -> ActivityRecord:
        with self._lock:
            self._sequence += 1
            record = ActivityRecord(
                id=new_id("act"),
                tenant_id=tenant_id,
                job_id=job_id,
                proposal_id=proposal_id,
                project_id=project_id,
                phase=phase,
                title=title,
                description=description,
                metadata=metadata or GenericMetadata(),
                sequence=self._sequence,
                created_at_utc=created_at_utc or utc_now(),
            )
            self.activities.append(record)
            if self.persistence:
                self.persistence.insert_activity(record)
            return record

    def list_activities(
        self,
        *,
        tenant_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> list[ActivityRecord]:
        with self._lock:
            return [
                record
                for record in self.activities
                if (tenant_id is None or record.tenant_id == tenant_id)
                and (job_id is None or record.job_id == job_id)
            ]

    # Preferences

    def find_preference(self, tenant_id: str, user_id: str) -> Optional[NotificationPreferenceRecord]:
        with self._lock:
            return self.preferences.get((tenant_id, user_id))

    def save_preference(self, record: NotificationPreferenceRecord) -> NotificationPreferenceRecord:
        with self._lock:
            self.preferences[(record.tenant_id, record.user_id)] = record
            if self.persistence:
                self.persistence.upsert_preference(record)
            return record

    def list_preferences(self, tenant_id: str) -> list[NotificationPreferenceRecord]:
        with self._lock:
            return [
                record
                for (record_tenant, _), record in self.preferences.items()
                if record_tenant == tenant_id
            ]

    # Notification log

    def add_notification_log(self, record: NotificationLogRecord) -> NotificationLogRecord:
        with self._lock:
            self.notification_logs.append(record)
            if self.persistence:
                self.persistence.insert_notification_log(record)
            return record

    def list_notification_logs(
        self,
        tenant_id: str,
        *,
        user_id: Optional[str] = None,
        job_id: Optional[str] = None,
        event: Optional[str] = None,
        channel: Optional[NotificationChannel] = None,
        status: Optional[DeliveryStatus] = None,
        limit: Optional[int] = None,
    ) -> list[NotificationLogRecord]:
        """Newest first."""
        with self._lock:
            matches = [
                record
                for record in reversed(self.notification_logs)
                if record.tenant_id == tenant_id
                and (user_id is None or record.user_id == user_id)
                and (job_id is None or record.job_id == job_id)
                and (event is None or record.event == event)
                and (channel is None or record.channel == channel)
                and (status is None or record.status == status)
            ]
        if limit is not None:
            return matches[: max(0, limit)]
        return matches

    # In-app notifications

    def add_in_app_notification(
        self,
        *,
        tenant_id: str,
        user_id: str,
        title: str,
        body: str,
        job_id: Optional[str] = None,
        href: Optional[str] = None,
    ) -> InAppNotificationRecord:
        with self._lock:
            record = InAppNotificationRecord(
                id=new_id("inapp"),
                tenant_id=tenant_id,
                user_id=user_id,
                title=title,
                body=body,
                job_id=job_id,
                href=href,
                created_at_utc=utc_now(),
            )
            self.in_app_notifications[record.id] = record
            if self.persistence:
                self.persistence.upsert_in_app_notification(record)
            return record

    def list_in_app_notifications(
        self,
        tenant_id: str,
        user_id: str,
        *,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[InAppNotificationRecord]:
        safe_limit = max(1, min(limit, 200))
        with self._lock:
            records = [
                record
                for record in self.in_app_notifications.values()
                if record.tenant_id == tenant_id
                and record.user_id == user_id
                and (not unread_only or not record.read)
            ]
        records.sort(key=lambda record: record.created_at_utc, reverse=True)
        return records[:safe_limit]

    def mark_in_app_notification_read(
        self, tenant_id: str, user_id: str, notification_id: str
    ) -> InAppNotificationRecord:
        with self._lock:
            record = self.in_app_notifications.get(notification_id)
            if not record or record.tenant_id != tenant_id or record.user_id != user_id:
                raise StoreNotFoundError(f"notification not found: {notification_id}")
            if record.read:
                return record
            updated = record.model_copy(update={"read": True})
            self.in_app_notifications[notification_id] = updated
            if self.persistence:
                self.persistence.upsert_in_app_notification(updated)
            return updated

    def _persist_job(self, job: JobRecord) -> None:
        if self.persistence:
            self.persistence.upsert_job(job)

    def _hydrate(self, persistence: "DatabasePersistence") -> None:
        self.jobs = {record.id: record for record in persistence.list_jobs()}
        self.activities = sorted(persistence.list_activities(), key=lambda record: record.sequence)
        self._sequence = max((record.sequence for record in self.activities), default=0)
        self.preferences = {
            (record.tenant_id, record.user_id): record
            for record in persistence.list_preferences()
        }
        self.notification_logs = _ordered(persistence.list_notification_logs())
        self.in_app_notifications = {
            record.id: record for record in persistence.list_in_app_notifications()
        }


def _ordered(records: Iterable[NotificationLogRecord]) -> list[NotificationLogRecord]:
    return sorted(records, key=lambda record: record.created_at_utc)
