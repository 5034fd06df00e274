from __future__ import annotations

import base64
import json
import logging
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, TypeVar

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    ActivityRecord,
    InAppNotificationRecord,
    JobRecord,
    NotificationLogRecord,
    NotificationPreferenceRecord,
)

RecordT = TypeVar("RecordT", bound=BaseModel)

logger = logging.getLogger("bid_buddy.persistence")


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _naive_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


_KDF_SALT = b"bid-buddy-credentials"


class CredentialCipher:
    """Fernet encryption for secrets kept at rest, keyed by a scrypt-derived passphrase."""

    def __init__(self, passphrase: str) -> None:
        if not passphrase:
            raise ValueError("credential encryption requires a non-empty key")
        kdf = Scrypt(salt=_KDF_SALT, length=32, n=2**14, r=8, p=1)
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))
        self._fernet = Fernet(key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")


class DatabasePersistence:
    """
    Write-through record storage. Uses SQLAlchemy and supports both SQLite and PostgreSQL URLs.

    Each row keeps the columns needed for lookups plus the full record as JSON, so the
    in-memory store can be rebuilt exactly on startup. Push subscriptions are kept out of
    the JSON payload and stored encrypted in their own column.
    """

    def __init__(self, database_url: str, *, encryption_key: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self.cipher = CredentialCipher(encryption_key)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.jobs = Table(
            "jobs",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("tenant_id", String(120), nullable=False, index=True),
            Column("status", String(40), nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.job_activities = Table(
            "job_activities",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("job_id", String(64), nullable=False),
            Column("phase", String(40), nullable=False),
            Column("sequence", Integer, nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Index("ix_job_activities_tenant_job", "tenant_id", "job_id"),
        )
        self.alert_preferences = Table(
            "alert_preferences",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("user_id", String(120), nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("push_subscription_encrypted", Text, nullable=True),
            Column("updated_at_utc", DateTime, nullable=False),
            Index("ux_alert_preferences_tenant_user", "tenant_id", "user_id", unique=True),
        )
        self.notification_logs = Table(
            "notification_logs",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("user_id", String(120), nullable=True),
            Column("job_id", String(64), nullable=True),
            Column("channel", String(20), nullable=False),
            Column("status", String(20), nullable=False),
            Column("correlation_id", String(64), nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Index("ix_notification_logs_tenant_user", "tenant_id", "user_id"),
        )
        self.in_app_notifications = Table(
            "in_app_notifications",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("tenant_id", String(120), nullable=False),
            Column("user_id", String(120), nullable=False),
            Column("is_read", Boolean, nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Index("ix_in_app_notifications_tenant_user", "tenant_id", "user_id"),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def _upsert(self, table: Table, record_id: str, values: dict[str, Any]) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(select(table.c.id).where(table.c.id == record_id)).first()
                if existing:
                    conn.execute(table.update().where(table.c.id == record_id).values(**values))
                else:
                    conn.execute(table.insert().values(id=record_id, **values))

    def _load(self, table: Table, model: type[RecordT], order_by: Any) -> list[RecordT]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(table.c.payload_json).order_by(order_by)).all()
        return [model.model_validate(json.loads(row.payload_json)) for row in rows]

    def upsert_job(self, record: JobRecord) -> None:
        self._upsert(
            self.jobs,
            record.id,
            {
                "tenant_id": record.tenant_id,
                "status": record.status.value,
                "payload_json": record.model_dump_json(),
                "created_at_utc": _naive_utc(record.created_at_utc),
                "updated_at_utc": _naive_utc(record.updated_at_utc),
            },
        )

    def list_jobs(self) -> list[JobRecord]:
        return self._load(self.jobs, JobRecord, self.jobs.c.created_at_utc)

    def insert_activity(self, record: ActivityRecord) -> None:
        self._upsert(
            self.job_activities,
            record.id,
            {
                "tenant_id": record.tenant_id,
                "job_id": record.job_id,
                "phase": record.phase.value,
                "sequence": record.sequence,
                "payload_json": record.model_dump_json(),
                "created_at_utc": _naive_utc(record.created_at_utc),
            },
        )

    def list_activities(self) -> list[ActivityRecord]:
        return self._load(self.job_activities, ActivityRecord, self.job_activities.c.sequence)

    def upsert_preference(self, record: NotificationPreferenceRecord) -> None:
        subscription = record.push_subscription
        self._upsert(
            self.alert_preferences,
            record.id,
            {
                "tenant_id": record.tenant_id,
                "user_id": record.user_id,
                "payload_json": record.model_dump_json(exclude={"push_subscription"}),
                "push_subscription_encrypted": (
                    self.cipher.encrypt(subscription.model_dump_json()) if subscription else None
                ),
                "updated_at_utc": _naive_utc(record.updated_at_utc),
            },
        )

    def list_preferences(self) -> list[NotificationPreferenceRecord]:
        table = self.alert_preferences
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(
                        table.c.id, table.c.payload_json, table.c.push_subscription_encrypted
                    ).order_by(table.c.updated_at_utc)
                ).all()
        records: list[NotificationPreferenceRecord] = []
        for row in rows:
            payload = json.loads(row.payload_json)
            if row.push_subscription_encrypted:
                try:
                    payload["push_subscription"] = json.loads(
                        self.cipher.decrypt(row.push_subscription_encrypted)
                    )
                except InvalidToken:
                    # Key changed since the row was written; the user must subscribe again.
                    logger.warning("push_subscription_undecryptable preference_id=%s", row.id)
                    payload["push_subscription"] = None
            records.append(NotificationPreferenceRecord.model_validate(payload))
        return records

    def insert_notification_log(self, record: NotificationLogRecord) -> None:
        self._upsert(
            self.notification_logs,
            record.id,
            {
                "tenant_id": record.tenant_id,
                "user_id": record.user_id,
                "job_id": record.job_id,
                "channel": record.channel.value,
                "status": record.status.value,
                "correlation_id": record.correlation_id,
                "payload_json": record.model_dump_json(),
                "created_at_utc": _naive_utc(record.created_at_utc),
            },
        )

    def list_notification_logs(self) -> list[NotificationLogRecord]:
        return self._load(
            self.notification_logs,
            NotificationLogRecord,
            self.notification_logs.c.created_at_utc,
        )

    def upsert_in_app_notification(self, record: InAppNotificationRecord) -> None:
        self._upsert(
            self.in_app_notifications,
            record.id,
            {
                "tenant_id": record.tenant_id,
                "user_id": record.user_id,
                "is_read": record.read,
                "payload_json": record.model_dump_json(),
                "created_at_utc": _naive_utc(record.created_at_utc),
            },
        )

    def list_in_app_notifications(self) -> list[InAppNotificationRecord]:
        return self._load(
            self.in_app_notifications,
            InAppNotificationRecord,
            self.in_app_notifications.c.created_at_utc,
        )
