from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    credentials_encryption_key: str
    default_tenant_id: str
    vapid_public_key: str
    vapid_private_key: str
    vapid_subject: str
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_sms_from: str
    twilio_whatsapp_from: str
    twilio_api_base_url: str
    channel_timeout_seconds: float
    sse_heartbeat_seconds: float
    sse_queue_size: int
    notification_concurrency: int
    diagnostics_log_window: int


def load_settings() -> Settings:
    jwt_secret = os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip()
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/bid_buddy.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=jwt_secret,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        credentials_encryption_key=(
            os.getenv("CREDENTIALS_ENCRYPTION_KEY", "").strip() or jwt_secret
        ),
        default_tenant_id=os.getenv("DEFAULT_TENANT_ID", "default").strip() or "default",
        vapid_public_key=os.getenv("VAPID_PUBLIC_KEY", "").strip(),
        vapid_private_key=os.getenv("VAPID_PRIVATE_KEY", "").strip(),
        vapid_subject=os.getenv("VAPID_SUBJECT", "mailto:alerts@bidbuddy.local").strip(),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", "").strip(),
        twilio_sms_from=os.getenv("TWILIO_SMS_FROM", "").strip(),
        twilio_whatsapp_from=os.getenv("TWILIO_WHATSAPP_FROM", "").strip(),
        twilio_api_base_url=os.getenv(
            "TWILIO_API_BASE_URL", "https://api.twilio.com/2010-04-01"
        ).strip().rstrip("/"),
        channel_timeout_seconds=max(0.5, min(30.0, _float_env("CHANNEL_TIMEOUT_SECONDS", 5.0))),
        sse_heartbeat_seconds=max(0.05, min(300.0, _float_env("SSE_HEARTBEAT_SECONDS", 30.0))),
        sse_queue_size=max(1, min(10_000, _int_env("SSE_QUEUE_SIZE", 256))),
        notification_concurrency=max(1, min(32, _int_env("NOTIFICATION_CONCURRENCY", 3))),
        diagnostics_log_window=max(1, min(50, _int_env("DIAGNOSTICS_LOG_WINDOW", 5))),
    )
