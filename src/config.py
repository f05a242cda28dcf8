from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _get_first_set(*env_names: str) -> str:
    for env_name in env_names:
        value = os.getenv(env_name, "").strip()
        if value:
            return value
    return ""


def _normalize_database_url(raw_url: str) -> str:
    if not raw_url:
        return raw_url
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+psycopg2://", 1)
    if raw_url.startswith("postgresql://") and "+" not in raw_url.split("://", 1)[0]:
        return raw_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return raw_url


def _build_database_url() -> str:
    explicit = _get_first_set("DATABASE_URL", "DATABASE_PUBLIC_URL")
    if explicit:
        return _normalize_database_url(explicit)

    # Local dev fallback when DATABASE_URL is not set.
    sqlite_file = Path(os.getenv("SQLITE_DB_PATH", "./app.db")).as_posix()
    if sqlite_file.startswith("/"):
        return f"sqlite:///{sqlite_file}"
    return f"sqlite:///./{sqlite_file.lstrip('./')}"


@dataclass(frozen=True)
class Settings:
    app_name: str = os.getenv("APP_NAME", "push_delivery_pipeline")
    app_debug: bool = os.getenv("APP_DEBUG", "false").lower() == "true"

    database_url: str = _build_database_url()

    push_gateway: str = os.getenv("PUSH_GATEWAY", "mock").strip().lower()
    expo_access_token: str = os.getenv("EXPO_ACCESS_TOKEN", "")
    expo_api_url: str = os.getenv("EXPO_API_URL", "https://exp.host/--/api/v2")
    push_gateway_timeout_seconds: float = float(os.getenv("PUSH_GATEWAY_TIMEOUT_SECONDS", "10"))

    push_max_per_second: int = int(os.getenv("PUSH_MAX_PER_SECOND", "600"))
    push_send_batch_size: int = int(os.getenv("PUSH_SEND_BATCH_SIZE", "100"))
    push_receipt_batch_size: int = int(os.getenv("PUSH_RECEIPT_BATCH_SIZE", "1000"))
    push_max_send_retries: int = int(os.getenv("PUSH_MAX_SEND_RETRIES", "3"))
    push_retry_base_seconds: float = float(os.getenv("PUSH_RETRY_BASE_SECONDS", "1.0"))

    receipt_check_delay_minutes: int = int(os.getenv("RECEIPT_CHECK_DELAY_MINUTES", "15"))
    receipt_check_interval_minutes: int = int(os.getenv("RECEIPT_CHECK_INTERVAL_MINUTES", "30"))
    receipt_max_retries: int = int(os.getenv("RECEIPT_MAX_RETRIES", "3"))
    receipt_retention_hours: int = int(os.getenv("RECEIPT_RETENTION_HOURS", "24"))
    receipt_scheduler_enabled: bool = os.getenv("RECEIPT_SCHEDULER_ENABLED", "true").lower() == "true"


settings = Settings()


def get_settings() -> Settings:
    return settings
