from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Due Work Scheduler"
    api_prefix: str = "/api/v1"
    work_store_backend: str = "inmemory"
    database_url: str = ""
    stale_claim_timeout_minutes: int = 10
    claim_batch_size: int = 25
    poll_interval_seconds: int = 60
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_channel: str = "email,sms"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    log_level: str = "INFO"

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.stale_claim_timeout_minutes)

    @property
    def notifier_channels(self) -> set[str]:
        parsed = {item.strip().lower() for item in self.notifier_channel.split(",") if item.strip()}
        return parsed or {"email", "sms"}


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("DUEWORK_APP_NAME", "Due Work Scheduler"),
        api_prefix=os.getenv("DUEWORK_API_PREFIX", "/api/v1"),
        work_store_backend=_normalize_mode(
            os.getenv("WORK_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        stale_claim_timeout_minutes=_as_int(os.getenv("STALE_CLAIM_TIMEOUT_MINUTES"), 10),
        claim_batch_size=_as_int(os.getenv("CLAIM_BATCH_SIZE"), 25),
        poll_interval_seconds=_as_int(os.getenv("POLL_INTERVAL_SECONDS"), 60),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_channel=os.getenv("NOTIFIER_CHANNEL", "email,sms"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def settings_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.work_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when WORK_STORE_BACKEND=postgres")
    if settings.stale_claim_timeout_minutes <= 0:
        issues.append("STALE_CLAIM_TIMEOUT_MINUTES must be a positive number of minutes")
    if settings.claim_batch_size <= 0:
        issues.append("CLAIM_BATCH_SIZE must be positive")
    if settings.poll_interval_seconds <= 0:
        issues.append("POLL_INTERVAL_SECONDS must be positive")
    if settings.notifier_timeout_seconds <= 0:
        issues.append("NOTIFIER_TIMEOUT_SECONDS must be positive")
    if settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    return tuple(issues)
