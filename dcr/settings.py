from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    host: str = os.getenv("DCR_HOST", "0.0.0.0")
    port: int = _env_int("DCR_PORT", 8080)
    db_path: str = os.getenv("DCR_DB_PATH", "dcr.db")
    poll_interval_s: int = _env_int("DCR_POLL_INTERVAL_S", 15)
    enable_drift: bool = _env_bool("DCR_ENABLE_DRIFT", True)
    managed_label: str = os.getenv("DCR_MANAGED_LABEL", "dcr.managed")

    # Runtime calls
    runtime_timeout_s: float = _env_float("DCR_RUNTIME_TIMEOUT_S", 30.0)
    stop_timeout_s: int = _env_int("DCR_STOP_TIMEOUT_S", 10)
    read_retries: int = _env_int("DCR_READ_RETRIES", 3)
    retry_backoff_s: float = _env_float("DCR_RETRY_BACKOFF_S", 0.5)

    # Logs
    log_tail: int = _env_int("DCR_LOG_TAIL", 100)
    log_max_bytes: int = _env_int("DCR_LOG_MAX_BYTES", 1024 * 1024)
    log_follow_max_s: int = _env_int("DCR_LOG_FOLLOW_MAX_S", 3600)
    log_backlog_lines: int = _env_int("DCR_LOG_BACKLOG_LINES", 1000)

    # Upload limits
    max_manifest_bytes: int = _env_int("DCR_MAX_MANIFEST_BYTES", 256 * 1024)

    # Email alerting (optional)
    enable_email: bool = _env_bool("DCR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DCR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DCR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DCR_SMTP_USER")
    smtp_password: str | None = os.getenv("DCR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DCR_EMAIL_FROM")
    email_to: str | None = os.getenv("DCR_EMAIL_TO")


settings = Settings()
