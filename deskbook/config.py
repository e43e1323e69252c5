from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


@dataclass(frozen=True)
class Settings:
    data_file: Path = Path(os.getenv("DESK_APP_DATA_FILE", "data/deskbook.xlsx"))
    backup_dir: Path = Path(os.getenv("DESK_APP_BACKUP_DIR", "data/backups"))
    lock_file: Path = Path(os.getenv("DESK_APP_LOCK_FILE", "data/deskbook.lock"))
    lock_timeout_seconds: float = float(os.getenv("DESK_APP_LOCK_TIMEOUT_SECONDS", "10"))
    otp_ttl_minutes: int = int(os.getenv("DESK_APP_OTP_TTL_MINUTES", "10"))
    otp_max_attempts: int = int(os.getenv("DESK_APP_OTP_MAX_ATTEMPTS", "5"))
    otp_length: int = int(os.getenv("DESK_APP_OTP_LENGTH", "6"))
    session_ttl_hours: int = int(os.getenv("DESK_APP_SESSION_TTL_HOURS", "12"))
    allowed_email_domain: str | None = os.getenv("DESK_APP_ALLOWED_EMAIL_DOMAIN") or None
    smtp_host: str | None = os.getenv("SMTP_HOST")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: str | None = os.getenv("SMTP_USERNAME")
    smtp_password: str | None = os.getenv("SMTP_PASSWORD")
    smtp_from: str = os.getenv("SMTP_FROM", "noreply@deskbook.local")

    booking_window_days: int = int(os.getenv("DESK_APP_BOOKING_WINDOW_DAYS", "8"))
    availability_grace_minutes: int = int(os.getenv("DESK_APP_AVAILABILITY_GRACE_MINUTES", "15"))
    checkin_early_minutes: int = int(os.getenv("DESK_APP_CHECKIN_EARLY_MINUTES", "5"))
    checkin_late_minutes: int = int(os.getenv("DESK_APP_CHECKIN_LATE_MINUTES", "15"))
    expiry_sweep_seconds: float = float(os.getenv("DESK_APP_EXPIRY_SWEEP_SECONDS", "60"))
    # "mark" keeps cancelled rows with status Cancelled, "delete" removes them.
    cancel_mode: str = os.getenv("DESK_APP_CANCEL_MODE", "mark")

    site_latitude: float | None = _optional_float("DESK_APP_SITE_LATITUDE")
    site_longitude: float | None = _optional_float("DESK_APP_SITE_LONGITUDE")
    proximity_threshold_meters: float = float(os.getenv("DESK_APP_PROXIMITY_THRESHOLD_METERS", "1000"))

    timezone: str | None = os.getenv("DESK_APP_TIMEZONE") or None
    log_level: str = os.getenv("DESK_APP_LOG_LEVEL", "INFO")


settings = Settings()
