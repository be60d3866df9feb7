from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, time
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Raised when required configuration is missing."""


TIME_FORMATS = ("%I:%M %p", "%H:%M", "%I %p", "%H")


@dataclass(frozen=True)
class Settings:
    schoolpass_username: str
    schoolpass_password: str
    unifi_server: str
    unifi_token: str
    attendance_start: time
    attendance_end: time
    school_dismissal: time
    timezone: str = "UTC"
    dismissal_location_pattern: str = ""
    threshold: int = 10
    update_interval: int = 5
    attendance_schedule: str = ""
    production: bool = False
    dry_run: bool = True
    run_immediately: bool = True
    match_strategy: str = "id"
    restore_change_types: tuple[str, ...] = ("Bus",)
    unifi_verify_tls: bool = False
    max_concurrent_requests: int = 10
    request_timeout: float = 30.0
    log_level: str = "INFO"


_ENV_LOADED = False


def _load_env_once() -> None:
    global _ENV_LOADED
    if not _ENV_LOADED:
        load_dotenv()
        _ENV_LOADED = True


def _require(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ConfigError(f"Missing required environment variable: {name}")
    return value


def _optional_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Environment variable {name} must be an integer when set") from exc


def _optional_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if raw in ("true", "1", "yes"):
        return True
    if raw in ("false", "0", "no"):
        return False
    if not raw:
        return default
    raise ConfigError(f"Environment variable {name} must be true or false when set")


def parse_time_of_day(value: str, tz: ZoneInfo) -> time:
    """Parse strings like ``8:15 AM``, ``14:30`` or ``3 PM`` into a tz-aware time."""
    cleaned = " ".join(value.strip().upper().split())
    for fmt in TIME_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
        return parsed.time().replace(tzinfo=tz)
    raise ConfigError(f"Unrecognised time of day: {value!r}")


def _time_setting(name: str, tz: ZoneInfo) -> time:
    return parse_time_of_day(_require(name), tz)


def load_settings() -> Settings:
    _load_env_once()

    tz_name = os.getenv("SCHOOL_TIMEZONE", "UTC").strip() or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown SCHOOL_TIMEZONE: {tz_name}") from exc

    attendance_start = _time_setting("ATTENDANCE_START", tz)
    attendance_end = _time_setting("ATTENDANCE_END", tz)
    school_dismissal = _time_setting("SCHOOL_DISMISSAL", tz)
    if not attendance_start < attendance_end <= school_dismissal:
        raise ConfigError("Expected ATTENDANCE_START < ATTENDANCE_END <= SCHOOL_DISMISSAL")

    update_interval = _optional_int("UPDATE_INTERVAL", 5)
    if update_interval < 1:
        raise ConfigError("UPDATE_INTERVAL must be at least 1 minute")

    max_concurrent = _optional_int("MAX_CONCURRENT_REQUESTS", 10)
    if max_concurrent < 1:
        raise ConfigError("MAX_CONCURRENT_REQUESTS must be at least 1")

    match_strategy = os.getenv("MATCH_STRATEGY", "id").strip().lower() or "id"
    if match_strategy not in ("id", "name"):
        raise ConfigError("MATCH_STRATEGY must be 'id' or 'name'")

    try:
        request_timeout = float(os.getenv("REQUEST_TIMEOUT", "30").strip() or "30")
    except ValueError as exc:
        raise ConfigError("Environment variable REQUEST_TIMEOUT must be a number") from exc

    production = os.getenv("APP_ENV", "development").strip().lower() == "production"
    schedule = os.getenv("ATTENDANCE_SCHEDULE", "").strip() or (
        f"{attendance_end.minute} {attendance_end.hour} * * mon-fri"
    )
    restore_types = tuple(
        part.strip() for part in os.getenv("RESTORE_CHANGE_TYPES", "Bus").split(",") if part.strip()
    )

    return Settings(
        schoolpass_username=_require("SCHOOLPASS_USERNAME"),
        schoolpass_password=_require("SCHOOLPASS_PASSWORD"),
        unifi_server=_require("UNIFI_ACCESS_SERVER").rstrip("/"),
        unifi_token=_require("UNIFI_ACCESS_API_TOKEN"),
        attendance_start=attendance_start,
        attendance_end=attendance_end,
        school_dismissal=school_dismissal,
        timezone=tz_name,
        dismissal_location_pattern=os.getenv("SCHOOLPASS_DISMISSAL_LOCATION_REGEX", ""),
        threshold=_optional_int("UNIFI_ACCESS_THRESHOLD", 10),
        update_interval=update_interval,
        attendance_schedule=schedule,
        production=production,
        dry_run=_optional_bool("DRY_RUN", not production),
        run_immediately=_optional_bool("RUN_IMMEDIATELY", not production),
        match_strategy=match_strategy,
        restore_change_types=restore_types,
        unifi_verify_tls=_optional_bool("UNIFI_ACCESS_VERIFY_TLS", False),
        max_concurrent_requests=max_concurrent,
        request_timeout=request_timeout,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def ensure_directories() -> None:
    Path("logs").mkdir(parents=True, exist_ok=True)
