"""Runtime settings, read from environment variables."""
import os
from dataclasses import dataclass


def _int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Thresholds and cadences for the order lifecycle services.

    Defaults are the reference values: 15 minute payment window, 5 minute
    device start window, overtime at 2x the planned duration, 5 minute scans.
    """
    database_url: str = "sqlite:///./usage_orders.db"
    log_level: str = "INFO"
    log_json: bool = False

    scheduler_enabled: bool = True
    scan_interval_seconds: int = 300
    prune_interval_seconds: int = 24 * 60 * 60

    payment_timeout_minutes: int = 15
    start_timeout_minutes: int = 5
    usage_overtime_factor: float = 2.0
    usage_alert_minutes: int = 90
    settlement_timeout_minutes: int = 10
    max_remediation_attempts: int = 3
    device_maintenance_threshold: int = 2
    device_maintenance_window_hours: int = 24

    step_retry_backoff_seconds: float = 5.0
    exception_batch_concurrency: int = 5
    exception_retention_hours: int = 24


def load_settings() -> Settings:
    """Build Settings from the environment. Raises ValueError on bad values."""
    return Settings(
        # Use PostgreSQL in production (from DATABASE_URL env var), SQLite locally
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        log_level=os.getenv("LOG_LEVEL", Settings.log_level).upper(),
        log_json=_bool("LOG_JSON", Settings.log_json),
        scheduler_enabled=_bool("SCHEDULER_ENABLED", Settings.scheduler_enabled),
        scan_interval_seconds=_int("SCAN_INTERVAL_SECONDS", Settings.scan_interval_seconds, minimum=1),
        prune_interval_seconds=_int("PRUNE_INTERVAL_SECONDS", Settings.prune_interval_seconds, minimum=1),
        payment_timeout_minutes=_int("PAYMENT_TIMEOUT_MINUTES", Settings.payment_timeout_minutes, minimum=1),
        start_timeout_minutes=_int("START_TIMEOUT_MINUTES", Settings.start_timeout_minutes, minimum=1),
        usage_overtime_factor=_float("USAGE_OVERTIME_FACTOR", Settings.usage_overtime_factor, minimum=1.0),
        usage_alert_minutes=_int("USAGE_ALERT_MINUTES", Settings.usage_alert_minutes, minimum=1),
        settlement_timeout_minutes=_int("SETTLEMENT_TIMEOUT_MINUTES", Settings.settlement_timeout_minutes, minimum=1),
        max_remediation_attempts=_int("MAX_REMEDIATION_ATTEMPTS", Settings.max_remediation_attempts, minimum=1),
        device_maintenance_threshold=_int("DEVICE_MAINTENANCE_THRESHOLD", Settings.device_maintenance_threshold, minimum=1),
        device_maintenance_window_hours=_int("DEVICE_MAINTENANCE_WINDOW_HOURS", Settings.device_maintenance_window_hours, minimum=1),
        step_retry_backoff_seconds=_float("STEP_RETRY_BACKOFF_SECONDS", Settings.step_retry_backoff_seconds),
        exception_batch_concurrency=_int("EXCEPTION_BATCH_CONCURRENCY", Settings.exception_batch_concurrency, minimum=1),
        exception_retention_hours=_int("EXCEPTION_RETENTION_HOURS", Settings.exception_retention_hours, minimum=1),
    )
