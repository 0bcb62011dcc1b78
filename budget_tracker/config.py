from __future__ import annotations

from dataclasses import dataclass
import os

from budget_tracker.currency_conversion import (
    DEFAULT_CURRENCY,
    ConversionPolicy,
    normalize_currency,
)


@dataclass(frozen=True)
class AppConfig:
    database_url: str = "sqlite:///./budget_tracker.db"
    frontend_origin: str = "http://localhost:3000"
    default_currency: str = DEFAULT_CURRENCY
    rate_refresh_seconds: float = 60.0
    rate_auto_refresh: bool = True
    rate_request_timeout: float = 8.0
    conversion_policy: ConversionPolicy = ConversionPolicy.LENIENT
    session_ttl_days: int = 7
    log_level: str = "INFO"


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", DEFAULT_CURRENCY)
    try:
        return normalize_currency(raw)
    except ValueError:
        return DEFAULT_CURRENCY


def load_config() -> AppConfig:
    defaults = AppConfig()
    return AppConfig(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", defaults.frontend_origin),
        default_currency=get_system_default_currency(),
        rate_refresh_seconds=_get_float("RATE_REFRESH_SECONDS", defaults.rate_refresh_seconds),
        rate_auto_refresh=_get_bool("RATE_AUTO_REFRESH", defaults.rate_auto_refresh),
        rate_request_timeout=_get_float("RATE_REQUEST_TIMEOUT", defaults.rate_request_timeout),
        conversion_policy=_get_policy(defaults.conversion_policy),
        session_ttl_days=_get_int("SESSION_TTL_DAYS", defaults.session_ttl_days),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
    )


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_policy(default: ConversionPolicy) -> ConversionPolicy:
    raw = os.getenv("CONVERSION_POLICY")
    if not raw:
        return default
    try:
        return ConversionPolicy(raw.strip().lower())
    except ValueError:
        return default
