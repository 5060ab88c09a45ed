"""Runtime settings loaded once from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


_ENV_PREFIX = "TURNKEEPER_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path

    # Fallbacks for rotation configs that leave a field unset.
    default_max_slots: int
    default_max_nights: int
    default_start_weekday: str
    default_start_time: str
    default_start_month: str
    default_selection_days: int
    default_secondary_selection_days: int
    default_secondary_max_slots: int

    # Stay billing; a zero amount disables automatic cost calculation.
    billing_method: str
    billing_amount: float
    billing_tax_rate: float
    billing_cleaning_fee: float

    settlement_epsilon: float
    booking_horizon_years: int
    reminder_lead_days: int
    demo_organization_id: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return process-wide settings; call ``get_settings.cache_clear()`` to reload."""
    return Settings(
        app_name=_env("APP_NAME", "TurnKeeper Rotation Engine"),
        app_version=_env("APP_VERSION", "1.0.0"),
        log_level=_env("LOG_LEVEL", "INFO"),
        database_path=Path(_env("DATABASE_PATH", "data/turnkeeper.db")),
        default_max_slots=_env_int("DEFAULT_MAX_SLOTS", 2),
        default_max_nights=_env_int("DEFAULT_MAX_NIGHTS", 7),
        default_start_weekday=_env("DEFAULT_START_WEEKDAY", "Friday"),
        default_start_time=_env("DEFAULT_START_TIME", "12:00"),
        default_start_month=_env("DEFAULT_START_MONTH", "January"),
        default_selection_days=_env_int("DEFAULT_SELECTION_DAYS", 14),
        default_secondary_selection_days=_env_int("DEFAULT_SECONDARY_SELECTION_DAYS", 7),
        default_secondary_max_slots=_env_int("DEFAULT_SECONDARY_MAX_SLOTS", 1),
        billing_method=_env("BILLING_METHOD", "per_person_per_night"),
        billing_amount=_env_float("BILLING_AMOUNT", 0.0),
        billing_tax_rate=_env_float("BILLING_TAX_RATE", 0.0),
        billing_cleaning_fee=_env_float("BILLING_CLEANING_FEE", 0.0),
        settlement_epsilon=_env_float("SETTLEMENT_EPSILON", 0.01),
        booking_horizon_years=_env_int("BOOKING_HORIZON_YEARS", 2),
        reminder_lead_days=_env_int("REMINDER_LEAD_DAYS", 2),
        demo_organization_id=_env("DEMO_ORGANIZATION_ID", "demo-cabin"),
    )
