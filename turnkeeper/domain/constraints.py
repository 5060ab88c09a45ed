"""Domain-level validation rules for rotation configuration and reconciliation."""

from __future__ import annotations

from collections import Counter

from turnkeeper.domain.errors import ConfigError
from turnkeeper.domain.models import MONTH_NAMES, WEEKDAY_NAMES, RotationConfig


OCCUPANCY_EPSILON = 0.01


def within_epsilon(left: float, right: float, epsilon: float = OCCUPANCY_EPSILON) -> bool:
    """Single comparison point for guest counts and amounts."""
    return abs(float(left) - float(right)) <= epsilon


def validate_base_order(base_order: tuple[str, ...] | list[str]) -> None:
    if not base_order:
        raise ConfigError("rotation base order must contain at least one family group")
    blank = [name for name in base_order if not str(name).strip()]
    if blank:
        raise ConfigError("rotation base order contains a blank family group name")
    duplicates = sorted(name for name, count in Counter(base_order).items() if count > 1)
    if duplicates:
        raise ConfigError(f"rotation base order contains duplicates: {', '.join(duplicates)}")


def validate_rotation_config(config: RotationConfig) -> None:
    validate_base_order(config.base_order)
    if config.max_slots <= 0:
        raise ConfigError("max_slots must be > 0")
    if config.max_nights <= 0:
        raise ConfigError("max_nights must be > 0")
    if config.start_weekday not in WEEKDAY_NAMES:
        raise ConfigError(f"start_weekday must be one of {', '.join(WEEKDAY_NAMES)}")
    if config.start_month not in MONTH_NAMES:
        raise ConfigError(f"start_month must be one of {', '.join(MONTH_NAMES)}")
    if config.selection_days <= 0:
        raise ConfigError("selection_days must be > 0")
    if config.season_months <= 0:
        raise ConfigError("season_months must be > 0")
    if config.secondary_enabled:
        if config.secondary_max_slots <= 0:
            raise ConfigError("secondary_max_slots must be > 0 when secondary selection is enabled")
        if config.secondary_selection_days <= 0:
            raise ConfigError("secondary_selection_days must be > 0 when secondary selection is enabled")
