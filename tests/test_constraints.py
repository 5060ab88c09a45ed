"""Tests for rotation configuration validation.

Covers each validation branch in validate_rotation_config().
"""

from __future__ import annotations

import pytest

from turnkeeper.domain.constraints import validate_rotation_config, within_epsilon
from turnkeeper.domain.errors import ConfigError
from turnkeeper.domain.models import RotationConfig


def valid_config(**overrides) -> RotationConfig:
    """Return a valid baseline RotationConfig, optionally overriding fields."""
    defaults = {
        "organization_id": "org",
        "rotation_year": 2025,
        "base_order": ("A", "B", "C"),
        "max_slots": 2,
        "max_nights": 7,
        "start_weekday": "Friday",
        "start_month": "January",
        "selection_days": 14,
    }
    defaults.update(overrides)
    return RotationConfig(**defaults)


# --- Baseline pass ---

def test_valid_config_passes() -> None:
    validate_rotation_config(valid_config())


# --- base_order ---

def test_empty_base_order_raises() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(base_order=()))


def test_duplicate_group_raises() -> None:
    with pytest.raises(ConfigError, match="duplicates: A"):
        validate_rotation_config(valid_config(base_order=("A", "B", "A")))


def test_blank_group_name_raises() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(base_order=("A", "  ")))


# --- slot and night limits ---

def test_max_slots_zero_raises() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(max_slots=0))


def test_max_nights_zero_raises() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(max_nights=0))


def test_selection_days_zero_raises() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(selection_days=0))


def test_season_months_zero_raises() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(season_months=0))


# --- calendar names ---

def test_unknown_weekday_raises() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(start_weekday="Funday"))


def test_unknown_month_raises() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(start_month="Jan"))


# --- secondary round ---

def test_secondary_limits_ignored_when_disabled() -> None:
    validate_rotation_config(valid_config(secondary_enabled=False, secondary_max_slots=0))


def test_secondary_max_slots_zero_raises_when_enabled() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(valid_config(secondary_enabled=True, secondary_max_slots=0))


def test_secondary_selection_days_zero_raises_when_enabled() -> None:
    with pytest.raises(ConfigError):
        validate_rotation_config(
            valid_config(secondary_enabled=True, secondary_selection_days=0)
        )


def test_within_epsilon_uses_inclusive_bound() -> None:
    assert within_epsilon(3.0, 3.01)
    assert not within_epsilon(3.0, 3.02)
