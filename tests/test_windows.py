from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone

import pytest

from turnkeeper.domain.errors import ConfigError
from turnkeeper.domain.models import (
    PartialBlockPolicy,
    RotationConfig,
    RotationMode,
    WindowTermination,
)
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.window_service import AllocationWindowSequence, WindowService
from turnkeeper.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _fixed_clock() -> datetime:
    return datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def _config(**overrides) -> RotationConfig:
    values = {
        "organization_id": "org",
        "rotation_year": 2025,
        "base_order": ("A", "B", "C"),
        "mode": RotationMode.CONSTANT,
        "max_slots": 2,
        "max_nights": 7,
        "start_weekday": "Friday",
        "start_month": "January",
    }
    values.update(overrides)
    return RotationConfig(**values)


def _sequence(**overrides) -> AllocationWindowSequence:
    config = _config(**overrides)
    return AllocationWindowSequence.from_config(config, config.base_order, 2025)


def _build_service(tmp_path, filename: str, **overrides) -> WindowService:
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.save_rotation_config(_config(**overrides))
    return WindowService(repository=repository, settings=settings, clock=_fixed_clock)


def test_round_robin_layout_starts_on_first_friday() -> None:
    windows = list(_sequence())

    assert [(w.family_group, w.period_index) for w in windows] == [
        ("A", 1),
        ("B", 1),
        ("C", 1),
        ("A", 2),
        ("B", 2),
        ("C", 2),
    ]
    assert windows[0].start_date == date(2025, 1, 3)
    assert windows[0].end_date == date(2025, 1, 10)
    assert windows[-1].start_date == date(2025, 2, 7)
    assert windows[-1].end_date == date(2025, 2, 14)
    assert all(w.nights == 7 for w in windows)


def test_windows_do_not_overlap_and_cover_contiguously() -> None:
    windows = list(_sequence(max_slots=3, base_order=("A", "B", "C", "D")))

    assert len(windows) == 12
    for earlier, later in zip(windows, windows[1:]):
        assert earlier.end_date == later.start_date
        assert not earlier.overlaps(later.start_date, later.end_date)


def test_sequence_is_restartable() -> None:
    sequence = _sequence()
    assert list(sequence) == list(sequence)
    assert [w.period_index for w in sequence.for_group("B")] == [1, 2]


def test_leading_partial_block_runs_from_first_of_month() -> None:
    windows = list(_sequence(partial_blocks=PartialBlockPolicy.LEADING))

    assert windows[0].family_group == "A"
    assert windows[0].start_date == date(2025, 1, 1)
    assert windows[0].end_date == date(2025, 1, 3)
    assert windows[1].start_date == date(2025, 1, 3)
    assert len(windows) == 6


def test_season_end_termination_stops_at_season_boundary() -> None:
    windows = list(_sequence(termination=WindowTermination.SEASON_END, season_months=1))

    assert [(w.family_group, w.period_index) for w in windows] == [
        ("A", 1),
        ("B", 1),
        ("C", 1),
        ("A", 2),
        ("B", 2),
    ]
    assert windows[-1].end_date == date(2025, 2, 7)


def test_trailing_partial_block_is_truncated_at_season_end() -> None:
    windows = list(
        _sequence(
            termination=WindowTermination.SEASON_END,
            partial_blocks=PartialBlockPolicy.TRAILING,
            season_months=1,
        )
    )

    assert windows[-1].start_date == date(2025, 1, 31)
    assert windows[-1].end_date == date(2025, 2, 1)


def test_invalid_sequence_inputs_raise() -> None:
    with pytest.raises(ConfigError):
        AllocationWindowSequence(
            order=(),
            year=2025,
            max_slots=2,
            max_nights=7,
            start_weekday_index=4,
            start_month=1,
        )
    with pytest.raises(ConfigError):
        AllocationWindowSequence(
            order=("A",),
            year=2025,
            max_slots=0,
            max_nights=7,
            start_weekday_index=4,
            start_month=1,
        )


def test_service_returns_no_windows_outside_booking_horizon(tmp_path) -> None:
    service = _build_service(tmp_path, "windows_horizon.db")

    assert len(service.windows("org", 2025)) == 6
    assert len(service.windows("org", 2027)) == 6
    assert service.windows("org", 2028) == []
    assert service.windows("org", 2024) == []


def test_service_applies_rotation_for_later_years(tmp_path) -> None:
    service = _build_service(tmp_path, "windows_rotation.db", mode=RotationMode.ROTATES)

    assert service.windows("org", 2026)[0].family_group == "B"


def test_windows_for_month_returns_overlapping_windows(tmp_path) -> None:
    service = _build_service(tmp_path, "windows_month.db")

    february = service.windows_for_month("org", 2025, 2)

    assert [(w.family_group, w.period_index) for w in february] == [("B", 2), ("C", 2)]
    assert service.windows_for_month("org", 2025, 6) == []


def test_windows_for_month_rejects_bad_month(tmp_path) -> None:
    service = _build_service(tmp_path, "windows_bad_month.db")

    with pytest.raises(ConfigError):
        service.windows_for_month("org", 2025, 13)
