from __future__ import annotations

from dataclasses import replace
from datetime import date

from turnkeeper.domain.models import Reservation
from turnkeeper.repository.data_repository import DataRepository
from turnkeeper.services.season_summary_service import SUMMARY_COLUMNS, SeasonSummaryService
from turnkeeper.services.settlement_service import PartyAllocation, SettlementEngine
from turnkeeper.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _stay(group: str, start: date, end: date, guests: float, cost: float, year: int) -> Reservation:
    nights = (end - start).days
    return Reservation(
        organization_id="org",
        family_group=group,
        start_date=start,
        end_date=end,
        daily_occupancy={date.fromordinal(start.toordinal() + n): guests for n in range(nights)},
        total_cost=cost,
        rotation_year=year,
    )


def test_summary_nets_split_costs_per_group(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "summary.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    first = repository.create_reservation(
        _stay("A", date(2025, 1, 4), date(2025, 1, 6), 4, 300.0, 2025)
    )
    repository.create_reservation(_stay("C", date(2025, 1, 18), date(2025, 1, 21), 2, 120.0, 2025))
    repository.create_reservation(_stay("A", date(2026, 1, 4), date(2026, 1, 6), 2, 999.0, 2026))
    SettlementEngine(repository=repository, settings=settings).commit(
        int(first.reservation_id),
        [PartyAllocation("B", {date(2025, 1, 4): 2})],
    )

    frame = SeasonSummaryService(repository=repository, settings=settings).build_frame("org", 2025)

    assert list(frame.columns) == SUMMARY_COLUMNS
    rows = frame.set_index("family_group")
    assert list(rows.index) == ["A", "B", "C"]
    assert rows.loc["A", "stays"] == 1
    assert rows.loc["A", "charged"] == 300.0
    assert rows.loc["A", "split_out"] == 75.0
    assert rows.loc["A", "net_cost"] == 225.0
    assert rows.loc["B", "split_in"] == 75.0
    assert rows.loc["B", "net_cost"] == 75.0
    assert rows.loc["C", "nights"] == 3
    assert rows.loc["C", "guest_nights"] == 6.0


def test_summary_for_empty_season_has_columns_only(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "summary_empty.db")
    repository = DataRepository(settings)
    repository.initialize_database()

    service = SeasonSummaryService(repository=repository, settings=settings)

    assert list(service.build_frame("org", 2025).columns) == SUMMARY_COLUMNS
    assert service.summarize("org", 2025) == []
